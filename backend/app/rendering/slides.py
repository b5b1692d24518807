from __future__ import annotations

import io
import json
import logging
from typing import Callable, Literal

from pptx import Presentation
from pptx.dml.color import RGBColor
from pptx.enum.shapes import MSO_SHAPE
from pptx.enum.text import MSO_ANCHOR, PP_ALIGN
from pptx.oxml.xmlchemy import OxmlElement
from pptx.util import Emu, Inches, Pt
from pydantic import BaseModel, Field, ValidationError

from app.rendering.base import OutputType, RenderContext, RenderError

logger = logging.getLogger("regbrief.rendering.slides")

NAVY = "1B3A5C"
TEAL = "0D7C8C"
DARK_GRAY = "333333"
LIGHT_GRAY = "666666"
WHITE = "FFFFFF"
FONT_NAME = "Calibri"

SLIDE_WIDTH = Inches(13.333)
SLIDE_HEIGHT = Inches(7.5)
MARGIN = Inches(0.6)
_BLANK_LAYOUT_INDEX = 6
_SLIDE_NUMBER_FIELD_ID = "{B6F15528-21DE-4FAA-801E-634DDDAF4B2B}"


class SlideContent(BaseModel):
    type: Literal["bullet", "paragraph", "note"] = "bullet"
    text: str
    level: int = Field(default=0, ge=0, le=4)


class Slide(BaseModel):
    slide_type: Literal["title", "content", "section", "two_column", "summary"] = "content"
    title: str = ""
    subtitle: str | None = None
    content: list[SlideContent] = Field(default_factory=list)
    left_column: list[SlideContent] | None = None
    right_column: list[SlideContent] | None = None


class SlideMetadata(BaseModel):
    document_title: str
    citation: str | None = None
    publication_date: str | None = None
    comment_deadline: str | None = None
    key_topics: list[str] = Field(default_factory=list)


class SlideDeck(BaseModel):
    slides: list[Slide] = Field(min_length=1)
    metadata: SlideMetadata


def parse_slide_deck(raw: str | dict[str, object]) -> SlideDeck:
    try:
        payload = json.loads(raw) if isinstance(raw, str) else raw
    except json.JSONDecodeError as exc:
        raise RenderError(f"Slide data is not valid JSON: {exc}") from exc
    try:
        return SlideDeck.model_validate(payload)
    except ValidationError as exc:
        raise RenderError(f"Slide data does not match the deck schema: {exc}") from exc


def _rgb(value: str) -> RGBColor:
    return RGBColor.from_string(value)


def _style_run(run, *, size: int, color: str, bold: bool = False, italic: bool = False) -> None:
    run.font.name = FONT_NAME
    run.font.size = Pt(size)
    run.font.bold = bold
    run.font.italic = italic
    run.font.color.rgb = _rgb(color)


def _add_textbox(slide, left, top, width, height):
    box = slide.shapes.add_textbox(left, top, width, height)
    frame = box.text_frame
    frame.word_wrap = True
    return frame


def _add_text(
    slide,
    text: str,
    *,
    left,
    top,
    width,
    height,
    size: int,
    color: str,
    bold: bool = False,
    align=PP_ALIGN.LEFT,
    anchor=MSO_ANCHOR.TOP,
) -> None:
    frame = _add_textbox(slide, left, top, width, height)
    frame.vertical_anchor = anchor
    paragraph = frame.paragraphs[0]
    paragraph.alignment = align
    run = paragraph.add_run()
    run.text = text
    _style_run(run, size=size, color=color, bold=bold)


def _fill_background(slide, color: str) -> None:
    fill = slide.background.fill
    fill.solid()
    fill.fore_color.rgb = _rgb(color)


def _add_bullet_marker(paragraph, level: int) -> None:
    indent = Inches(0.3)
    p_pr = paragraph._p.get_or_add_pPr()
    p_pr.set("marL", str(Emu(indent * (level + 1))))
    p_pr.set("indent", str(-Emu(indent)))
    bullet = OxmlElement("a:buChar")
    bullet.set("char", "•" if level == 0 else "–")
    p_pr.append(bullet)


def _write_items(frame, items: list[SlideContent], *, size: int = 20) -> None:
    first = True
    for item in items:
        if item.type == "note":
            continue
        paragraph = frame.paragraphs[0] if first else frame.add_paragraph()
        first = False
        paragraph.space_after = Pt(8)
        run = paragraph.add_run()
        run.text = item.text
        if item.type == "bullet":
            paragraph.level = item.level
            _add_bullet_marker(paragraph, item.level)
            _style_run(run, size=max(size - 2 * item.level, 12), color=DARK_GRAY)
        else:
            _style_run(run, size=size - 2, color=LIGHT_GRAY)


def _add_slide_number(slide, number: int, *, color: str = LIGHT_GRAY) -> None:
    frame = _add_textbox(slide, SLIDE_WIDTH - MARGIN - Inches(1.0), SLIDE_HEIGHT - Inches(0.5), Inches(1.0), Inches(0.3))
    paragraph = frame.paragraphs[0]
    paragraph.alignment = PP_ALIGN.RIGHT

    field = OxmlElement("a:fld")
    field.set("id", _SLIDE_NUMBER_FIELD_ID)
    field.set("type", "slidenum")
    run_props = OxmlElement("a:rPr")
    run_props.set("lang", "en-US")
    run_props.set("sz", "1000")
    fill = OxmlElement("a:solidFill")
    fill_color = OxmlElement("a:srgbClr")
    fill_color.set("val", color)
    fill.append(fill_color)
    run_props.append(fill)
    field.append(run_props)
    text = OxmlElement("a:t")
    text.text = str(number)
    field.append(text)
    paragraph._p.insert_element_before(field, "a:endParaRPr")


def _add_footer(slide, text: str) -> None:
    _add_text(
        slide,
        text,
        left=MARGIN,
        top=SLIDE_HEIGHT - Inches(0.5),
        width=SLIDE_WIDTH - 2 * MARGIN - Inches(1.2),
        height=Inches(0.3),
        size=10,
        color=LIGHT_GRAY,
    )


def _add_title_bar(slide, title: str, *, color: str = NAVY) -> None:
    _add_text(
        slide,
        title,
        left=MARGIN,
        top=Inches(0.4),
        width=SLIDE_WIDTH - 2 * MARGIN,
        height=Inches(0.9),
        size=28,
        color=color,
        bold=True,
        anchor=MSO_ANCHOR.MIDDLE,
    )
    accent = slide.shapes.add_shape(MSO_SHAPE.RECTANGLE, MARGIN, Inches(1.35), Inches(1.5), Inches(0.06))
    accent.fill.solid()
    accent.fill.fore_color.rgb = _rgb(TEAL)
    accent.line.fill.background()


def _attach_notes(slide, data: Slide) -> None:
    notes = [item.text for item in data.content if item.type == "note"]
    for column in (data.left_column or [], data.right_column or []):
        notes.extend(item.text for item in column if item.type == "note")
    if notes:
        slide.notes_slide.notes_text_frame.text = "\n".join(notes)


class _DeckBuilder:
    def __init__(self, deck: SlideDeck, context: RenderContext) -> None:
        self._deck = deck
        self._context = context
        self._presentation = Presentation()
        self._presentation.slide_width = SLIDE_WIDTH
        self._presentation.slide_height = SLIDE_HEIGHT
        citation = deck.metadata.citation or context.document.citation
        reference = citation or deck.metadata.document_title
        self._footer = f"Source: {context.footer_label} {reference}".strip()

    def build(self) -> bytes:
        renderers: dict[str, Callable[[Slide, int], None]] = {
            "title": self._title_slide,
            "section": self._section_slide,
            "content": self._content_slide,
            "two_column": self._two_column_slide,
            "summary": self._summary_slide,
        }
        for number, data in enumerate(self._deck.slides, start=1):
            renderers[data.slide_type](data, number)

        buffer = io.BytesIO()
        self._presentation.save(buffer)
        return buffer.getvalue()

    def _new_slide(self, data: Slide):
        slide = self._presentation.slides.add_slide(self._presentation.slide_layouts[_BLANK_LAYOUT_INDEX])
        _attach_notes(slide, data)
        return slide

    def _title_slide(self, data: Slide, number: int) -> None:
        del number
        slide = self._new_slide(data)
        _fill_background(slide, NAVY)
        metadata = self._deck.metadata
        _add_text(
            slide,
            data.title or metadata.document_title,
            left=MARGIN,
            top=Inches(2.0),
            width=SLIDE_WIDTH - 2 * MARGIN,
            height=Inches(1.8),
            size=40,
            color=WHITE,
            bold=True,
            align=PP_ALIGN.CENTER,
            anchor=MSO_ANCHOR.BOTTOM,
        )
        if data.subtitle:
            _add_text(
                slide,
                data.subtitle,
                left=MARGIN,
                top=Inches(4.0),
                width=SLIDE_WIDTH - 2 * MARGIN,
                height=Inches(0.8),
                size=20,
                color=WHITE,
                align=PP_ALIGN.CENTER,
            )
        details = [
            value
            for value in (
                metadata.citation,
                f"Published {metadata.publication_date}" if metadata.publication_date else None,
                f"Comments due {metadata.comment_deadline}" if metadata.comment_deadline else None,
            )
            if value
        ]
        if details:
            _add_text(
                slide,
                "  |  ".join(details),
                left=MARGIN,
                top=Inches(5.0),
                width=SLIDE_WIDTH - 2 * MARGIN,
                height=Inches(0.5),
                size=14,
                color=WHITE,
                align=PP_ALIGN.CENTER,
            )
        _add_text(
            slide,
            self._context.branding.company_name,
            left=MARGIN,
            top=SLIDE_HEIGHT - Inches(0.8),
            width=SLIDE_WIDTH - 2 * MARGIN,
            height=Inches(0.4),
            size=12,
            color=WHITE,
            align=PP_ALIGN.CENTER,
        )

    def _section_slide(self, data: Slide, number: int) -> None:
        slide = self._new_slide(data)
        _fill_background(slide, TEAL)
        _add_text(
            slide,
            data.title,
            left=MARGIN,
            top=Inches(2.6),
            width=SLIDE_WIDTH - 2 * MARGIN,
            height=Inches(1.2),
            size=36,
            color=WHITE,
            bold=True,
            anchor=MSO_ANCHOR.MIDDLE,
        )
        if data.subtitle:
            _add_text(
                slide,
                data.subtitle,
                left=MARGIN,
                top=Inches(3.9),
                width=SLIDE_WIDTH - 2 * MARGIN,
                height=Inches(0.8),
                size=18,
                color=WHITE,
            )
        _add_slide_number(slide, number, color=WHITE)

    def _content_slide(self, data: Slide, number: int, *, title_color: str = NAVY) -> None:
        slide = self._new_slide(data)
        _add_title_bar(slide, data.title, color=title_color)
        frame = _add_textbox(slide, MARGIN, Inches(1.7), SLIDE_WIDTH - 2 * MARGIN, Inches(4.9))
        _write_items(frame, data.content)
        _add_footer(slide, self._footer)
        _add_slide_number(slide, number)

    def _summary_slide(self, data: Slide, number: int) -> None:
        self._content_slide(data, number, title_color=TEAL)

    def _two_column_slide(self, data: Slide, number: int) -> None:
        slide = self._new_slide(data)
        _add_title_bar(slide, data.title)
        left_items = data.left_column
        right_items = data.right_column
        if not left_items and not right_items:
            visible = [item for item in data.content if item.type != "note"]
            middle = (len(visible) + 1) // 2
            left_items, right_items = visible[:middle], visible[middle:]

        column_width = int((SLIDE_WIDTH - 2 * MARGIN - Inches(0.4)) / 2)
        for index, items in enumerate((left_items or [], right_items or [])):
            left = int(MARGIN + index * (column_width + Inches(0.4)))
            frame = _add_textbox(slide, left, Inches(1.7), column_width, Inches(4.9))
            _write_items(frame, items, size=18)
        _add_footer(slide, self._footer)
        _add_slide_number(slide, number)


def render_slide_deck(deck: SlideDeck, *, context: RenderContext) -> bytes:
    content = _DeckBuilder(deck, context).build()
    logger.info(
        "slide_deck_rendered",
        extra={"event": "slide_deck_rendered", "slide_count": len(deck.slides), "size_bytes": len(content)},
    )
    return content


class SlideDeckRenderer:
    output_type = OutputType.SLIDE_DECK
    extension = "pptx"
    content_type = "application/vnd.openxmlformats-officedocument.presentationml.presentation"

    def render(self, source_text: str, *, context: RenderContext) -> bytes:
        return render_slide_deck(parse_slide_deck(source_text), context=context)
