from __future__ import annotations

from dataclasses import dataclass, field
import io
import logging
import re
from typing import Literal

from fpdf import FPDF
from fpdf.enums import XPos, YPos

from app.rendering.base import Branding, OutputType, RenderContext, RenderError, parse_hex_color

logger = logging.getLogger("regbrief.rendering.memo")

MemoItemKind = Literal["bullet", "paragraph", "strong"]

_BOLD = re.compile(r"\*\*(.+?)\*\*")
_UNDERSCORE_BOLD = re.compile(r"__(.+?)__")
_ITALIC = re.compile(r"(?<!\*)\*(?!\s)(.+?)(?<!\s)\*(?!\*)")
_CODE = re.compile(r"`(.+?)`")
_BULLET = re.compile(r"^[-*]\s+(.*)$")
_STRONG_LINE = re.compile(r"^\*\*.+?\*\*")

# Core PDF fonts are latin-1 only; fold the punctuation models like to emit.
_LATIN1_FOLDS = {
    "‘": "'",
    "’": "'",
    "“": '"',
    "”": '"',
    "–": "-",
    "—": "-",
    "•": "-",
    "…": "...",
    " ": " ",
    "→": "->",
    "≤": "<=",
    "≥": ">=",
}

_BODY_TEXT = (51, 51, 51)
_MUTED_TEXT = (102, 102, 102)


@dataclass(frozen=True)
class MemoItem:
    kind: MemoItemKind
    text: str


@dataclass
class MemoSection:
    heading: str
    content: list[MemoItem] = field(default_factory=list)


def strip_inline_markdown(text: str) -> str:
    stripped = _BOLD.sub(r"\1", text)
    stripped = _UNDERSCORE_BOLD.sub(r"\1", stripped)
    stripped = _ITALIC.sub(r"\1", stripped)
    stripped = _CODE.sub(r"\1", stripped)
    return stripped.strip()


def parse_memo_sections(markdown: str) -> list[MemoSection]:
    """Split memo markdown into `## ` sections of bullets, bold lead-ins and paragraphs.

    Text before the first heading is kept in a section with an empty heading. `#` and `###`
    headings are not section boundaries; they become bold items in the current section.
    """
    sections: list[MemoSection] = []
    current: MemoSection | None = None

    def ensure_section() -> MemoSection:
        nonlocal current
        if current is None:
            current = MemoSection(heading="")
            sections.append(current)
        return current

    for raw_line in (markdown or "").splitlines():
        line = raw_line.strip()
        if not line:
            continue
        if line.startswith("## "):
            current = MemoSection(heading=strip_inline_markdown(line[3:]))
            sections.append(current)
            continue
        if line.startswith("#"):
            text = strip_inline_markdown(line.lstrip("#"))
            if text:
                ensure_section().content.append(MemoItem(kind="strong", text=text))
            continue

        bullet = _BULLET.match(line)
        if bullet and not _STRONG_LINE.match(line):
            ensure_section().content.append(MemoItem(kind="bullet", text=strip_inline_markdown(bullet.group(1))))
        elif _STRONG_LINE.match(line):
            ensure_section().content.append(MemoItem(kind="strong", text=strip_inline_markdown(line)))
        else:
            ensure_section().content.append(MemoItem(kind="paragraph", text=strip_inline_markdown(line)))

    return [section for section in sections if section.heading or section.content]


def to_latin1(text: str) -> str:
    folded = "".join(_LATIN1_FOLDS.get(char, char) for char in str(text or ""))
    return folded.encode("latin-1", "replace").decode("latin-1")


class _MemoPdf(FPDF):
    def __init__(self, branding: Branding) -> None:
        super().__init__(orientation="P", unit="mm", format="A4")
        self._branding = branding
        self._primary = parse_hex_color(branding.primary_color, (26, 26, 46))
        self._secondary = parse_hex_color(branding.secondary_color, (233, 69, 96))
        self.set_margins(18, 18, 18)
        self.set_auto_page_break(auto=True, margin=22)

    @property
    def primary(self) -> tuple[int, int, int]:
        return self._primary

    @property
    def secondary(self) -> tuple[int, int, int]:
        return self._secondary

    def header(self) -> None:
        text_x = self.l_margin
        if self._branding.logo:
            try:
                self.image(io.BytesIO(self._branding.logo), x=self.l_margin, y=10, h=12)
                text_x = self.l_margin + 30
            except Exception as exc:
                # Unreadable logos are skipped; the memo renders without one.
                logger.warning("memo_logo_skipped", extra={"event": "memo_logo_skipped", "error": str(exc)})
        self.set_xy(text_x, 10)
        self.set_font("helvetica", "B", 13)
        self.set_text_color(*self._primary)
        self.cell(0, 7, to_latin1(self._branding.company_name), new_x=XPos.LMARGIN, new_y=YPos.NEXT)
        if self._branding.tagline:
            self.set_x(text_x)
            self.set_font("helvetica", "I", 9)
            self.set_text_color(*_MUTED_TEXT)
            self.cell(0, 5, to_latin1(self._branding.tagline), new_x=XPos.LMARGIN, new_y=YPos.NEXT)
        self.set_draw_color(*self._secondary)
        self.set_line_width(0.6)
        self.line(self.l_margin, 25, self.w - self.r_margin, 25)
        self.set_y(30)

    def footer(self) -> None:
        self.set_y(-15)
        self.set_font("helvetica", "", 8)
        self.set_text_color(*_MUTED_TEXT)
        self.cell(0, 8, to_latin1(f"{self._branding.company_name} | Confidential"), align="L")
        self.set_x(self.l_margin)
        self.cell(0, 8, f"Page {self.page_no()}/{{nb}}", align="R")


def _write_metadata_block(pdf: _MemoPdf, context: RenderContext) -> None:
    document = context.document
    pdf.set_font("helvetica", "B", 9)
    pdf.set_text_color(*pdf.secondary)
    pdf.cell(0, 6, "REGULATORY BRIEFING", new_x=XPos.LMARGIN, new_y=YPos.NEXT)

    pdf.set_font("helvetica", "B", 16)
    pdf.set_text_color(*pdf.primary)
    pdf.multi_cell(0, 8, to_latin1(document.title), new_x=XPos.LMARGIN, new_y=YPos.NEXT)

    if context.client_name:
        pdf.ln(1)
        pdf.set_font("helvetica", "B", 11)
        pdf.set_text_color(*_BODY_TEXT)
        pdf.cell(0, 6, to_latin1(f"Prepared for: {context.client_name}"), new_x=XPos.LMARGIN, new_y=YPos.NEXT)

    details = [value for value in (document.publication_date, document.citation, document.document_type) if value]
    if details:
        pdf.set_font("helvetica", "", 9)
        pdf.set_text_color(*_MUTED_TEXT)
        pdf.cell(0, 6, to_latin1(" | ".join(details)), new_x=XPos.LMARGIN, new_y=YPos.NEXT)
    pdf.ln(4)


def _write_section(pdf: _MemoPdf, section: MemoSection) -> None:
    if section.heading:
        pdf.ln(2)
        pdf.set_font("helvetica", "B", 13)
        pdf.set_text_color(*pdf.primary)
        pdf.cell(0, 8, to_latin1(section.heading), new_x=XPos.LMARGIN, new_y=YPos.NEXT)
        pdf.set_draw_color(*pdf.secondary)
        pdf.set_line_width(0.3)
        pdf.line(pdf.l_margin, pdf.get_y(), pdf.l_margin + 30, pdf.get_y())
        pdf.ln(2)

    for item in section.content:
        pdf.set_text_color(*_BODY_TEXT)
        if item.kind == "bullet":
            pdf.set_font("helvetica", "", 10)
            pdf.set_x(pdf.l_margin + 3)
            pdf.cell(5, 5.5, "-")
            pdf.multi_cell(0, 5.5, to_latin1(item.text), new_x=XPos.LMARGIN, new_y=YPos.NEXT)
        elif item.kind == "strong":
            pdf.set_font("helvetica", "B", 10)
            pdf.multi_cell(0, 5.5, to_latin1(item.text), new_x=XPos.LMARGIN, new_y=YPos.NEXT)
        else:
            pdf.set_font("helvetica", "", 10)
            pdf.multi_cell(0, 5.5, to_latin1(item.text), new_x=XPos.LMARGIN, new_y=YPos.NEXT)
        pdf.ln(1.5)


def render_memo_pdf(markdown: str, *, context: RenderContext) -> bytes:
    sections = parse_memo_sections(markdown)
    if not sections:
        raise RenderError("Memo text did not contain any renderable content.")

    pdf = _MemoPdf(context.branding)
    pdf.set_title(to_latin1(context.document.title))
    pdf.set_author(to_latin1(context.branding.company_name))
    pdf.add_page()
    _write_metadata_block(pdf, context)
    for section in sections:
        _write_section(pdf, section)

    content = bytes(pdf.output())
    logger.info(
        "memo_pdf_rendered",
        extra={
            "event": "memo_pdf_rendered",
            "section_count": len(sections),
            "page_count": pdf.page_no(),
            "size_bytes": len(content),
            "customized": bool(context.client_name),
        },
    )
    return content


class MemoPdfRenderer:
    output_type = OutputType.MEMO_PDF
    extension = "pdf"
    content_type = "application/pdf"

    def render(self, source_text: str, *, context: RenderContext) -> bytes:
        return render_memo_pdf(source_text, context=context)
