from app.rendering.base import (
    ArtifactRenderer,
    Branding,
    DocumentHeader,
    OutputType,
    RenderContext,
    RenderError,
)
from app.rendering.memo import MemoPdfRenderer, parse_memo_sections, render_memo_pdf
from app.rendering.slides import SlideDeck, SlideDeckRenderer, parse_slide_deck, render_slide_deck


def get_renderer(output_type: OutputType | str) -> ArtifactRenderer:
    try:
        resolved = OutputType(output_type)
    except ValueError as exc:
        raise RenderError(f"Unsupported output type '{output_type}'.") from exc

    if resolved is OutputType.SLIDE_DECK:
        return SlideDeckRenderer()
    if resolved is OutputType.MEMO_PDF:
        return MemoPdfRenderer()
    raise RenderError(f"No renderer registered for output type '{resolved.value}'.")


def render_artifact(output_type: OutputType | str, source_text: str, *, context: RenderContext) -> bytes:
    return get_renderer(output_type).render(source_text, context=context)


__all__ = [
    "ArtifactRenderer",
    "Branding",
    "DocumentHeader",
    "MemoPdfRenderer",
    "OutputType",
    "RenderContext",
    "RenderError",
    "SlideDeck",
    "SlideDeckRenderer",
    "get_renderer",
    "parse_memo_sections",
    "parse_slide_deck",
    "render_artifact",
    "render_memo_pdf",
    "render_slide_deck",
]
