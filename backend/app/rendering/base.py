from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Protocol


class OutputType(str, Enum):
    SLIDE_DECK = "slide_deck"
    MEMO_PDF = "memo_pdf"


class RenderError(RuntimeError):
    """Raised when structured generation output cannot be rendered."""


@dataclass(frozen=True)
class Branding:
    company_name: str = "Regulatory Intelligence"
    tagline: str = ""
    primary_color: str = "1a1a2e"
    secondary_color: str = "e94560"
    logo: bytes | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, object] | None, *, logo: bytes | None = None) -> "Branding":
        data = data or {}
        defaults = cls()
        return cls(
            company_name=str(data.get("company_name") or defaults.company_name),
            tagline=str(data.get("tagline") or ""),
            primary_color=str(data.get("primary_color") or defaults.primary_color),
            secondary_color=str(data.get("secondary_color") or defaults.secondary_color),
            logo=logo,
        )


@dataclass(frozen=True)
class DocumentHeader:
    title: str
    citation: str | None = None
    publication_date: str | None = None
    document_type: str | None = None

    @classmethod
    def from_document(cls, document: Mapping[str, object]) -> "DocumentHeader":
        def optional(key: str) -> str | None:
            value = document.get(key)
            return str(value) if value else None

        return cls(
            title=str(document.get("title") or document.get("external_id") or "Untitled document"),
            citation=optional("citation"),
            publication_date=optional("publication_date"),
            document_type=optional("document_type"),
        )


@dataclass(frozen=True)
class RenderContext:
    document: DocumentHeader
    branding: Branding = field(default_factory=Branding)
    client_name: str | None = None
    footer_label: str = "Federal Register"


class ArtifactRenderer(Protocol):
    output_type: OutputType
    extension: str
    content_type: str

    def render(self, source_text: str, *, context: RenderContext) -> bytes:
        ...


def parse_hex_color(value: str | None, default: tuple[int, int, int]) -> tuple[int, int, int]:
    raw = str(value or "").strip().lstrip("#")
    if len(raw) != 6:
        return default
    try:
        return int(raw[0:2], 16), int(raw[2:4], 16), int(raw[4:6], 16)
    except ValueError:
        return default
