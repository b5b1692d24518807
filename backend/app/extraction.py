from __future__ import annotations

from dataclasses import dataclass
import io
import logging
import re

from pypdf import PdfReader
from pypdf.errors import PyPdfError

logger = logging.getLogger("regbrief.extraction")


class ExtractionError(RuntimeError):
    """Raised when a PDF cannot be turned into text."""


@dataclass(frozen=True)
class ExtractedText:
    text: str
    page_count: int


_REGISTRY_HEADER = re.compile(
    r"Federal Register\s*/\s*Vol\.\s*\d+.*?/\s*\w+day,\s*\w+\s+\d+,\s*\d{4}\s*/\s*"
    r"(?:Rules and Regulations|Proposed Rules|Notices|Presidential Documents)",
    flags=re.IGNORECASE,
)
_PAGE_NUMBER_LINE = re.compile(r"^\s*\d{1,6}\s*$", flags=re.MULTILINE)
# Print-job control lines the Government Publishing Office leaves in registry PDFs.
_PRINT_ARTIFACT_LINES = (
    re.compile(r"^VerDate\s.*$", flags=re.MULTILINE),
    re.compile(r"^Jkt\s.*$", flags=re.MULTILINE),
    re.compile(r"^PO\s+\d+.*$", flags=re.MULTILINE),
    re.compile(r"^Frm\s+\d+.*$", flags=re.MULTILINE),
    re.compile(r"^Fmt\s+\d+.*$", flags=re.MULTILINE),
    re.compile(r"^Sfmt\s+\d+.*$", flags=re.MULTILINE),
    re.compile(r"^\d+\.TXT.*$", flags=re.MULTILINE),
    re.compile(r"^E:\\FR\\FM\\.*$", flags=re.MULTILINE),
    re.compile(r"^DSK\w+.*$", flags=re.MULTILINE),
)
_HYPHEN_BREAK = re.compile(r"(\w)-\n\s*(\w)")
_EXCESS_BLANK_LINES = re.compile(r"\n{4,}")
_TRAILING_WHITESPACE = re.compile(r"[ \t]+$", flags=re.MULTILINE)


def clean_registry_text(text: str) -> str:
    cleaned = _REGISTRY_HEADER.sub("", text or "")
    cleaned = _PAGE_NUMBER_LINE.sub("", cleaned)
    cleaned = cleaned.replace("\f", "\n")
    for pattern in _PRINT_ARTIFACT_LINES:
        cleaned = pattern.sub("", cleaned)
    cleaned = _HYPHEN_BREAK.sub(r"\1\2", cleaned)
    cleaned = _EXCESS_BLANK_LINES.sub("\n\n\n", cleaned)
    cleaned = _TRAILING_WHITESPACE.sub("", cleaned)
    return cleaned.strip()


def extract_pdf_text(content: bytes) -> ExtractedText:
    if not content:
        raise ExtractionError("PDF content is empty.")

    try:
        reader = PdfReader(io.BytesIO(content), strict=False)
        if reader.is_encrypted:
            # Many publisher PDFs are "encrypted" with an empty user password.
            if not reader.decrypt(""):
                raise ExtractionError("PDF is encrypted and cannot be opened.")
        page_texts = [page.extract_text() or "" for page in reader.pages]
    except ExtractionError:
        raise
    except (PyPdfError, ValueError, KeyError, TypeError, NotImplementedError) as exc:
        raise ExtractionError(f"PDF parse failed: {exc}") from exc

    text = clean_registry_text("\n".join(page_texts))
    if not text:
        raise ExtractionError("PDF did not contain extractable text (it may be a scanned image).")

    logger.info(
        "pdf_text_extracted",
        extra={"event": "pdf_text_extracted", "page_count": len(page_texts), "text_chars": len(text)},
    )
    return ExtractedText(text=text, page_count=len(page_texts))
