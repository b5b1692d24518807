from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import re
from time import struct_time
from typing import Any

import feedparser
import httpx

from app.config import Settings
from app.registry import RegistryError

logger = logging.getLogger("regbrief.feeds")

_PDF_LINK = re.compile(r"https?://[^\s<>\"']+\.pdf", flags=re.IGNORECASE)
_HTML_TAG = re.compile(r"<[^>]+>")


@dataclass(frozen=True)
class FeedItem:
    guid: str
    title: str
    link: str | None
    summary: str | None
    published: str | None
    pdf_url: str | None

    def as_document_fields(self) -> dict[str, object]:
        return {
            "title": self.title,
            "abstract": self.summary,
            "publication_date": self.published,
            "source_pdf_url": self.pdf_url,
            "source_html_url": self.link,
            "document_type": "NEWSROOM",
        }


def extract_pdf_url(*, link: str | None, texts: list[str]) -> str | None:
    for text in texts:
        match = _PDF_LINK.search(text or "")
        if match:
            return match.group(0)
    if link and link.lower().endswith(".pdf"):
        return link
    return None


def _published_date(entry: Any) -> str | None:
    parsed: struct_time | None = entry.get("published_parsed") or entry.get("updated_parsed")
    if parsed is None:
        return None
    return datetime(*parsed[:6], tzinfo=timezone.utc).date().isoformat()


def _plain_text(value: str | None) -> str | None:
    if not value:
        return None
    text = " ".join(_HTML_TAG.sub(" ", value).split())
    return text or None


def parse_feed(content: bytes | str) -> list[FeedItem]:
    parsed = feedparser.parse(content)
    if parsed.get("bozo") and not parsed.get("entries"):
        raise RegistryError(f"Feed could not be parsed: {parsed.get('bozo_exception')}")

    items: list[FeedItem] = []
    for entry in parsed.get("entries", []):
        link = entry.get("link")
        guid = str(entry.get("id") or link or "").strip()
        if not guid:
            continue
        summary_html = entry.get("summary") or ""
        content_html = " ".join(str(block.get("value") or "") for block in entry.get("content", []))
        items.append(
            FeedItem(
                guid=guid,
                title=str(entry.get("title") or guid).strip(),
                link=link,
                summary=_plain_text(summary_html),
                published=_published_date(entry),
                pdf_url=extract_pdf_url(link=link, texts=[summary_html, content_html]),
            )
        )
    return items


class NewsroomFeedClient:
    def __init__(self, settings: Settings, client: httpx.Client | None = None) -> None:
        self._client = client or httpx.Client(
            timeout=settings.feed_timeout_seconds,
            follow_redirects=True,
            headers={"User-Agent": settings.feed_user_agent},
        )

    def fetch_items(self, feed_url: str) -> list[FeedItem]:
        try:
            response = self._client.get(feed_url)
        except httpx.HTTPError as exc:
            raise RegistryError(f"Feed request to '{feed_url}' failed: {exc}") from exc
        if response.status_code >= 400:
            raise RegistryError(
                f"Feed request to '{feed_url}' returned HTTP {response.status_code}",
                status_code=response.status_code,
                body=response.text[:500],
            )

        items = parse_feed(response.content)
        logger.info(
            "newsroom_feed_fetched",
            extra={"event": "newsroom_feed_fetched", "feed_url": feed_url, "item_count": len(items)},
        )
        return items
