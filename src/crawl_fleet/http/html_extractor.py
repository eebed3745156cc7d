"""Main-content extraction from fetched pages using trafilatura."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import trafilatura

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PageText:
    """Title and readable text of one page."""

    url: str
    title: str | None
    text: str
    is_success: bool
    error: str | None = None


def extract_page_text(html: str, *, url: str, max_chars: int = 0) -> PageText:
    """Extract title and main text; tries a precision pass, then a recall pass."""

    if not html or not html.strip():
        return PageText(url=url, title=None, text="", is_success=False, error="empty HTML input")

    title = _extract_title(html, url=url)
    text = None
    for mode in ({"favor_precision": True}, {"favor_recall": True}):
        try:
            text = trafilatura.extract(html, url=url, include_tables=True, deduplicate=True, **mode)
        except Exception as exc:  # noqa: BLE001
            logger.warning("trafilatura.extract (%s) failed for %s: %s", next(iter(mode)), url, exc)
            text = None
        if text:
            break

    if not text:
        return PageText(
            url=url,
            title=title,
            text="",
            is_success=False,
            error="no content extracted",
        )
    if max_chars > 0 and len(text) > max_chars:
        text = text[:max_chars].rstrip()
    return PageText(url=url, title=title, text=text, is_success=True)


def _extract_title(html: str, *, url: str) -> str | None:
    try:
        metadata = trafilatura.extract_metadata(html, default_url=url)
    except Exception as exc:  # noqa: BLE001
        logger.debug("Metadata extraction failed for %s: %s", url, exc)
        return None
    if metadata is None:
        return None
    return metadata.title or None
