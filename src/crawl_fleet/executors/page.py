"""Generic executor: fetch one page per target and keep its readable text."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote_plus

from crawl_fleet.executors.base import BaseTaskExecutor, ExecutorContext
from crawl_fleet.http.html_extractor import extract_page_text
from crawl_fleet.http.request_executor import RateLimitedRequestExecutor

logger = logging.getLogger(__name__)

DEFAULT_MAX_CHARS = 50_000


class PageTextExecutor(BaseTaskExecutor):
    """Fills ``{target}`` into a URL template, fetches it and extracts the text.

    Fetch failures raise ``RequestFailedError``; a page with no extractable
    content yields no items.
    """

    source = "page"

    def __init__(
        self,
        context: ExecutorContext,
        *,
        requests: RateLimitedRequestExecutor | None = None,
        max_chars: int = DEFAULT_MAX_CHARS,
    ) -> None:
        if not context.page_url_template or "{target}" not in context.page_url_template:
            raise ValueError("Page executor needs a URL template containing '{target}'.")
        super().__init__(
            requests=requests
            or RateLimitedRequestExecutor(
                context.request_policy,
                proxy_pool=context.proxy_pool,
            ),
        )
        self.url_template = context.page_url_template
        self.max_chars = max_chars

    def build_url(self, target: str) -> str:
        return self.url_template.format(target=quote_plus(target))

    def collect(self, target: str) -> list[dict[str, Any]]:
        url = self.build_url(target)
        response = self.requests.get(url)
        page = extract_page_text(response.text, url=str(response.url), max_chars=self.max_chars)
        if not page.is_success:
            logger.warning("No content extracted from %s: %s", url, page.error)
            return []
        return [
            {
                "target": target,
                "url": page.url,
                "title": page.title,
                "text": page.text,
                "status_code": response.status_code,
            },
        ]
