"""Optional page-text context for generation prompts."""
from __future__ import annotations

import html
import logging
import re
from typing import Optional, Protocol

import httpx

from actionbot.config import Config

logger = logging.getLogger(__name__)

_SCRIPT_STYLE_RE = re.compile(r"<(script|style)\b[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")


class ContentFetcher(Protocol):
    async def fetch(self, url: str) -> str:
        ...


def html_to_text(markup: str) -> str:
    text = _SCRIPT_STYLE_RE.sub(" ", markup)
    text = _TAG_RE.sub(" ", text)
    return _WS_RE.sub(" ", html.unescape(text)).strip()


class HttpContentFetcher:
    """GET a page and reduce it to visible text."""

    def __init__(
        self,
        *,
        timeout_seconds: float = Config.FETCH_TIMEOUT_SEC,
        max_chars: int = 4000,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.max_chars = max_chars
        self._http_client = http_client

    async def fetch(self, url: str) -> str:
        if not url:
            return ""
        if self._http_client is not None:
            resp = await self._http_client.get(url, timeout=self.timeout_seconds, follow_redirects=True)
        else:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, follow_redirects=True) as client:
                resp = await client.get(url)
        resp.raise_for_status()
        text = html_to_text(resp.text)
        logger.debug(f"Fetched {len(text)} chars of context from {url}")
        return text[: self.max_chars]
