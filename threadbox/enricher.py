"""
Content enricher: find URLs in a user turn, fetch them, and fold the page
text into the prompt. Uses httpx + BeautifulSoup. No API key needed.

Fetch failures are logged and the URL is skipped; enrichment never fails a
generation.
"""

from __future__ import annotations

import asyncio
import logging
import re

import httpx
from bs4 import BeautifulSoup

from threadbox.search.engines import favicon_for
from threadbox.storage.models import SearchResult

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (X11; Linux x86_64; rv:120.0) Gecko/20100101 Firefox/120.0"
}

URL_RE = re.compile(r"https?://[^\s<>\"'`)\]}，。！？]+")
_TRAILING_PUNCT = ".,;:!?"


def extract_urls(text: str) -> list[str]:
    """Unique http(s) URLs in order of appearance."""
    seen: list[str] = []
    for match in URL_RE.findall(text or ""):
        url = match.rstrip(_TRAILING_PUNCT)
        if url not in seen:
            seen.append(url)
    return seen


def html_to_result(url: str, html: str, max_content_length: int) -> SearchResult:
    """Pull title, description and clean body text out of a page."""
    soup = BeautifulSoup(html, "lxml")

    title = soup.title.get_text(strip=True) if soup.title else url
    meta = soup.find("meta", attrs={"name": "description"})
    description = meta.get("content", "").strip() if meta else ""

    # Remove noise
    for tag in soup(["script", "style", "nav", "footer", "header", "aside"]):
        tag.decompose()

    text = soup.get_text(separator="\n", strip=True)
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    text = "\n".join(lines)
    if len(text) > max_content_length:
        text = text[:max_content_length] + "\n\n[... truncated]"

    return SearchResult(
        title=title,
        url=url,
        content=text,
        description=description,
        icon=favicon_for(url),
    )


class ContentEnricher:
    """Fetches URLs mentioned in user messages."""

    def __init__(
        self,
        enabled: bool = True,
        max_urls: int = 3,
        max_content_length: int = 5000,
        timeout: int = 10,
    ):
        self.enabled = enabled
        self.max_urls = max_urls
        self.max_content_length = max_content_length
        self.timeout = timeout

    @classmethod
    def from_config(cls, cfg: dict) -> "ContentEnricher":
        e_cfg = cfg.get("enricher", {})
        return cls(
            enabled=e_cfg.get("enabled", True),
            max_urls=e_cfg.get("max_urls", 3),
            max_content_length=e_cfg.get("max_content_length", 5000),
            timeout=e_cfg.get("timeout", 10),
        )

    async def _fetch(self, client: httpx.AsyncClient, url: str) -> SearchResult | None:
        try:
            resp = await client.get(url)
            resp.raise_for_status()
            result = html_to_result(url, resp.text, self.max_content_length)
            logger.debug("Enriched %s (%d chars)", url, len(result.content))
            return result
        except Exception as e:
            logger.warning("URL enrichment failed for %s: %s", url, e)
            return None

    async def extract_and_enrich_urls(self, text: str) -> list[SearchResult]:
        if not self.enabled:
            return []
        urls = extract_urls(text)[: self.max_urls]
        if not urls:
            return []
        async with httpx.AsyncClient(
            timeout=self.timeout, headers=DEFAULT_HEADERS, follow_redirects=True
        ) as client:
            fetched = await asyncio.gather(*(self._fetch(client, url) for url in urls))
        return [r for r in fetched if r is not None]

    @staticmethod
    def enrich_user_message_with_url_content(text: str, results: list[SearchResult]) -> str:
        if not results:
            return text
        parts = [
            f'<url_content url="{r.url}" title="{r.title}">\n{r.content}\n</url_content>'
            for r in results
        ]
        return (
            f"{text}\n\n"
            "The following is the content of the links in the message above:\n"
            + "\n\n".join(parts)
        )
