"""
Search engines and the manager that picks the active one.

  duckduckgo  LangChain's DuckDuckGo wrapper. Free, no API key. Default.
  google      Google Custom Search JSON API over httpx. Needs api_key + cse_id.

The active engine is persisted to runtime_config.yaml so it survives
restarts without editing config.yaml.
"""

from __future__ import annotations

import asyncio
import logging
from urllib.parse import urlparse

import httpx
from langchain_community.utilities import DuckDuckGoSearchAPIWrapper

from threadbox.config import get_runtime_config, update_runtime_config
from threadbox.errors import SearchError
from threadbox.storage.models import SearchResult

logger = logging.getLogger(__name__)

RUNTIME_ENGINE_KEY = "search_engine"


def favicon_for(url: str) -> str:
    host = urlparse(url).netloc
    return f"https://www.google.com/s2/favicons?domain={host}&sz=32" if host else ""


class DuckDuckGoEngine:
    """Wraps LangChain's DuckDuckGo search API wrapper."""

    name = "duckduckgo"
    label = "DuckDuckGo"

    def __init__(self, max_results: int = 5):
        self.max_results = max_results
        self._wrapper: DuckDuckGoSearchAPIWrapper | None = None

    @property
    def wrapper(self) -> DuckDuckGoSearchAPIWrapper:
        # Built on first use: the wrapper validates its search client at construction.
        if self._wrapper is None:
            self._wrapper = DuckDuckGoSearchAPIWrapper(max_results=self.max_results)
        return self._wrapper

    async def search(self, query: str) -> list[SearchResult]:
        # The wrapper is synchronous; keep it off the event loop.
        rows = await asyncio.to_thread(self.wrapper.results, query, self.max_results)
        return [
            SearchResult(
                title=row.get("title", ""),
                url=row.get("link", ""),
                content=row.get("snippet", ""),
                description=row.get("snippet", ""),
                icon=favicon_for(row.get("link", "")),
            )
            for row in rows
            if row.get("link")
        ]


class GoogleEngine:
    """Google Custom Search."""

    name = "google"
    label = "Google"
    endpoint = "https://www.googleapis.com/customsearch/v1"

    def __init__(self, api_key: str = "", cse_id: str = "", max_results: int = 5, timeout: int = 10):
        self.api_key = api_key
        self.cse_id = cse_id
        self.max_results = max_results
        self.timeout = timeout

    async def search(self, query: str) -> list[SearchResult]:
        if not (self.api_key and self.cse_id):
            raise SearchError("Google search needs search.google.api_key and search.google.cse_id")
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.get(
                self.endpoint,
                params={
                    "key": self.api_key,
                    "cx": self.cse_id,
                    "q": query,
                    "num": min(self.max_results, 10),
                },
            )
            resp.raise_for_status()
            data = resp.json()

        return [
            SearchResult(
                title=item.get("title", ""),
                url=item["link"],
                content=item.get("snippet", ""),
                description=item.get("snippet", ""),
                icon=favicon_for(item["link"]),
            )
            for item in data.get("items", [])
            if item.get("link")
        ]


class SearchManager:
    """Holds the configured engines and routes searches to the active one."""

    def __init__(self, search_cfg: dict | None = None):
        search_cfg = search_cfg or {}
        max_results = search_cfg.get("max_results", 5)
        google_cfg = search_cfg.get("google", {})

        self.engines = {
            DuckDuckGoEngine.name: DuckDuckGoEngine(max_results=max_results),
            GoogleEngine.name: GoogleEngine(
                api_key=google_cfg.get("api_key", ""),
                cse_id=google_cfg.get("cse_id", ""),
                max_results=max_results,
            ),
        }

        preferred = get_runtime_config().get(RUNTIME_ENGINE_KEY) or search_cfg.get("engine")
        if preferred not in self.engines:
            if preferred:
                logger.warning("Unknown search engine '%s', using duckduckgo", preferred)
            preferred = DuckDuckGoEngine.name
        self._active = preferred
        logger.info("SearchManager initialized (active=%s)", self._active)

    def get_engines(self) -> list[dict]:
        return [{"name": e.name, "label": e.label} for e in self.engines.values()]

    def get_active_engine(self):
        return self.engines[self._active]

    def set_active_engine(self, name: str):
        if name not in self.engines:
            raise ValueError(f"Unknown search engine: {name}")
        self._active = name
        update_runtime_config(RUNTIME_ENGINE_KEY, name)
        logger.info("Active search engine set to %s", name)

    async def search(self, conversation_id: str, query: str) -> list[SearchResult]:
        """Search with the active engine. Any failure surfaces as SearchError."""
        engine = self.get_active_engine()
        try:
            results = await engine.search(query)
        except SearchError:
            raise
        except Exception as e:
            logger.error("Search failed for '%s' (conv=%s): %s", query, conversation_id, e)
            raise SearchError(str(e)) from e
        logger.debug("Search '%s' on %s returned %d results", query, engine.name, len(results))
        return results
