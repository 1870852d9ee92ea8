"""
Ollama backend: local inference via Ollama's OpenAI-compatible API.
`url` is the Ollama root (http://localhost:11434); the /v1 suffix is added here.
"""

from __future__ import annotations

import logging

import httpx

from threadbox.backends.openai_compat import OpenAICompatibleBackend

logger = logging.getLogger(__name__)


class OllamaBackend(OpenAICompatibleBackend):
    """Backend for local Ollama instances."""

    def __init__(self, name: str, url: str, timeout: int = 120, api_key: str = ""):
        root = url.rstrip("/")
        if root.endswith("/v1"):
            root = root[:-3]
        self.root_url = root
        super().__init__(name, f"{root}/v1", timeout, api_key)

    async def health_check(self) -> bool:
        """Check Ollama is reachable via its native tags endpoint."""
        try:
            async with httpx.AsyncClient(timeout=5) as client:
                resp = await client.get(f"{self.root_url}/api/tags")
                return resp.status_code == 200
        except httpx.HTTPError:
            return False
