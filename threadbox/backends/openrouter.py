"""
OpenRouter backend: hosted models behind one OpenAI-style API.
Requests carry OpenRouter's app attribution headers and need an API key;
without one every call fails fast instead of round-tripping a 401.
"""

from __future__ import annotations

import logging

from threadbox.backends.base import BackendResponse
from threadbox.backends.openai_compat import OpenAICompatibleBackend
from threadbox.errors import ProviderError

logger = logging.getLogger(__name__)

OPENROUTER_URL = "https://openrouter.ai/api/v1"
APP_URL = "https://github.com/threadbox/threadbox"
APP_TITLE = "threadbox"


class OpenRouterBackend(OpenAICompatibleBackend):

    def __init__(self, name: str, url: str = OPENROUTER_URL, timeout: int = 60, api_key: str = ""):
        super().__init__(name, url or OPENROUTER_URL, timeout, api_key)
        if not api_key:
            logger.warning("OpenRouter provider '%s' has no api_key; requests will fail", name)

    def _headers(self) -> dict:
        return {
            **super()._headers(),
            "HTTP-Referer": APP_URL,
            "X-Title": APP_TITLE,
        }

    def _missing_key(self) -> str:
        return f"No API key configured for OpenRouter provider '{self.name}'"

    async def forward(self, body: dict) -> BackendResponse:
        if not self.api_key:
            return BackendResponse(
                ok=False, status_code=401, backend_name=self.name, error=self._missing_key(),
            )
        return await super().forward(body)

    async def forward_stream(self, body: dict):
        if not self.api_key:
            raise ProviderError(self._missing_key(), provider=self.name)
        async for line in super().forward_stream(body):
            yield line
