"""
OpenAI-compatible chat completions backend.

Covers OpenAI itself and anything that mirrors its wire format: DeepSeek,
Moonshot, vLLM, llama.cpp server, LocalAI. Ollama and OpenRouter subclass it.

`url` is the API root without the /chat/completions suffix,
e.g. https://api.openai.com/v1 or http://localhost:11434/v1.
"""

from __future__ import annotations

import logging
import time

import httpx

from threadbox.backends.base import BaseBackend, BackendResponse

logger = logging.getLogger(__name__)


class OpenAICompatibleBackend(BaseBackend):
    """POSTs to {url}/chat/completions; health is GET {url}/models."""

    def __init__(self, name: str, url: str, timeout: int = 120, api_key: str = ""):
        super().__init__(name, url, timeout)
        self.api_key = api_key

    @property
    def completions_url(self) -> str:
        return f"{self.url}/chat/completions"

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _failure(self, started: float, error: str, status_code: int = 0) -> BackendResponse:
        return BackendResponse(
            ok=False,
            status_code=status_code,
            backend_name=self.name,
            latency_ms=(time.monotonic() - started) * 1000,
            error=error,
        )

    async def forward(self, body: dict) -> BackendResponse:
        """One non-streaming completion. Failures come back as ok=False."""
        started = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(self.completions_url, json=body, headers=self._headers())
        except httpx.TimeoutException:
            logger.warning("Backend '%s' timed out after %ss", self.name, self.timeout)
            return self._failure(started, f"Timeout after {self.timeout}s")
        except httpx.HTTPError as e:
            logger.warning("Backend '%s' unreachable: %s", self.name, e)
            return self._failure(started, str(e))

        if resp.status_code >= 400:
            return self._failure(
                started, f"HTTP {resp.status_code}: {resp.text[:200]}", resp.status_code
            )
        try:
            data = resp.json()
        except ValueError:
            return self._failure(started, "Backend returned invalid JSON", resp.status_code)
        return BackendResponse(
            ok=True,
            status_code=resp.status_code,
            data=data,
            backend_name=self.name,
            latency_ms=(time.monotonic() - started) * 1000,
        )

    async def forward_stream(self, body: dict):
        """Yield non-empty SSE lines. Transport and HTTP errors propagate."""
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            async with client.stream(
                "POST", self.completions_url, json=body, headers=self._headers()
            ) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                    logger.warning(
                        "Backend '%s' stream rejected: HTTP %d", self.name, resp.status_code
                    )
                resp.raise_for_status()
                async for line in resp.aiter_lines():
                    if line:
                        yield line

    async def health_check(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=5) as client:
                resp = await client.get(f"{self.url}/models", headers=self._headers())
        except httpx.HTTPError:
            return False
        return resp.status_code == 200
