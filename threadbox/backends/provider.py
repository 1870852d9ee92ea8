"""
Completion provider: the one entry point the orchestrator talks to.

Backends are registered by provider id (the `provider_id` in conversation
settings). Non-streaming calls return text. Streaming calls run as an
asyncio task per event id and push token/end/error events onto the shared
StreamEventChannel; stop_stream() cancels that task.

Config (config.yaml):

    providers:
      - name: openai
        provider: openai_compat
        url: https://api.openai.com/v1
        api_key: ${OPENAI_API_KEY}
        timeout: 120
        max_retries: 2
      - name: ollama
        provider: ollama
        url: http://localhost:11434
"""

from __future__ import annotations

import asyncio
import logging

from threadbox.backends.base import SSE_DONE, BaseBackend, extract_delta, parse_sse_line
from threadbox.backends.ollama import OllamaBackend
from threadbox.backends.openai_compat import OpenAICompatibleBackend
from threadbox.backends.openrouter import OpenRouterBackend
from threadbox.backends.retry_wrapper import RetryableBackendWrapper
from threadbox.errors import ProviderError
from threadbox.events import StreamEvent, StreamEventChannel
from threadbox.prompts import TITLE_PROMPT

logger = logging.getLogger(__name__)

# Provider type → backend class
PROVIDERS: dict[str, type[BaseBackend]] = {
    "openai_compat": OpenAICompatibleBackend,
    "ollama": OllamaBackend,
    "openrouter": OpenRouterBackend,
}


class CompletionProvider:
    """Registry of backends plus the streaming task bookkeeping."""

    def __init__(self, providers_config: list[dict], channel: StreamEventChannel | None = None):
        self.channel = channel or StreamEventChannel()
        self.backends: dict[str, BaseBackend | RetryableBackendWrapper] = {}
        self._streams: dict[str, asyncio.Task] = {}

        for cfg in providers_config:
            backend = self._create_backend(cfg)
            if backend:
                self.backends[backend.name] = RetryableBackendWrapper(
                    backend,
                    max_retries=cfg.get("max_retries", 2),
                    backoff_base=cfg.get("backoff_base", 1.5),
                    backoff_max=cfg.get("backoff_max", 10.0),
                )

        logger.info("Completion provider initialized: %s", ", ".join(self.backends) or "(none)")

    @staticmethod
    def _create_backend(cfg: dict) -> BaseBackend | None:
        """Instantiate a backend from config dict."""
        provider = cfg.get("provider", "openai_compat")
        cls = PROVIDERS.get(provider)
        if not cls:
            logger.warning("Unknown provider type '%s', skipping", provider)
            return None

        name = cfg.get("name", provider)
        url = cfg.get("url", "")
        if not url:
            logger.warning("Provider '%s' has no url, skipping", name)
            return None

        return cls(
            name=name,
            url=url,
            timeout=cfg.get("timeout", 120),
            api_key=cfg.get("api_key", ""),
        )

    def get_backend(self, provider_id: str):
        backend = self.backends.get(provider_id)
        if backend is None:
            raise ProviderError(f"Provider '{provider_id}' is not configured")
        return backend

    # ─ Non-streaming ────────────────────────────────────────────────────────

    async def generate_completion(
        self,
        provider_id: str,
        messages: list[dict],
        model_id: str,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> str:
        """Single non-streaming completion. Raises ProviderError on failure."""
        backend = self.get_backend(provider_id)
        body: dict = {"model": model_id, "messages": messages, "stream": False}
        if temperature is not None:
            body["temperature"] = temperature
        if max_tokens is not None:
            body["max_tokens"] = max_tokens

        response = await backend.forward(body)
        if not response.ok:
            raise ProviderError(response.error or "completion failed", provider=provider_id)
        return response.content

    async def summary_titles(self, messages: list[dict], provider_id: str, model_id: str) -> str:
        """Short title for a conversation rendered as role-tagged messages."""
        conversation = "\n".join(f"{m['role']}: {m['content']}" for m in messages)
        title = await self.generate_completion(
            provider_id,
            [{"role": "user", "content": TITLE_PROMPT.format(conversation=conversation)}],
            model_id,
            temperature=0,
        )
        return title.strip().strip('"').strip()

    # ─ Streaming ────────────────────────────────────────────────────────────

    async def start_stream_completion(
        self,
        provider_id: str,
        messages: list[dict],
        model_id: str,
        event_id: str,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ):
        """
        Start streaming in the background and return immediately.
        Output arrives on self.channel tagged with `event_id`.
        """
        backend = self.get_backend(provider_id)
        body: dict = {"model": model_id, "messages": messages, "stream": True}
        if temperature is not None:
            body["temperature"] = temperature
        if max_tokens is not None:
            body["max_tokens"] = max_tokens

        if self.is_streaming(event_id):
            logger.warning("Stream %s already running; cancelling it first", event_id)
            await self.stop_stream(event_id)

        task = asyncio.create_task(self._run_stream(backend, body, event_id))
        self._streams[event_id] = task
        logger.info("Stream %s started on '%s' (%s)", event_id, provider_id, model_id)

    async def _run_stream(self, backend, body: dict, event_id: str):
        try:
            async for line in backend.forward_stream(body):
                chunk = parse_sse_line(line)
                if chunk is None:
                    continue
                if chunk == SSE_DONE:
                    break
                content, reasoning = extract_delta(chunk)
                if content or reasoning:
                    await self.channel.publish(StreamEvent.token(
                        event_id,
                        content=content or None,
                        reasoning_content=reasoning or None,
                    ))
            await self.channel.publish(StreamEvent.end(event_id))
        except asyncio.CancelledError:
            logger.info("Stream %s cancelled", event_id)
            raise
        except Exception as e:
            logger.warning("Stream %s failed: %s", event_id, e)
            await self.channel.publish(StreamEvent.failure(event_id, str(e)))
        finally:
            self._streams.pop(event_id, None)

    async def stop_stream(self, event_id: str):
        """Cancel a running stream. Unknown or finished ids are ignored."""
        task = self._streams.pop(event_id, None)
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def is_streaming(self, event_id: str) -> bool:
        return event_id in self._streams

    async def aclose(self):
        """Cancel every running stream."""
        for event_id in list(self._streams):
            await self.stop_stream(event_id)

    async def health(self) -> dict:
        """Health check all backends."""
        results = {}
        for name, backend in self.backends.items():
            results[name] = {"healthy": await backend.health_check()}
        return results
