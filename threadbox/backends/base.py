"""
Base backend abstraction.
All backends implement this interface so the completion provider can treat
them uniformly. Backends speak the OpenAI chat-completions wire format.
"""

from __future__ import annotations

import abc
import json
import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

SSE_DONE = "[DONE]"


@dataclass
class BackendResponse:
    """Standardized response from any backend."""
    ok: bool
    status_code: int = 200
    data: dict = field(default_factory=dict)
    backend_name: str = ""
    latency_ms: float = 0.0
    error: str = ""

    @property
    def content(self) -> str:
        """Extract assistant content from response data."""
        choices = self.data.get("choices", [])
        if choices:
            return choices[0].get("message", {}).get("content", "") or ""
        return ""


def parse_sse_line(line: str) -> dict | str | None:
    """
    Decode one SSE line.
    Returns the JSON chunk, SSE_DONE for the terminator, or None for
    comments, keep-alives and undecodable payloads.
    """
    if not line.startswith("data:"):
        return None
    payload = line[5:].strip()
    if payload == SSE_DONE:
        return SSE_DONE
    try:
        return json.loads(payload)
    except json.JSONDecodeError:
        logger.debug("Skipping undecodable SSE payload: %.80s", payload)
        return None


def extract_delta(chunk: dict) -> tuple[str, str]:
    """
    Pull (content, reasoning) text out of a streaming chunk.
    Reasoning arrives as `reasoning_content` (DeepSeek, vLLM) or
    `reasoning` (OpenRouter, Ollama).
    """
    choices = chunk.get("choices") or []
    if not choices:
        return "", ""
    delta = choices[0].get("delta") or {}
    content = delta.get("content") or ""
    reasoning = delta.get("reasoning_content") or delta.get("reasoning") or ""
    return content, reasoning


class BaseBackend(abc.ABC):
    """
    Abstract base for LLM backends.
    Each backend knows how to forward requests and report health.
    """

    def __init__(self, name: str, url: str, timeout: int = 120):
        self.name = name
        self.url = url.rstrip("/")
        self.timeout = timeout

    @abc.abstractmethod
    async def forward(self, body: dict) -> BackendResponse:
        """
        Forward a chat completion request.
        Returns BackendResponse with data or error; never raises.
        """
        ...

    @abc.abstractmethod
    async def forward_stream(self, body: dict):
        """
        Forward a streaming chat completion request.
        Yields raw SSE lines (str). Raises on transport errors.
        """
        ...

    @abc.abstractmethod
    async def health_check(self) -> bool:
        """Check if this backend is reachable and responsive."""
        ...

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r} url={self.url!r}>"
