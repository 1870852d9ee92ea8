"""
Exponential-backoff retries around a backend.

Transient failures are retried: transport errors (status 0), 404 while a
model is still loading, 429 and the usual 5xx gateway statuses. Anything
else, 400/401/403 included, is returned at once.

A stream is retried only until its first line arrives. After that a
failure propagates, because replaying the request would append the same
tokens to the assistant message twice.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator

from threadbox.backends.base import BaseBackend, BackendResponse

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = frozenset({0, 404, 429, 500, 502, 503, 504})


class RetryableBackendWrapper:
    """Same interface as the wrapped backend, plus retries."""

    def __init__(
        self,
        backend: BaseBackend,
        max_retries: int = 2,
        backoff_base: float = 1.5,
        backoff_max: float = 10.0,
    ):
        self.backend = backend
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max

        self.name = backend.name
        self.url = backend.url
        self.timeout = backend.timeout

    def delay_for(self, retry: int) -> float:
        """Seconds to wait before retry number `retry` (1-based)."""
        return min(self.backoff_base ** retry, self.backoff_max)

    async def forward(self, body: dict) -> BackendResponse:
        model = body.get("model", "")
        response = await self.backend.forward(body)

        for retry in range(1, self.max_retries + 1):
            if response.ok:
                return response
            status = response.status_code if response.status_code >= 400 else 0
            if status not in RETRYABLE_STATUSES:
                logger.debug(
                    "Backend '%s' gave up on '%s' with %d: %s",
                    self.name, model, response.status_code, response.error,
                )
                return response

            delay = self.delay_for(retry)
            logger.warning(
                "Backend '%s' transient %d for '%s', retry %d/%d in %.1fs",
                self.name, status, model, retry, self.max_retries, delay,
            )
            await asyncio.sleep(delay)
            response = await self.backend.forward(body)

        if not response.ok:
            logger.error(
                "Backend '%s' still failing for '%s' after %d retries: %s",
                self.name, model, self.max_retries, response.error,
            )
        return response

    async def forward_stream(self, body: dict) -> AsyncIterator[str]:
        model = body.get("model", "")
        retry = 0
        while True:
            received = False
            try:
                async for line in self.backend.forward_stream(body):
                    received = True
                    yield line
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if received or retry >= self.max_retries:
                    logger.error("Backend '%s' stream failed for '%s': %s", self.name, model, e)
                    raise
                retry += 1
                delay = self.delay_for(retry)
                logger.warning(
                    "Backend '%s' stream error for '%s', retry %d/%d in %.1fs: %s",
                    self.name, model, retry, self.max_retries, delay, e,
                )
                await asyncio.sleep(delay)

    async def health_check(self) -> bool:
        return await self.backend.health_check()
