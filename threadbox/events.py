"""
Stream events: the single multiplexed channel between the completion
provider and whoever tracks generations.

Every event is tagged with the event_id (the assistant message id) it
belongs to. publish() awaits each subscriber in turn, so a subscriber
finishes handling one event before the publisher can emit the next one
for the same stream.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class StreamEventKind(str, Enum):
    TOKEN = "token"
    END = "end"
    ERROR = "error"


@dataclass
class StreamEvent:
    kind: StreamEventKind
    event_id: str
    content: str | None = None
    reasoning_content: str | None = None
    error: str | None = None

    @classmethod
    def token(cls, event_id: str, content: str | None = None,
              reasoning_content: str | None = None) -> "StreamEvent":
        return cls(StreamEventKind.TOKEN, event_id, content=content,
                   reasoning_content=reasoning_content)

    @classmethod
    def end(cls, event_id: str) -> "StreamEvent":
        return cls(StreamEventKind.END, event_id)

    @classmethod
    def failure(cls, event_id: str, error: str) -> "StreamEvent":
        return cls(StreamEventKind.ERROR, event_id, error=error)


Subscriber = Callable[[StreamEvent], Awaitable[None]]


class StreamEventChannel:
    """Fan-out of stream events to async subscribers."""

    def __init__(self):
        self._subscribers: list[Subscriber] = []

    def subscribe(self, handler: Subscriber) -> Callable[[], None]:
        """Register `handler`. Returns a callable that unsubscribes it."""
        self._subscribers.append(handler)
        return lambda: self.unsubscribe(handler)

    def unsubscribe(self, handler: Subscriber):
        if handler in self._subscribers:
            self._subscribers.remove(handler)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def publish(self, event: StreamEvent):
        """
        Deliver `event` to every subscriber in registration order.
        A failing subscriber is logged and skipped; it never breaks the stream.
        """
        for handler in list(self._subscribers):
            try:
                await handler(event)
            except Exception as e:
                logger.error(
                    "Stream subscriber failed on %s event for %s: %s",
                    event.kind.value, event.event_id, e,
                )
