"""
Generation state table: transient registry of in-flight assistant messages.

Keyed by assistant message id. Nothing here is persisted; an entry lives
from the moment an assistant placeholder is queued until its stream ends,
fails, or is stopped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from threadbox.storage.models import Message, now_ms

logger = logging.getLogger(__name__)


@dataclass
class GenerationState:
    """Timing and token counters for one generating assistant message."""
    message: Message
    conversation_id: str
    start_time: int
    first_token_time: int | None = None
    prompt_tokens: int = 0
    reasoning_start_time: int | None = None
    last_reasoning_time: int | None = None


class GenerationStateTable:
    """
    Owned by one orchestrator. Lookups for unknown ids return None;
    callers treat that as "already finished or never started".
    """

    def __init__(self):
        self._states: dict[str, GenerationState] = {}

    def begin(self, message: Message, conversation_id: str) -> GenerationState:
        state = GenerationState(
            message=message,
            conversation_id=conversation_id,
            start_time=now_ms(),
        )
        if message.id in self._states:
            logger.warning("Generation state for %s replaced", message.id)
        self._states[message.id] = state
        return state

    def get(self, message_id: str) -> GenerationState | None:
        return self._states.get(message_id)

    def update(self, message_id: str, **patch) -> GenerationState | None:
        """Set fields on an existing entry in place. Unknown id → None."""
        state = self._states.get(message_id)
        if state is None:
            return None
        for key, value in patch.items():
            if not hasattr(state, key):
                raise AttributeError(f"GenerationState has no field {key!r}")
            setattr(state, key, value)
        return state

    def end(self, message_id: str) -> GenerationState | None:
        return self._states.pop(message_id, None)

    def find_by_conversation(self, conversation_id: str) -> GenerationState | None:
        """
        First entry (in insertion order) for the conversation.
        Assumes one active generation per conversation.
        """
        for state in self._states.values():
            if state.conversation_id == conversation_id:
                return state
        return None

    def for_conversation(self, conversation_id: str) -> list[GenerationState]:
        return [s for s in self._states.values() if s.conversation_id == conversation_id]

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._states

    def __len__(self) -> int:
        return len(self._states)
