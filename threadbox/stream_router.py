"""
Stream event router: turns provider push events into assistant blocks.

Per-message state machine:
  token  → append to the trailing block or open a new one
  end    → close every block, compute usage metadata, persist, mark sent
  error  → fail loading blocks, append an error block, persist, mark error

Events for an id with no generation state are dropped: that generation
already finished, was stopped, or never started.
"""

from __future__ import annotations

import logging

from threadbox.events import StreamEvent, StreamEventKind
from threadbox.generation import GenerationStateTable
from threadbox.storage.models import (
    ERROR_NO_MODEL_RESPONSE,
    ERROR_REQUEST_FAILED,
    AssistantMessageBlock,
    BlockStatus,
    BlockType,
    MessageStatus,
    now_ms,
    serialize_blocks,
)
from threadbox.storage.sqlite_store import SQLiteStore
from threadbox.tokens import approx_tokens

logger = logging.getLogger(__name__)

_TEXT_BLOCKS = (BlockType.CONTENT, BlockType.REASONING)


def append_token(blocks: list[AssistantMessageBlock], block_type: BlockType, text: str):
    """
    Append streamed text of `block_type` to `blocks` in place.
    Extends the trailing block when it is the same type and still loading;
    otherwise closes it and opens a fresh loading block.
    """
    last = blocks[-1] if blocks else None
    if last is not None and last.type == block_type and last.status == BlockStatus.LOADING:
        last.content += text
        return
    if last is not None:
        last.status = BlockStatus.SUCCESS
    blocks.append(AssistantMessageBlock(type=block_type, status=BlockStatus.LOADING, content=text))


def compute_usage(
    prompt_tokens: int,
    completion_tokens: int,
    start_time: int,
    first_token_time: int | None,
    now: int,
) -> dict:
    """Usage metadata for a finished generation. Times are epoch ms."""
    generation_time = max(now - (first_token_time or start_time), 0)
    if generation_time > 0:
        tokens_per_second = completion_tokens / (generation_time / 1000)
    else:
        tokens_per_second = float(completion_tokens)
    return {
        "totalTokens": prompt_tokens + completion_tokens,
        "inputTokens": prompt_tokens,
        "outputTokens": completion_tokens,
        "generationTime": generation_time,
        "firstTokenTime": first_token_time - start_time if first_token_time else 0,
        "tokensPerSecond": tokens_per_second,
    }


class StreamEventRouter:
    """Consumes StreamEvents and drives generation state + persistence."""

    def __init__(self, store: SQLiteStore, states: GenerationStateTable):
        self.store = store
        self.states = states

    async def dispatch(self, event: StreamEvent):
        if event.kind == StreamEventKind.TOKEN:
            await self.on_token(event.event_id, event.content, event.reasoning_content)
        elif event.kind == StreamEventKind.END:
            await self.on_end(event.event_id)
        elif event.kind == StreamEventKind.ERROR:
            await self.on_error(event.event_id, event.error or ERROR_REQUEST_FAILED)
        else:
            raise ValueError(f"Unhandled stream event kind: {event.kind!r}")

    async def on_token(self, message_id: str, content: str | None = None,
                       reasoning_content: str | None = None):
        state = self.states.get(message_id)
        if state is None:
            return

        now = now_ms()
        if state.first_token_time is None and (content or reasoning_content):
            state.first_token_time = now
            self.store.update_message_metadata(
                message_id, {"firstTokenTime": now - state.start_time}
            )

        blocks = state.message.blocks
        if reasoning_content:
            if state.reasoning_start_time is None:
                state.reasoning_start_time = now
                self.store.update_message_metadata(
                    message_id, {"reasoningStartTime": now - state.start_time}
                )
            state.last_reasoning_time = now
            append_token(blocks, BlockType.REASONING, reasoning_content)
        if content:
            append_token(blocks, BlockType.CONTENT, content)

    async def on_end(self, message_id: str):
        state = self.states.get(message_id)
        if state is None:
            return

        blocks = state.message.blocks
        for block in blocks:
            block.status = BlockStatus.SUCCESS

        completion_tokens = sum(
            approx_tokens(b.content) for b in blocks if b.type in _TEXT_BLOCKS
        )
        if not any(b.type in _TEXT_BLOCKS for b in blocks):
            blocks.append(AssistantMessageBlock(
                type=BlockType.ERROR,
                status=BlockStatus.ERROR,
                content=ERROR_NO_MODEL_RESPONSE,
            ))

        metadata = compute_usage(
            state.prompt_tokens,
            completion_tokens,
            state.start_time,
            state.first_token_time,
            now_ms(),
        )
        if state.reasoning_start_time is not None and state.last_reasoning_time is not None:
            metadata["reasoningStartTime"] = state.reasoning_start_time - state.start_time
            metadata["reasoningEndTime"] = state.last_reasoning_time - state.start_time

        self.store.update_message_metadata(message_id, metadata)
        self.store.update_message_status(message_id, MessageStatus.SENT)
        self.store.edit_message(message_id, serialize_blocks(blocks))
        self.states.end(message_id)
        logger.info(
            "Generation %s finished: %d prompt + %d completion tokens in %dms",
            message_id, state.prompt_tokens, completion_tokens, metadata["generationTime"],
        )

    async def on_error(self, message_id: str, error: str):
        state = self.states.get(message_id)
        if state is None:
            return
        logger.warning("Generation %s failed: %s", message_id, error)
        await self.fail(message_id, error, state.message.blocks)
        self.states.end(message_id)

    async def fail(
        self,
        message_id: str,
        error: str = ERROR_REQUEST_FAILED,
        blocks: list[AssistantMessageBlock] | None = None,
    ):
        """
        Finalize a message as failed.
        Uses the in-memory `blocks` when given, else the persisted block list.
        """
        if blocks is None:
            message = self.store.get_message(message_id)
            if message is None:
                return
            blocks = message.blocks

        for block in blocks:
            if block.status == BlockStatus.LOADING:
                block.status = BlockStatus.ERROR
        blocks.append(AssistantMessageBlock(
            type=BlockType.ERROR,
            status=BlockStatus.ERROR,
            content=error,
        ))

        self.store.update_message_status(message_id, MessageStatus.ERROR)
        self.store.edit_message(message_id, serialize_blocks(blocks))
