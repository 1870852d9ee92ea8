"""
Tests for the generation state table and the stream event channel.
Run with: pytest tests/test_generation.py
"""

import pytest
from unittest.mock import AsyncMock

from threadbox.events import StreamEvent, StreamEventChannel, StreamEventKind
from threadbox.generation import GenerationStateTable
from threadbox.storage.models import Message, MessageRole


def _msg(conv="c1"):
    return Message(conversation_id=conv, role=MessageRole.ASSISTANT, content=[])


# ---------------------------------------------------------------------------
# GenerationStateTable
# ---------------------------------------------------------------------------

def test_begin_and_get():
    table = GenerationStateTable()
    msg = _msg()
    state = table.begin(msg, "c1")

    assert table.get(msg.id) is state
    assert state.first_token_time is None
    assert state.prompt_tokens == 0
    assert state.start_time > 0
    assert msg.id in table
    assert len(table) == 1


def test_unknown_id_is_none():
    table = GenerationStateTable()
    assert table.get("ghost") is None
    assert table.update("ghost", prompt_tokens=5) is None
    assert table.end("ghost") is None


def test_update_in_place():
    """Updates mutate the existing entry so held references see them."""
    table = GenerationStateTable()
    msg = _msg()
    state = table.begin(msg, "c1")

    table.update(msg.id, prompt_tokens=12, first_token_time=None)
    assert state.prompt_tokens == 12
    assert table.get(msg.id) is state


def test_update_unknown_field():
    table = GenerationStateTable()
    msg = _msg()
    table.begin(msg, "c1")
    with pytest.raises(AttributeError):
        table.update(msg.id, bogus=1)


def test_end_removes_entry():
    table = GenerationStateTable()
    msg = _msg()
    table.begin(msg, "c1")
    table.end(msg.id)
    assert msg.id not in table
    assert len(table) == 0


def test_find_by_conversation_first_match():
    table = GenerationStateTable()
    first, second, other = _msg("c1"), _msg("c1"), _msg("c2")
    table.begin(first, "c1")
    table.begin(second, "c1")
    table.begin(other, "c2")

    assert table.find_by_conversation("c1").message is first
    assert [s.message for s in table.for_conversation("c1")] == [first, second]
    assert table.find_by_conversation("c3") is None


# ---------------------------------------------------------------------------
# StreamEventChannel
# ---------------------------------------------------------------------------

def test_event_constructors():
    tok = StreamEvent.token("m1", content="hi")
    assert tok.kind == StreamEventKind.TOKEN and tok.content == "hi"
    assert StreamEvent.end("m1").kind == StreamEventKind.END
    err = StreamEvent.failure("m1", "boom")
    assert err.kind == StreamEventKind.ERROR and err.error == "boom"


@pytest.mark.asyncio
async def test_publish_reaches_subscribers_in_order():
    channel = StreamEventChannel()
    seen = []

    async def first(event):
        seen.append(("first", event.event_id))

    async def second(event):
        seen.append(("second", event.event_id))

    channel.subscribe(first)
    channel.subscribe(second)
    await channel.publish(StreamEvent.end("m1"))
    assert seen == [("first", "m1"), ("second", "m1")]


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_break_publish():
    channel = StreamEventChannel()
    broken = AsyncMock(side_effect=RuntimeError("nope"))
    healthy = AsyncMock()
    channel.subscribe(broken)
    channel.subscribe(healthy)

    await channel.publish(StreamEvent.end("m1"))
    healthy.assert_awaited_once()


@pytest.mark.asyncio
async def test_unsubscribe():
    channel = StreamEventChannel()
    handler = AsyncMock()
    unsubscribe = channel.subscribe(handler)
    assert channel.subscriber_count == 1

    unsubscribe()
    assert channel.subscriber_count == 0
    await channel.publish(StreamEvent.end("m1"))
    handler.assert_not_awaited()
