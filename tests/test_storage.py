"""
Tests for SQLite storage.
Uses a temp database for each test.
"""

import json

import pytest

from threadbox.storage.models import (
    AssistantMessageBlock,
    BlockStatus,
    BlockType,
    ConversationSettings,
    Message,
    MessageRole,
    MessageStatus,
    UserMessageContent,
    parse_blocks,
    serialize_blocks,
)
from threadbox.storage.sqlite_store import SQLiteStore


@pytest.fixture
def store(tmp_path):
    """Create a fresh SQLite store for each test."""
    db_path = str(tmp_path / "test.db")
    return SQLiteStore(db_path)


@pytest.fixture
def conv(store):
    return store.create_conversation("chat", ConversationSettings())


def _user(conv_id, text="hi"):
    return Message(conversation_id=conv_id, role=MessageRole.USER,
                   content=UserMessageContent(text=text))


def _assistant(conv_id, parent_id, text="", variant=False):
    blocks = [AssistantMessageBlock(type=BlockType.CONTENT, status=BlockStatus.SUCCESS, content=text)] if text else []
    return Message(conversation_id=conv_id, role=MessageRole.ASSISTANT,
                   parent_id=parent_id, content=blocks, is_variant=variant)


# ---------------------------------------------------------------------------
# Blocks
# ---------------------------------------------------------------------------

def test_parse_blocks_bad_input():
    """Unparseable block content yields an empty list."""
    assert parse_blocks("") == []
    assert parse_blocks(None) == []
    assert parse_blocks("not json") == []
    assert parse_blocks('{"type": "content"}') == []


def test_blocks_serialize_and_parse():
    blocks = [
        AssistantMessageBlock(type=BlockType.REASONING, status=BlockStatus.SUCCESS, content="think"),
        AssistantMessageBlock(type=BlockType.SEARCH, status=BlockStatus.SUCCESS, extra={"total": 3}),
    ]
    parsed = parse_blocks(serialize_blocks(blocks))
    assert [b.type for b in parsed] == [BlockType.REASONING, BlockType.SEARCH]
    assert parsed[0].content == "think"
    assert parsed[1].extra == {"total": 3}


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------

def test_create_and_get_conversation(store):
    settings = ConversationSettings(system_prompt="be brief", model_id="llama3.2")
    created = store.create_conversation("hello", settings)

    got = store.get_conversation(created.id)
    assert got.title == "hello"
    assert got.settings.system_prompt == "be brief"
    assert got.settings.model_id == "llama3.2"
    assert got.is_new


def test_get_missing_conversation(store):
    assert store.get_conversation("nope") is None


def test_update_conversation(store, conv):
    store.update_conversation(conv.id, title="renamed", is_new=False)
    got = store.get_conversation(conv.id)
    assert got.title == "renamed"
    assert not got.is_new


def test_delete_conversation_removes_messages(store, conv):
    user = store.create_message(_user(conv.id))
    store.add_message_attachment(user.id, "search_result", "{}")
    store.delete_conversation(conv.id)

    assert store.get_conversation(conv.id) is None
    assert store.get_message(user.id) is None
    assert store.get_message_attachments(user.id, "search_result") == []


def test_conversation_list(store):
    for i in range(3):
        store.create_conversation(f"c{i}", ConversationSettings())
    total, page = store.get_conversation_list(1, 2)
    assert total == 3
    assert len(page) == 2


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

def test_message_round_trip(store, conv):
    user = store.create_message(_user(conv.id, "what is up"))
    got = store.get_message(user.id)
    assert got.role == MessageRole.USER
    assert isinstance(got.content, UserMessageContent)
    assert got.content.text == "what is up"
    assert got.status == MessageStatus.PENDING
    assert got.order_seq == 1


def test_assistant_blocks_persist(store, conv):
    user = store.create_message(_user(conv.id))
    asst = store.create_message(_assistant(conv.id, user.id, "hello"))

    got = store.get_message(asst.id)
    assert len(got.blocks) == 1
    assert got.blocks[0].content == "hello"
    assert got.parent_id == user.id


def test_edit_and_status(store, conv):
    asst = store.create_message(_assistant(conv.id, None))
    store.edit_message(asst.id, serialize_blocks([
        AssistantMessageBlock(type=BlockType.CONTENT, status=BlockStatus.SUCCESS, content="new")
    ]))
    store.update_message_status(asst.id, MessageStatus.SENT)

    got = store.get_message(asst.id)
    assert got.blocks[0].content == "new"
    assert got.status == MessageStatus.SENT


def test_update_metadata_merges(store, conv):
    msg = Message(conversation_id=conv.id, role=MessageRole.ASSISTANT, content=[],
                  metadata={"model": "gpt-4", "totalTokens": 0})
    store.create_message(msg)
    store.update_message_metadata(msg.id, {"totalTokens": 42})

    got = store.get_message(msg.id)
    assert got.metadata == {"model": "gpt-4", "totalTokens": 42}


def test_update_metadata_missing_message(store):
    """Unknown ids are ignored."""
    store.update_message_metadata("ghost", {"x": 1})


def test_thread_excludes_variants(store, conv):
    user = store.create_message(_user(conv.id))
    main = store.create_message(_assistant(conv.id, user.id, "a"))
    store.create_message(_assistant(conv.id, user.id, "b", variant=True))

    total, thread = store.get_message_thread(conv.id, 1, 10)
    assert total == 2
    assert [m.id for m in thread] == [user.id, main.id]


def test_context_messages_are_latest_oldest_first(store, conv):
    ids = [store.create_message(_user(conv.id, str(i))).id for i in range(5)]
    ctx = store.get_context_messages(conv.id, 2)
    assert [m.id for m in ctx] == ids[3:]


def test_last_user_message(store, conv):
    store.create_message(_user(conv.id, "first"))
    second = store.create_message(_user(conv.id, "second"))
    store.create_message(_assistant(conv.id, second.id, "reply"))
    assert store.get_last_user_message(conv.id).id == second.id


def test_variants_and_main_message(store, conv):
    user = store.create_message(_user(conv.id))
    main = store.create_message(_assistant(conv.id, user.id, "a"))
    v1 = store.create_message(_assistant(conv.id, user.id, "b", variant=True))

    assert [m.id for m in store.get_message_variants(main.id)] == [v1.id]
    assert store.get_main_message_by_parent_id(conv.id, user.id).id == main.id


def test_messages_by_status_includes_variants(store, conv):
    user = store.create_message(_user(conv.id))
    main = store.create_message(_assistant(conv.id, user.id))
    variant = store.create_message(_assistant(conv.id, user.id, variant=True))

    pending = store.get_messages_by_status(conv.id, MessageStatus.PENDING, role=MessageRole.ASSISTANT)
    assert [m.id for m in pending] == [main.id, variant.id]


def test_clear_all_messages(store, conv):
    store.create_message(_user(conv.id))
    store.clear_all_messages(conv.id)
    total, _ = store.get_message_thread(conv.id, 1, 10)
    assert total == 0


# ---------------------------------------------------------------------------
# Attachments
# ---------------------------------------------------------------------------

def test_attachments_in_insertion_order(store, conv):
    msg = store.create_message(_assistant(conv.id, None))
    store.add_message_attachment(msg.id, "search_result", json.dumps({"n": 1}))
    store.add_message_attachment(msg.id, "search_result", json.dumps({"n": 2}))
    store.add_message_attachment(msg.id, "other", "x")

    payloads = store.get_message_attachments(msg.id, "search_result")
    assert [json.loads(p)["n"] for p in payloads] == [1, 2]
