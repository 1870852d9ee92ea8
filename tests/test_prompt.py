"""
Tests for token sizing and prompt assembly.
Run with: pytest tests/test_prompt.py
"""

from threadbox.prompt import (
    assemble_prompt,
    build_search_prompt,
    file_context,
    format_search_results,
    merge_consecutive_roles,
    message_size,
    select_context,
    system_entry,
)
from threadbox.prompts import ARTIFACTS_PROMPT
from threadbox.storage.models import (
    AssistantMessageBlock,
    BlockStatus,
    BlockType,
    ConversationSettings,
    Message,
    MessageFile,
    MessageRole,
    SearchResult,
    UserMessageContent,
)
from threadbox.tokens import approx_tokens


def _user(text, files=None):
    return Message(role=MessageRole.USER, content=UserMessageContent(text=text, files=files or []))


def _assistant(*blocks):
    return Message(role=MessageRole.ASSISTANT, content=list(blocks))


def _block(kind, text):
    return AssistantMessageBlock(type=kind, status=BlockStatus.SUCCESS, content=text)


# ---------------------------------------------------------------------------
# approx_tokens
# ---------------------------------------------------------------------------

def test_approx_tokens_empty():
    assert approx_tokens("") == 0
    assert approx_tokens(None) == 0


def test_approx_tokens_latin():
    assert approx_tokens("a" * 1600) == 400
    assert approx_tokens("hello world") == 4


def test_approx_tokens_cjk_and_punctuation():
    assert approx_tokens("你好") == 2
    assert approx_tokens("hi!") == 2
    assert approx_tokens("ab你") == 2


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def test_file_context():
    assert file_context([]) == ""
    rendered = file_context([MessageFile(name="a.txt", content="data")])
    assert '<file name="a.txt" mime_type="text/plain">' in rendered
    assert "data" in rendered
    assert rendered.startswith("\n\n<files>")


def test_message_size_includes_files():
    plain = _user("hello")
    with_file = _user("hello", [MessageFile(name="f", content="x" * 400)])
    assert message_size(with_file) > message_size(plain)


def test_search_prompt():
    results = [
        SearchResult(title="One", url="https://a.example", content="first"),
        SearchResult(title="Two", url="https://b.example"),
    ]
    formatted = format_search_results(results)
    assert formatted.startswith("source 1：One\nURL: https://a.example\ncontent：first\n---")
    assert "source 2：Two" in formatted

    prompt = build_search_prompt("what?", results)
    assert "{{SEARCH_RESULTS}}" not in prompt
    assert "{{USER_QUERY}}" not in prompt
    assert "what?" in prompt
    assert "https://b.example" in prompt


# ---------------------------------------------------------------------------
# Context selection
# ---------------------------------------------------------------------------

def test_select_context_newest_first():
    """context 1000, reserved 100, history [400, 400, 400] → last two."""
    history = [_user("a" * 1600) for _ in range(3)]
    settings = ConversationSettings(context_length=1000)

    result = assemble_prompt(settings, "b" * 400, history)

    assert result.reserved_tokens == 100
    assert [m.id for m in result.context] == [m.id for m in history[1:]]


def test_select_context_stops_at_first_misfit():
    """A small older message is not taken once a newer one did not fit."""
    sizes = {"old": 1, "big": 50, "new": 10}
    history = [Message(id=k) for k in ("old", "big", "new")]
    picked = select_context(history, 20, sizer=lambda m: sizes[m.id])
    assert [m.id for m in picked] == ["new"]


def test_reserved_exceeds_context():
    settings = ConversationSettings(context_length=1000)
    history = [_user("short")]
    result = assemble_prompt(settings, "a" * 4000, history)
    assert result.context == []
    assert select_context(history, 0) == []
    assert select_context(history, -5) == []


def test_current_user_message_excluded():
    current = _user("now")
    history = [_user("before"), current]
    result = assemble_prompt(ConversationSettings(), "now", history, exclude_id=current.id)
    assert current not in result.context


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

def test_system_entry_variants():
    assert system_entry(ConversationSettings()) is None
    assert system_entry(ConversationSettings(system_prompt="sys")) == "sys"
    assert system_entry(ConversationSettings(artifacts=1)) == ARTIFACTS_PROMPT
    assert system_entry(ConversationSettings(system_prompt="sys", artifacts=1)) == f"sys\n\n{ARTIFACTS_PROMPT}"


def test_assistant_renders_content_blocks_only():
    history = [
        _user("q1"),
        _assistant(_block(BlockType.REASONING, "thinking"), _block(BlockType.CONTENT, "a"),
                   _block(BlockType.CONTENT, "b")),
    ]
    result = assemble_prompt(ConversationSettings(), "q2", history)
    assert result.messages == [
        {"role": "user", "content": "q1"},
        {"role": "assistant", "content": "a\nb"},
        {"role": "user", "content": "q2"},
    ]


def test_empty_assistant_dropped_and_users_merged():
    history = [_user("q1"), _assistant(_block(BlockType.ERROR, "common.error.requestFailed"))]
    result = assemble_prompt(ConversationSettings(system_prompt="sys"), "q2", history)
    assert result.messages == [
        {"role": "system", "content": "sys"},
        {"role": "user", "content": "q1\nq2"},
    ]


def test_search_prompt_replaces_user_turn():
    result = assemble_prompt(ConversationSettings(), "question", [], search_prompt="SEARCH PROMPT")
    assert result.messages[-1] == {"role": "user", "content": "SEARCH PROMPT"}


def test_prompt_tokens_sum_merged_list():
    result = assemble_prompt(ConversationSettings(system_prompt="abcd"), "efgh", [])
    assert result.prompt_tokens == 2


# ---------------------------------------------------------------------------
# Merge pass
# ---------------------------------------------------------------------------

def test_merge_consecutive_roles():
    messages = [
        {"role": "user", "content": "a"},
        {"role": "user", "content": "b"},
        {"role": "assistant", "content": "c"},
        {"role": "assistant", "content": "d"},
        {"role": "user", "content": "e"},
    ]
    merged = merge_consecutive_roles(messages)
    assert merged == [
        {"role": "user", "content": "a\nb"},
        {"role": "assistant", "content": "c\nd"},
        {"role": "user", "content": "e"},
    ]
    # Input untouched
    assert messages[0] == {"role": "user", "content": "a"}


def test_merge_is_idempotent():
    messages = [
        {"role": "system", "content": "s"},
        {"role": "user", "content": "a"},
        {"role": "user", "content": "b"},
    ]
    once = merge_consecutive_roles(messages)
    assert merge_consecutive_roles(once) == once
