"""
Prompt assembler: token-budgeted, role-alternating message lists.

Budgeting:
  reserved  = size(search prompt) + size(system prompt) + size(user turn)
  remaining = context_length - reserved
History is walked newest-first and whole messages are taken while they fit
in `remaining`; nothing is ever split. The result is put back in
chronological order, wrapped with the system entry and the new user turn,
and finally consecutive same-role entries are merged because providers
require strictly alternating roles.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

from threadbox.prompts import ARTIFACTS_PROMPT, SEARCH_PROMPT_TEMPLATE
from threadbox.storage.models import (
    BlockType,
    ConversationSettings,
    Message,
    MessageFile,
    MessageRole,
    SearchResult,
    UserMessageContent,
)
from threadbox.tokens import approx_tokens

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Rendering helpers
# ---------------------------------------------------------------------------

def file_context(files: list[MessageFile]) -> str:
    """Render attached files as a tagged block. No files → ""."""
    if not files:
        return ""
    parts = [
        f'<file name="{f.name}" mime_type="{f.mime_type}">\n{f.content}\n</file>'
        for f in files
    ]
    return "\n\n<files>\n" + "\n".join(parts) + "\n</files>"


def user_text(content: UserMessageContent) -> str:
    """User turn text plus its file context."""
    return f"{content.text}{file_context(content.files)}"


def assistant_text(message: Message) -> str:
    """Visible answer of an assistant message: its content blocks, newline-joined."""
    return "\n".join(b.content for b in message.blocks if b.type == BlockType.CONTENT)


def format_search_results(results: list[SearchResult]) -> str:
    return "\n\n".join(
        f"source {i}：{r.title}\nURL: {r.url}\ncontent：{r.content or ''}\n---"
        for i, r in enumerate(results, start=1)
    )


def build_search_prompt(query: str, results: list[SearchResult]) -> str:
    return (
        SEARCH_PROMPT_TEMPLATE
        .replace("{{SEARCH_RESULTS}}", format_search_results(results))
        .replace("{{USER_QUERY}}", query)
    )


def message_size(message: Message) -> int:
    """Approx tokens a history message costs against the context budget."""
    if message.role == MessageRole.USER and isinstance(message.content, UserMessageContent):
        return approx_tokens(user_text(message.content))
    return approx_tokens(message.serialize_content())


# ---------------------------------------------------------------------------
# Budgeting
# ---------------------------------------------------------------------------

def select_context(
    history: list[Message],
    budget: int,
    sizer: Callable[[Message], int] = message_size,
) -> list[Message]:
    """
    Newest-first greedy fill of `budget` tokens. Stops at the first message
    that does not fit. Returns the selection in chronological order.
    """
    if budget <= 0:
        return []
    selected: list[Message] = []
    used = 0
    for msg in reversed(history):
        size = sizer(msg)
        if used + size > budget:
            break
        selected.append(msg)
        used += size
    selected.reverse()
    return selected


def merge_consecutive_roles(messages: list[dict]) -> list[dict]:
    """Join runs of same-role entries with newlines. Idempotent."""
    merged: list[dict] = []
    for msg in messages:
        if merged and merged[-1]["role"] == msg["role"]:
            merged[-1]["content"] += f"\n{msg['content']}"
        else:
            merged.append(dict(msg))
    return merged


def system_entry(settings: ConversationSettings) -> str | None:
    if settings.system_prompt:
        if settings.artifacts == 1:
            return f"{settings.system_prompt}\n\n{ARTIFACTS_PROMPT}"
        return settings.system_prompt
    if settings.artifacts == 1:
        return ARTIFACTS_PROMPT
    return None


# ---------------------------------------------------------------------------
# Assembly
# ---------------------------------------------------------------------------

@dataclass
class AssembledPrompt:
    messages: list[dict]
    prompt_tokens: int
    context: list[Message] = field(default_factory=list)
    reserved_tokens: int = 0


def assemble_prompt(
    settings: ConversationSettings,
    user_turn: str,
    history: list[Message],
    search_prompt: str = "",
    exclude_id: str | None = None,
) -> AssembledPrompt:
    """
    Build the provider message list.

    `user_turn` is the enriched user text (file context and URL content
    already folded in). When `search_prompt` is non-empty it replaces the
    user turn as the final message. `exclude_id` drops the current user
    message from `history`.
    """
    reserved = (
        approx_tokens(search_prompt)
        + approx_tokens(settings.system_prompt)
        + approx_tokens(user_turn)
    )
    remaining = settings.context_length - reserved
    candidates = [m for m in history if m.id != exclude_id]
    context = select_context(candidates, remaining)

    formatted: list[dict] = []
    system = system_entry(settings)
    if system:
        formatted.append({"role": "system", "content": system})

    for msg in context:
        if msg.role == MessageRole.USER and isinstance(msg.content, UserMessageContent):
            content = user_text(msg.content)
        elif msg.role == MessageRole.ASSISTANT:
            content = assistant_text(msg)
            if not content:
                continue
        else:
            content = str(msg.content)
        formatted.append({"role": msg.role.value, "content": content})

    formatted.append({"role": "user", "content": search_prompt or user_turn})

    merged = merge_consecutive_roles(formatted)
    prompt_tokens = sum(approx_tokens(m["content"]) for m in merged)
    logger.debug(
        "Assembled prompt: %d entries, %d/%d history msgs, %d tokens (reserved %d)",
        len(merged), len(context), len(candidates), prompt_tokens, reserved,
    )
    return AssembledPrompt(
        messages=merged,
        prompt_tokens=prompt_tokens,
        context=context,
        reserved_tokens=reserved,
    )
