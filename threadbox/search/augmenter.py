"""
Search augmentation for a generating assistant message.

Lifecycle of the search block (always the first block of the message):
  loading  → inserted and persisted before anything else happens
  reading  → results arrived; extra.total holds the count
  success  → results stored as `search_result` attachments
  error    → the search call failed; content holds the error text

Neither the query rewrite nor the search call can abort a generation: the
rewrite falls back to the raw query and a failed search yields no results.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from threadbox.backends.provider import CompletionProvider
from threadbox.prompt import user_text
from threadbox.prompts import REWRITE_PROMPT_TEMPLATE
from threadbox.search.engines import SearchManager
from threadbox.storage.models import (
    AssistantMessageBlock,
    BlockStatus,
    BlockType,
    ConversationSettings,
    Message,
    MessageRole,
    SearchResult,
    UserMessageContent,
    serialize_blocks,
)
from threadbox.storage.sqlite_store import SQLiteStore

logger = logging.getLogger(__name__)

SEARCH_RESULT_KIND = "search_result"


def format_rewrite_context(messages: list[Message]) -> str:
    """Render prior turns as `user:` / `assistant:` lines for the rewrite prompt."""
    lines = []
    for msg in messages:
        if msg.role == MessageRole.USER and isinstance(msg.content, UserMessageContent):
            lines.append(f"user: {user_text(msg.content)}")
        elif msg.role == MessageRole.ASSISTANT:
            lines.append(f"assistant: {''.join(b.content for b in msg.blocks)}")
        else:
            lines.append(json.dumps(msg.content, ensure_ascii=False))
    return "\n".join(lines)


class SearchAugmenter:
    def __init__(self, store: SQLiteStore, provider: CompletionProvider, search: SearchManager):
        self.store = store
        self.provider = provider
        self.search = search
        self.assistant_provider_id: str | None = None
        self.assistant_model_id: str | None = None

    def set_search_assistant_model(self, model_id: str, provider_id: str):
        """Use a dedicated (usually cheaper) model for query rewriting."""
        self.assistant_model_id = model_id
        self.assistant_provider_id = provider_id

    async def rewrite_query(
        self,
        query: str,
        context: str,
        settings: ConversationSettings,
        engine_name: str,
    ) -> str:
        """Ask a model for a search-optimized query. Never raises."""
        prompt = REWRITE_PROMPT_TEMPLATE.format(
            current_time=datetime.now(timezone.utc).isoformat(),
            search_engine=engine_name,
            context_messages=context,
            query=query,
        )
        try:
            rewritten = await self.provider.generate_completion(
                self.assistant_provider_id or settings.provider_id,
                [{"role": "user", "content": prompt}],
                self.assistant_model_id or settings.model_id,
            )
        except Exception as e:
            logger.warning("Search query rewrite failed, using original query: %s", e)
            return query
        rewritten = (rewritten or "").strip()
        logger.debug("Rewrote search query %r -> %r", query, rewritten)
        return rewritten or query

    def _persist(self, message: Message):
        self.store.edit_message(message.id, serialize_blocks(message.blocks))

    async def run(
        self,
        conversation_id: str,
        message: Message,
        query: str,
        settings: ConversationSettings,
        context_messages: list[Message],
    ) -> list[SearchResult]:
        """
        Search on behalf of the assistant `message` (mutated in place).
        Returns the results, or [] when the search failed.
        """
        block = AssistantMessageBlock(
            type=BlockType.SEARCH,
            status=BlockStatus.LOADING,
            extra={"total": 0},
        )
        message.blocks.insert(0, block)
        self._persist(message)

        engine = self.search.get_active_engine()
        optimized = await self.rewrite_query(
            query, format_rewrite_context(context_messages), settings, engine.name
        )

        try:
            results = await self.search.search(conversation_id, optimized)
        except Exception as e:
            logger.warning("Search failed for message %s: %s", message.id, e)
            block.status = BlockStatus.ERROR
            block.content = str(e)
            self._persist(message)
            return []

        block.status = BlockStatus.READING
        block.extra = {"total": len(results)}
        self._persist(message)

        for result in results:
            self.store.add_message_attachment(
                message.id,
                SEARCH_RESULT_KIND,
                json.dumps(result.to_dict(), ensure_ascii=False),
            )

        block.status = BlockStatus.SUCCESS
        self._persist(message)
        logger.info("Search for message %s stored %d results", message.id, len(results))
        return results
