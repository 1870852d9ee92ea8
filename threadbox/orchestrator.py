"""
Thread orchestrator: conversations, messages and assistant generation.

One instance owns the GenerationStateTable and subscribes its
StreamEventRouter to the provider's event channel at construction. The
lifecycle of a reply:

  send_message()            user turn persisted, assistant placeholder queued
  start_stream_completion() history + search + URL content → prompt → stream
  (router)                  token / end / error events fill in the blocks
  stop_message_generation() cancel marker, provider stream aborted

Only one generation per conversation is expected to be active at a time:
start_stream_completion() picks the first queued state for the conversation.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math

from threadbox.backends.provider import CompletionProvider
from threadbox.enricher import ContentEnricher
from threadbox.errors import InvalidMessageError, NotFoundError
from threadbox.generation import GenerationState, GenerationStateTable
from threadbox.model_configs import get_model_config
from threadbox.prompt import assemble_prompt, assistant_text, build_search_prompt, user_text
from threadbox.search.augmenter import SEARCH_RESULT_KIND, SearchAugmenter
from threadbox.search.engines import SearchManager
from threadbox.storage.models import (
    ERROR_SESSION_INTERRUPTED,
    ERROR_USER_CANCELED,
    AssistantMessageBlock,
    BlockStatus,
    BlockType,
    Conversation,
    ConversationSettings,
    Message,
    MessageRole,
    MessageStatus,
    SearchResult,
    UserMessageContent,
    now_ms,
    serialize_blocks,
)
from threadbox.storage.sqlite_store import SQLiteStore
from threadbox.stream_router import StreamEventRouter

logger = logging.getLogger(__name__)

# Rough characters-per-message used to size the default history window.
CHARS_PER_CONTEXT_MESSAGE = 300
RECOVERY_PAGE_SIZE = 1000


def _initial_metadata(settings: ConversationSettings) -> dict:
    return {
        "totalTokens": 0,
        "generationTime": 0,
        "firstTokenTime": 0,
        "tokensPerSecond": 0,
        "inputTokens": 0,
        "outputTokens": 0,
        "model": settings.model_id,
        "provider": settings.provider_id,
    }


def _coerce_user_content(content) -> UserMessageContent:
    if isinstance(content, UserMessageContent):
        return content
    if isinstance(content, dict):
        return UserMessageContent.from_dict(content)
    return UserMessageContent(text=str(content))


class ThreadOrchestrator:
    """Entry point for everything the API and CLI do to conversations."""

    def __init__(
        self,
        store: SQLiteStore,
        provider: CompletionProvider,
        search_manager: SearchManager,
        enricher: ContentEnricher | None = None,
        defaults: dict | None = None,
        model_overrides: dict | None = None,
    ):
        self.store = store
        self.provider = provider
        self.search_manager = search_manager
        self.enricher = enricher
        self.defaults = ConversationSettings.from_dict(defaults)
        self.model_overrides = model_overrides or {}

        self.states = GenerationStateTable()
        self.router = StreamEventRouter(store, self.states)
        self.augmenter = SearchAugmenter(store, provider, search_manager)
        self.active_conversation_id: str | None = None

        self._unsubscribe = provider.channel.subscribe(self.router.dispatch)

    def close(self):
        """Stop listening to provider events."""
        self._unsubscribe()

    # ─ Lookups ──────────────────────────────────────────────────────────────

    def _require_conversation(self, conversation_id: str) -> Conversation:
        conv = self.store.get_conversation(conversation_id)
        if conv is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        return conv

    def _require_message(self, message_id: str) -> Message:
        msg = self.store.get_message(message_id)
        if msg is None:
            raise NotFoundError(f"Message {message_id} not found")
        return msg

    # ─ Conversations ────────────────────────────────────────────────────────

    def _latest_conversation(self) -> Conversation | None:
        _, convs = self.store.get_conversation_list(1, 1)
        return convs[0] if convs else None

    def create_conversation(self, title: str, settings: dict | None = None) -> Conversation:
        """
        Create and activate a conversation. An empty most-recent conversation
        is reused instead of piling up blank threads.
        """
        latest = self._latest_conversation()
        if latest is not None:
            total, _ = self.store.get_message_thread(latest.id, 1, 1)
            if total == 0:
                self.set_active_conversation(latest.id)
                return latest

        if latest is not None:
            base = latest.settings.merged({"system_prompt": ""})
        else:
            base = self.defaults
        patch = {k: v for k, v in (settings or {}).items() if v is not None and v != ""}
        merged = base.merged(patch)

        model_cfg = get_model_config(merged.model_id, self.model_overrides)
        if model_cfg:
            merged.max_tokens = model_cfg.max_tokens
            merged.context_length = model_cfg.context_length
            merged.temperature = model_cfg.temperature

        conv = self.store.create_conversation(title, merged)
        self.set_active_conversation(conv.id)
        logger.info("Created conversation %s (%s/%s)", conv.id, merged.provider_id, merged.model_id)
        return conv

    def rename_conversation(self, conversation_id: str, title: str) -> Conversation:
        self._require_conversation(conversation_id)
        self.store.update_conversation(conversation_id, title=title)
        return self._require_conversation(conversation_id)

    def update_conversation_title(self, conversation_id: str, title: str):
        self.store.update_conversation(conversation_id, title=title)

    def delete_conversation(self, conversation_id: str):
        self.store.delete_conversation(conversation_id)
        if self.active_conversation_id == conversation_id:
            self.active_conversation_id = None

    def get_conversation(self, conversation_id: str) -> Conversation:
        return self._require_conversation(conversation_id)

    def get_conversation_list(self, page: int, page_size: int) -> tuple[int, list[Conversation]]:
        return self.store.get_conversation_list(page, page_size)

    def update_conversation_settings(self, conversation_id: str, patch: dict) -> Conversation:
        """Merge `patch` into the settings. A model switch re-derives token limits."""
        conv = self._require_conversation(conversation_id)
        merged = conv.settings.merged(patch)
        new_model = patch.get("model_id")
        if new_model and new_model != conv.settings.model_id:
            model_cfg = get_model_config(new_model, self.model_overrides)
            if model_cfg:
                merged.max_tokens = model_cfg.max_tokens
                merged.context_length = model_cfg.context_length
        self.store.update_conversation(conversation_id, settings=merged)
        return self._require_conversation(conversation_id)

    # ─ Active conversation ──────────────────────────────────────────────────

    def set_active_conversation(self, conversation_id: str):
        self._require_conversation(conversation_id)
        self.active_conversation_id = conversation_id

    def get_active_conversation(self) -> Conversation | None:
        if not self.active_conversation_id:
            return None
        return self.store.get_conversation(self.active_conversation_id)

    def get_active_conversation_id(self) -> str | None:
        return self.active_conversation_id

    def clear_active_thread(self):
        self.active_conversation_id = None

    # ─ Messages ─────────────────────────────────────────────────────────────

    def get_messages(self, conversation_id: str, page: int, page_size: int) -> tuple[int, list[Message]]:
        return self.store.get_message_thread(conversation_id, page, page_size)

    def get_message(self, message_id: str) -> Message:
        """Stored message; while generating, its blocks are the live in-memory ones."""
        msg = self._require_message(message_id)
        state = self.states.get(message_id)
        if state is not None:
            msg.content = [AssistantMessageBlock.from_dict(b.to_dict()) for b in state.message.blocks]
        return msg

    def get_context_messages(self, conversation_id: str) -> list[Message]:
        conv = self._require_conversation(conversation_id)
        count = max(2, math.ceil(conv.settings.context_length / CHARS_PER_CONTEXT_MESSAGE))
        return self.store.get_context_messages(conversation_id, count)

    def _message_history(self, message: Message, limit: int) -> list[Message]:
        """Up to `limit` thread messages ending at (and including) `message`."""
        _, thread = self.store.get_message_thread(message.conversation_id, 1, limit * 2)
        for index, msg in enumerate(thread):
            if msg.id == message.id:
                return thread[max(0, index - limit + 1): index + 1]
        return [message]

    def edit_message(self, message_id: str, content: str) -> Message:
        self._require_message(message_id)
        self.store.edit_message(message_id, content)
        return self._require_message(message_id)

    def delete_message(self, message_id: str):
        self.store.delete_message(message_id)

    def get_message_variants(self, message_id: str) -> list[Message]:
        return self.store.get_message_variants(message_id)

    def get_main_message_by_parent_id(self, conversation_id: str, parent_id: str) -> Message | None:
        return self.store.get_main_message_by_parent_id(conversation_id, parent_id)

    def update_message_status(self, message_id: str, status: MessageStatus):
        self.store.update_message_status(message_id, status)

    def update_message_metadata(self, message_id: str, patch: dict):
        self.store.update_message_metadata(message_id, patch)

    async def clear_all_messages(self, conversation_id: str):
        self.store.clear_all_messages(conversation_id)
        if conversation_id == self.active_conversation_id:
            await self.stop_conversation_generation(conversation_id)

    # ─ Sending ──────────────────────────────────────────────────────────────

    async def send_message(
        self,
        conversation_id: str,
        content,
        role: MessageRole = MessageRole.USER,
    ) -> Message | None:
        """
        Persist a message. For user turns, queue an assistant placeholder and
        return it; streaming starts with start_stream_completion().
        """
        conv = self._require_conversation(conversation_id)
        metadata = _initial_metadata(conv.settings)

        if role == MessageRole.USER:
            msg = Message(
                conversation_id=conversation_id,
                role=role,
                content=_coerce_user_content(content),
                metadata=metadata,
            )
        elif role == MessageRole.ASSISTANT:
            blocks = content if isinstance(content, list) else [
                AssistantMessageBlock(type=BlockType.CONTENT, status=BlockStatus.SUCCESS, content=str(content))
            ]
            msg = Message(conversation_id=conversation_id, role=role, content=blocks,
                          status=MessageStatus.SENT, metadata=metadata)
        else:
            msg = Message(conversation_id=conversation_id, role=role, content=str(content),
                          status=MessageStatus.SENT, metadata=metadata)
        self.store.create_message(msg)

        if role != MessageRole.USER:
            return None

        assistant = self._queue_assistant_reply(conv, msg)
        if msg.order_seq == 1:
            self.store.update_conversation(conversation_id, is_new=False)
        return assistant

    def _queue_assistant_reply(self, conv: Conversation, user_msg: Message) -> Message:
        try:
            self.store.update_message_status(user_msg.id, MessageStatus.SENT)
            assistant = Message(
                conversation_id=conv.id,
                parent_id=user_msg.id,
                role=MessageRole.ASSISTANT,
                content=[],
                metadata=_initial_metadata(conv.settings),
            )
            self.store.create_message(assistant)
        except Exception:
            self.store.update_message_status(user_msg.id, MessageStatus.ERROR)
            logger.exception("Failed to queue assistant reply for %s", user_msg.id)
            raise
        self.states.begin(assistant, conv.id)
        logger.debug("Queued assistant %s for user message %s", assistant.id, user_msg.id)
        return assistant

    async def retry_message(self, message_id: str) -> Message:
        """Queue a new variant answering the same user message."""
        original = self._require_message(message_id)
        if original.role != MessageRole.ASSISTANT:
            raise InvalidMessageError("Only assistant messages can be retried", message_id=message_id)
        parent = self.store.get_message(original.parent_id) if original.parent_id else None
        if parent is None:
            raise NotFoundError(f"User message for {message_id} not found")

        conv = self._require_conversation(original.conversation_id)
        variant = Message(
            conversation_id=conv.id,
            parent_id=parent.id,
            role=MessageRole.ASSISTANT,
            content=[],
            metadata=_initial_metadata(conv.settings),
            is_variant=True,
        )
        self.store.create_message(variant)
        self.states.begin(variant, conv.id)
        logger.info("Retrying %s as variant %s", message_id, variant.id)
        return variant

    async def start_stream_completion(self, conversation_id: str, query_message_id: str | None = None):
        """
        Build the prompt for the queued generation in `conversation_id` and
        start streaming. With `query_message_id` (an assistant message), the
        prompt answers that message's parent user turn.

        Assembly failures finalize the message as an error and re-raise.
        """
        state = self.states.find_by_conversation(conversation_id)
        if state is None:
            logger.warning("No queued generation for conversation %s", conversation_id)
            return
        message_id = state.message.id

        try:
            settings = self._require_conversation(conversation_id).settings

            if query_message_id:
                anchor = self.store.get_message(query_message_id)
                if anchor is None or not anchor.parent_id:
                    raise NotFoundError(f"Message {query_message_id} not found")
                user_msg = self._require_message(anchor.parent_id)
                history = self._message_history(user_msg, settings.context_length)
            else:
                user_msg = self.store.get_last_user_message(conversation_id)
                if user_msg is None:
                    raise NotFoundError(f"No user message in conversation {conversation_id}")
                history = self.get_context_messages(conversation_id)

            content = _coerce_user_content(user_msg.content)
            user_turn = user_text(content)

            url_results: list[SearchResult] = []
            if self.enricher is not None:
                url_results = await self.enricher.extract_and_enrich_urls(content.text)
                if self._stopped_during_assembly(message_id):
                    return

            search_results: list[SearchResult] = []
            if content.search:
                search_results = await self.augmenter.run(
                    conversation_id, state.message, user_turn, settings, history
                )
                if self._stopped_during_assembly(message_id):
                    return
            search_prompt = build_search_prompt(user_turn, search_results) if search_results else ""

            if url_results:
                user_turn = ContentEnricher.enrich_user_message_with_url_content(user_turn, url_results)

            assembled = assemble_prompt(
                settings, user_turn, history, search_prompt, exclude_id=user_msg.id
            )

            self.states.update(
                message_id,
                start_time=now_ms(),
                first_token_time=None,
                prompt_tokens=assembled.prompt_tokens,
            )
            self.store.update_message_metadata(message_id, {
                "totalTokens": assembled.prompt_tokens,
                "generationTime": 0,
                "firstTokenTime": 0,
                "tokensPerSecond": 0,
            })

            await self.provider.start_stream_completion(
                settings.provider_id,
                assembled.messages,
                settings.model_id,
                message_id,
                temperature=settings.temperature,
                max_tokens=settings.max_tokens,
            )
        except Exception as e:
            if message_id not in self.states:
                # Already finalized by stop; keep its cancel marker.
                logger.warning("Generation %s failed after stop: %s", message_id, e)
                return
            logger.error("Failed to start generation %s: %s", message_id, e)
            await self.router.fail(message_id, str(e), state.message.blocks)
            self.states.end(message_id)
            raise

    def _stopped_during_assembly(self, message_id: str) -> bool:
        if message_id in self.states:
            return False
        logger.info("Generation %s stopped before streaming began", message_id)
        return True

    # ─ Stopping ─────────────────────────────────────────────────────────────

    async def stop_message_generation(self, message_id: str):
        """Cancel a generation. Unknown or finished ids are ignored."""
        state = self.states.get(message_id)
        if state is None:
            return

        blocks = state.message.blocks
        for block in blocks:
            if block.status == BlockStatus.LOADING:
                block.status = BlockStatus.SUCCESS
        blocks.append(AssistantMessageBlock(
            type=BlockType.ERROR,
            status=BlockStatus.CANCEL,
            content=ERROR_USER_CANCELED,
        ))

        self.store.update_message_status(message_id, MessageStatus.ERROR)
        self.store.edit_message(message_id, serialize_blocks(blocks))
        await self.provider.stop_stream(message_id)
        self.states.end(message_id)
        logger.info("Generation %s stopped by user", message_id)

    async def stop_conversation_generation(self, conversation_id: str):
        ids = [s.message.id for s in self.states.for_conversation(conversation_id)]
        await asyncio.gather(*(self.stop_message_generation(i) for i in ids))

    # ─ Recovery ─────────────────────────────────────────────────────────────

    async def recover_unfinished_messages(self) -> int:
        """
        Mark assistant messages left `pending` by a previous run as
        interrupted. Returns how many were recovered; never raises.
        """
        recovered = 0
        try:
            page = 1
            while True:
                total, convs = self.store.get_conversation_list(page, RECOVERY_PAGE_SIZE)
                for conv in convs:
                    pending = self.store.get_messages_by_status(
                        conv.id, MessageStatus.PENDING, role=MessageRole.ASSISTANT
                    )
                    for msg in pending:
                        if msg.id in self.states:
                            continue
                        await self.router.fail(msg.id, ERROR_SESSION_INTERRUPTED)
                        recovered += 1
                # Failing a message leaves conversations.updated_at alone, so pages hold still
                if not convs or page * RECOVERY_PAGE_SIZE >= total:
                    break
                page += 1
        except Exception as e:
            logger.error("Recovering unfinished messages failed: %s", e)
        if recovered:
            logger.info("Recovered %d interrupted message(s)", recovered)
        return recovered

    # ─ Titles ───────────────────────────────────────────────────────────────

    async def summary_titles(self, provider_id: str | None = None, model_id: str | None = None) -> str:
        conv = self.get_active_conversation()
        if conv is None:
            raise NotFoundError("No active conversation")

        formatted = []
        for msg in self.get_context_messages(conv.id):
            if msg.role == MessageRole.USER:
                text = user_text(_coerce_user_content(msg.content))
            elif msg.role == MessageRole.ASSISTANT:
                text = assistant_text(msg)
            else:
                continue
            if text:
                formatted.append({"role": msg.role.value, "content": text})

        return await self.provider.summary_titles(
            formatted,
            provider_id or conv.settings.provider_id,
            model_id or conv.settings.model_id,
        )

    # ─ Search ───────────────────────────────────────────────────────────────

    def get_message_extra_info(self, message_id: str, kind: str) -> list[dict]:
        return [json.loads(p) for p in self.store.get_message_attachments(message_id, kind)]

    def get_search_results(self, message_id: str) -> list[SearchResult]:
        return [
            SearchResult.from_dict(d)
            for d in self.get_message_extra_info(message_id, SEARCH_RESULT_KIND)
        ]

    def get_search_engines(self) -> list[dict]:
        return self.search_manager.get_engines()

    def get_active_search_engine(self) -> dict:
        engine = self.search_manager.get_active_engine()
        return {"name": engine.name, "label": engine.label}

    def set_active_search_engine(self, name: str):
        self.search_manager.set_active_engine(name)

    def set_search_assistant_model(self, model_id: str, provider_id: str):
        self.augmenter.set_search_assistant_model(model_id, provider_id)

    # ─ Introspection ────────────────────────────────────────────────────────

    def get_generating_message_state(self, message_id: str) -> GenerationState | None:
        return self.states.get(message_id)

    def get_conversation_generating_messages(self, conversation_id: str) -> list[Message]:
        return [s.message for s in self.states.for_conversation(conversation_id)]
