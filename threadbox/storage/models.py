"""
Data models for conversation storage.
These define the shape of data flowing between the store, the prompt
assembler and the stream router.

Content is role-dependent:
  user       -> UserMessageContent {text, files, search}
  assistant  -> ordered list of AssistantMessageBlock
  system     -> plain string
"""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4


def now_ms() -> int:
    """Wall clock in epoch milliseconds. Block timestamps and timings use this."""
    return int(time.time() * 1000)


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class MessageStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    ERROR = "error"


class BlockType(str, Enum):
    CONTENT = "content"
    REASONING = "reasoning_content"
    SEARCH = "search"
    ERROR = "error"


class BlockStatus(str, Enum):
    LOADING = "loading"
    READING = "reading"
    SUCCESS = "success"
    ERROR = "error"
    CANCEL = "cancel"


# i18n keys the frontend translates. Stored verbatim in error blocks.
ERROR_NO_MODEL_RESPONSE = "common.error.noModelResponse"
ERROR_REQUEST_FAILED = "common.error.requestFailed"
ERROR_SESSION_INTERRUPTED = "common.error.sessionInterrupted"
ERROR_USER_CANCELED = "common.error.userCanceledGeneration"


@dataclass
class AssistantMessageBlock:
    """One typed, independently-statused fragment of an assistant reply."""
    type: BlockType
    status: BlockStatus = BlockStatus.LOADING
    content: str = ""
    timestamp: int = field(default_factory=now_ms)
    extra: dict[str, Any] | None = None

    def to_dict(self) -> dict:
        data = {
            "type": self.type.value,
            "status": self.status.value,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        if self.extra is not None:
            data["extra"] = self.extra
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "AssistantMessageBlock":
        return cls(
            type=BlockType(data.get("type", "content")),
            status=BlockStatus(data.get("status", "success")),
            content=data.get("content", "") or "",
            timestamp=data.get("timestamp") or now_ms(),
            extra=data.get("extra"),
        )


def serialize_blocks(blocks: list[AssistantMessageBlock]) -> str:
    return json.dumps([b.to_dict() for b in blocks], ensure_ascii=False)


def parse_blocks(raw: str | None) -> list[AssistantMessageBlock]:
    """Parse a serialized block list. Anything unparseable yields []."""
    if not raw:
        return []
    try:
        data = json.loads(raw)
        if not isinstance(data, list):
            return []
        return [AssistantMessageBlock.from_dict(d) for d in data if isinstance(d, dict)]
    except (json.JSONDecodeError, ValueError):
        return []


@dataclass
class MessageFile:
    """A file attached to a user turn."""
    name: str
    content: str = ""
    mime_type: str = "text/plain"
    path: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "MessageFile":
        return cls(
            name=data.get("name", ""),
            content=data.get("content", "") or "",
            mime_type=data.get("mime_type") or data.get("mimeType") or "text/plain",
            path=data.get("path", "") or "",
        )


@dataclass
class UserMessageContent:
    text: str = ""
    files: list[MessageFile] = field(default_factory=list)
    search: bool = False

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "files": [asdict(f) for f in self.files],
            "search": self.search,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "UserMessageContent":
        return cls(
            text=data.get("text", "") or "",
            files=[MessageFile.from_dict(f) for f in data.get("files") or []],
            search=bool(data.get("search", False)),
        )


MessageContent = UserMessageContent | list[AssistantMessageBlock] | str


@dataclass
class Message:
    """A single message in a conversation."""
    id: str = field(default_factory=lambda: uuid4().hex)
    conversation_id: str = ""
    parent_id: str | None = None
    role: MessageRole = MessageRole.USER
    content: MessageContent = ""
    status: MessageStatus = MessageStatus.PENDING
    metadata: dict[str, Any] = field(default_factory=dict)
    is_variant: bool = False
    created_at: str = field(default_factory=_utcnow)
    order_seq: int = 0

    @property
    def blocks(self) -> list[AssistantMessageBlock]:
        """Assistant block list; [] for other roles."""
        if self.role == MessageRole.ASSISTANT and isinstance(self.content, list):
            return self.content
        return []

    def serialize_content(self) -> str:
        if self.role == MessageRole.ASSISTANT:
            return serialize_blocks(self.blocks)
        if isinstance(self.content, UserMessageContent):
            return json.dumps(self.content.to_dict(), ensure_ascii=False)
        return json.dumps(self.content, ensure_ascii=False)

    @staticmethod
    def parse_content(role: MessageRole, raw: str) -> MessageContent:
        if role == MessageRole.ASSISTANT:
            return parse_blocks(raw)
        try:
            data = json.loads(raw) if raw else ""
        except json.JSONDecodeError:
            data = raw
        if role == MessageRole.USER:
            if isinstance(data, dict):
                return UserMessageContent.from_dict(data)
            return UserMessageContent(text=str(data))
        return data if isinstance(data, str) else json.dumps(data)

    def to_dict(self) -> dict:
        if self.role == MessageRole.ASSISTANT:
            content: Any = [b.to_dict() for b in self.blocks]
        elif isinstance(self.content, UserMessageContent):
            content = self.content.to_dict()
        else:
            content = self.content
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "parent_id": self.parent_id,
            "role": self.role.value,
            "content": content,
            "status": self.status.value,
            "metadata": self.metadata,
            "is_variant": self.is_variant,
            "created_at": self.created_at,
        }


@dataclass
class ConversationSettings:
    system_prompt: str = ""
    temperature: float = 0.7
    context_length: int = 1000
    max_tokens: int = 2000
    provider_id: str = "openai"
    model_id: str = "gpt-4"
    artifacts: int = 0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict | None) -> "ConversationSettings":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in (data or {}).items() if k in known})

    def merged(self, patch: dict) -> "ConversationSettings":
        return ConversationSettings.from_dict({**self.to_dict(), **patch})


@dataclass
class Conversation:
    id: str = field(default_factory=lambda: uuid4().hex)
    title: str = ""
    settings: ConversationSettings = field(default_factory=ConversationSettings)
    created_at: str = field(default_factory=_utcnow)
    updated_at: str = field(default_factory=_utcnow)
    is_new: bool = True

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "settings": self.settings.to_dict(),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "is_new": self.is_new,
        }


@dataclass
class SearchResult:
    title: str
    url: str
    content: str = ""
    description: str = ""
    icon: str = ""

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "SearchResult":
        return cls(
            title=data.get("title", "") or "",
            url=data.get("url", "") or "",
            content=data.get("content", "") or "",
            description=data.get("description", "") or "",
            icon=data.get("icon", "") or "",
        )
