"""
SQLite storage for conversations, messages and message attachments.
This is the source of truth - every message, every block list, every
status transition. Single portable file.

Assistant content is stored as a serialized block list. Writers always
read the whole list, mutate it, and write the whole list back.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from threadbox.storage.models import (
    Conversation,
    ConversationSettings,
    Message,
    MessageRole,
    MessageStatus,
)

logger = logging.getLogger(__name__)

CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL DEFAULT '',
    settings TEXT NOT NULL DEFAULT '{}',
    is_new INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL,
    parent_id TEXT DEFAULT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    metadata TEXT NOT NULL DEFAULT '{}',
    is_variant INTEGER NOT NULL DEFAULT 0,
    order_seq INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    FOREIGN KEY (conversation_id) REFERENCES conversations(id)
);

CREATE TABLE IF NOT EXISTS message_attachments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    message_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    content TEXT NOT NULL,
    created_at TEXT NOT NULL,
    FOREIGN KEY (message_id) REFERENCES messages(id)
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation
    ON messages(conversation_id, order_seq);
CREATE INDEX IF NOT EXISTS idx_messages_parent
    ON messages(parent_id);
CREATE INDEX IF NOT EXISTS idx_messages_status
    ON messages(status);
CREATE INDEX IF NOT EXISTS idx_attachments_message
    ON message_attachments(message_id, kind);
"""


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class SQLiteStore:
    """SQLite conversation store. One connection per operation."""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        with self._connect() as conn:
            conn.executescript(CREATE_TABLES)
        logger.info("SQLite store initialized at %s", self.db_path)

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # ─ Row mapping ──────────────────────────────────────────────────────────

    @staticmethod
    def _row_to_conversation(row: sqlite3.Row) -> Conversation:
        return Conversation(
            id=row["id"],
            title=row["title"],
            settings=ConversationSettings.from_dict(json.loads(row["settings"] or "{}")),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            is_new=bool(row["is_new"]),
        )

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> Message:
        role = MessageRole(row["role"])
        return Message(
            id=row["id"],
            conversation_id=row["conversation_id"],
            parent_id=row["parent_id"],
            role=role,
            content=Message.parse_content(role, row["content"]),
            status=MessageStatus(row["status"]),
            metadata=json.loads(row["metadata"] or "{}"),
            is_variant=bool(row["is_variant"]),
            created_at=row["created_at"],
            order_seq=row["order_seq"],
        )

    # ─ Conversations ────────────────────────────────────────────────────────

    def create_conversation(self, title: str, settings: ConversationSettings) -> Conversation:
        conv = Conversation(title=title, settings=settings)
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO conversations (id, title, settings, is_new, created_at, updated_at)
                   VALUES (?, ?, ?, 1, ?, ?)""",
                (conv.id, conv.title, json.dumps(settings.to_dict()),
                 conv.created_at, conv.updated_at),
            )
        logger.debug("Created conversation %s (%s)", conv.id, title)
        return conv

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
        return self._row_to_conversation(row) if row else None

    def update_conversation(
        self,
        conversation_id: str,
        title: str | None = None,
        settings: ConversationSettings | None = None,
        is_new: bool | None = None,
    ):
        """Update whichever fields are given. Always bumps updated_at."""
        sets = ["updated_at = ?"]
        params: list = [_utcnow()]
        if title is not None:
            sets.append("title = ?")
            params.append(title)
        if settings is not None:
            sets.append("settings = ?")
            params.append(json.dumps(settings.to_dict()))
        if is_new is not None:
            sets.append("is_new = ?")
            params.append(int(is_new))
        params.append(conversation_id)
        with self._connect() as conn:
            conn.execute(
                f"UPDATE conversations SET {', '.join(sets)} WHERE id = ?", params
            )

    def delete_conversation(self, conversation_id: str):
        with self._connect() as conn:
            conn.execute(
                """DELETE FROM message_attachments WHERE message_id IN
                   (SELECT id FROM messages WHERE conversation_id = ?)""",
                (conversation_id,),
            )
            conn.execute("DELETE FROM messages WHERE conversation_id = ?", (conversation_id,))
            conn.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
        logger.info("Deleted conversation %s", conversation_id)

    def get_conversation_list(self, page: int, page_size: int) -> tuple[int, list[Conversation]]:
        """Most recently updated first. Returns (total, page of conversations)."""
        offset = max(page - 1, 0) * page_size
        with self._connect() as conn:
            total = conn.execute("SELECT COUNT(*) FROM conversations").fetchone()[0]
            rows = conn.execute(
                """SELECT * FROM conversations
                   ORDER BY updated_at DESC, created_at DESC
                   LIMIT ? OFFSET ?""",
                (page_size, offset),
            ).fetchall()
        return total, [self._row_to_conversation(r) for r in rows]

    # ─ Messages ─────────────────────────────────────────────────────────────

    def create_message(self, msg: Message) -> Message:
        """Insert a message, assigning the next order_seq in its conversation."""
        with self._connect() as conn:
            seq = conn.execute(
                "SELECT COALESCE(MAX(order_seq), 0) + 1 FROM messages WHERE conversation_id = ?",
                (msg.conversation_id,),
            ).fetchone()[0]
            msg.order_seq = seq
            conn.execute(
                """INSERT INTO messages
                   (id, conversation_id, parent_id, role, content, status,
                    metadata, is_variant, order_seq, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (msg.id, msg.conversation_id, msg.parent_id, msg.role.value,
                 msg.serialize_content(), msg.status.value, json.dumps(msg.metadata),
                 int(msg.is_variant), seq, msg.created_at),
            )
        logger.debug("Stored message %s (role=%s, conv=%s)", msg.id, msg.role.value, msg.conversation_id)
        return msg

    def get_message(self, message_id: str) -> Message | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM messages WHERE id = ?", (message_id,)).fetchone()
        return self._row_to_message(row) if row else None

    def edit_message(self, message_id: str, content: str):
        """Replace the raw serialized content of a message."""
        with self._connect() as conn:
            conn.execute("UPDATE messages SET content = ? WHERE id = ?", (content, message_id))

    def update_message_status(self, message_id: str, status: MessageStatus):
        with self._connect() as conn:
            conn.execute(
                "UPDATE messages SET status = ? WHERE id = ?", (status.value, message_id)
            )

    def update_message_metadata(self, message_id: str, patch: dict):
        """Merge `patch` into the message's metadata."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT metadata FROM messages WHERE id = ?", (message_id,)
            ).fetchone()
            if row is None:
                return
            metadata = json.loads(row["metadata"] or "{}")
            metadata.update(patch)
            conn.execute(
                "UPDATE messages SET metadata = ? WHERE id = ?",
                (json.dumps(metadata), message_id),
            )

    def delete_message(self, message_id: str):
        with self._connect() as conn:
            conn.execute("DELETE FROM message_attachments WHERE message_id = ?", (message_id,))
            conn.execute("DELETE FROM messages WHERE id = ?", (message_id,))

    def clear_all_messages(self, conversation_id: str):
        with self._connect() as conn:
            conn.execute(
                """DELETE FROM message_attachments WHERE message_id IN
                   (SELECT id FROM messages WHERE conversation_id = ?)""",
                (conversation_id,),
            )
            conn.execute("DELETE FROM messages WHERE conversation_id = ?", (conversation_id,))

    def get_message_thread(
        self, conversation_id: str, page: int, page_size: int
    ) -> tuple[int, list[Message]]:
        """
        Main-line messages (variants excluded) in chronological order.
        Page 1 is the oldest page. Returns (total, page of messages).
        """
        offset = max(page - 1, 0) * page_size
        with self._connect() as conn:
            total = conn.execute(
                "SELECT COUNT(*) FROM messages WHERE conversation_id = ? AND is_variant = 0",
                (conversation_id,),
            ).fetchone()[0]
            rows = conn.execute(
                """SELECT * FROM messages
                   WHERE conversation_id = ? AND is_variant = 0
                   ORDER BY order_seq
                   LIMIT ? OFFSET ?""",
                (conversation_id, page_size, offset),
            ).fetchall()
        return total, [self._row_to_message(r) for r in rows]

    def get_context_messages(self, conversation_id: str, limit: int) -> list[Message]:
        """The `limit` most recent main-line messages, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT * FROM messages
                   WHERE conversation_id = ? AND is_variant = 0
                   ORDER BY order_seq DESC
                   LIMIT ?""",
                (conversation_id, limit),
            ).fetchall()
        return [self._row_to_message(r) for r in reversed(rows)]

    def get_messages_by_status(
        self, conversation_id: str, status: MessageStatus, role: MessageRole | None = None
    ) -> list[Message]:
        """Every message in `status` (variants included), oldest first."""
        sql = "SELECT * FROM messages WHERE conversation_id = ? AND status = ?"
        params: list = [conversation_id, status.value]
        if role is not None:
            sql += " AND role = ?"
            params.append(role.value)
        with self._connect() as conn:
            rows = conn.execute(sql + " ORDER BY order_seq", params).fetchall()
        return [self._row_to_message(r) for r in rows]

    def get_last_user_message(self, conversation_id: str) -> Message | None:
        with self._connect() as conn:
            row = conn.execute(
                """SELECT * FROM messages
                   WHERE conversation_id = ? AND role = 'user'
                   ORDER BY order_seq DESC LIMIT 1""",
                (conversation_id,),
            ).fetchone()
        return self._row_to_message(row) if row else None

    def get_message_variants(self, message_id: str) -> list[Message]:
        """All variants answering the same parent as `message_id`."""
        msg = self.get_message(message_id)
        if msg is None or msg.parent_id is None:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT * FROM messages
                   WHERE parent_id = ? AND is_variant = 1
                   ORDER BY order_seq""",
                (msg.parent_id,),
            ).fetchall()
        return [self._row_to_message(r) for r in rows]

    def get_main_message_by_parent_id(self, conversation_id: str, parent_id: str) -> Message | None:
        with self._connect() as conn:
            row = conn.execute(
                """SELECT * FROM messages
                   WHERE conversation_id = ? AND parent_id = ? AND is_variant = 0
                   ORDER BY order_seq LIMIT 1""",
                (conversation_id, parent_id),
            ).fetchone()
        return self._row_to_message(row) if row else None

    # ─ Attachments ──────────────────────────────────────────────────────────

    def add_message_attachment(self, message_id: str, kind: str, payload: str):
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO message_attachments (message_id, kind, content, created_at)
                   VALUES (?, ?, ?, ?)""",
                (message_id, kind, payload, _utcnow()),
            )

    def get_message_attachments(self, message_id: str, kind: str) -> list[str]:
        """Raw attachment payloads in insertion order."""
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT content FROM message_attachments
                   WHERE message_id = ? AND kind = ?
                   ORDER BY id""",
                (message_id, kind),
            ).fetchall()
        return [r["content"] for r in rows]
