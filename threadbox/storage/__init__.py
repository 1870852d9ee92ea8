"""Conversation, message and attachment persistence."""
from threadbox.storage.sqlite_store import SQLiteStore

__all__ = ["SQLiteStore"]
