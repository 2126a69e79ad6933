"""
Conversation persistence: data models and the SQLite record store.
"""
from chatvault.storage.models import Conversation, Message
from chatvault.storage.sqlite_store import SQLiteStore

__all__ = ["Conversation", "Message", "SQLiteStore"]
