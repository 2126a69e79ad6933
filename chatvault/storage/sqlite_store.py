"""
SQLite storage for conversations.
This is the source of truth - one row per conversation, messages kept in
append order as a JSON array. Single portable file.

The blocking sqlite3 work runs in a worker thread so every public method is
a coroutine; each call opens and closes its own connection.
"""

import asyncio
import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import AsyncIterator

from chatvault.errors import Conflict, NotFound, StorageFault
from chatvault.storage.models import Conversation, Message, now_ms

logger = logging.getLogger(__name__)

CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS conversations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    created_at INTEGER NOT NULL,
    version INTEGER NOT NULL DEFAULT 0,
    messages TEXT NOT NULL DEFAULT '[]'
);

CREATE INDEX IF NOT EXISTS idx_conversations_created_at
    ON conversations(created_at);
"""

DEFAULT_PAGE_SIZE = 50


def _row_to_conversation(row: sqlite3.Row) -> Conversation:
    return Conversation(
        id=row["id"],
        created_at=row["created_at"],
        version=row["version"],
        messages=[Message.from_dict(m) for m in json.loads(row["messages"])],
    )


def _dump_messages(messages: list[Message]) -> str:
    return json.dumps([m.to_dict() for m in messages], ensure_ascii=False)


class SQLiteStore:
    """Durable conversation records with a created_at ordering index."""

    def __init__(self, db_path: str, page_size: int = DEFAULT_PAGE_SIZE):
        if page_size < 1:
            raise ValueError(f"page_size must be at least 1, got {page_size}")
        self.db_path = Path(db_path)
        self.page_size = page_size
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageFault(f"Cannot create database directory: {e}") from e
        self._init_db()

    def _init_db(self):
        with self._connect() as conn:
            conn.executescript(CREATE_TABLES)
        logger.info("SQLite store initialized at %s", self.db_path)

    @contextmanager
    def _connect(self):
        try:
            conn = sqlite3.connect(str(self.db_path))
        except sqlite3.Error as e:
            raise StorageFault(f"Cannot open {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageFault(str(e)) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # ─ Blocking implementations ──────────────────────────────────────────

    def _create(self, initial: Conversation | None) -> int:
        conv = initial or Conversation(created_at=now_ms())
        with self._connect() as conn:
            if conv.id is None:
                cur = conn.execute(
                    "INSERT INTO conversations (created_at, version, messages) VALUES (?, 0, ?)",
                    (conv.created_at, _dump_messages(conv.messages)),
                )
            else:
                cur = conn.execute(
                    "INSERT INTO conversations (id, created_at, version, messages) VALUES (?, ?, 0, ?)",
                    (conv.id, conv.created_at, _dump_messages(conv.messages)),
                )
            new_id = cur.lastrowid
        logger.debug("Created conversation %s (%d messages)", new_id, len(conv.messages))
        return new_id

    def _get(self, conversation_id: int) -> Conversation:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM conversations WHERE id = ?",
                (conversation_id,),
            ).fetchone()
        if row is None:
            raise NotFound(conversation_id)
        return _row_to_conversation(row)

    def _put(self, conversation: Conversation) -> Conversation:
        with self._connect() as conn:
            cur = conn.execute(
                """UPDATE conversations
                   SET messages = ?, version = version + 1
                   WHERE id = ? AND version = ?""",
                (_dump_messages(conversation.messages), conversation.id, conversation.version),
            )
            if cur.rowcount == 0:
                row = conn.execute(
                    "SELECT version FROM conversations WHERE id = ?",
                    (conversation.id,),
                ).fetchone()
                if row is None:
                    raise NotFound(conversation.id)
                raise Conflict(conversation.id, conversation.version, row["version"])
        logger.debug(
            "Stored conversation %s (%d messages, version %d)",
            conversation.id, len(conversation.messages), conversation.version + 1,
        )
        return Conversation(
            id=conversation.id,
            created_at=conversation.created_at,
            messages=list(conversation.messages),
            version=conversation.version + 1,
        )

    def _delete(self, conversation_id: int) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))

    def _page(self, after: tuple[int, int] | None, limit: int) -> list[Conversation]:
        """One keyset page of the newest-first listing."""
        with self._connect() as conn:
            if after is None:
                rows = conn.execute(
                    """SELECT * FROM conversations
                       ORDER BY created_at DESC, id DESC
                       LIMIT ?""",
                    (limit,),
                ).fetchall()
            else:
                created_at, last_id = after
                rows = conn.execute(
                    """SELECT * FROM conversations
                       WHERE created_at < ? OR (created_at = ? AND id < ?)
                       ORDER BY created_at DESC, id DESC
                       LIMIT ?""",
                    (created_at, created_at, last_id, limit),
                ).fetchall()
        return [_row_to_conversation(r) for r in rows]

    def _clear(self) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM conversations")
        logger.info("Cleared all conversations")

    def _get_stats(self) -> dict:
        with self._connect() as conn:
            rows = conn.execute("SELECT messages FROM conversations").fetchall()
        by_role = {role: 0 for role in Message.ROLES}
        empty = 0
        for row in rows:
            messages = json.loads(row["messages"])
            if not messages:
                empty += 1
            for m in messages:
                by_role[m.get("role", "")] = by_role.get(m.get("role", ""), 0) + 1
        return {
            "conversations": len(rows),
            "empty_conversations": empty,
            "messages": sum(by_role.values()),
            "user_messages": by_role["user"],
            "assistant_messages": by_role["assistant"],
            "system_messages": by_role["system"],
        }

    # ─ Public coroutine API ──────────────────────────────────────────────

    async def create(self, initial: Conversation | None = None) -> int:
        """
        Insert a new conversation and return its id.
        Without an initial value an empty skeleton stamped with the current
        time is stored; with one, its id (if set), created_at and messages
        are kept verbatim (used when restoring a backup).
        """
        return await asyncio.to_thread(self._create, initial)

    async def get(self, conversation_id: int) -> Conversation:
        return await asyncio.to_thread(self._get, conversation_id)

    async def put(self, conversation: Conversation) -> Conversation:
        """
        Overwrite an existing conversation.
        Raises NotFound if the id is gone and Conflict if the stored version
        moved on since `conversation` was read.
        """
        return await asyncio.to_thread(self._put, conversation)

    async def delete(self, conversation_id: int) -> None:
        """Delete a conversation. Deleting a missing id is not an error."""
        await asyncio.to_thread(self._delete, conversation_id)

    async def list_ordered_by_creation_desc(
        self, page_size: int | None = None
    ) -> AsyncIterator[Conversation]:
        """
        Yield conversations newest first.
        Pages are fetched lazily, so rows written during the traversal may
        or may not show up. Calling again starts a fresh traversal.
        """
        limit = self.page_size if page_size is None else page_size
        if limit < 1:
            raise ValueError(f"page_size must be at least 1, got {limit}")
        after = None
        while True:
            page = await asyncio.to_thread(self._page, after, limit)
            for conv in page:
                yield conv
            if len(page) < limit:
                return
            after = (page[-1].created_at, page[-1].id)

    async def clear(self) -> None:
        await asyncio.to_thread(self._clear)

    def _count(self) -> int:
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM conversations").fetchone()[0]

    async def count(self) -> int:
        return await asyncio.to_thread(self._count)

    async def get_stats(self) -> dict:
        """Return counts of stored conversations and messages."""
        return await asyncio.to_thread(self._get_stats)
