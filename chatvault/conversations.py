"""
Conversation-level operations on top of the record store.

Appends and replaces are read-modify-write cycles. Mutations against one
conversation id are serialized through a per-id asyncio.Lock; the store's
version check catches any writer that bypasses the service.

Listing for display also prunes: conversations without messages are
collected during the walk and deleted once it finishes.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Iterable

from chatvault.storage.models import Conversation, Message
from chatvault.storage.sqlite_store import SQLiteStore

logger = logging.getLogger(__name__)

EMPTY_PREVIEW = "Empty conversation"
ELLIPSIS = "..."
DEFAULT_PREVIEW_CHARS = 100


@dataclass
class SessionContext:
    """Per-session state. The only writer is the session controller."""
    current_conversation_id: int | None = None


@dataclass
class ConversationSummary:
    """One row of the conversation list."""
    id: int
    preview: str
    created_at: int
    message_count: int

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "preview": self.preview,
            "created_at": self.created_at,
            "message_count": self.message_count,
        }


def make_preview(conversation: Conversation, max_chars: int = DEFAULT_PREVIEW_CHARS) -> str:
    """First user message, cut to max_chars with an ellipsis if it was longer."""
    first = conversation.first_user_message()
    if first is None:
        return EMPTY_PREVIEW
    if len(first.content) > max_chars:
        return first.content[:max_chars] + ELLIPSIS
    return first.content


class ConversationService:
    """Create, mutate, list, prune, export and import conversations."""

    def __init__(self, store: SQLiteStore, preview_chars: int = DEFAULT_PREVIEW_CHARS):
        self.store = store
        self.preview_chars = preview_chars
        self._locks: dict[int, asyncio.Lock] = {}

    def _lock_for(self, conversation_id: int) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = self._locks[conversation_id] = asyncio.Lock()
        return lock

    # ─ Single-conversation operations ────────────────────────────────────

    async def get(self, conversation_id: int) -> Conversation:
        return await self.store.get(conversation_id)

    async def create_conversation(self, ctx: SessionContext) -> Conversation:
        """Create an empty conversation and make it current."""
        new_id = await self.store.create()
        ctx.current_conversation_id = new_id
        logger.info("New conversation %s", new_id)
        return await self.store.get(new_id)

    async def append_message(self, conversation_id: int, message: Message) -> Conversation:
        async with self._lock_for(conversation_id):
            conversation = await self.store.get(conversation_id)
            conversation.messages.append(message)
            return await self.store.put(conversation)

    async def replace_messages(self, conversation_id: int, messages: Iterable[Message]) -> Conversation:
        async with self._lock_for(conversation_id):
            conversation = await self.store.get(conversation_id)
            conversation.messages = list(messages)
            return await self.store.put(conversation)

    async def truncate_from(self, conversation_id: int, cut_index: int) -> Conversation:
        """Drop the message at cut_index and every message after it."""
        conversation = await self.store.get(conversation_id)
        if not 0 <= cut_index < len(conversation.messages):
            raise IndexError(
                f"Message index {cut_index} out of range for conversation "
                f"{conversation_id} ({len(conversation.messages)} messages)"
            )
        logger.info(
            "Truncating conversation %s at %d (dropping %d messages)",
            conversation_id, cut_index, len(conversation.messages) - cut_index,
        )
        return await self.replace_messages(conversation_id, conversation.messages[:cut_index])

    async def delete_conversation(self, ctx: SessionContext, conversation_id: int) -> None:
        async with self._lock_for(conversation_id):
            await self.store.delete(conversation_id)
        self._locks.pop(conversation_id, None)
        if ctx.current_conversation_id == conversation_id:
            ctx.current_conversation_id = None
        logger.info("Deleted conversation %s", conversation_id)

    # ─ Listing and pruning ───────────────────────────────────────────────

    async def list_for_display(self, ctx: SessionContext) -> list[ConversationSummary]:
        """
        Walk every conversation newest first and return the non-empty ones
        as summaries, pruning empty conversations along the way.

        The newest conversation is spared while it is empty *and* current:
        the user just asked for it and has not typed yet. Any other empty
        conversation is deleted after the walk.

        Afterwards the session always has a current conversation: the
        newest non-empty one if nothing valid was selected, or a fresh
        empty one if the store would otherwise be empty.
        """
        summaries: list[ConversationSummary] = []
        doomed: list[int] = []
        kept_empty: int | None = None
        newest = True

        async for conv in self.store.list_ordered_by_creation_desc():
            if conv.is_empty:
                if newest and conv.id == ctx.current_conversation_id:
                    kept_empty = conv.id
                else:
                    doomed.append(conv.id)
            else:
                summaries.append(ConversationSummary(
                    id=conv.id,
                    preview=make_preview(conv, self.preview_chars),
                    created_at=conv.created_at,
                    message_count=len(conv.messages),
                ))
            newest = False

        for conversation_id in doomed:
            await self.store.delete(conversation_id)
            self._locks.pop(conversation_id, None)
        if doomed:
            logger.info("Pruned %d empty conversations", len(doomed))

        remaining = {s.id for s in summaries}
        if kept_empty is not None:
            remaining.add(kept_empty)

        if ctx.current_conversation_id not in remaining:
            ctx.current_conversation_id = None

        if not remaining:
            logger.info("No conversations left, creating a new one")
            ctx.current_conversation_id = await self.store.create()
        elif ctx.current_conversation_id is None:
            ctx.current_conversation_id = summaries[0].id

        return summaries

    # ─ Bulk export / import ──────────────────────────────────────────────

    async def export_all(self) -> list[Conversation]:
        """Every stored conversation, oldest first."""
        conversations = [c async for c in self.store.list_ordered_by_creation_desc()]
        conversations.reverse()
        return conversations

    async def import_all(self, conversations: Iterable[Conversation]) -> int:
        """Replace the whole store with `conversations`, keeping ids and timestamps."""
        await self.store.clear()
        self._locks.clear()
        count = 0
        for conv in conversations:
            await self.store.create(conv)
            count += 1
        logger.info("Imported %d conversations", count)
        return count
