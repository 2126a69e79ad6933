"""
Session controller — one conversation turn from user text to stored answer.

    resolve current conversation
      → persist user message
      → re-read the conversation
      → backend.stream(messages, system prompt)
      → StreamAssembler (increments forwarded to the caller's sink)
      → persist the assembled assistant message

A failed model call is reported back as a TurnResult with ok=False and
nothing is persisted for the assistant side. The same goes for a turn that
is cancelled before the stream ends.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from chatvault.backends.base import BaseBackend
from chatvault.backup import build_document, parse_document
from chatvault.conversations import ConversationService, ConversationSummary, SessionContext
from chatvault.errors import DecodeFault, UpstreamFault
from chatvault.storage.models import Conversation, Message
from chatvault.stream import Sink, StreamAssembler
from chatvault.system_prompt import SystemPromptFile
from chatvault.wiretap import WireLog

logger = logging.getLogger(__name__)


@dataclass
class TurnResult:
    """Outcome of one send_message call."""
    ok: bool
    conversation_id: int | None = None
    content: str = ""
    error: str = ""
    cancelled: bool = False
    decode_faults: int = 0


class SessionController:
    """Orchestrates the conversation service, a backend and the stream assembler."""

    def __init__(
        self,
        service: ConversationService,
        backend: BaseBackend,
        system_prompt: SystemPromptFile,
        wire: WireLog | None = None,
    ):
        self.service = service
        self.backend = backend
        self.system_prompt = system_prompt
        self.wire = wire
        self._turns: set[StreamAssembler] = set()
        self._turn_lock = asyncio.Lock()

    # ─ Conversation navigation ───────────────────────────────────────────

    async def list_conversations(self, ctx: SessionContext) -> list[ConversationSummary]:
        return await self.service.list_for_display(ctx)

    async def current_conversation(self, ctx: SessionContext) -> Conversation:
        if ctx.current_conversation_id is None:
            await self.service.list_for_display(ctx)
        return await self.service.get(ctx.current_conversation_id)

    async def select(self, ctx: SessionContext, conversation_id: int) -> Conversation:
        conversation = await self.service.get(conversation_id)
        ctx.current_conversation_id = conversation_id
        return conversation

    async def new_conversation(self, ctx: SessionContext) -> Conversation:
        return await self.service.create_conversation(ctx)

    async def delete_conversation(self, ctx: SessionContext, conversation_id: int) -> list[ConversationSummary]:
        """Delete a conversation and return the refreshed list."""
        await self.service.delete_conversation(ctx, conversation_id)
        return await self.service.list_for_display(ctx)

    async def delete_message(self, ctx: SessionContext, index: int) -> Conversation:
        """Delete the message at `index` of the current conversation and all after it."""
        conversation = await self.current_conversation(ctx)
        return await self.service.truncate_from(conversation.id, index)

    # ─ System prompt ─────────────────────────────────────────────────────

    def get_system_prompt(self) -> str:
        return self.system_prompt.get()

    def set_system_prompt(self, text: str) -> None:
        self.system_prompt.set(text)

    # ─ Turns ─────────────────────────────────────────────────────────────

    def cancel(self):
        """
        Abandon every turn in flight, including one that has not reached the
        backend yet. No assistant message is persisted for them.
        """
        for assembler in list(self._turns):
            assembler.cancel()

    def _decode_fault_handler(self, conversation_id: int):
        def on_fault(fault: DecodeFault):
            logger.warning("Undecodable fragment in conversation %s: %s", conversation_id, fault.reason)
            if self.wire:
                self.wire.fault("decode", fault.reason, conversation_id)
        return on_fault

    async def send_message(self, ctx: SessionContext, text: str, sink: Sink | None = None) -> TurnResult:
        """
        Run one turn. Raises ValueError for blank input; storage errors
        propagate. Upstream failures come back as TurnResult(ok=False).
        """
        text = text.strip()
        if not text:
            raise ValueError("Message is empty")

        # registered before the first await so cancel() can reach this turn at once
        assembler = StreamAssembler()
        self._turns.add(assembler)
        try:
            async with self._turn_lock:
                return await self._run_turn(ctx, text, assembler, sink)
        finally:
            self._turns.discard(assembler)

    async def _run_turn(
        self, ctx: SessionContext, text: str, assembler: StreamAssembler, sink: Sink | None
    ) -> TurnResult:
        if ctx.current_conversation_id is None:
            await self.service.list_for_display(ctx)
        conversation_id = ctx.current_conversation_id
        if assembler.cancelled:
            return self._cancelled(conversation_id, assembler)

        await self.service.append_message(conversation_id, Message(role="user", content=text))
        if self.wire:
            self.wire.log("inbound", "user", text, conversation_id)

        conversation = await self.service.get(conversation_id)
        request = [m.to_dict() for m in conversation.messages]
        if assembler.cancelled:
            return self._cancelled(conversation_id, assembler)

        assembler.on_fault = self._decode_fault_handler(conversation_id)
        try:
            answer = await assembler.assemble(
                self.backend.stream(request, self.system_prompt.get()),
                sink,
            )
        except UpstreamFault as e:
            logger.error("Model call failed for conversation %s: %s", conversation_id, e)
            if self.wire:
                self.wire.fault("upstream", str(e), conversation_id)
            return TurnResult(
                ok=False,
                conversation_id=conversation_id,
                content=assembler.buffer,
                error=str(e),
                decode_faults=assembler.fault_count,
            )

        if assembler.cancelled:
            return self._cancelled(conversation_id, assembler)

        await self.service.append_message(conversation_id, Message(role="assistant", content=answer))
        if self.wire:
            self.wire.log("outbound", "assistant", answer, conversation_id)

        return TurnResult(
            ok=True,
            conversation_id=conversation_id,
            content=answer,
            decode_faults=assembler.fault_count,
        )

    @staticmethod
    def _cancelled(conversation_id: int, assembler: StreamAssembler) -> TurnResult:
        logger.info("Turn in conversation %s cancelled, answer not stored", conversation_id)
        return TurnResult(
            ok=False,
            conversation_id=conversation_id,
            content=assembler.buffer,
            cancelled=True,
            decode_faults=assembler.fault_count,
        )

    # ─ Backup / restore ──────────────────────────────────────────────────

    async def backup(self) -> dict:
        conversations = await self.service.export_all()
        return build_document(conversations, self.system_prompt.get())

    async def restore(self, ctx: SessionContext, document: dict) -> list[ConversationSummary]:
        """
        Replace everything with the contents of a backup document.
        The document is validated before the store is touched.
        """
        backup = parse_document(document)
        await self.service.import_all(backup.conversations)
        if backup.system_prompt is not None:
            self.system_prompt.set(backup.system_prompt)
        ctx.current_conversation_id = None
        return await self.service.list_for_display(ctx)
