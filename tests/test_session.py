"""
Tests for the session controller: full turns against a scripted backend.
"""

import asyncio
import json

import pytest

from chatvault.backends.base import BaseBackend
from chatvault.conversations import ConversationService, SessionContext
from chatvault.errors import UpstreamFault
from chatvault.session import SessionController
from chatvault.storage.models import Conversation, Message
from chatvault.storage.sqlite_store import SQLiteStore
from chatvault.system_prompt import SystemPromptFile
from chatvault.wiretap import WireLog


def delta(text: str) -> str:
    return json.dumps({"type": "content_block_delta", "delta": {"type": "text_delta", "text": text}})


class FakeBackend(BaseBackend):
    """Streams canned fragments and records every request it sees."""

    def __init__(self, fragments=None, fault=None, gate=None):
        super().__init__("fake", "http://fake")
        self.fragments = fragments if fragments is not None else [delta("Hi"), delta(" there")]
        self.fault = fault
        self.gate = gate
        self.requests = []

    async def stream(self, messages, system_prompt=""):
        self.requests.append((messages, system_prompt))
        if self.fault is not None:
            raise self.fault
        for i, fragment in enumerate(self.fragments):
            if self.gate is not None and i > 0:
                await self.gate.wait()
            yield fragment


@pytest.fixture
def parts(tmp_path):
    store = SQLiteStore(str(tmp_path / "test.db"))
    prompt = SystemPromptFile(tmp_path / "system_prompt.md")
    wire = WireLog(str(tmp_path / "wire.jsonl"))
    return store, prompt, wire


def _controller(parts, backend):
    store, prompt, wire = parts
    return SessionController(
        service=ConversationService(store),
        backend=backend,
        system_prompt=prompt,
        wire=wire,
    )


def _wire_entries(parts):
    _, _, wire = parts
    wire.close()
    return [json.loads(line) for line in wire.log_path.read_text().splitlines()]


@pytest.mark.asyncio
async def test_turn_persists_user_and_assistant(parts):
    backend = FakeBackend()
    controller = _controller(parts, backend)
    ctx = SessionContext()
    seen = []

    result = await controller.send_message(ctx, "  hello  ", seen.append)

    assert result.ok
    assert result.content == "Hi there"
    assert seen == ["Hi", "Hi there"]
    conv = await controller.current_conversation(ctx)
    assert [m.to_dict() for m in conv.messages] == [
        {"role": "user", "content": "hello"},
        {"role": "assistant", "content": "Hi there"},
    ]
    assert result.conversation_id == conv.id


@pytest.mark.asyncio
async def test_turn_sends_history_and_system_prompt(parts):
    backend = FakeBackend()
    controller = _controller(parts, backend)
    controller.set_system_prompt("be brief")
    ctx = SessionContext()

    await controller.send_message(ctx, "first")
    await controller.send_message(ctx, "second")

    messages, system_prompt = backend.requests[-1]
    assert system_prompt == "be brief"
    assert messages == [
        {"role": "user", "content": "first"},
        {"role": "assistant", "content": "Hi there"},
        {"role": "user", "content": "second"},
    ]


@pytest.mark.asyncio
async def test_turn_uses_selected_conversation(parts):
    store, _, _ = parts
    older = await store.create(Conversation(created_at=1, messages=[Message("user", "old")]))
    await store.create(Conversation(created_at=2, messages=[Message("user", "new")]))

    controller = _controller(parts, FakeBackend())
    ctx = SessionContext()
    await controller.select(ctx, older)
    result = await controller.send_message(ctx, "again")

    assert result.conversation_id == older
    assert len((await store.get(older)).messages) == 3


@pytest.mark.asyncio
async def test_blank_input_rejected(parts):
    backend = FakeBackend()
    controller = _controller(parts, backend)
    with pytest.raises(ValueError):
        await controller.send_message(SessionContext(), "   \n ")
    assert backend.requests == []


@pytest.mark.asyncio
async def test_upstream_failure_keeps_only_user_message(parts):
    backend = FakeBackend(fault=UpstreamFault("HTTP 500: boom", status_code=500))
    controller = _controller(parts, backend)
    ctx = SessionContext()

    result = await controller.send_message(ctx, "hello")

    assert not result.ok
    assert not result.cancelled
    assert "boom" in result.error
    conv = await controller.current_conversation(ctx)
    assert [m.role for m in conv.messages] == ["user"]
    faults = [e for e in _wire_entries(parts) if e["role"] == "fault"]
    assert faults[0]["kind"] == "upstream"


@pytest.mark.asyncio
async def test_decode_faults_are_counted_and_logged(parts):
    backend = FakeBackend(fragments=[delta("A"), "not json", delta("B")])
    controller = _controller(parts, backend)
    ctx = SessionContext()

    result = await controller.send_message(ctx, "hello")

    assert result.ok
    assert result.content == "AB"
    assert result.decode_faults == 1
    kinds = [e.get("kind") for e in _wire_entries(parts) if e["role"] == "fault"]
    assert kinds == ["decode"]


@pytest.mark.asyncio
async def test_cancelled_turn_persists_no_answer(parts):
    gate = asyncio.Event()
    backend = FakeBackend(fragments=[delta("partial"), delta(" rest")], gate=gate)
    controller = _controller(parts, backend)
    ctx = SessionContext()
    seen = []

    task = asyncio.create_task(controller.send_message(ctx, "hello", seen.append))
    while not seen:
        await asyncio.sleep(0)
    controller.cancel()
    result = await asyncio.wait_for(task, timeout=2)

    assert result.cancelled
    assert not result.ok
    assert seen == ["partial"]
    conv = await controller.current_conversation(ctx)
    assert [m.role for m in conv.messages] == ["user"]


@pytest.mark.asyncio
async def test_cancel_before_stream_starts_skips_backend(parts):
    backend = FakeBackend()
    controller = _controller(parts, backend)
    ctx = SessionContext()
    seen = []

    task = asyncio.create_task(controller.send_message(ctx, "hello", seen.append))
    await asyncio.sleep(0)
    controller.cancel()
    result = await asyncio.wait_for(task, timeout=2)

    assert result.cancelled
    assert not result.ok
    assert result.content == ""
    assert seen == []
    assert backend.requests == []
    conv = await controller.current_conversation(ctx)
    assert "assistant" not in [m.role for m in conv.messages]


@pytest.mark.asyncio
async def test_cancel_reaches_turn_waiting_for_lock(parts):
    gate = asyncio.Event()
    backend = FakeBackend(fragments=[delta("one"), delta(" two")], gate=gate)
    controller = _controller(parts, backend)
    ctx = SessionContext()
    seen = []

    first = asyncio.create_task(controller.send_message(ctx, "first", seen.append))
    while not seen:
        await asyncio.sleep(0)
    second = asyncio.create_task(controller.send_message(ctx, "second"))
    await asyncio.sleep(0)
    controller.cancel()
    results = await asyncio.wait_for(asyncio.gather(first, second), timeout=2)

    assert all(r.cancelled for r in results)
    assert len(backend.requests) == 1


@pytest.mark.asyncio
async def test_cancel_without_turn_is_harmless(parts):
    controller = _controller(parts, FakeBackend())
    controller.cancel()
    result = await controller.send_message(SessionContext(), "hello")
    assert result.ok


@pytest.mark.asyncio
async def test_delete_message_truncates_current(parts):
    controller = _controller(parts, FakeBackend())
    ctx = SessionContext()
    await controller.send_message(ctx, "one")
    await controller.send_message(ctx, "two")

    conv = await controller.delete_message(ctx, 2)
    assert [m.content for m in conv.messages] == ["one", "Hi there"]


@pytest.mark.asyncio
async def test_new_conversation_then_list(parts):
    controller = _controller(parts, FakeBackend())
    ctx = SessionContext()
    await controller.send_message(ctx, "hello")
    first = ctx.current_conversation_id

    new = await controller.new_conversation(ctx)
    summaries = await controller.list_conversations(ctx)

    assert ctx.current_conversation_id == new.id != first
    assert [s.id for s in summaries] == [first]


@pytest.mark.asyncio
async def test_delete_conversation_returns_refreshed_list(parts):
    controller = _controller(parts, FakeBackend())
    ctx = SessionContext()
    await controller.send_message(ctx, "keep")
    keep = ctx.current_conversation_id
    await controller.new_conversation(ctx)
    await controller.send_message(ctx, "drop")
    drop = ctx.current_conversation_id

    summaries = await controller.delete_conversation(ctx, drop)
    assert [s.id for s in summaries] == [keep]
    assert ctx.current_conversation_id == keep


@pytest.mark.asyncio
async def test_backup_and_restore(parts, tmp_path):
    controller = _controller(parts, FakeBackend())
    controller.set_system_prompt("original prompt")
    ctx = SessionContext()
    await controller.send_message(ctx, "remember me")
    doc = await controller.backup()

    assert doc["systemPrompt"] == "original prompt"
    assert len(doc["conversations"]) == 1

    # diverge, then restore
    await controller.new_conversation(ctx)
    await controller.send_message(ctx, "forget me")
    controller.set_system_prompt("changed")

    summaries = await controller.restore(ctx, doc)

    assert controller.get_system_prompt() == "original prompt"
    assert [s.preview for s in summaries] == ["remember me"]
    assert ctx.current_conversation_id == doc["conversations"][0]["id"]
    assert await controller.backup() == doc


@pytest.mark.asyncio
async def test_restore_empty_prompt_clears_it(parts):
    controller = _controller(parts, FakeBackend())
    controller.set_system_prompt("something")
    await controller.restore(SessionContext(), {"conversations": [], "systemPrompt": ""})
    assert controller.get_system_prompt() == ""


@pytest.mark.asyncio
async def test_restore_without_prompt_keeps_current(parts):
    controller = _controller(parts, FakeBackend())
    controller.set_system_prompt("keep me")
    await controller.restore(SessionContext(), {"conversations": []})
    assert controller.get_system_prompt() == "keep me"


@pytest.mark.asyncio
async def test_restore_invalid_document_leaves_store_alone(parts):
    from chatvault.backup import BackupFormatError

    controller = _controller(parts, FakeBackend())
    ctx = SessionContext()
    await controller.send_message(ctx, "precious")

    with pytest.raises(BackupFormatError):
        await controller.restore(ctx, {"conversations": [{"id": "bad"}]})

    store, _, _ = parts
    assert await store.count() == 1
