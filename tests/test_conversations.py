"""
Tests for the conversation service: appends, truncation, listing/pruning
and bulk export/import.
"""

import asyncio

import pytest

from chatvault.conversations import (
    EMPTY_PREVIEW,
    ConversationService,
    SessionContext,
    make_preview,
)
from chatvault.errors import NotFound
from chatvault.storage.models import Conversation, Message
from chatvault.storage.sqlite_store import SQLiteStore


@pytest.fixture
def store(tmp_path):
    return SQLiteStore(str(tmp_path / "test.db"))


@pytest.fixture
def service(store):
    return ConversationService(store, preview_chars=10)


def _msgs(n):
    return [Message("user" if i % 2 == 0 else "assistant", f"m{i}") for i in range(n)]


async def _stored_ids(store):
    return [c.id async for c in store.list_ordered_by_creation_desc()]


# ---------------------------------------------------------------------------
# Previews
# ---------------------------------------------------------------------------

def test_preview_short_message_untouched():
    conv = Conversation(messages=[Message("user", "hello")])
    assert make_preview(conv, 10) == "hello"


def test_preview_truncates_with_ellipsis():
    conv = Conversation(messages=[Message("user", "abcdefghijklmnop")])
    assert make_preview(conv, 10) == "abcdefghij..."


def test_preview_uses_first_user_message():
    conv = Conversation(messages=[Message("system", "sys"), Message("user", "question"), Message("user", "later")])
    assert make_preview(conv, 100) == "question"


def test_preview_without_user_message():
    conv = Conversation(messages=[Message("assistant", "hi")])
    assert make_preview(conv) == EMPTY_PREVIEW


# ---------------------------------------------------------------------------
# Append / replace / truncate
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_serial_appends_keep_call_order(service, store):
    conv_id = await store.create()
    for msg in _msgs(4):
        await service.append_message(conv_id, msg)

    conv = await service.get(conv_id)
    assert [m.content for m in conv.messages] == ["m0", "m1", "m2", "m3"]


@pytest.mark.asyncio
async def test_append_returns_updated_conversation(service, store):
    conv_id = await store.create()
    conv = await service.append_message(conv_id, Message("user", "hi"))
    assert conv.id == conv_id
    assert [m.content for m in conv.messages] == ["hi"]


@pytest.mark.asyncio
async def test_concurrent_appends_are_serialized(service, store):
    """Overlapping appends to one id both land instead of one overwriting the other."""
    conv_id = await store.create()
    await asyncio.gather(*(
        service.append_message(conv_id, Message("user", f"msg{i}")) for i in range(5)
    ))
    conv = await service.get(conv_id)
    assert sorted(m.content for m in conv.messages) == [f"msg{i}" for i in range(5)]


@pytest.mark.asyncio
async def test_append_to_missing_conversation_raises(service):
    with pytest.raises(NotFound):
        await service.append_message(404, Message("user", "hello?"))


@pytest.mark.asyncio
async def test_replace_messages(service, store):
    conv_id = await store.create(Conversation(messages=_msgs(3)))
    conv = await service.replace_messages(conv_id, [Message("user", "only")])
    assert [m.content for m in conv.messages] == ["only"]


@pytest.mark.asyncio
async def test_truncate_from_drops_selected_and_after(service, store):
    conv_id = await store.create(Conversation(messages=_msgs(6)))
    conv = await service.truncate_from(conv_id, 2)
    assert [m.content for m in conv.messages] == ["m0", "m1"]


@pytest.mark.asyncio
async def test_truncate_from_zero_empties(service, store):
    conv_id = await store.create(Conversation(messages=_msgs(3)))
    conv = await service.truncate_from(conv_id, 0)
    assert conv.messages == []


@pytest.mark.asyncio
@pytest.mark.parametrize("index", [-1, 3, 10])
async def test_truncate_out_of_range(service, store, index):
    conv_id = await store.create(Conversation(messages=_msgs(3)))
    with pytest.raises(IndexError):
        await service.truncate_from(conv_id, index)


@pytest.mark.asyncio
async def test_create_conversation_becomes_current(service):
    ctx = SessionContext()
    conv = await service.create_conversation(ctx)
    assert ctx.current_conversation_id == conv.id
    assert conv.messages == []


@pytest.mark.asyncio
async def test_delete_current_clears_selection(service, store):
    conv_id = await store.create(Conversation(messages=_msgs(1)))
    ctx = SessionContext(current_conversation_id=conv_id)
    await service.delete_conversation(ctx, conv_id)
    assert ctx.current_conversation_id is None
    with pytest.raises(NotFound):
        await service.get(conv_id)


# ---------------------------------------------------------------------------
# list_for_display
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_fresh_store_gets_one_empty_current(service, store):
    ctx = SessionContext()
    summaries = await service.list_for_display(ctx)

    assert summaries == []
    ids = await _stored_ids(store)
    assert len(ids) == 1
    assert ctx.current_conversation_id == ids[0]
    assert (await store.get(ids[0])).messages == []


@pytest.mark.asyncio
async def test_listing_prunes_empty_conversations(service, store):
    keep_old = await store.create(Conversation(created_at=1000, messages=_msgs(2)))
    await store.create(Conversation(created_at=2000))
    keep_new = await store.create(Conversation(created_at=3000, messages=_msgs(1)))
    await store.create(Conversation(created_at=4000))

    ctx = SessionContext()
    summaries = await service.list_for_display(ctx)

    assert [s.id for s in summaries] == [keep_new, keep_old]
    assert await _stored_ids(store) == [keep_new, keep_old]
    for conv_id in await _stored_ids(store):
        assert (await store.get(conv_id)).messages


@pytest.mark.asyncio
async def test_listing_selects_newest_non_empty(service, store):
    await store.create(Conversation(created_at=1000, messages=_msgs(1)))
    newest = await store.create(Conversation(created_at=2000, messages=_msgs(1)))
    await store.create(Conversation(created_at=3000))

    ctx = SessionContext()
    await service.list_for_display(ctx)
    assert ctx.current_conversation_id == newest


@pytest.mark.asyncio
async def test_listing_keeps_existing_selection(service, store):
    older = await store.create(Conversation(created_at=1000, messages=_msgs(1)))
    await store.create(Conversation(created_at=2000, messages=_msgs(1)))

    ctx = SessionContext(current_conversation_id=older)
    await service.list_for_display(ctx)
    assert ctx.current_conversation_id == older


@pytest.mark.asyncio
async def test_listing_spares_new_current_empty_conversation(service, store):
    """A just-created conversation survives until the user types into it or leaves it."""
    keep = await store.create(Conversation(created_at=1000, messages=_msgs(1)))
    ctx = SessionContext()
    new = await service.create_conversation(ctx)

    summaries = await service.list_for_display(ctx)
    assert [s.id for s in summaries] == [keep]
    assert ctx.current_conversation_id == new.id
    assert set(await _stored_ids(store)) == {keep, new.id}

    # abandoned: the user switched away, next listing prunes it
    ctx.current_conversation_id = keep
    await service.list_for_display(ctx)
    assert await _stored_ids(store) == [keep]


@pytest.mark.asyncio
async def test_listing_only_spares_the_newest_empty(service, store):
    old_empty = await store.create(Conversation(created_at=1000))
    await store.create(Conversation(created_at=2000, messages=_msgs(1)))

    ctx = SessionContext(current_conversation_id=old_empty)
    await service.list_for_display(ctx)
    with pytest.raises(NotFound):
        await store.get(old_empty)
    assert ctx.current_conversation_id != old_empty


@pytest.mark.asyncio
async def test_listing_all_empty_recreates_one(service, store):
    for ts in (1000, 2000, 3000):
        await store.create(Conversation(created_at=ts))

    ctx = SessionContext()
    await service.list_for_display(ctx)
    ids = await _stored_ids(store)
    assert len(ids) == 1
    assert ctx.current_conversation_id == ids[0]


@pytest.mark.asyncio
async def test_listing_summaries_carry_preview(service, store):
    await store.create(Conversation(messages=[Message("user", "a rather long first question")]))
    ctx = SessionContext()
    summaries = await service.list_for_display(ctx)
    assert summaries[0].preview == "a rather l..."
    assert summaries[0].message_count == 1


# ---------------------------------------------------------------------------
# Export / import
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_export_clear_import_round_trip(service, store):
    await store.create(Conversation(created_at=1000, messages=_msgs(3)))
    await store.create(Conversation(created_at=2000, messages=[Message("system", "sys")]))
    await store.create(Conversation(created_at=3000))

    exported = [c.to_dict() for c in await service.export_all()]
    await store.clear()
    await service.import_all(Conversation(
        id=c["id"],
        created_at=c["createdAt"],
        messages=[Message.from_dict(m) for m in c["messages"]],
    ) for c in exported)

    restored = [c.to_dict() for c in await service.export_all()]
    assert restored == exported


@pytest.mark.asyncio
async def test_import_replaces_existing(service, store):
    await store.create(Conversation(created_at=1, messages=_msgs(1)))
    count = await service.import_all([Conversation(id=10, created_at=5, messages=_msgs(2))])
    assert count == 1
    assert await _stored_ids(store) == [10]


@pytest.mark.asyncio
async def test_export_is_oldest_first(service, store):
    for ts in (3000, 1000, 2000):
        await store.create(Conversation(created_at=ts, messages=_msgs(1)))
    assert [c.created_at for c in await service.export_all()] == [1000, 2000, 3000]
