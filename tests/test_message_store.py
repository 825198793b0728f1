import pytest

from masonchat.core.errors import MessageValidationError
from masonchat.schemas.chat import MessageCreate
from masonchat.services.message_store import MessageStore


def make_message(text="Hello", sender="U1", room="U1_U2", temp_id=None, time="10:00"):
    return MessageCreate(room_id=room, sender_id=sender, text=text, time=time, temp_id=temp_id)


@pytest.mark.asyncio
async def test_first_contact_history_is_empty_then_has_message(db):
    store = MessageStore()

    assert await store.history(db, "U1_U2") == []

    stored = await store.append(db, make_message("Hello"))
    assert stored.id is not None
    assert stored.created_at is not None
    assert stored.read is False

    history = await store.history(db, "U1_U2")
    assert len(history) == 1
    assert history[0].sender_id == "U1"
    assert history[0].text == "Hello"


@pytest.mark.asyncio
@pytest.mark.parametrize("field", ["room_id", "sender_id", "text"])
async def test_append_rejects_missing_required_field(db, field):
    store = MessageStore()
    msg = make_message()
    setattr(msg, field, None)

    with pytest.raises(MessageValidationError) as exc_info:
        await store.append(db, msg)
    assert exc_info.value.field == field
    assert await store.history(db, "U1_U2") == []


@pytest.mark.asyncio
async def test_append_rejects_blank_text(db):
    store = MessageStore()
    with pytest.raises(MessageValidationError):
        await store.append(db, make_message("   "))


@pytest.mark.asyncio
async def test_append_fills_time_when_missing(db):
    store = MessageStore()
    stored = await store.append(db, make_message(time=None))
    assert stored.time == stored.created_at.strftime("%H:%M")


@pytest.mark.asyncio
async def test_history_is_ordered_and_stable(db):
    store = MessageStore()
    for i in range(50):
        await store.append(db, make_message(f"m{i}", sender="U1" if i % 2 else "U2"))

    first = await store.history(db, "U1_U2")
    second = await store.history(db, "U1_U2")

    assert [m.text for m in first] == [f"m{i}" for i in range(50)]
    assert [m.id for m in first] == [m.id for m in second]
    created = [m.created_at for m in first]
    assert created == sorted(created)


@pytest.mark.asyncio
async def test_history_is_scoped_to_room(db):
    store = MessageStore()
    await store.append(db, make_message("in room", room="U1_U2"))
    await store.append(db, make_message("elsewhere", room="U1_U3"))

    assert [m.text for m in await store.history(db, "U1_U2")] == ["in room"]


@pytest.mark.asyncio
async def test_append_with_same_temp_id_is_not_duplicated(db):
    store = MessageStore()
    first = await store.append(db, make_message("Hi", temp_id="T1"))
    again = await store.append(db, make_message("Hi", temp_id="T1"))

    assert again.id == first.id
    assert len(await store.history(db, "U1_U2")) == 1


@pytest.mark.asyncio
async def test_same_temp_id_from_different_senders_is_kept(db):
    store = MessageStore()
    await store.append(db, make_message("from U1", sender="U1", temp_id="T1"))
    await store.append(db, make_message("from U2", sender="U2", temp_id="T1"))

    assert len(await store.history(db, "U1_U2")) == 2


@pytest.mark.asyncio
async def test_mark_read_without_messages_does_not_fail(db):
    store = MessageStore()
    state = await store.mark_read(db, "U1_U2", "U1")
    assert state.last_read_at is None
    assert await store.unread_count(db, "U1_U2", "U1") == 0


@pytest.mark.asyncio
async def test_mark_read_is_idempotent(db):
    store = MessageStore()
    await store.append(db, make_message("one", sender="U2"))
    await store.append(db, make_message("two", sender="U2"))

    first = await store.mark_read(db, "U1_U2", "U1")
    marker = first.last_read_at
    second = await store.mark_read(db, "U1_U2", "U1")

    assert marker is not None
    assert second.last_read_at == marker
    assert await store.unread_count(db, "U1_U2", "U1") == 0


@pytest.mark.asyncio
async def test_unread_count_excludes_own_messages_and_read_ones(db):
    store = MessageStore()
    await store.append(db, make_message("from peer", sender="U2"))
    await store.append(db, make_message("mine", sender="U1"))

    assert await store.unread_count(db, "U1_U2", "U1") == 1
    assert await store.unread_count(db, "U1_U2", "U2") == 1

    await store.mark_read(db, "U1_U2", "U1")
    assert await store.unread_count(db, "U1_U2", "U1") == 0

    await store.append(db, make_message("later", sender="U2"))
    assert await store.unread_count(db, "U1_U2", "U1") == 1


@pytest.mark.asyncio
async def test_mark_read_flags_peer_messages_only(db):
    store = MessageStore()
    await store.append(db, make_message("from peer", sender="U2"))
    await store.append(db, make_message("mine", sender="U1"))

    await store.mark_read(db, "U1_U2", "U1")

    flags = {m.text: m.read for m in await store.history(db, "U1_U2")}
    assert flags == {"from peer": True, "mine": False}


@pytest.mark.asyncio
async def test_conversations_lists_rooms_with_unread_counts(db):
    store = MessageStore()
    await store.append(db, make_message("hi alice", sender="bob", room="alice_bob"))
    await store.append(db, make_message("hi again", sender="bob", room="alice_bob"))
    await store.append(db, make_message("from carol", sender="carol", room="alice_carol"))
    await store.append(db, make_message("not mine", sender="bob", room="bob_dave"))

    convs = await store.conversations(db, "alice")

    assert [c.room_id for c in convs] == ["alice_carol", "alice_bob"]
    by_room = {c.room_id: c for c in convs}
    assert by_room["alice_bob"].peer_id == "bob"
    assert by_room["alice_bob"].unread_count == 2
    assert by_room["alice_bob"].last_message.text == "hi again"
    assert by_room["alice_carol"].unread_count == 1


@pytest.mark.asyncio
async def test_conversations_does_not_match_partial_identities(db):
    store = MessageStore()
    await store.append(db, make_message("x", sender="al", room="al_bob"))

    assert await store.conversations(db, "a") == []


@pytest.mark.asyncio
async def test_empty_temp_id_is_treated_as_missing(db):
    store = MessageStore()
    first = await store.append(db, make_message("one", temp_id=""))
    second = await store.append(db, make_message("two", temp_id=""))

    assert first.id != second.id
    assert first.temp_id is None
    assert [m.text for m in await store.history(db, "U1_U2")] == ["one", "two"]


@pytest.mark.asyncio
async def test_unread_total_sums_rooms_and_respects_read_markers(db):
    store = MessageStore()
    await store.append(db, make_message("hi alice", sender="bob", room="alice_bob"))
    await store.append(db, make_message("again", sender="bob", room="alice_bob"))
    await store.append(db, make_message("from carol", sender="carol", room="alice_carol"))
    await store.append(db, make_message("mine", sender="alice", room="alice_carol"))
    await store.append(db, make_message("elsewhere", sender="bob", room="bob_dave"))

    assert await store.unread_total(db, "alice") == 3

    await store.mark_read(db, "alice_bob", "alice")
    assert await store.unread_total(db, "alice") == 1

    await store.append(db, make_message("later", sender="bob", room="alice_bob"))
    assert await store.unread_total(db, "alice") == 2
    assert await store.unread_total(db, "nobody") == 0
