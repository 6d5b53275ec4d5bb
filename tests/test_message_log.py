"""
Raz - Message log tests.

Created by orpheus497

Tests for message validation, ordering, fan-out and expiry synchronization.
"""

import pytest

from raz.constants import TTL_PERSISTENT
from raz.errors import RoomNotFound, ValidationError
from raz.message import Message, MessageLog
from raz.realtime import RealtimeEvent
from raz.room import RoomMode, RoomPolicy, RoomSession, RoomState


@pytest.fixture
def log(store, fanout, policy, clock) -> MessageLog:
    return MessageLog(store, fanout, policy, clock=clock)


@pytest.fixture
def room(store, fanout, policy, hasher, clock):
    async def factory(privileged_secret=None, room_id="room-1", room_policy=None):
        session = RoomSession(room_id, store, fanout, room_policy or policy, hasher, clock=clock)
        await session.create(RoomMode.PAIR, privileged_secret=privileged_secret)
        return room_id

    return factory


def body(step=0, **overrides):
    data = {"sender_token": "sender", "ciphertext": "Y2lwaGVy", "iv": "aXYtaXYtaXYt", "step": step}
    data.update(overrides)
    return data


@pytest.mark.asyncio
async def test_append_and_list_in_order(log, room):
    room_id = await room()

    first = await log.append(room_id, **body(0))
    second = await log.append(room_id, **body(1))

    messages = await log.list(room_id)
    assert [m.id for m in messages] == [first.id, second.id]
    assert messages[0] == first
    assert messages[1].step == 1


@pytest.mark.asyncio
async def test_membership_token_never_returned(log, room, store):
    room_id = await room()

    await log.append(room_id, membership_token="member-secret", **body())

    stored = await store.lrange("messages:room-1", 0, -1)
    assert stored[0]["token"] == "member-secret"
    listed = await log.list(room_id)
    assert "member-secret" not in str(listed[0].to_dict())


@pytest.mark.asyncio
async def test_append_to_missing_room(log):
    with pytest.raises(RoomNotFound):
        await log.append("missing", **body())


@pytest.mark.asyncio
async def test_list_missing_room(log):
    with pytest.raises(RoomNotFound):
        await log.list("missing")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"sender_token": "s" * 257},
        {"ciphertext": "c" * 5001},
        {"iv": "i" * 201},
        {"step": -1},
        {"step": "3"},
        {"step": True},
        {"ciphertext": ""},
        {"sender_token": None},
    ],
)
async def test_append_validation(log, room, overrides):
    room_id = await room()

    with pytest.raises(ValidationError):
        await log.append(room_id, **body(**overrides))


@pytest.mark.asyncio
async def test_append_accepts_limits(log, room):
    room_id = await room()

    message = await log.append(
        room_id, sender_token="s" * 256, ciphertext="c" * 5000, iv="i" * 200, step=0
    )

    assert message.sender_token == "s" * 256


@pytest.mark.asyncio
async def test_append_emits_message_event(log, room, fanout):
    room_id = await room()
    subscription = fanout.subscribe(room_id)

    message = await log.append(room_id, **body())

    envelope = await subscription.get(timeout=1)
    assert envelope.event == RealtimeEvent.MESSAGE_APPENDED
    assert Message.from_dict(envelope.payload) == message


@pytest.mark.asyncio
async def test_append_survives_realtime_outage(log, room, fanout):
    room_id = await room()
    fanout.available = False

    await log.append(room_id, **body())

    assert len(await log.list(room_id)) == 1


@pytest.mark.asyncio
async def test_log_follows_room_ttl(log, room, store, clock):
    room_id = await room()
    clock.advance(200)

    await log.append(room_id, **body())

    assert await store.ttl("messages:room-1") == 400
    clock.advance(401)
    assert await store.exists("messages:room-1") is False


@pytest.mark.asyncio
async def test_log_of_privileged_room_is_permanent(log, room, store, master_passcode):
    room_id = await room(privileged_secret=master_passcode)

    await log.append(room_id, **body())

    assert await store.ttl("messages:room-1") == TTL_PERSISTENT


@pytest.mark.asyncio
async def test_lapsed_ttl_treated_as_expiry(log, room, store, fanout, clock):
    room_id = await room()
    subscription = fanout.subscribe(room_id)
    # Under half a second left reads as a TTL of zero
    clock.advance(599.7)

    message = await log.append(room_id, **body())

    assert message.room_id == room_id
    assert await store.exists("messages:room-1") is False
    assert await store.exists("meta:room-1") is False

    appended = await subscription.get(timeout=1)
    destroyed = await subscription.get(timeout=1)
    assert appended.event == RealtimeEvent.MESSAGE_APPENDED
    assert destroyed.event == RealtimeEvent.ROOM_DESTROYED
    assert destroyed.payload == {"is_destroyed": True}


@pytest.mark.asyncio
async def test_lapsed_ttl_legacy_persists_log(store, fanout, hasher, clock, room):
    legacy = RoomPolicy(legacy_persist_on_lapsed_ttl=True)
    log = MessageLog(store, fanout, legacy, clock=clock)
    room_id = await room(room_policy=legacy)
    clock.advance(599.7)

    await log.append(room_id, **body())

    assert await store.ttl("messages:room-1") == TTL_PERSISTENT
    clock.advance(1)
    # The room itself is gone but its log lingers
    assert await store.exists("meta:room-1") is False
    assert await store.exists("messages:room-1") is True


@pytest.mark.asyncio
async def test_sync_expiry_reports_state(store, fanout, policy, hasher, clock, room):
    room_id = await room()
    session = RoomSession(room_id, store, fanout, policy, hasher, clock=clock)

    assert await session.sync_expiry() == RoomState.ACTIVE_TTL
    clock.advance(599.7)
    assert await session.sync_expiry() == RoomState.DESTROYED
