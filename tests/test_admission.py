"""
Raz - Admission tests.

Created by orpheus497

Tests for join decisions, capacity, passcode gating, ownership and the
documented admission race.
"""

import asyncio

import pytest

from raz.admission import AdmissionController, AdmissionDecision, AdmissionOutcome
from raz.realtime import RealtimeEvent
from raz.room import RoomMode, RoomSession


@pytest.fixture
def controller(store, fanout, policy, hasher) -> AdmissionController:
    return AdmissionController(store, fanout, policy, hasher)


@pytest.fixture
def create_room(store, fanout, policy, hasher, clock):
    async def factory(mode=RoomMode.PAIR, passcode=None, privileged_secret=None, room_id="room-1"):
        session = RoomSession(room_id, store, fanout, policy, hasher, clock=clock)
        await session.create(mode, passcode, privileged_secret)
        return room_id

    return factory


@pytest.mark.asyncio
async def test_first_joiner_becomes_owner(controller, create_room, store):
    room_id = await create_room()

    decision = await controller.evaluate_join(room_id)

    assert decision.outcome == AdmissionOutcome.ADMIT_NEW
    assert decision.token
    meta = await store.hgetall("meta:room-1")
    assert meta["connected"] == [decision.token]
    assert meta["ownerToken"] == decision.token


@pytest.mark.asyncio
async def test_existing_member_readmitted_without_change(controller, create_room, store):
    room_id = await create_room()
    first = await controller.evaluate_join(room_id)
    second = await controller.evaluate_join(room_id)

    again = await controller.evaluate_join(room_id, existing_token=first.token)

    assert again.outcome == AdmissionOutcome.ADMIT_EXISTING
    assert again.token == first.token
    meta = await store.hgetall("meta:room-1")
    assert meta["connected"] == [first.token, second.token]
    assert meta["ownerToken"] == first.token


@pytest.mark.asyncio
async def test_pair_room_admits_two(controller, create_room):
    room_id = await create_room()

    first = await controller.evaluate_join(room_id)
    second = await controller.evaluate_join(room_id)
    third = await controller.evaluate_join(room_id)

    assert first.admitted and second.admitted
    assert third.outcome == AdmissionOutcome.REJECT
    assert third.to_dict() == {"admitted": False, "reason": "room-full"}


@pytest.mark.asyncio
async def test_group_room_admits_twelve(controller, create_room):
    room_id = await create_room(RoomMode.GROUP, passcode="hunter2")

    decisions = [await controller.evaluate_join(room_id, passcode="hunter2") for _ in range(13)]

    assert all(decision.admitted for decision in decisions[:12])
    assert decisions[12].reason == "room-full"


@pytest.mark.asyncio
async def test_privileged_room_has_no_capacity(controller, create_room, master_passcode, store):
    room_id = await create_room(RoomMode.GROUP, passcode=master_passcode)

    decisions = [
        await controller.evaluate_join(room_id, passcode=master_passcode) for _ in range(13)
    ]

    assert all(decision.admitted for decision in decisions)
    meta = await store.hgetall("meta:room-1")
    assert len(meta["connected"]) == 13


@pytest.mark.asyncio
async def test_group_room_requires_passcode(controller, create_room):
    room_id = await create_room(RoomMode.GROUP, passcode="hunter2")

    missing = await controller.evaluate_join(room_id)
    wrong = await controller.evaluate_join(room_id, passcode="hunter3")
    right = await controller.evaluate_join(room_id, passcode="hunter2")

    assert missing.reason == "passcode-required"
    assert wrong.reason == "passcode-required"
    assert right.outcome == AdmissionOutcome.ADMIT_NEW


@pytest.mark.asyncio
async def test_pair_room_ignores_passcode(controller, create_room):
    room_id = await create_room()

    decision = await controller.evaluate_join(room_id, passcode="anything")

    assert decision.admitted


@pytest.mark.asyncio
async def test_missing_room_rejected(controller):
    decision = await controller.evaluate_join("no-such-room")

    assert decision.to_dict() == {"admitted": False, "reason": "room-not-found"}


@pytest.mark.asyncio
async def test_expired_room_rejected(controller, create_room, clock):
    room_id = await create_room()
    clock.advance(601)

    decision = await controller.evaluate_join(room_id)

    assert decision.reason == "room-not-found"


@pytest.mark.asyncio
async def test_join_emits_participant_count(controller, create_room, fanout):
    room_id = await create_room()
    subscription = fanout.subscribe(room_id)

    await controller.evaluate_join(room_id)
    await controller.evaluate_join(room_id)

    first = await subscription.get(timeout=1)
    second = await subscription.get(timeout=1)
    assert first.event == RealtimeEvent.PARTICIPANT_COUNT_CHANGED
    assert [first.payload["count"], second.payload["count"]] == [1, 2]


@pytest.mark.asyncio
async def test_join_succeeds_when_realtime_is_down(controller, create_room, fanout):
    room_id = await create_room()
    fanout.available = False

    decision = await controller.evaluate_join(room_id)

    assert decision.admitted


@pytest.mark.asyncio
async def test_concurrent_joins_race_past_capacity(controller, create_room, store):
    """
    Joins are read-then-write without a transaction.

    Three joins racing for a two-seat room are all admitted, and because each
    writes back the list it read, membership updates are lost.
    """
    room_id = await create_room()

    decisions = await asyncio.gather(*(controller.evaluate_join(room_id) for _ in range(3)))

    assert all(decision.admitted for decision in decisions)
    tokens = {decision.token for decision in decisions}
    assert len(tokens) == 3
    meta = await store.hgetall("meta:room-1")
    assert len(meta["connected"]) < len(tokens)


def test_decision_serialization():
    admitted = AdmissionDecision(AdmissionOutcome.ADMIT_NEW, token="tok", room_id="room-1")

    restored = AdmissionDecision.from_dict(admitted.to_dict())

    assert restored.outcome == AdmissionOutcome.ADMIT_NEW
    assert restored.token == "tok"
    assert restored.admitted is True
