"""
Raz - Client session tests.

Created by orpheus497

Tests for the client send path, the cheap-path/resync receive protocol and
the end-to-end pair room scenario.
"""

import asyncio

import pytest

from raz.constants import DECRYPTION_FAILED_PLACEHOLDER
from raz.crypto import generate_secret
from raz.errors import NotAMember, RoomNotFound, ValidationError
from raz.session import RoomClientSession


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def count_resyncs(session: RoomClientSession) -> list:
    calls = []
    original = session.resync

    async def counting():
        calls.append(1)
        await original()

    session.resync = counting
    return calls


@pytest.fixture
def secret() -> str:
    return generate_secret()


@pytest.fixture
def pair_room(service, secret):
    """Create a pair room and admit two client sessions to it."""

    async def factory():
        created = await service.create_room("pair")
        room_id = created["room_id"]
        alice_join = await service.join_room(room_id)
        bob_join = await service.join_room(room_id)
        alice = RoomClientSession(service, room_id, alice_join.token, secret, "alice")
        bob = RoomClientSession(service, room_id, bob_join.token, secret, "bob")
        return room_id, alice, bob

    return factory


@pytest.mark.asyncio
async def test_pair_room_scenario(service, pair_room):
    room_id, alice, bob = await pair_room()

    third = await service.join_room(room_id)
    assert third.to_dict() == {"admitted": False, "reason": "room-full"}

    await alice.start()
    sent = [await alice.send(text) for text in ("one", "two", "three")]
    assert [message.step for message in sent] == [0, 1, 2]

    await bob.start()
    timeline = bob.timeline()
    assert [text for _, text, _ in timeline] == ["one", "two", "three"]
    assert {name for _, _, name in timeline} == {"alice"}
    assert bob.participant_count == 2

    await alice.destroy()

    with pytest.raises(RoomNotFound):
        await service.list_messages(room_id, bob.membership_token)
    with pytest.raises(RoomNotFound):
        await bob.resync()
    assert bob.destroyed is True


@pytest.mark.asyncio
async def test_server_only_sees_ciphertext(service, pair_room):
    room_id, alice, _ = await pair_room()

    await alice.send("a very secret plan")

    stored = await service.list_messages(room_id, alice.membership_token)
    assert "secret plan" not in stored[0].ciphertext
    assert stored[0].sender_token == alice.sender_token


@pytest.mark.asyncio
async def test_cheap_path_for_next_expected_step(pair_room):
    _, alice, bob = await pair_room()
    await alice.send("first")
    await bob.start()
    resyncs = count_resyncs(bob)

    second = await alice.send("second")
    await bob.handle_message(second)

    assert resyncs == []
    assert bob.ratchets.expected_step(alice.sender_token) == 2
    assert [text for _, text, _ in bob.timeline()] == ["first", "second"]


@pytest.mark.asyncio
async def test_unknown_sender_triggers_resync(pair_room):
    _, alice, bob = await pair_room()
    resyncs = count_resyncs(bob)

    message = await alice.send("hello")
    await bob.handle_message(message)

    assert resyncs == [1]
    assert bob.timeline()[0][1] == "hello"


@pytest.mark.asyncio
async def test_out_of_order_delivery_resyncs_once(pair_room):
    _, alice, bob = await pair_room()
    await bob.start()
    messages = [await alice.send(text) for text in ("one", "two", "three")]
    resyncs = count_resyncs(bob)

    await bob.handle_message(messages[2])
    await bob.handle_message(messages[0])
    await bob.handle_message(messages[1])

    assert resyncs == [1]
    assert [text for _, text, _ in bob.timeline()] == ["one", "two", "three"]
    assert bob.ratchets.expected_step(alice.sender_token) == 3


@pytest.mark.asyncio
async def test_duplicate_delivery_is_ignored(pair_room):
    _, alice, bob = await pair_room()
    message = await alice.send("once")
    await bob.start()
    resyncs = count_resyncs(bob)

    await bob.handle_message(message)

    assert resyncs == []
    assert len(bob.timeline()) == 1


@pytest.mark.asyncio
async def test_own_messages_decrypt_for_sender(pair_room):
    _, alice, _ = await pair_room()

    await alice.send("note to self")
    await alice.resync()

    assert alice.timeline()[0][1:] == ("note to self", "alice")


@pytest.mark.asyncio
async def test_new_session_continues_sender_chain(service, pair_room, secret):
    """A second session under the same name resumes at the next step."""
    room_id, alice, bob = await pair_room()
    await alice.send("one")
    await alice.send("two")

    resumed = RoomClientSession(service, room_id, alice.membership_token, secret, "alice")
    third = await resumed.send("three")

    assert third.step == 2
    await bob.start()
    assert [text for _, text, _ in bob.timeline()] == ["one", "two", "three"]


class GatedApi:
    """Service wrapper that holds list_messages open after taking its snapshot."""

    def __init__(self, service):
        self._service = service
        self.snapshot_taken = asyncio.Event()
        self.release = asyncio.Event()
        self.release.set()

    def __getattr__(self, name):
        return getattr(self._service, name)

    async def list_messages(self, room_id, membership_token):
        messages = await self._service.list_messages(room_id, membership_token)
        self.snapshot_taken.set()
        await self.release.wait()
        return messages


@pytest.mark.asyncio
async def test_send_during_resync_keeps_chain_position(service, secret):
    created = await service.create_room("pair")
    room_id = created["room_id"]
    alice_join = await service.join_room(room_id)
    bob_join = await service.join_room(room_id)
    api = GatedApi(service)
    alice = RoomClientSession(api, room_id, alice_join.token, secret, "alice")
    bob = RoomClientSession(service, room_id, bob_join.token, secret, "bob")

    await alice.send("zero")

    api.release.clear()
    api.snapshot_taken.clear()
    resync = asyncio.create_task(alice.resync())
    await api.snapshot_taken.wait()

    one = await alice.send("one")
    assert one.step == 1

    api.release.set()
    await resync

    assert alice.ratchets.expected_step(alice.sender_token) == 2
    assert [text for _, text, _ in alice.timeline()] == ["zero", "one"]

    two = await alice.send("two")
    assert two.step == 2

    await bob.start()
    assert [text for _, text, _ in bob.timeline()] == ["zero", "one", "two"]
    assert DECRYPTION_FAILED_PLACEHOLDER not in [text for _, text, _ in bob.timeline()]


@pytest.mark.asyncio
async def test_wrong_secret_shows_placeholder_only_for_that_sender(service, secret):
    created = await service.create_room("group", passcode="hunter2")
    room_id = created["room_id"]
    tokens = [(await service.join_room(room_id, passcode="hunter2")).token for _ in range(3)]

    alice = RoomClientSession(service, room_id, tokens[0], secret, "alice")
    mallory = RoomClientSession(service, room_id, tokens[1], generate_secret(), "mallory")
    bob = RoomClientSession(service, room_id, tokens[2], secret, "bob")

    await alice.send("hello")
    await mallory.send("you cannot read me")
    await alice.send("still readable")
    await bob.start()

    texts = [text for _, text, _ in bob.timeline()]
    assert texts == ["hello", DECRYPTION_FAILED_PLACEHOLDER, "still readable"]


@pytest.mark.asyncio
async def test_listen_until_destroyed(service, pair_room):
    room_id, alice, bob = await pair_room()
    await bob.start()
    subscription = await service.subscribe(room_id, bob.membership_token)
    listener = asyncio.create_task(bob.listen(subscription))

    await alice.send("over the wire")
    await wait_until(lambda: len(bob.timeline()) == 1)
    assert bob.timeline()[0][1] == "over the wire"

    await alice.destroy()
    await asyncio.wait_for(listener, timeout=2)

    assert bob.destroyed is True
    assert len(bob.ratchets) == 0
    assert subscription.closed is True
    with pytest.raises(RoomNotFound):
        await bob.send("too late")


@pytest.mark.asyncio
async def test_listen_tracks_participant_count(service):
    created = await service.create_room("group", passcode="hunter2")
    room_id = created["room_id"]
    first = await service.join_room(room_id, passcode="hunter2")
    session = RoomClientSession(service, room_id, first.token, generate_secret(), "alice")
    subscription = await service.subscribe(room_id, first.token)
    listener = asyncio.create_task(session.listen(subscription))

    await service.join_room(room_id, passcode="hunter2")
    await wait_until(lambda: session.participant_count == 2)

    subscription.close()
    await asyncio.wait_for(listener, timeout=2)


@pytest.mark.asyncio
async def test_non_member_cannot_read(service, pair_room):
    room_id, _, _ = await pair_room()

    with pytest.raises(NotAMember):
        await service.list_messages(room_id, "not-a-member-token")


@pytest.mark.asyncio
@pytest.mark.parametrize("room_id", ["", "short", "../meta:room", "room id with spaces", None, 42])
async def test_malformed_room_id_is_rejected(service, room_id):
    with pytest.raises(ValidationError):
        await service.join_room(room_id)
    with pytest.raises(ValidationError):
        await service.list_messages(room_id, "member-token")
