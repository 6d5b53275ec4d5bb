"""
Raz - Client-side room session.

Created by orpheus497
Version: 1.0.0

Everything a participant does with a room's plaintext happens here, on the
participant's own side of the connection:

- Sending: messages are encrypted at the sender's current ratchet step and
  the chain only advances after the server has accepted the message
- Receiving: a message that arrives at exactly the expected step of a known
  sender is decrypted directly and the chain advanced by one (cheap path);
  anything else triggers a full resync from the message log
- Resync: all messages are fetched, grouped by sender and replayed from
  step 0, rebuilding the ratchet table, plaintexts and display names

The session talks to anything exposing the RoomService call signatures,
either a RoomService in-process or a RazClient over the network.
"""

import asyncio
import json
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

from .crypto import derive_sender_root_key
from .constants import DECRYPTION_FAILED_PLACEHOLDER
from .errors import AuthenticationFailed, InvalidKeyMaterial, RatchetDesync, RoomNotFound
from .identity import SenderIdentity
from .message import Message
from .ratchet import (
    RatchetState,
    SenderRatchetTable,
    encrypt_with_ratchet,
    parse_payload,
    replay_sender,
)
from .realtime import RealtimeEnvelope, RealtimeEvent, Subscription

logger = logging.getLogger(__name__)


class RoomClientSession:
    """
    A participant's view of one room.

    Args:
        api: RoomService or RazClient
        room_id: Room identifier
        membership_token: Token returned by a successful join
        secret: Shared room secret (never sent to the server)
        display_name: Name shown to other participants
    """

    def __init__(
        self,
        api: Any,
        room_id: str,
        membership_token: str,
        secret: str,
        display_name: str,
    ):
        self.api = api
        self.room_id = room_id
        self.membership_token = membership_token
        self.identity = SenderIdentity(secret, display_name)
        self.ratchets = SenderRatchetTable()
        self.participant_count: Optional[int] = None
        self.destroyed = False

        self._secret: Optional[str] = secret
        self._messages: Dict[str, Message] = {}
        self._plaintexts: Dict[str, str] = {}
        self._sender_names: Dict[str, str] = {}
        self._root_keys: Dict[str, bytes] = {}
        self._send_lock = asyncio.Lock()

    @property
    def display_name(self) -> str:
        return self.identity.display_name

    @property
    def sender_token(self) -> str:
        return self.identity.token

    def _root_key(self, sender_token: str) -> bytes:
        if self._secret is None:
            raise RoomNotFound("Room was destroyed", {"room_id": self.room_id})
        key = self._root_keys.get(sender_token)
        if key is None:
            key = derive_sender_root_key(self._secret, sender_token)
            self._root_keys[sender_token] = key
        return key

    def _record(self, message: Message, plaintext: str) -> None:
        self._messages[message.id] = message
        self._plaintexts[message.id] = plaintext
        sender_name, _ = parse_payload(plaintext)
        if sender_name:
            self._sender_names[message.sender_token] = sender_name

    async def start(self) -> None:
        """Load the room's history and current participant count."""
        await self.resync()
        self.participant_count = await self.api.get_participant_count(
            self.room_id, self.membership_token
        )

    async def send(self, text: str) -> Message:
        """
        Encrypt and post a message.

        Sends are serialized so message n+1 is never encrypted before the
        chain key following message n exists.

        Returns:
            The stored message

        Raises:
            RoomNotFound: If the room has been destroyed
        """
        if self.destroyed:
            raise RoomNotFound("Room was destroyed", {"room_id": self.room_id})

        async with self._send_lock:
            token = self.sender_token
            if token not in self.ratchets:
                # Pick up any earlier messages sent under this name
                await self.resync()
            state = self.ratchets.ensure(token, self._root_key(token))
            step = state.step

            envelope = json.dumps(
                {
                    "sender": self.display_name,
                    "text": text,
                    "clientTimestamp": int(time.time() * 1000),
                }
            )
            payload, next_key = encrypt_with_ratchet(envelope, state.key, step)

            message = await self.api.post_message(
                self.room_id,
                self.membership_token,
                token,
                payload.ciphertext,
                payload.iv,
                payload.step,
            )

            # An echo of this message may already have advanced the chain
            self.ratchets.set(token, RatchetState(key=next_key, step=step + 1))
            self._record(message, envelope)

            logger.debug(f"Sent message {message.id} at step {step}")
            return message

    async def handle_message(self, message: Message) -> None:
        """Process a message announced by the realtime channel."""
        if self.destroyed or message.id in self._messages:
            return

        state = self.ratchets.get(message.sender_token)
        if state is None:
            logger.debug(f"Message {message.id} from an unknown sender, resyncing")
            await self.resync()
            return

        try:
            plaintext = state.decrypt_next(message)
        except RatchetDesync as e:
            logger.debug(f"Message {message.id} out of sequence ({e.message}), resyncing")
            await self.resync()
            return
        except (AuthenticationFailed, InvalidKeyMaterial):
            logger.debug(f"Cheap-path decrypt failed for {message.id}, resyncing")
            await self.resync()
            return

        self._record(message, plaintext)

    async def resync(self) -> None:
        """
        Rebuild all ratchet state from the room's full message log.

        Raises:
            RoomNotFound: If the room no longer exists (the session is marked
                destroyed first)
        """
        try:
            messages: List[Message] = await self.api.list_messages(
                self.room_id, self.membership_token
            )
        except RoomNotFound:
            self._mark_destroyed()
            raise

        by_sender: Dict[str, List[Message]] = {}
        for message in messages:
            by_sender.setdefault(message.sender_token, []).append(message)

        table = SenderRatchetTable()
        plaintexts: Dict[str, str] = {}
        names: Dict[str, str] = {}
        failures = 0
        for sender_token, sender_messages in by_sender.items():
            result = replay_sender(self._root_key(sender_token), sender_messages)
            table.set(sender_token, result.state)
            plaintexts.update(result.plaintexts)
            failures += len(result.failed)
            if result.sender_name:
                names[sender_token] = result.sender_name

        # Sends and cheap-path receives that completed while the log was
        # being fetched are ahead of the snapshot; chains never move backwards
        for sender_token, live in self.ratchets.items():
            replayed = table.get(sender_token)
            if replayed is None or live.step > replayed.step:
                table.set(sender_token, live)

        known = {message.id: message for message in messages}
        for message_id, message in self._messages.items():
            if message_id not in known and message_id in self._plaintexts:
                known[message_id] = message
                plaintexts[message_id] = self._plaintexts[message_id]

        self.ratchets = table
        self._messages = known
        self._plaintexts = plaintexts
        self._sender_names = {**self._sender_names, **names}

        logger.debug(
            f"Resynced room {self.room_id}: {len(messages)} messages, "
            f"{len(by_sender)} senders, {failures} undecryptable"
        )

    async def handle_event(self, envelope: RealtimeEnvelope) -> None:
        """Dispatch one realtime event."""
        if envelope.event == RealtimeEvent.MESSAGE_APPENDED:
            await self.handle_message(Message.from_dict(envelope.payload))
        elif envelope.event == RealtimeEvent.ROOM_DESTROYED:
            logger.info(f"Room {self.room_id} was destroyed")
            self._mark_destroyed()
        elif envelope.event == RealtimeEvent.PARTICIPANT_COUNT_CHANGED:
            self.participant_count = envelope.payload.get("count")

    async def listen(self, subscription: Subscription) -> None:
        """Consume events until the room is destroyed or the subscription closes."""
        try:
            async for envelope in subscription:
                try:
                    await self.handle_event(envelope)
                except RoomNotFound:
                    self._mark_destroyed()
                if self.destroyed:
                    break
        finally:
            subscription.close()

    async def destroy(self) -> None:
        """Destroy the room and drop local key material."""
        await self.api.destroy_room(self.room_id, self.membership_token)
        self._mark_destroyed()

    def _mark_destroyed(self) -> None:
        self.destroyed = True
        self._secret = None
        self._root_keys.clear()
        self.ratchets.clear()

    def timeline(self) -> List[Tuple[Message, str, str]]:
        """
        Messages in storage order with their text and sender name.

        Undecryptable messages carry the decryption-failed placeholder.
        """
        entries = []
        for message in self._messages.values():
            plaintext = self._plaintexts.get(message.id, DECRYPTION_FAILED_PLACEHOLDER)
            if plaintext == DECRYPTION_FAILED_PLACEHOLDER:
                text = plaintext
            else:
                _, text = parse_payload(plaintext)
            entries.append((message, text, self.sender_name(message.sender_token)))
        return entries

    def sender_name(self, sender_token: str) -> str:
        """Display name for a sender token, or a short pseudonym."""
        name = self._sender_names.get(sender_token)
        if name:
            return name
        if not sender_token:
            return "Unknown"
        return f"Peer {sender_token[:6]}"
