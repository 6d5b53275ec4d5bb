"""
Raz - Room message log.

Created by orpheus497
Version: 1.0.0

Append-only, ordered storage of encrypted messages for a room. The server
sees only ciphertext, nonce, step and the pseudonymous sender token; it can
neither read nor reorder what it stores.

The poster's membership token is kept beside each stored message so the
server can attribute it to a member, but it is stripped before a message is
handed back to any reader.
"""

import logging
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

from .config import Config
from .constants import MAX_CIPHERTEXT_LENGTH, MAX_IV_LENGTH, MAX_SENDER_TOKEN_LENGTH, MESSAGES_KEY
from .errors import RoomNotFound, ValidationError
from .realtime import RealtimeEvent, RealtimeFanout, emit_best_effort
from .room import RoomPolicy, RoomSession
from .store import KeyValueStore

logger = logging.getLogger(__name__)


class Message:
    """An encrypted message as stored in a room's log."""

    def __init__(
        self,
        room_id: str,
        sender_token: str,
        ciphertext: str,
        iv: str,
        step: int,
        timestamp: Optional[int] = None,
        message_id: Optional[str] = None,
    ):
        self.id = message_id or str(uuid.uuid4())
        self.room_id = room_id
        self.sender_token = sender_token
        self.ciphertext = ciphertext
        self.iv = iv
        self.step = step
        self.timestamp = timestamp if timestamp is not None else int(time.time() * 1000)

    def to_dict(self) -> Dict[str, Any]:
        """Convert message to dictionary for transport."""
        return {
            "id": self.id,
            "sender_token": self.sender_token,
            "ciphertext": self.ciphertext,
            "iv": self.iv,
            "step": self.step,
            "timestamp": self.timestamp,
            "room_id": self.room_id,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Message":
        """Create message from dictionary."""
        return Message(
            room_id=data["room_id"],
            sender_token=data["sender_token"],
            ciphertext=data["ciphertext"],
            iv=data["iv"],
            step=data["step"],
            timestamp=data.get("timestamp"),
            message_id=data["id"],
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Message):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self) -> str:
        return (
            f"Message(id={self.id!r}, room_id={self.room_id!r}, "
            f"step={self.step}, timestamp={self.timestamp})"
        )


class MessageLog:
    """
    Append-only message storage per room.

    Args:
        store: Key-value store holding the log
        fanout: Realtime channel for message-appended events
        policy: Room lifecycle settings used for expiry synchronization
        max_sender_token_length: Longest accepted sender token
        max_ciphertext_length: Longest accepted base64 ciphertext
        max_iv_length: Longest accepted base64 nonce
        clock: Time source in seconds
    """

    def __init__(
        self,
        store: KeyValueStore,
        fanout: RealtimeFanout,
        policy: Optional[RoomPolicy] = None,
        max_sender_token_length: int = MAX_SENDER_TOKEN_LENGTH,
        max_ciphertext_length: int = MAX_CIPHERTEXT_LENGTH,
        max_iv_length: int = MAX_IV_LENGTH,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.fanout = fanout
        self.policy = policy or RoomPolicy()
        self.max_sender_token_length = max_sender_token_length
        self.max_ciphertext_length = max_ciphertext_length
        self.max_iv_length = max_iv_length
        self.clock = clock

    @classmethod
    def from_config(
        cls,
        store: KeyValueStore,
        fanout: RealtimeFanout,
        config: Config,
        clock: Callable[[], float] = time.time,
    ) -> "MessageLog":
        return cls(
            store,
            fanout,
            policy=RoomPolicy.from_config(config),
            max_sender_token_length=config.get(
                "limits", "max_sender_token_length", MAX_SENDER_TOKEN_LENGTH
            ),
            max_ciphertext_length=config.get(
                "limits", "max_ciphertext_length", MAX_CIPHERTEXT_LENGTH
            ),
            max_iv_length=config.get("limits", "max_iv_length", MAX_IV_LENGTH),
            clock=clock,
        )

    def _session(self, room_id: str) -> RoomSession:
        return RoomSession(room_id, self.store, self.fanout, self.policy, clock=self.clock)

    def _validate_text(self, name: str, value: Any, max_length: int) -> None:
        if not isinstance(value, str) or not value:
            raise ValidationError(f"{name} must be a non-empty string", {"field": name})
        if len(value) > max_length:
            raise ValidationError(
                f"{name} longer than {max_length} characters",
                {"field": name, "max_length": max_length},
            )

    def validate(self, sender_token: Any, ciphertext: Any, iv: Any, step: Any) -> None:
        """
        Check a message body against the field limits.

        Raises:
            ValidationError: If any field is missing, too long, or of the
                wrong type
        """
        self._validate_text("sender_token", sender_token, self.max_sender_token_length)
        self._validate_text("ciphertext", ciphertext, self.max_ciphertext_length)
        self._validate_text("iv", iv, self.max_iv_length)
        # bool is an int subclass and never a valid step
        if isinstance(step, bool) or not isinstance(step, int) or step < 0:
            raise ValidationError("step must be a non-negative integer", {"field": "step"})

    async def append(
        self,
        room_id: str,
        sender_token: str,
        ciphertext: str,
        iv: str,
        step: int,
        membership_token: Optional[str] = None,
    ) -> Message:
        """
        Append a message to a room's log.

        The message is stored in arrival order, pushed to subscribers, and the
        log is then put on the room's expiry horizon.

        Args:
            room_id: Target room
            sender_token: Pseudonymous sender token
            ciphertext: Base64 AEAD ciphertext
            iv: Base64 nonce
            step: Sender-local ratchet step
            membership_token: Poster's membership token (never returned)

        Returns:
            The stored message

        Raises:
            ValidationError: If the body fails validation
            RoomNotFound: If the room does not exist
        """
        self.validate(sender_token, ciphertext, iv, step)

        session = self._session(room_id)
        if not await session.exists():
            raise RoomNotFound(details={"room_id": room_id})

        message = Message(
            room_id=room_id,
            sender_token=sender_token,
            ciphertext=ciphertext,
            iv=iv,
            step=step,
            timestamp=int(self.clock() * 1000),
        )

        record = message.to_dict()
        record["token"] = membership_token
        await self.store.rpush(MESSAGES_KEY.format(room_id=room_id), record)

        await emit_best_effort(
            self.fanout, room_id, RealtimeEvent.MESSAGE_APPENDED, message.to_dict()
        )
        await session.sync_expiry()

        logger.debug(f"Appended message {message.id} to room {room_id} at step {step}")
        return message

    async def list(self, room_id: str) -> List[Message]:
        """
        Get every message in a room in storage order.

        Raises:
            RoomNotFound: If the room does not exist
        """
        session = self._session(room_id)
        if not await session.exists():
            raise RoomNotFound(details={"room_id": room_id})

        records = await self.store.lrange(MESSAGES_KEY.format(room_id=room_id), 0, -1)
        messages = []
        for record in records:
            record.pop("token", None)
            messages.append(Message.from_dict(record))
        return messages
