"""
Raz - Room service boundary.

Created by orpheus497
Version: 1.0.0

The request/response surface of the room core. Each call validates its
arguments, checks membership, delegates to the room, admission and message
components and hands their results back unchanged. The service keeps no room
state of its own; everything lives in the store.

Every call except create_room and join_room requires a membership token that
is present in the room's connected list.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Union

from .admission import AdmissionController, AdmissionDecision
from .config import Config
from .errors import NotAMember, ValidationError
from .message import Message, MessageLog
from .passcode import PasscodeHasher
from .realtime import MemoryFanout, RealtimeFanout, Subscription
from .room import Room, RoomMode, RoomPolicy, RoomSession, generate_room_id
from .store import KeyValueStore, MemoryStore
from .utils import validate_token

logger = logging.getLogger(__name__)


def parse_mode(mode: Union[str, RoomMode]) -> RoomMode:
    """Accept a RoomMode or its string value."""
    if isinstance(mode, RoomMode):
        return mode
    try:
        return RoomMode(mode)
    except ValueError as e:
        raise ValidationError(f"Unknown room mode: {mode}", {"mode": mode}) from e


class RoomService:
    """
    Room operations as exposed to clients.

    Args:
        store: Key-value store (defaults to an in-process MemoryStore)
        fanout: Realtime fan-out (defaults to an in-process MemoryFanout)
        config: Configuration (defaults are used when omitted)
        clock: Time source in seconds
    """

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        fanout: Optional[RealtimeFanout] = None,
        config: Optional[Config] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store if store is not None else MemoryStore(clock=clock)
        self.fanout = fanout if fanout is not None else MemoryFanout()
        self.config = config
        self.clock = clock

        if config is not None:
            self.policy = RoomPolicy.from_config(config)
            self.hasher = PasscodeHasher.from_config(config)
            self.messages = MessageLog.from_config(self.store, self.fanout, config, clock=clock)
        else:
            self.policy = RoomPolicy()
            self.hasher = PasscodeHasher()
            self.messages = MessageLog(self.store, self.fanout, self.policy, clock=clock)

        self.admission = AdmissionController(self.store, self.fanout, self.policy, self.hasher)

    @staticmethod
    def _check_room_id(room_id: Any) -> None:
        if not validate_token(room_id):
            raise ValidationError("Malformed room_id", {"room_id": str(room_id)[:64]})

    def session(self, room_id: str) -> RoomSession:
        """Room lifecycle handle for one room."""
        self._check_room_id(room_id)
        return RoomSession(
            room_id, self.store, self.fanout, self.policy, self.hasher, clock=self.clock
        )

    async def _require_member(self, room_id: str, membership_token: Optional[str]) -> Room:
        room = await self.session(room_id).load()
        if not room.is_member(membership_token):
            logger.warning(f"Request for room {room_id} without valid membership")
            raise NotAMember(details={"room_id": room_id})
        return room

    async def create_room(
        self,
        mode: Union[str, RoomMode] = RoomMode.PAIR,
        passcode: Optional[str] = None,
        privileged_secret: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create a room.

        Returns:
            Dictionary with room_id and mode
        """
        room_mode = parse_mode(mode)
        session = self.session(generate_room_id())
        room = await session.create(room_mode, passcode, privileged_secret)
        return {"room_id": room.room_id, "mode": room.mode.value}

    async def join_room(
        self,
        room_id: str,
        membership_token: Optional[str] = None,
        passcode: Optional[str] = None,
    ) -> AdmissionDecision:
        """Ask to join a room. Rejections come back as a decision, not an error."""
        self._check_room_id(room_id)
        return await self.admission.evaluate_join(room_id, membership_token, passcode)

    async def get_meta(self, room_id: str, membership_token: Optional[str]) -> Dict[str, Any]:
        await self._require_member(room_id, membership_token)
        return await self.session(room_id).meta(membership_token)

    async def get_participant_count(self, room_id: str, membership_token: Optional[str]) -> int:
        room = await self._require_member(room_id, membership_token)
        return len(room.connected)

    async def destroy_room(self, room_id: str, membership_token: Optional[str]) -> None:
        """
        Destroy a room.

        Raises:
            Forbidden: If a non-owner tries to destroy a group room
        """
        await self._require_member(room_id, membership_token)
        await self.session(room_id).destroy(membership_token)

    async def post_message(
        self,
        room_id: str,
        membership_token: Optional[str],
        sender_token: str,
        ciphertext: str,
        iv: str,
        step: int,
    ) -> Message:
        await self._require_member(room_id, membership_token)
        return await self.messages.append(
            room_id, sender_token, ciphertext, iv, step, membership_token=membership_token
        )

    async def list_messages(self, room_id: str, membership_token: Optional[str]) -> List[Message]:
        await self._require_member(room_id, membership_token)
        return await self.messages.list(room_id)

    async def subscribe(self, room_id: str, membership_token: Optional[str]) -> Subscription:
        """Open a realtime subscription to a room's events."""
        await self._require_member(room_id, membership_token)
        return self.fanout.subscribe(room_id)
