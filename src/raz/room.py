"""
Raz - Room records and the room lifecycle state machine.

Created by orpheus497

This module owns a room's existence, capacity, passcode gate, owner
designation and expiry. Room state is never held in-process between
requests: every RoomSession reads the store, so any number of server
workers can serve the same room.

Lifecycle:
    NEW --CREATE--> ACTIVE_TTL --DESTROY/EXPIRE--> DESTROYED
    NEW --CREATE_PERMANENT--> ACTIVE_PERMANENT --DESTROY--> DESTROYED

Expiry is never polled for. The store's own TTL removes the room, and a read
that finds nothing is taken to mean the room is already destroyed.
"""

import logging
import secrets
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional

from .config import Config
from .constants import (
    GROUP_ROOM_CAPACITY,
    HISTORY_KEY,
    MAX_PASSCODE_LENGTH,
    MESSAGES_KEY,
    META_KEY,
    PAIR_ROOM_CAPACITY,
    ROOM_ID_BYTES,
    ROOM_KEY,
    ROOM_TTL_SECONDS,
    STATE_MAX_HISTORY,
    TTL_MISSING,
    TTL_PERSISTENT,
)
from .errors import Forbidden, PasscodeMissing, RoomNotFound, ValidationError
from .passcode import PasscodeHasher, is_master_passcode
from .realtime import RealtimeEvent, RealtimeFanout, emit_best_effort
from .store import KeyValueStore
from .utils import format_remaining

logger = logging.getLogger(__name__)


class RoomMode(Enum):
    """Room modes."""

    PAIR = "pair"
    GROUP = "group"


class RoomState(Enum):
    """Lifecycle states of a room."""

    NEW = auto()  # Not yet created
    ACTIVE_TTL = auto()  # Live, expires at the TTL horizon
    ACTIVE_PERMANENT = auto()  # Live, privileged, never expires
    DESTROYED = auto()  # Deleted by its owner or expired


class RoomEvent(Enum):
    """Events that trigger room state transitions."""

    CREATE = auto()
    CREATE_PERMANENT = auto()
    TOUCH = auto()  # Expiry re-applied after a message append
    PERSIST = auto()  # Lapsed TTL made permanent (legacy behaviour)
    DESTROY = auto()
    EXPIRE = auto()  # Absence observed on read


@dataclass
class StateTransition:
    """Represents a state transition."""

    from_state: RoomState
    event: RoomEvent
    to_state: RoomState
    timestamp: float = field(default_factory=time.time)


class RoomStateMachine:
    """
    Finite state machine for a room's lifecycle.

    Enforces valid state transitions and keeps a bounded history.
    """

    TRANSITIONS: Dict[RoomState, Dict[RoomEvent, RoomState]] = {
        RoomState.NEW: {
            RoomEvent.CREATE: RoomState.ACTIVE_TTL,
            RoomEvent.CREATE_PERMANENT: RoomState.ACTIVE_PERMANENT,
        },
        RoomState.ACTIVE_TTL: {
            RoomEvent.TOUCH: RoomState.ACTIVE_TTL,
            RoomEvent.PERSIST: RoomState.ACTIVE_PERMANENT,
            RoomEvent.DESTROY: RoomState.DESTROYED,
            RoomEvent.EXPIRE: RoomState.DESTROYED,
        },
        RoomState.ACTIVE_PERMANENT: {
            RoomEvent.TOUCH: RoomState.ACTIVE_PERMANENT,
            RoomEvent.DESTROY: RoomState.DESTROYED,
            RoomEvent.EXPIRE: RoomState.DESTROYED,
        },
        RoomState.DESTROYED: {},
    }

    def __init__(self, initial_state: RoomState = RoomState.NEW):
        self.current_state = initial_state
        self.previous_state: Optional[RoomState] = None
        self.transition_history: List[StateTransition] = []

    def transition(self, event: RoomEvent) -> bool:
        """
        Attempt state transition based on event.

        Args:
            event: Event triggering transition

        Returns:
            True if transition successful, False otherwise
        """
        if not self.is_valid_transition(self.current_state, event):
            logger.warning(
                f"Invalid room transition: {self.current_state.name} + {event.name}"
            )
            return False

        new_state = self.TRANSITIONS[self.current_state][event]
        old_state = self.current_state
        self.previous_state = old_state
        self.current_state = new_state

        self.transition_history.append(StateTransition(old_state, event, new_state))
        if len(self.transition_history) > STATE_MAX_HISTORY:
            self.transition_history = self.transition_history[-STATE_MAX_HISTORY:]

        if old_state != new_state:
            logger.debug(f"Room transition: {old_state.name} -> {new_state.name} ({event.name})")
        return True

    def is_valid_transition(self, from_state: RoomState, event: RoomEvent) -> bool:
        return from_state in self.TRANSITIONS and event in self.TRANSITIONS[from_state]

    def adopt(self, state: RoomState) -> None:
        """Align with a state observed in the store (no transition recorded)."""
        if state != self.current_state:
            self.previous_state = self.current_state
            self.current_state = state

    def is_active(self) -> bool:
        return self.current_state in (RoomState.ACTIVE_TTL, RoomState.ACTIVE_PERMANENT)


@dataclass
class RoomPolicy:
    """Room limits and lifecycle settings."""

    ttl_seconds: int = ROOM_TTL_SECONDS
    pair_capacity: int = PAIR_ROOM_CAPACITY
    group_capacity: int = GROUP_ROOM_CAPACITY
    max_passcode_length: int = MAX_PASSCODE_LENGTH
    legacy_persist_on_lapsed_ttl: bool = False
    master_passcode: str = ""

    @classmethod
    def from_config(cls, config: Config) -> "RoomPolicy":
        return cls(
            ttl_seconds=config.get("rooms", "ttl_seconds", ROOM_TTL_SECONDS),
            pair_capacity=config.get("rooms", "pair_capacity", PAIR_ROOM_CAPACITY),
            group_capacity=config.get("rooms", "group_capacity", GROUP_ROOM_CAPACITY),
            max_passcode_length=config.get("rooms", "max_passcode_length", MAX_PASSCODE_LENGTH),
            legacy_persist_on_lapsed_ttl=config.get(
                "rooms", "legacy_persist_on_lapsed_ttl", False
            ),
            master_passcode=config.get("security", "master_passcode", "") or "",
        )


class Room:
    """A room's stored metadata record."""

    def __init__(
        self,
        room_id: str,
        mode: RoomMode,
        created_at: Optional[int] = None,
        passcode_hash: Optional[str] = None,
        owner_token: Optional[str] = None,
        connected: Optional[List[str]] = None,
        privileged: bool = False,
    ):
        self.room_id = room_id
        self.mode = mode
        self.created_at = created_at if created_at is not None else int(time.time() * 1000)
        self.passcode_hash = passcode_hash
        self.owner_token = owner_token
        self.connected: List[str] = list(connected or [])
        self.privileged = privileged

    def to_meta(self) -> Dict[str, Any]:
        """Convert to the stored hash layout."""
        meta: Dict[str, Any] = {
            "connected": self.connected,
            "createdAt": self.created_at,
            "mode": self.mode.value,
        }
        if self.mode == RoomMode.GROUP and self.passcode_hash:
            meta["passcode"] = self.passcode_hash
        if self.owner_token:
            meta["ownerToken"] = self.owner_token
        if self.privileged:
            meta["master"] = "true"
        return meta

    @staticmethod
    def from_meta(room_id: str, meta: Dict[str, Any]) -> "Room":
        """Create from the stored hash layout."""
        try:
            mode = RoomMode(meta.get("mode", RoomMode.PAIR.value))
        except ValueError:
            mode = RoomMode.PAIR
        return Room(
            room_id=room_id,
            mode=mode,
            created_at=meta.get("createdAt"),
            passcode_hash=meta.get("passcode"),
            owner_token=meta.get("ownerToken"),
            connected=meta.get("connected") or [],
            privileged=meta.get("master") == "true",
        )

    def capacity(self, policy: RoomPolicy) -> Optional[int]:
        """Member limit, or None for privileged rooms."""
        if self.privileged:
            return None
        if self.mode == RoomMode.GROUP:
            return policy.group_capacity
        return policy.pair_capacity

    def is_member(self, token: Optional[str]) -> bool:
        return bool(token) and token in self.connected

    def is_owner(self, token: Optional[str]) -> bool:
        return bool(token) and token == self.owner_token

    def __repr__(self) -> str:
        return (
            f"Room(room_id={self.room_id!r}, mode={self.mode.value}, "
            f"members={len(self.connected)}, privileged={self.privileged})"
        )


def generate_room_id() -> str:
    """Generate an opaque, URL-safe room ID."""
    return secrets.token_urlsafe(ROOM_ID_BYTES)


class RoomSession:
    """
    Lifecycle operations for one room.

    Args:
        room_id: Room identifier
        store: Key-value store holding the room's state
        fanout: Realtime channel for room events
        policy: Room limits and lifecycle settings
        hasher: Passcode hasher
        clock: Time source in seconds
    """

    def __init__(
        self,
        room_id: str,
        store: KeyValueStore,
        fanout: RealtimeFanout,
        policy: Optional[RoomPolicy] = None,
        hasher: Optional[PasscodeHasher] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.room_id = room_id
        self.store = store
        self.fanout = fanout
        self.policy = policy or RoomPolicy()
        self.hasher = hasher or PasscodeHasher()
        self.clock = clock
        self.fsm = RoomStateMachine()

    @property
    def meta_key(self) -> str:
        return META_KEY.format(room_id=self.room_id)

    @property
    def auxiliary_keys(self) -> List[str]:
        """Keys sharing the room's expiry horizon, other than its metadata."""
        return [
            MESSAGES_KEY.format(room_id=self.room_id),
            HISTORY_KEY.format(room_id=self.room_id),
            ROOM_KEY.format(room_id=self.room_id),
        ]

    @property
    def state(self) -> RoomState:
        return self.fsm.current_state

    async def create(
        self,
        mode: RoomMode,
        passcode: Optional[str] = None,
        privileged_secret: Optional[str] = None,
    ) -> Room:
        """
        Create the room.

        A group room needs a passcode. The room becomes privileged only when
        the privileged secret (or, if none was given, the passcode) matches
        the server-held master passcode.

        Raises:
            PasscodeMissing: If a group room has no passcode
            ValidationError: If the passcode is too long
        """
        passcode = passcode.strip() if passcode else None
        if passcode and len(passcode) > self.policy.max_passcode_length:
            raise ValidationError(
                f"Passcode longer than {self.policy.max_passcode_length} characters"
            )
        if mode == RoomMode.GROUP and not passcode:
            raise PasscodeMissing()

        privileged = is_master_passcode(
            privileged_secret if privileged_secret is not None else passcode,
            self.policy.master_passcode,
        )

        room = Room(
            room_id=self.room_id,
            mode=mode,
            created_at=int(self.clock() * 1000),
            passcode_hash=self.hasher.hash(passcode) if mode == RoomMode.GROUP else None,
            privileged=privileged,
        )

        await self.store.hset(self.meta_key, room.to_meta())
        if privileged:
            await self.store.persist(self.meta_key)
            self.fsm.transition(RoomEvent.CREATE_PERMANENT)
        else:
            await self.store.expire(self.meta_key, self.policy.ttl_seconds)
            self.fsm.transition(RoomEvent.CREATE)

        logger.info(
            f"Created {mode.value} room {self.room_id}"
            f"{' (privileged)' if privileged else ''}"
        )
        return room

    async def load(self) -> Room:
        """
        Read the room's metadata.

        Raises:
            RoomNotFound: If the room was destroyed or has expired
        """
        meta = await self.store.hgetall(self.meta_key)
        if not meta:
            self._observe_absence()
            raise RoomNotFound(details={"room_id": self.room_id})

        room = Room.from_meta(self.room_id, meta)
        if not self.fsm.is_active():
            self.fsm.adopt(
                RoomState.ACTIVE_PERMANENT if room.privileged else RoomState.ACTIVE_TTL
            )
        return room

    def _observe_absence(self) -> None:
        if self.fsm.is_active():
            self.fsm.transition(RoomEvent.EXPIRE)
        else:
            self.fsm.adopt(RoomState.DESTROYED)

    async def exists(self) -> bool:
        found = await self.store.exists(self.meta_key)
        if not found:
            self._observe_absence()
        return found

    async def remaining_ttl(self) -> int:
        """Remaining seconds of the room's metadata key (Redis TTL semantics)."""
        return await self.store.ttl(self.meta_key)

    async def write_membership(self, room: Room, connected: List[str], owner_token: str) -> None:
        """
        Store a new connected list and owner.

        This is a blind write over whatever the store holds now; see
        AdmissionController for the resulting race.
        """
        await self.store.hset(
            self.meta_key, {"connected": connected, "ownerToken": owner_token}
        )
        if not room.privileged and await self.store.ttl(self.meta_key) == TTL_PERSISTENT:
            # The room vanished between read and write and the write
            # recreated a partial record without expiry
            logger.warning(f"Room {self.room_id} expired during a join, dropping stray record")
            await self.store.delete(self.meta_key)
            self._observe_absence()
            raise RoomNotFound(details={"room_id": self.room_id})

    async def meta(self, caller_token: Optional[str]) -> Dict[str, Any]:
        """
        Public metadata as seen by one member.

        Returns:
            Dictionary with mode, capacity, is_owner, ttl, expires_at and
            privileged
        """
        room = await self.load()
        ttl = await self.remaining_ttl()
        safe_ttl: Optional[int]
        if room.privileged:
            safe_ttl = None
        else:
            safe_ttl = ttl if ttl > 0 else 0

        return {
            "mode": room.mode.value,
            "capacity": room.capacity(self.policy),
            "is_owner": room.is_owner(caller_token),
            "ttl": safe_ttl,
            "expires_at": int(self.clock() * 1000) + safe_ttl * 1000 if safe_ttl else None,
            "privileged": room.privileged,
        }

    async def participant_count(self) -> int:
        room = await self.load()
        return len(room.connected)

    async def destroy(self, caller_token: Optional[str]) -> bool:
        """
        Destroy the room and everything derived from it.

        Group rooms may only be destroyed by their owner; pair rooms by
        anyone holding the room. Destroying a room that is already gone is a
        no-op so concurrent double destroys are harmless.

        Returns:
            True if this call removed the room, False if it was already gone

        Raises:
            Forbidden: If a non-owner tries to destroy a group room
        """
        try:
            room = await self.load()
        except RoomNotFound:
            logger.debug(f"Destroy of absent room {self.room_id} ignored")
            return False

        if room.mode == RoomMode.GROUP and not room.is_owner(caller_token):
            logger.warning(f"Non-owner attempted to destroy group room {self.room_id}")
            raise Forbidden(details={"room_id": self.room_id})

        await emit_best_effort(
            self.fanout, self.room_id, RealtimeEvent.ROOM_DESTROYED, {"is_destroyed": True}
        )
        await self.store.delete(self.meta_key, *self.auxiliary_keys)
        self.fsm.transition(RoomEvent.DESTROY)

        logger.info(f"Destroyed room {self.room_id}")
        return True

    async def sync_expiry(self) -> RoomState:
        """
        Put the message log and auxiliary keys on the room's expiry horizon.

        Called after every message append. A remaining TTL is re-applied to
        every auxiliary key; a permanent room makes them permanent. A TTL
        that has already lapsed is treated as expiry and the room's state is
        removed, unless ``legacy_persist_on_lapsed_ttl`` is set, in which case
        the auxiliary keys are persisted instead.

        Returns:
            Room state after synchronization
        """
        remaining = await self.remaining_ttl()

        if remaining > 0:
            for key in self.auxiliary_keys:
                await self.store.expire(key, remaining)
            logger.debug(f"Room {self.room_id} time remaining: {format_remaining(remaining)}")
            self.fsm.adopt(RoomState.ACTIVE_TTL)
            self.fsm.transition(RoomEvent.TOUCH)
            return self.state

        if remaining == TTL_PERSISTENT:
            for key in self.auxiliary_keys:
                await self.store.persist(key)
            logger.debug(f"Room {self.room_id} time remaining: {format_remaining(None)}")
            self.fsm.adopt(RoomState.ACTIVE_PERMANENT)
            self.fsm.transition(RoomEvent.TOUCH)
            return self.state

        if self.policy.legacy_persist_on_lapsed_ttl and remaining != TTL_MISSING:
            logger.warning(
                f"Room {self.room_id} TTL lapsed during append, persisting log (legacy mode)"
            )
            for key in self.auxiliary_keys:
                await self.store.persist(key)
            self.fsm.adopt(RoomState.ACTIVE_TTL)
            self.fsm.transition(RoomEvent.PERSIST)
            return self.state

        logger.info(f"Room {self.room_id} TTL lapsed during append, removing room state")
        await emit_best_effort(
            self.fanout, self.room_id, RealtimeEvent.ROOM_DESTROYED, {"is_destroyed": True}
        )
        await self.store.delete(self.meta_key, *self.auxiliary_keys)
        self._observe_absence()
        return self.state
