"""
Raz - Room admission.

Created by orpheus497

Decides whether a joining browser or client may enter a room and, if so,
mints its membership token. Decisions are evaluated against the room record
in the store, in this order:

    1. A token already in the connected list is admitted with no state change
    2. A missing room is rejected with ``room-not-found``
    3. A full room (unless privileged) is rejected with ``room-full``
    4. A group room with the wrong passcode is rejected with ``passcode-required``
    5. Otherwise a new token is appended and the first joiner becomes owner

Steps 2 to 5 read the room and then write it back with suspension points in
between. Two joins racing for the last slot can both be admitted, and one
join can overwrite the other's membership update. There is no compare-and-set
in the store contract, so this is accepted behaviour.
"""

import logging
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from .constants import MEMBERSHIP_TOKEN_BYTES
from .errors import PasscodeRequired, RoomError, RoomFull, RoomNotFound
from .passcode import PasscodeHasher
from .realtime import RealtimeEvent, RealtimeFanout, emit_best_effort
from .room import RoomMode, RoomPolicy, RoomSession
from .store import KeyValueStore

logger = logging.getLogger(__name__)


class AdmissionOutcome(Enum):
    """Admission outcomes."""

    ADMIT_EXISTING = "admit-existing"
    ADMIT_NEW = "admit-new"
    REJECT = "reject"


@dataclass
class AdmissionDecision:
    """Result of a join attempt."""

    outcome: AdmissionOutcome
    token: Optional[str] = None
    reason: Optional[str] = None
    room_id: Optional[str] = None

    @property
    def admitted(self) -> bool:
        return self.outcome != AdmissionOutcome.REJECT

    @classmethod
    def reject(cls, room_id: str, error: RoomError) -> "AdmissionDecision":
        return cls(AdmissionOutcome.REJECT, reason=error.reason, room_id=room_id)

    def to_dict(self) -> Dict[str, Any]:
        """
        Machine-readable form handed back to the client.

        A rejection carries only the lobby reason code, e.g.
        ``{"admitted": False, "reason": "room-full"}``.
        """
        if not self.admitted:
            return {"admitted": False, "reason": self.reason}
        return {
            "admitted": True,
            "outcome": self.outcome.value,
            "token": self.token,
            "room_id": self.room_id,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "AdmissionDecision":
        if not data.get("admitted"):
            return AdmissionDecision(AdmissionOutcome.REJECT, reason=data.get("reason"))
        return AdmissionDecision(
            outcome=AdmissionOutcome(data.get("outcome", AdmissionOutcome.ADMIT_NEW.value)),
            token=data.get("token"),
            room_id=data.get("room_id"),
        )


def generate_membership_token() -> str:
    """Generate an opaque, unguessable membership token."""
    return secrets.token_urlsafe(MEMBERSHIP_TOKEN_BYTES)


class AdmissionController:
    """
    Join decisions and membership mutation.

    Args:
        store: Key-value store holding room state
        fanout: Realtime channel for participant count updates
        policy: Room limits
        hasher: Passcode hasher used to check group passcodes
    """

    def __init__(
        self,
        store: KeyValueStore,
        fanout: RealtimeFanout,
        policy: Optional[RoomPolicy] = None,
        hasher: Optional[PasscodeHasher] = None,
    ):
        self.store = store
        self.fanout = fanout
        self.policy = policy or RoomPolicy()
        self.hasher = hasher or PasscodeHasher()

    def _session(self, room_id: str) -> RoomSession:
        return RoomSession(room_id, self.store, self.fanout, self.policy, self.hasher)

    async def evaluate_join(
        self,
        room_id: str,
        existing_token: Optional[str] = None,
        passcode: Optional[str] = None,
    ) -> AdmissionDecision:
        """
        Evaluate a join request.

        Args:
            room_id: Room to join
            existing_token: Membership token the joiner already holds, if any
            passcode: Passcode presented for group rooms

        Returns:
            AdmissionDecision (rejections are returned, not raised)
        """
        session = self._session(room_id)

        try:
            room = await session.load()
        except RoomNotFound as e:
            logger.info(f"Join rejected for {room_id}: {e.reason}")
            return AdmissionDecision.reject(room_id, e)

        if room.is_member(existing_token):
            logger.debug(f"Existing member rejoined {room_id}")
            return AdmissionDecision(
                AdmissionOutcome.ADMIT_EXISTING, token=existing_token, room_id=room_id
            )

        capacity = room.capacity(self.policy)
        if capacity is not None and len(room.connected) >= capacity:
            error = RoomFull(details={"room_id": room_id, "capacity": capacity})
            logger.warning(f"Join rejected for {room_id}: {error.reason}")
            return AdmissionDecision.reject(room_id, error)

        if room.mode == RoomMode.GROUP and not self.hasher.verify(room.passcode_hash, passcode):
            error = PasscodeRequired(details={"room_id": room_id})
            logger.warning(f"Join rejected for {room_id}: {error.reason}")
            return AdmissionDecision.reject(room_id, error)

        token = generate_membership_token()
        connected = room.connected + [token]
        owner_token = room.owner_token or token

        try:
            await session.write_membership(room, connected, owner_token)
        except RoomNotFound as e:
            return AdmissionDecision.reject(room_id, e)

        await emit_best_effort(
            self.fanout,
            room_id,
            RealtimeEvent.PARTICIPANT_COUNT_CHANGED,
            {"count": len(connected)},
        )

        logger.info(f"Admitted member {len(connected)} to room {room_id}")
        return AdmissionDecision(AdmissionOutcome.ADMIT_NEW, token=token, room_id=room_id)
