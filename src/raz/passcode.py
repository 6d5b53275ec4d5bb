"""
Raz - Room passcode handling.

Created by orpheus497

A group room's passcode is both its join gate and, client-side, part of the
room secret. The server therefore keeps only an Argon2id hash of it and
checks joins against that hash.

The master passcode is the one server-held credential that makes a room
privileged (no capacity limit, no expiry). It is compared in constant time
and never accepted from stored room state.
"""

import logging
import secrets
from typing import Optional

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from .config import Config
from .constants import ARGON2_MEMORY_COST, ARGON2_PARALLELISM, ARGON2_TIME_COST

logger = logging.getLogger(__name__)


class PasscodeHasher:
    """Argon2id hashing and verification of room passcodes."""

    def __init__(
        self,
        time_cost: int = ARGON2_TIME_COST,
        memory_cost: int = ARGON2_MEMORY_COST,
        parallelism: int = ARGON2_PARALLELISM,
    ):
        self._hasher = PasswordHasher(
            time_cost=time_cost, memory_cost=memory_cost, parallelism=parallelism
        )

    @classmethod
    def from_config(cls, config: Config) -> "PasscodeHasher":
        return cls(
            time_cost=config.get("security", "argon2_time_cost", ARGON2_TIME_COST),
            memory_cost=config.get("security", "argon2_memory_cost", ARGON2_MEMORY_COST),
            parallelism=config.get("security", "argon2_parallelism", ARGON2_PARALLELISM),
        )

    def hash(self, passcode: str) -> str:
        """Hash a passcode for storage."""
        return self._hasher.hash(passcode)

    def verify(self, stored_hash: str, supplied: Optional[str]) -> bool:
        """
        Check a supplied passcode against a stored hash.

        Args:
            stored_hash: Argon2 hash from room metadata
            supplied: Passcode presented by the joiner (may be None)

        Returns:
            True only for an exact match
        """
        if not supplied or not stored_hash:
            return False
        try:
            return self._hasher.verify(stored_hash, supplied)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError) as e:
            logger.error(f"Stored passcode hash could not be verified: {e}")
            return False


def is_master_passcode(candidate: Optional[str], master_passcode: Optional[str]) -> bool:
    """
    Constant-time comparison against the server-held master passcode.

    An unset or empty master passcode never matches.
    """
    if not master_passcode or not candidate:
        return False
    return secrets.compare_digest(candidate.encode("utf-8"), master_passcode.encode("utf-8"))
