"""
Raz - Key-value store with hash/list operations and per-key TTL.

Created by orpheus497
Version: 1.0.0

All durable room state lives behind the KeyValueStore interface. The
operations and return conventions follow Redis, so a networked deployment can
back it with any Redis-compatible service while tests and single-node servers
use MemoryStore.

Each individual operation is atomic. There are no multi-operation
transactions: callers that read and then write (admission, expiry sync) are
exposed to interleaving with other requests, exactly as they would be against
a remote store.
"""

import asyncio
import fnmatch
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from .constants import TTL_MISSING, TTL_PERSISTENT

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """Abstract async key-value store used by the room core."""

    @abstractmethod
    async def hset(self, key: str, mapping: Dict[str, Any]) -> int:
        """Set hash fields. Returns the number of newly created fields."""

    @abstractmethod
    async def hgetall(self, key: str) -> Optional[Dict[str, Any]]:
        """Get all hash fields, or None if the key does not exist."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check whether a key exists."""

    @abstractmethod
    async def expire(self, key: str, seconds: int) -> bool:
        """Set a key's time to live. Returns False if the key is missing."""

    @abstractmethod
    async def persist(self, key: str) -> bool:
        """Remove a key's expiry. Returns True if an expiry was removed."""

    @abstractmethod
    async def ttl(self, key: str) -> int:
        """Remaining seconds, -1 for no expiry, -2 for a missing key."""

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """Delete keys if present. Returns the number removed."""

    @abstractmethod
    async def rpush(self, key: str, *values: Any) -> int:
        """Append values to a list. Returns the new list length."""

    @abstractmethod
    async def lrange(self, key: str, start: int, stop: int) -> List[Any]:
        """Get a list slice with inclusive, possibly negative, bounds."""

    @abstractmethod
    async def keys(self, pattern: str = "*") -> List[str]:
        """List live keys matching a glob pattern."""


class WrongTypeError(TypeError):
    """Operation against a key holding the wrong kind of value."""


class MemoryStore(KeyValueStore):
    """
    In-process KeyValueStore with lazy TTL expiry.

    Values are copied through JSON on the way in and out so callers never
    share mutable state with the store, mirroring a serialized remote store.
    Every operation yields to the event loop before running.

    Args:
        clock: Time source in seconds (injectable for tests)
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: Dict[str, Any] = {}
        self._expires_at: Dict[str, float] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _copy(value: Any) -> Any:
        return json.loads(json.dumps(value))

    def _purge_if_expired(self, key: str) -> None:
        expires_at = self._expires_at.get(key)
        if expires_at is not None and self._clock() >= expires_at:
            self._data.pop(key, None)
            self._expires_at.pop(key, None)
            logger.debug(f"Key expired: {key}")

    def _live(self, key: str) -> bool:
        self._purge_if_expired(key)
        return key in self._data

    async def _enter(self) -> None:
        # Suspension point standing in for a network round trip
        await asyncio.sleep(0)

    async def hset(self, key: str, mapping: Dict[str, Any]) -> int:
        await self._enter()
        async with self._lock:
            current = self._data.get(key) if self._live(key) else None
            if current is None:
                current = {}
            elif not isinstance(current, dict):
                raise WrongTypeError(f"Key {key} does not hold a hash")

            created = sum(1 for field_name in mapping if field_name not in current)
            current.update(self._copy(mapping))
            self._data[key] = current
            return created

    async def hgetall(self, key: str) -> Optional[Dict[str, Any]]:
        await self._enter()
        async with self._lock:
            if not self._live(key):
                return None
            value = self._data[key]
            if not isinstance(value, dict):
                raise WrongTypeError(f"Key {key} does not hold a hash")
            return self._copy(value)

    async def exists(self, key: str) -> bool:
        await self._enter()
        async with self._lock:
            return self._live(key)

    async def expire(self, key: str, seconds: int) -> bool:
        await self._enter()
        async with self._lock:
            if not self._live(key):
                return False
            if seconds <= 0:
                self._data.pop(key, None)
                self._expires_at.pop(key, None)
                return True
            self._expires_at[key] = self._clock() + seconds
            return True

    async def persist(self, key: str) -> bool:
        await self._enter()
        async with self._lock:
            if not self._live(key):
                return False
            return self._expires_at.pop(key, None) is not None

    async def ttl(self, key: str) -> int:
        await self._enter()
        async with self._lock:
            if not self._live(key):
                return TTL_MISSING
            expires_at = self._expires_at.get(key)
            if expires_at is None:
                return TTL_PERSISTENT
            remaining_ms = (expires_at - self._clock()) * 1000
            # Rounded to the nearest second, so the last half second reads as 0
            return max(0, int((remaining_ms + 500) // 1000))

    async def delete(self, *keys: str) -> int:
        await self._enter()
        async with self._lock:
            removed = 0
            for key in keys:
                if self._live(key):
                    removed += 1
                self._data.pop(key, None)
                self._expires_at.pop(key, None)
            return removed

    async def rpush(self, key: str, *values: Any) -> int:
        await self._enter()
        async with self._lock:
            current = self._data.get(key) if self._live(key) else None
            if current is None:
                current = []
            elif not isinstance(current, list):
                raise WrongTypeError(f"Key {key} does not hold a list")

            current.extend(self._copy(list(values)))
            self._data[key] = current
            return len(current)

    async def lrange(self, key: str, start: int, stop: int) -> List[Any]:
        await self._enter()
        async with self._lock:
            if not self._live(key):
                return []
            value = self._data[key]
            if not isinstance(value, list):
                raise WrongTypeError(f"Key {key} does not hold a list")

            length = len(value)
            if start < 0:
                start = max(0, length + start)
            if stop < 0:
                stop = length + stop
            if start > stop or start >= length:
                return []
            return self._copy(value[start : stop + 1])

    async def keys(self, pattern: str = "*") -> List[str]:
        await self._enter()
        async with self._lock:
            live = [key for key in list(self._data) if self._live(key)]
            return sorted(key for key in live if fnmatch.fnmatchcase(key, pattern))

    def get_statistics(self) -> Dict[str, Any]:
        """
        Get store statistics without purging.

        Returns:
            Dictionary with key counts
        """
        return {
            "total_keys": len(self._data),
            "keys_with_ttl": len(self._expires_at),
        }
