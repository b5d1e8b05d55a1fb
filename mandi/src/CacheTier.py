"""CacheTier: Freshness-bounded snapshot cache with a stale-but-usable window.

Freshness policy:
    - age <= 4 hours:          fresh, served directly
    - 4 hours < age <= 48 hours: stale-but-usable, only as a last resort
    - age > 48 hours:          treated as not found

Entries are written with a JSON envelope ``{"stored_at", "ttl", "value"}``.
The backend keeps snapshot keys for the full 48 hour hard expiry so the
stale window stays reachable; the requested TTL is recorded in the envelope.
Auxiliary values (history, trends) written through set_json() expire on the
backend after exactly their TTL.

Cache failures never propagate: reads degrade to a miss, writes are logged.
"""

from __future__ import annotations

import json
import logging
import math
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from .models import PriceSnapshot

logger = logging.getLogger(__name__)


class CacheBackend(ABC):
    """Key-value store with per-key expiry."""

    @abstractmethod
    async def get(self, key: str) -> bytes | None:
        """Get raw bytes for a key, or None if absent or expired."""
        pass

    @abstractmethod
    async def set_with_ttl(self, key: str, value: bytes, ttl: float) -> None:
        """Store raw bytes under a key for ttl seconds."""
        pass

    async def close(self) -> None:
        """Release backend resources."""
        return None


class InMemoryCacheBackend(CacheBackend):
    """Process-local backend, safe for concurrent access."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: dict[str, tuple[bytes, float]] = {}

    async def get(self, key: str) -> bytes | None:
        with self._lock:
            item = self._data.get(key)
            if item is None:
                return None
            value, expires_at = item
            if time.time() >= expires_at:
                del self._data[key]
                return None
            return value

    async def set_with_ttl(self, key: str, value: bytes, ttl: float) -> None:
        with self._lock:
            self._data[key] = (value, time.time() + ttl)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


class RedisCacheBackend(CacheBackend):
    """Redis backend using redis.asyncio.

    .. code-block:: python

        backend = RedisCacheBackend.from_url("redis://localhost:6379/0")
    """

    def __init__(self, redis: Any) -> None:
        """Initialize with an existing redis.asyncio.Redis client."""
        self.redis = redis

    @classmethod
    def from_url(cls, url: str) -> RedisCacheBackend:
        """Create a backend from a redis:// URL."""
        from redis.asyncio import Redis

        return cls(Redis.from_url(url))

    async def get(self, key: str) -> bytes | None:
        value = await self.redis.get(key)
        if value is None:
            return None
        return value if isinstance(value, bytes) else str(value).encode()

    async def set_with_ttl(self, key: str, value: bytes, ttl: float) -> None:
        await self.redis.set(key, value, ex=max(1, math.ceil(ttl)))

    async def close(self) -> None:
        await self.redis.aclose()


@dataclass
class CacheLookup:
    """Result of a cache read.

    :ivar snapshot: Cached snapshot, or None if not found.
    :ivar age: Seconds since the entry was stored (0.0 when not found).
    :ivar found: True if a usable (<= hard expiry) entry exists.
    :ivar fresh: True if the entry is within the fresh window.
    """

    snapshot: PriceSnapshot | None
    age: float
    found: bool
    fresh: bool = False

    @property
    def stale(self) -> bool:
        """Found but past the fresh window."""
        return self.found and not self.fresh


MISS = CacheLookup(snapshot=None, age=0.0, found=False)


class CacheTier:
    """Snapshot cache implementing the fresh / stale / expired policy.

    :ivar backend: Storage backend.
    :ivar fresh_max_age: Max age in seconds for fresh entries.
    :ivar hard_expiry: Max age in seconds for any usable entry.
    :ivar default_ttl: TTL recorded for writes when none is given.
    """

    FRESH_MAX_AGE = 4 * 3600  # 4 hours
    HARD_EXPIRY = 48 * 3600  # 48 hours
    DEFAULT_TTL = 3600  # 1 hour

    def __init__(
        self,
        backend: CacheBackend | None = None,
        fresh_max_age: float = FRESH_MAX_AGE,
        hard_expiry: float = HARD_EXPIRY,
        default_ttl: float = DEFAULT_TTL,
    ) -> None:
        """Initialize the cache tier.

        :param backend: Storage backend (in-memory if omitted).
        :param fresh_max_age: Fresh window in seconds (default 4h).
        :param hard_expiry: Stale window upper bound in seconds (default 48h).
        :param default_ttl: Default write TTL in seconds (default 1h).
        :raises ValueError: If the windows are inconsistent.
        """
        if fresh_max_age <= 0 or hard_expiry < fresh_max_age:
            raise ValueError("require 0 < fresh_max_age <= hard_expiry")
        self.backend = backend if backend is not None else InMemoryCacheBackend()
        self.fresh_max_age = fresh_max_age
        self.hard_expiry = hard_expiry
        self.default_ttl = default_ttl

    @staticmethod
    def price_key(commodity: str, location: str | None = None) -> str:
        """Cache key for a current-price snapshot."""
        return f"price:{commodity}:{location or 'all'}"

    @staticmethod
    def history_key(commodity: str, days: int) -> str:
        """Cache key for a price history window."""
        return f"price_history:{commodity}:{days}"

    @staticmethod
    def trends_key(commodity: str) -> str:
        """Cache key for a trend analysis."""
        return f"price_trends:{commodity}"

    async def get(self, key: str) -> CacheLookup:
        """Read a snapshot and classify its age.

        :param key: Cache key.
        :returns: CacheLookup; found is False for misses, corrupt entries
            and entries older than the hard expiry.
        """
        envelope = await self._read_envelope(key)
        if envelope is None:
            return MISS

        try:
            snapshot = PriceSnapshot.from_dict(envelope["value"])
            stored_at = float(envelope["stored_at"])
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Discarding corrupt cache entry {key}: {e}")
            return MISS

        age = max(0.0, time.time() - stored_at)
        if age > self.hard_expiry:
            return MISS
        return CacheLookup(
            snapshot=snapshot,
            age=age,
            found=True,
            fresh=age <= self.fresh_max_age,
        )

    async def get_fresh(self, key: str) -> PriceSnapshot | None:
        """Get a snapshot only if it is within the fresh window."""
        lookup = await self.get(key)
        return lookup.snapshot if lookup.fresh else None

    async def set(
        self, key: str, snapshot: PriceSnapshot, ttl: float | None = None
    ) -> bool:
        """Write a snapshot unless a newer one is already cached. Never raises.

        The snapshot with the later last_updated wins; equal timestamps
        overwrite.

        :param key: Cache key.
        :param snapshot: Snapshot to store.
        :param ttl: Requested TTL in seconds (default: default_ttl).
        :returns: True if the write succeeded.
        """
        current = await self.get(key)
        if current.found and current.snapshot.last_updated > snapshot.last_updated:
            logger.debug(
                f"Keeping newer cache entry for {key} "
                f"({current.snapshot.last_updated.isoformat()})"
            )
            return False

        ttl = self.default_ttl if ttl is None else ttl
        envelope = {
            "stored_at": time.time(),
            "ttl": ttl,
            "value": snapshot.to_dict(),
        }
        return await self._write(key, envelope, max(ttl, self.hard_expiry))

    async def get_json(self, key: str) -> Any | None:
        """Read an auxiliary JSON value written by set_json()."""
        envelope = await self._read_envelope(key)
        if envelope is None:
            return None
        return envelope.get("value")

    async def set_json(self, key: str, value: Any, ttl: float | None = None) -> bool:
        """Write an auxiliary JSON value that expires after ttl. Never raises."""
        ttl = self.default_ttl if ttl is None else ttl
        envelope = {"stored_at": time.time(), "ttl": ttl, "value": value}
        return await self._write(key, envelope, ttl)

    async def close(self) -> None:
        """Close the backend."""
        await self.backend.close()

    async def _read_envelope(self, key: str) -> dict | None:
        try:
            raw = await self.backend.get(key)
        except Exception as e:
            logger.warning(f"Cache read failed for {key}: {e}")
            return None
        if raw is None:
            return None
        try:
            envelope = json.loads(raw)
        except ValueError as e:
            logger.warning(f"Discarding undecodable cache entry {key}: {e}")
            return None
        if not isinstance(envelope, dict):
            logger.warning(f"Discarding malformed cache entry {key}")
            return None
        return envelope

    async def _write(self, key: str, envelope: dict, backend_ttl: float) -> bool:
        try:
            payload = json.dumps(envelope, sort_keys=True).encode()
            await self.backend.set_with_ttl(key, payload, backend_ttl)
            return True
        except Exception as e:
            logger.warning(f"Cache write failed for {key}: {e}")
            return False
