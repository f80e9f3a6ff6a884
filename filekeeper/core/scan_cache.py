"""Content-hash keyed cache of scan verdicts.

Identical bytes uploaded under different names share one verdict, so the
cache is keyed by the SHA-256 of the content rather than by storage key.
Entries carry an absolute expiry; expired entries are discarded lazily on
lookup.  Caching is an optimisation only: a miss (or a broken cache) just
means the daemon is asked again.

Two backends are provided:

* :class:`InMemoryScanCache` — per-process dict guarded by an
  :class:`asyncio.Lock`.
* :class:`RedisScanCache` — shared between workers; Redis ``EX`` handles
  expiry natively.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, BinaryIO, Callable

from filekeeper.core.scan_result import ScanResult

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "clamav_scan"

_HASH_BLOCK_SIZE = 8192


def content_cache_key(stream: BinaryIO) -> str:
    """Return ``clamav_scan:<SHA-256 hex>`` for the whole of *stream*.

    The digest covers the stream from position 0; the caller's position is
    restored afterwards.  *stream* must be seekable.
    """
    if not stream.seekable():
        raise ValueError("Stream must be seekable for caching")
    original_position = stream.tell()
    stream.seek(0)
    try:
        digest = hashlib.sha256()
        for block in iter(lambda: stream.read(_HASH_BLOCK_SIZE), b""):
            digest.update(block)
    finally:
        stream.seek(original_position)
    return f"{CACHE_KEY_PREFIX}:{digest.hexdigest().upper()}"


class ScanCache(ABC):
    """Storage for cached :class:`~filekeeper.core.scan_result.ScanResult` values."""

    @abstractmethod
    async def get(self, key: str) -> ScanResult | None:
        ...

    @abstractmethod
    async def set(self, key: str, result: ScanResult, ttl_seconds: int) -> None:
        ...


class InMemoryScanCache(ScanCache):
    """Process-local cache with lazy expiry.

    Args:
        clock: Monotonic clock returning seconds.  Injected by tests.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._entries: dict[str, tuple[ScanResult, float]] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    async def get(self, key: str) -> ScanResult | None:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            result, expires_at = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return result

    async def set(self, key: str, result: ScanResult, ttl_seconds: int) -> None:
        async with self._lock:
            self._entries[key] = (result, self._clock() + ttl_seconds)

    def __len__(self) -> int:
        return len(self._entries)


class RedisScanCache(ScanCache):
    """Redis-backed cache shared across workers.

    Args:
        redis: A ``redis.asyncio.Redis`` (or compatible) client.
        key_prefix: Namespace prepended to every cache key.
    """

    def __init__(self, redis: Any, key_prefix: str = "filekeeper") -> None:
        self._redis = redis
        self._key_prefix = key_prefix

    def _redis_key(self, key: str) -> str:
        return f"{self._key_prefix}:{key}"

    async def get(self, key: str) -> ScanResult | None:
        try:
            raw = await self._redis.get(self._redis_key(key))
        except Exception as exc:
            logger.warning("Scan cache lookup failed key=%s: %r", key, exc)
            return None
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            return ScanResult.from_dict(json.loads(raw))
        except (ValueError, KeyError) as exc:
            logger.warning("Discarding malformed scan cache entry key=%s: %r", key, exc)
            return None

    async def set(self, key: str, result: ScanResult, ttl_seconds: int) -> None:
        try:
            await self._redis.set(
                self._redis_key(key),
                json.dumps(result.to_dict()),
                ex=ttl_seconds,
            )
        except Exception as exc:
            logger.warning("Scan cache store failed key=%s: %r", key, exc)
