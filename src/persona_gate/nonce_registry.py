"""Replay protection: at-most-once consumption of (partner_id, nonce) pairs.

Two backends:
  memory → per-process dict under a lock. A restart resets the replay window.
  redis  → shared across instances, atomic SET NX with a TTL. Fails closed.

Records are kept for `retention_grace` seconds past their expiry before they
become eligible for pruning, so a caller whose clock reads slightly behind
another caller's never finds a still-live nonce already pruned.
"""

from __future__ import annotations

import abc
import hashlib
import logging
import math
import threading
from typing import Any

from redis.asyncio import Redis

from persona_gate.config import NonceConfig
from persona_gate.errors import NonceStoreError

logger = logging.getLogger("persona_gate.nonce")


class NonceRegistry(abc.ABC):
    """Records consumed nonces. Implementations must make check-and-insert atomic."""

    @abc.abstractmethod
    async def check_and_consume(
        self, partner_id: str, nonce: str, expires_at: float, now: float
    ) -> bool:
        """Return True on first use (nonce recorded), False if a live record exists.

        Raises NonceStoreError when the nonce could not be recorded.
        """

    async def close(self) -> None:
        return None


class InMemoryNonceRegistry(NonceRegistry):
    """Dict-backed registry keyed by (partner_id, nonce) with opportunistic pruning."""

    def __init__(
        self,
        prune_interval: float = 60,
        max_entries: int = 1_000_000,
        retention_grace: float = 60,
    ) -> None:
        self._records: dict[tuple[str, str], float] = {}
        self._lock = threading.Lock()
        self._prune_interval = prune_interval
        self._max_entries = max_entries
        self._retention_grace = retention_grace
        self._last_prune: float | None = None

    def __len__(self) -> int:
        return len(self._records)

    def consume(self, partner_id: str, nonce: str, expires_at: float, now: float) -> bool:
        """Synchronous check-and-insert; the whole operation holds the lock."""
        key = (partner_id, nonce)
        with self._lock:
            if self._last_prune is None or now - self._last_prune >= self._prune_interval:
                self._prune_locked(now)

            existing = self._records.get(key)
            if existing is not None and existing >= now:
                return False

            if existing is None and len(self._records) >= self._max_entries:
                self._prune_locked(now)
                if len(self._records) >= self._max_entries:
                    raise NonceStoreError("nonce registry is full")

            self._records[key] = expires_at
            return True

    async def check_and_consume(
        self, partner_id: str, nonce: str, expires_at: float, now: float
    ) -> bool:
        return self.consume(partner_id, nonce, expires_at, now)

    def prune(self, now: float) -> int:
        """Drop records past expiry plus grace. Returns number removed."""
        with self._lock:
            return self._prune_locked(now)

    def _prune_locked(self, now: float) -> int:
        cutoff = now - self._retention_grace
        stale = [key for key, exp in self._records.items() if exp < cutoff]
        for key in stale:
            del self._records[key]
        self._last_prune = now
        if stale:
            logger.debug("nonce: pruned %d expired records", len(stale))
        return len(stale)


class RedisNonceRegistry(NonceRegistry):
    """Shared registry for multi-instance deployments.

    Uniqueness is global across every instance pointed at the same Redis.
    Any Redis failure raises NonceStoreError so the validator rejects the token.
    """

    def __init__(
        self,
        redis_url: str,
        key_prefix: str = "persona_gate:nonce",
        retention_grace: float = 60,
        client: Any = None,
    ) -> None:
        self._url = redis_url
        self._prefix = key_prefix
        self._retention_grace = retention_grace
        self._redis: Any = client

    async def connect(self) -> None:
        """Connect to Redis. Leaves the registry unconnected (and failing closed) on error."""
        try:
            self._redis = Redis.from_url(self._url, decode_responses=False)
            await self._redis.ping()
        except Exception as exc:
            logger.warning("nonce: Redis unavailable at startup, embed tokens will be rejected (%s)", exc)
            self._redis = None

    def _key(self, partner_id: str, nonce: str) -> str:
        digest = hashlib.sha256(nonce.encode("utf-8")).hexdigest()
        return f"{self._prefix}:{partner_id}:{digest}"

    async def check_and_consume(
        self, partner_id: str, nonce: str, expires_at: float, now: float
    ) -> bool:
        if self._redis is None:
            raise NonceStoreError("nonce registry not connected")
        try:
            # TTL is relative to the caller's clock, not the Redis server's
            ttl_ms = max(1, math.ceil((expires_at - now + self._retention_grace) * 1000))
            created = await self._redis.set(self._key(partner_id, nonce), b"1", nx=True, px=ttl_ms)
        except Exception as exc:
            raise NonceStoreError("nonce registry write failed") from exc
        return bool(created)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


def create_nonce_registry(config: NonceConfig) -> NonceRegistry:
    """Build the configured backend. Redis registries still need `await connect()`."""
    if config.backend == "memory":
        return InMemoryNonceRegistry(
            prune_interval=config.prune_interval,
            max_entries=config.max_entries,
        )
    if config.backend == "redis":
        return RedisNonceRegistry(config.redis_url, key_prefix=config.key_prefix)
    raise ValueError(f"Unknown nonce backend {config.backend!r}: expected 'memory' or 'redis'")
