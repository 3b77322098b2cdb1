"""Tests for replay protection backends (nonce_registry.py)."""

from __future__ import annotations

import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import AsyncMock, patch

import pytest

from persona_gate.config import NonceConfig
from persona_gate.errors import NonceStoreError
from persona_gate.nonce_registry import (
    InMemoryNonceRegistry,
    RedisNonceRegistry,
    create_nonce_registry,
)


# --- In-memory: check-and-consume ---

@pytest.mark.asyncio
async def test_first_use_then_replay():
    reg = InMemoryNonceRegistry()
    assert await reg.check_and_consume("acme", "n1", expires_at=200, now=100) is True
    assert await reg.check_and_consume("acme", "n1", expires_at=200, now=150) is False


@pytest.mark.asyncio
async def test_nonces_scoped_per_partner():
    reg = InMemoryNonceRegistry()
    assert await reg.check_and_consume("acme", "n1", 200, 100) is True
    assert await reg.check_and_consume("globex", "n1", 200, 100) is True


@pytest.mark.asyncio
async def test_record_live_through_its_expiry_instant():
    reg = InMemoryNonceRegistry()
    await reg.check_and_consume("acme", "n1", 200, 100)
    assert await reg.check_and_consume("acme", "n1", 300, 200) is False


@pytest.mark.asyncio
async def test_key_reusable_after_expiry():
    reg = InMemoryNonceRegistry()
    await reg.check_and_consume("acme", "n1", 200, 100)
    assert await reg.check_and_consume("acme", "n1", 400, 201) is True


# --- In-memory: pruning ---

def test_prune_keeps_records_within_grace():
    reg = InMemoryNonceRegistry(retention_grace=60)
    reg.consume("acme", "old", 100, 50)
    reg.consume("acme", "live", 1000, 50)
    assert reg.prune(now=150) == 0
    assert reg.prune(now=161) == 1
    assert len(reg) == 1


def test_prune_never_removes_unexpired():
    reg = InMemoryNonceRegistry(retention_grace=0)
    reg.consume("acme", "n1", 500, 100)
    reg.prune(now=500)
    assert len(reg) == 1
    assert reg.consume("acme", "n1", 600, 499) is False


def test_opportunistic_prune_on_interval():
    reg = InMemoryNonceRegistry(prune_interval=10, retention_grace=0)
    reg.consume("acme", "a", 105, 100)
    reg.consume("acme", "b", 105, 104)   # inside interval: no prune
    assert len(reg) == 2
    reg.consume("acme", "c", 200, 111)   # interval elapsed: a and b pruned
    assert len(reg) == 1


def test_full_registry_fails_closed():
    reg = InMemoryNonceRegistry(max_entries=2, retention_grace=0)
    reg.consume("acme", "a", 1000, 100)
    reg.consume("acme", "b", 1000, 100)
    with pytest.raises(NonceStoreError):
        reg.consume("acme", "c", 1000, 100)


def test_full_registry_recovers_after_expiry():
    reg = InMemoryNonceRegistry(max_entries=1, retention_grace=0, prune_interval=3600)
    reg.consume("acme", "a", 150, 100)
    assert reg.consume("acme", "b", 500, 200) is True


# --- In-memory: concurrency ---

@pytest.mark.asyncio
async def test_concurrent_tasks_exactly_one_wins():
    reg = InMemoryNonceRegistry()
    results = await asyncio.gather(*[
        reg.check_and_consume("acme", "same", 200, 100) for _ in range(20)
    ])
    assert results.count(True) == 1


def test_concurrent_threads_exactly_one_wins():
    reg = InMemoryNonceRegistry()
    barrier = threading.Barrier(16)

    def attempt(_: int) -> bool:
        barrier.wait()
        return reg.consume("acme", "same", 200, 100)

    with ThreadPoolExecutor(max_workers=16) as pool:
        results = list(pool.map(attempt, range(16)))
    assert results.count(True) == 1


# --- Redis backend ---

def _redis_client(set_result=True):
    client = AsyncMock()
    client.set = AsyncMock(return_value=set_result)
    client.ping = AsyncMock()
    client.aclose = AsyncMock()
    return client


@pytest.mark.asyncio
async def test_redis_first_use():
    client = _redis_client(set_result=True)
    reg = RedisNonceRegistry("redis://x", client=client, retention_grace=0)
    assert await reg.check_and_consume("acme", "n1", expires_at=200, now=100) is True
    args, kwargs = client.set.call_args
    assert args[0].startswith("persona_gate:nonce:acme:")
    assert "n1" not in args[0]
    assert kwargs["nx"] is True
    assert kwargs["px"] == 100_000


@pytest.mark.asyncio
async def test_redis_replay_returns_false():
    reg = RedisNonceRegistry("redis://x", client=_redis_client(set_result=None))
    assert await reg.check_and_consume("acme", "n1", 200, 100) is False


@pytest.mark.asyncio
async def test_redis_error_fails_closed():
    client = _redis_client()
    client.set.side_effect = ConnectionError("down")
    reg = RedisNonceRegistry("redis://x", client=client)
    with pytest.raises(NonceStoreError):
        await reg.check_and_consume("acme", "n1", 200, 100)


@pytest.mark.asyncio
async def test_redis_unconnected_fails_closed():
    reg = RedisNonceRegistry("redis://x")
    with pytest.raises(NonceStoreError):
        await reg.check_and_consume("acme", "n1", 200, 100)


@pytest.mark.asyncio
async def test_redis_unrepresentable_ttl_fails_closed():
    client = _redis_client()
    reg = RedisNonceRegistry("redis://x", client=client)
    with pytest.raises(NonceStoreError):
        await reg.check_and_consume("acme", "n1", float("inf"), 100)
    client.set.assert_not_called()


@pytest.mark.asyncio
async def test_redis_connect_failure_leaves_unconnected():
    client = _redis_client()
    client.ping.side_effect = ConnectionError("refused")
    with patch("persona_gate.nonce_registry.Redis") as MockRedis:
        MockRedis.from_url.return_value = client
        reg = RedisNonceRegistry("redis://bad-host:6379")
        await reg.connect()
    with pytest.raises(NonceStoreError):
        await reg.check_and_consume("acme", "n1", 200, 100)


@pytest.mark.asyncio
async def test_redis_close():
    client = _redis_client()
    reg = RedisNonceRegistry("redis://x", client=client)
    await reg.close()
    client.aclose.assert_awaited_once()


# --- Factory ---

def test_factory_memory():
    assert isinstance(create_nonce_registry(NonceConfig(backend="memory")), InMemoryNonceRegistry)


def test_factory_redis():
    assert isinstance(create_nonce_registry(NonceConfig(backend="redis")), RedisNonceRegistry)


def test_factory_unknown_backend():
    with pytest.raises(ValueError):
        create_nonce_registry(NonceConfig(backend="memcached"))
