"""Unit tests for the Redis session-state layer (pool mocked)."""

import json
from unittest.mock import AsyncMock, patch

import pytest

import redis_client


@pytest.fixture
def pool():
    fake = AsyncMock()
    with patch.object(redis_client, "_pool", fake):
        yield fake


def test_not_connected_by_default():
    assert redis_client.is_connected() is False
    with pytest.raises(RuntimeError):
        redis_client._r()


@pytest.mark.asyncio
async def test_state_written_as_hash_with_ttl(pool):
    await redis_client.set_session_state("abc", {"mode": "idle", "battery": 80, "hazard": None})

    pool.hset.assert_awaited_once_with(
        "specs:session:abc",
        mapping={"mode": "idle", "battery": "80", "hazard": "null"},
    )
    pool.expire.assert_awaited_once_with("specs:session:abc", redis_client.SESSION_TTL)


@pytest.mark.asyncio
async def test_events_published_on_session_channel(pool):
    pool.publish.return_value = 2
    event = {"type": "BatteryLow", "level": 9}

    assert await redis_client.publish_event("abc", event) == 2
    pool.publish.assert_awaited_once_with("specs:events:abc", json.dumps(event))


@pytest.mark.asyncio
async def test_delete_session(pool):
    await redis_client.delete_session("abc")
    pool.delete.assert_awaited_once_with("specs:session:abc")


@pytest.mark.asyncio
async def test_close_resets_pool():
    fake = AsyncMock()
    redis_client._pool = fake
    await redis_client.close_redis()
    fake.aclose.assert_awaited_once()
    assert redis_client.is_connected() is False
