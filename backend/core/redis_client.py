"""Smart Specs Redis session-state layer.

Uses redis.asyncio (redis-py >= 4.2) for fully async operations.
Stores:
 - Per-session state snapshot (mode, listening, battery, hazard, navigation)
 - TTL-based expiry so abandoned sessions auto-cleanup
Publishes every client-facing bus event on ``specs:events:<session_id>``
so companion apps can follow a session without holding the websocket.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, Optional

import redis.asyncio as aioredis

logger = logging.getLogger("smartspecs.redis")

_pool: Optional[aioredis.Redis] = None

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379")
SESSION_TTL = int(os.getenv("SPECS_SESSION_TTL_SEC", "3600"))


async def init_redis() -> aioredis.Redis:
    """Create the global async Redis connection pool."""
    global _pool
    _pool = aioredis.from_url(
        REDIS_URL,
        decode_responses=True,
        max_connections=20,
    )
    await _pool.ping()
    logger.info("Redis connected at %s", REDIS_URL)
    return _pool


async def close_redis() -> None:
    global _pool
    if _pool:
        await _pool.aclose()
        _pool = None
        logger.info("Redis connection closed")


def is_connected() -> bool:
    return _pool is not None


def _r() -> aioredis.Redis:
    if _pool is None:
        raise RuntimeError("Redis not initialised - call init_redis() first")
    return _pool


# ---------------------------------------------------------------------------
#  Session state  (hash per session)
# ---------------------------------------------------------------------------

def _session_key(session_id: str) -> str:
    return f"specs:session:{session_id}"


def _events_channel(session_id: str) -> str:
    return f"specs:events:{session_id}"


async def set_session_state(session_id: str, data: Dict[str, Any]) -> None:
    """Upsert fields into the session hash and refresh TTL."""
    key = _session_key(session_id)
    r = _r()
    serialised = {k: json.dumps(v) if not isinstance(v, str) else v for k, v in data.items()}
    await r.hset(key, mapping=serialised)
    await r.expire(key, SESSION_TTL)


async def delete_session(session_id: str) -> None:
    await _r().delete(_session_key(session_id))


# ---------------------------------------------------------------------------
#  Pub / Sub  (real-time event broadcast)
# ---------------------------------------------------------------------------

async def publish_event(session_id: str, event: dict) -> int:
    """Publish a serialised bus event to the session's channel."""
    return await _r().publish(_events_channel(session_id), json.dumps(event))
