"""
Redis connection manager for the live-sync services.
Provides async connection pool, pub/sub helpers, and key namespace utilities.
"""
from __future__ import annotations

import json
import time
from typing import Any, Optional

import redis.asyncio as aioredis
from redis.asyncio import Redis
from redis.asyncio.client import PubSub

from shared.config import Settings, get_settings
from shared.utils.logging import get_logger

logger = get_logger(__name__)

# ── Key namespaces ──────────────────────────────────────────────────────
PRESENCE_KEY = "presence:viewers:{competition}"
CONTROL_KEY = "control:polling:{competition}"
STATUS_KEY = "control:status:{competition}"
FANOUT_CHANNEL = "fanout:table:{table}"


def _fmt(template: str, **kwargs: Any) -> str:
    return template.format(**kwargs)


def fanout_channel(table: str) -> str:
    return _fmt(FANOUT_CHANNEL, table=table)


_TRUTHY = frozenset({"1", "true", "yes", "on"})


def parse_flag(raw: Optional[str], default: bool) -> bool:
    """Read a boolean field from the control hash; missing means `default`."""
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY


class RedisManager:
    """Manages async Redis connection pool and provides typed helpers."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._pool: Optional[Redis] = None

    async def connect(self) -> None:
        """Initialize the connection pool."""
        self._pool = aioredis.from_url(
            self._settings.redis_url_str,
            max_connections=self._settings.redis_max_connections,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_keepalive=True,
            retry_on_timeout=True,
        )
        await self._pool.ping()
        logger.info("redis_connected", url=self._settings.redis_url_str)

    async def disconnect(self) -> None:
        """Graceful shutdown."""
        if self._pool:
            await self._pool.aclose()
            self._pool = None
            logger.info("redis_disconnected")

    @property
    def client(self) -> Redis:
        if self._pool is None:
            raise RuntimeError("RedisManager not connected. Call connect() first.")
        return self._pool

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except Exception as exc:
            logger.warning("redis_ping_failed", error=str(exc))
            return False

    # ── Presence ────────────────────────────────────────────────────────
    # One ZSET per competition scored by last heartbeat; members older than
    # the TTL are pruned before every count.
    def _presence_ttl(self, ttl_s: Optional[int]) -> int:
        return ttl_s if ttl_s is not None else self._settings.ws_presence_ttl_s

    async def add_presence(
        self, competition: str, connection_id: str, ttl_s: Optional[int] = None, now: Optional[float] = None
    ) -> int:
        """Mark a viewer as attending. Returns updated count."""
        key = _fmt(PRESENCE_KEY, competition=competition)
        ttl = self._presence_ttl(ttl_s)
        now = time.time() if now is None else now
        pipe = self.client.pipeline(transaction=True)
        pipe.zadd(key, {connection_id: now})
        pipe.zremrangebyscore(key, "-inf", now - ttl)
        pipe.expire(key, ttl)
        pipe.zcard(key)
        results = await pipe.execute()
        return int(results[3])

    async def remove_presence(
        self, competition: str, connection_id: str, ttl_s: Optional[int] = None, now: Optional[float] = None
    ) -> int:
        """Remove a viewer from presence. Returns updated count."""
        key = _fmt(PRESENCE_KEY, competition=competition)
        now = time.time() if now is None else now
        pipe = self.client.pipeline(transaction=True)
        pipe.zrem(key, connection_id)
        pipe.zremrangebyscore(key, "-inf", now - self._presence_ttl(ttl_s))
        pipe.zcard(key)
        results = await pipe.execute()
        return int(results[2])

    async def get_presence_count(
        self, competition: str, ttl_s: Optional[int] = None, now: Optional[float] = None
    ) -> int:
        """Viewers whose last heartbeat is within the TTL."""
        key = _fmt(PRESENCE_KEY, competition=competition)
        now = time.time() if now is None else now
        pipe = self.client.pipeline(transaction=True)
        pipe.zremrangebyscore(key, "-inf", now - self._presence_ttl(ttl_s))
        pipe.zcard(key)
        results = await pipe.execute()
        return int(results[1])

    # ── Operator controls ───────────────────────────────────────────────
    async def get_polling_control(self, competition: str) -> dict[str, str]:
        """Raw control hash; empty when no operator has written one."""
        key = _fmt(CONTROL_KEY, competition=competition)
        return await self.client.hgetall(key)

    async def set_polling_control(self, competition: str, **fields: Any) -> None:
        key = _fmt(CONTROL_KEY, competition=competition)
        mapping = {
            k: (str(int(v)) if isinstance(v, bool) else str(v)) for k, v in fields.items() if v is not None
        }
        if mapping:
            await self.client.hset(key, mapping=mapping)

    # ── Pub/Sub ─────────────────────────────────────────────────────────
    async def publish(self, channel: str, payload: str) -> int:
        """Publish a message. Returns the number of receivers."""
        return await self.client.publish(channel, payload)

    async def subscribe_channel(self, pattern: str) -> PubSub:
        """Create a PubSub subscription on a pattern."""
        pubsub = self.client.pubsub()
        await pubsub.psubscribe(pattern)
        return pubsub

    # ── Scheduler status ────────────────────────────────────────────────
    async def set_scheduler_status(self, competition: str, status: dict[str, Any], ttl_s: int = 60) -> None:
        key = _fmt(STATUS_KEY, competition=competition)
        await self.client.set(key, json.dumps(status, default=str), ex=ttl_s)

    async def get_scheduler_status(self, competition: str) -> Optional[dict[str, Any]]:
        key = _fmt(STATUS_KEY, competition=competition)
        raw = await self.client.get(key)
        return json.loads(raw) if raw else None
