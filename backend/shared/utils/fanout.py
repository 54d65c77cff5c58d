"""
Change fan-out over Redis pub/sub.

Writers publish a LiveStateChange envelope after each committed write; readers
register a callback per table with ChangeFeed.subscribe(). Delivery is
at-least-once per row and unordered across rows, so consumers must treat
every envelope as a full replacement of that subject's row.
"""
from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from pydantic import ValidationError

from shared.models.domain import LiveStateChange
from shared.utils.logging import get_logger
from shared.utils.metrics import FANOUT_PUBLISHES
from shared.utils.redis_manager import RedisManager, fanout_channel

logger = get_logger(__name__)

ChangeHandler = Callable[[LiveStateChange], Awaitable[None]]

_PATTERN = fanout_channel("*")


@dataclass
class Subscription:
    table: str
    handler: ChangeHandler
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    _feed: Optional["ChangeFeed"] = None

    def unsubscribe(self) -> None:
        if self._feed is not None:
            self._feed._remove(self)
            self._feed = None


class ChangeFeed:
    """
    Publish/subscribe for row-level changes, keyed by table name.

    One Redis pattern subscription per process; callbacks are dispatched
    in-process so adding a subscriber costs nothing on the Redis side.
    """

    def __init__(self, redis: RedisManager) -> None:
        self._redis = redis
        self._handlers: dict[str, dict[str, Subscription]] = {}
        self._listener: Optional[asyncio.Task[None]] = None
        self._shutdown = asyncio.Event()

    async def publish(self, change: LiveStateChange) -> int:
        """Publish one change. Returns the number of Redis receivers."""
        receivers = await self._redis.publish(fanout_channel(change.table), change.model_dump_json())
        FANOUT_PUBLISHES.labels(op=change.op.value).inc()
        logger.debug(
            "fanout_published",
            table=change.table,
            op=change.op.value,
            subject_id=str(change.subject_id),
            receivers=receivers,
        )
        return receivers

    def subscribe(self, table: str, on_change: ChangeHandler) -> Subscription:
        """Register `on_change` for every change on `table`."""
        sub = Subscription(table=table, handler=on_change, _feed=self)
        self._handlers.setdefault(table, {})[sub.id] = sub
        logger.debug("fanout_subscribed", table=table, subscription_id=sub.id)
        return sub

    def _remove(self, sub: Subscription) -> None:
        table_subs = self._handlers.get(sub.table)
        if table_subs is None:
            return
        table_subs.pop(sub.id, None)
        if not table_subs:
            del self._handlers[sub.table]

    def subscriber_count(self, table: str) -> int:
        return len(self._handlers.get(table, {}))

    async def start(self) -> None:
        self._shutdown.clear()
        self._listener = asyncio.create_task(self._run_listener())
        logger.info("fanout_listener_started", pattern=_PATTERN)

    async def stop(self) -> None:
        self._shutdown.set()
        if self._listener:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        logger.info("fanout_listener_stopped")

    async def _run_listener(self) -> None:
        pubsub = await self._redis.subscribe_channel(_PATTERN)
        try:
            while not self._shutdown.is_set():
                try:
                    message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.warning("fanout_receive_error", error=str(exc))
                    await asyncio.sleep(1.0)
                    continue
                if message and message["type"] == "pmessage":
                    await self.dispatch(message["data"])
        finally:
            await pubsub.punsubscribe(_PATTERN)
            await pubsub.aclose()

    async def dispatch(self, raw: str | bytes) -> int:
        """Decode one envelope and hand it to every handler for its table."""
        if isinstance(raw, bytes):
            raw = raw.decode()
        try:
            change = LiveStateChange.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning("fanout_bad_envelope", error=str(exc))
            return 0

        subs = list(self._handlers.get(change.table, {}).values())
        delivered = 0
        for sub in subs:
            try:
                await sub.handler(change)
                delivered += 1
            except Exception:
                logger.error(
                    "fanout_handler_error",
                    table=change.table,
                    subscription_id=sub.id,
                    exc_info=True,
                )
        return delivered
