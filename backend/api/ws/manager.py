"""
WebSocket connection manager for live-state viewers.

Every connection receives a snapshot of the live rows on connect, then every
LiveStateChange delivered by the ChangeFeed. Clients report tab visibility;
visible connections are counted in Redis presence, which is what tells the
scheduler somebody is watching.

Client ops:
    {"op": "ping"}
    {"op": "visibility", "visible": true|false}
"""
from __future__ import annotations

import asyncio
import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from shared.config import Settings, get_settings
from shared.models.domain import LiveStateChange
from shared.models.enums import WSClientOp, WSServerMsgType
from shared.utils.fanout import ChangeFeed, Subscription
from shared.utils.logging import get_logger
from shared.utils.metrics import WS_CONNECTIONS, WS_MESSAGES
from shared.utils.redis_manager import RedisManager

from ingest.store import LIVE_TABLE, LiveStateRepository

logger = get_logger(__name__)

# Client must send something within this window after a server ping
HEARTBEAT_TIMEOUT_S = 10.0


@dataclass
class WSConnection:
    """Represents a single WebSocket client connection."""

    ws: WebSocket
    connection_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    visible: bool = True
    created_at: float = field(default_factory=time.monotonic)
    last_seen_at: float = field(default_factory=time.monotonic)
    remote_addr: str = ""

    @property
    def alive_seconds(self) -> float:
        return time.monotonic() - self.created_at


class WebSocketManager:
    """Manages all viewer connections for this API instance."""

    def __init__(
        self,
        redis: RedisManager,
        feed: ChangeFeed,
        store: LiveStateRepository,
        settings: Settings | None = None,
    ) -> None:
        self._redis = redis
        self._feed = feed
        self._store = store
        self._settings = settings or get_settings()
        self._connections: dict[str, WSConnection] = {}
        self._subscription: Optional[Subscription] = None
        self._heartbeat_task: Optional[asyncio.Task[None]] = None
        self._shutdown = asyncio.Event()

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    @property
    def visible_count(self) -> int:
        return sum(1 for c in self._connections.values() if c.visible)

    async def start(self) -> None:
        self._subscription = self._feed.subscribe(LIVE_TABLE, self.broadcast_change)
        self._heartbeat_task = asyncio.create_task(self._run_heartbeat())
        logger.info("ws_manager_started")

    async def stop(self) -> None:
        self._shutdown.set()
        if self._subscription:
            self._subscription.unsubscribe()
            self._subscription = None
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
        served = len(self._connections)
        for conn in list(self._connections.values()):
            await self._close_connection(conn, code=1001, reason="server_shutdown")
        logger.info("ws_manager_stopped", open_connections=served)

    async def handle_connection(self, ws: WebSocket) -> None:
        """Accept, snapshot, then serve client ops until disconnect."""
        await ws.accept()
        conn = WSConnection(
            ws=ws,
            remote_addr=f"{ws.client.host}:{ws.client.port}" if ws.client else "unknown",
        )
        self._connections[conn.connection_id] = conn
        WS_CONNECTIONS.inc()
        logger.info(
            "ws_connected",
            connection_id=conn.connection_id,
            remote_addr=conn.remote_addr,
            connections=self.connection_count,
        )

        try:
            await self._mark_presence(conn)
            await self._send(conn, {
                "type": WSServerMsgType.STATE.value,
                "connection_id": conn.connection_id,
                "heartbeat_interval": self._settings.ws_heartbeat_interval_s,
            })
            await self._send_snapshot(conn)

            while not self._shutdown.is_set():
                try:
                    raw = await asyncio.wait_for(
                        ws.receive_text(), timeout=self._settings.ws_heartbeat_interval_s * 2
                    )
                except asyncio.TimeoutError:
                    continue
                conn.last_seen_at = time.monotonic()
                WS_MESSAGES.labels(direction="in").inc()
                await self._handle_message(conn, raw)
        except WebSocketDisconnect:
            pass
        except Exception as exc:
            logger.warning("ws_connection_error", connection_id=conn.connection_id, error=str(exc))
        finally:
            await self._cleanup_connection(conn)

    async def _handle_message(self, conn: WSConnection, raw: str) -> None:
        try:
            msg = json.loads(raw)
        except json.JSONDecodeError:
            await self._send_error(conn, "invalid_json", "Message must be valid JSON")
            return
        if not isinstance(msg, dict) or not msg.get("op"):
            await self._send_error(conn, "missing_op", "Message must include 'op' field")
            return
        try:
            operation = WSClientOp(msg["op"])
        except ValueError:
            await self._send_error(conn, "unknown_op", f"Unknown operation: {msg['op']}")
            return

        if operation == WSClientOp.PING:
            await self._send(conn, {"type": WSServerMsgType.PONG.value, "timestamp": time.time()})
        elif operation == WSClientOp.VISIBILITY:
            visible = msg.get("visible")
            if not isinstance(visible, bool):
                await self._send_error(conn, "invalid_visibility", "visibility requires boolean 'visible'")
                return
            await self._set_visibility(conn, visible)

    async def _set_visibility(self, conn: WSConnection, visible: bool) -> None:
        if conn.visible == visible:
            return
        conn.visible = visible
        await self._mark_presence(conn)
        if visible:
            # Rows may have changed while the tab was hidden.
            await self._send_snapshot(conn)
        logger.debug(
            "ws_visibility_changed",
            connection_id=conn.connection_id,
            visible=visible,
            visible_connections=self.visible_count,
        )

    async def _mark_presence(self, conn: WSConnection) -> None:
        competition = self._settings.active_competition
        try:
            if conn.visible:
                await self._redis.add_presence(competition, conn.connection_id, self._settings.ws_presence_ttl_s)
            else:
                await self._redis.remove_presence(competition, conn.connection_id)
        except Exception as exc:
            logger.warning("ws_presence_update_failed", connection_id=conn.connection_id, error=str(exc))

    async def _send_snapshot(self, conn: WSConnection) -> None:
        try:
            rows = await self._store.live_rows()
        except Exception as exc:
            logger.warning("ws_snapshot_failed", connection_id=conn.connection_id, error=str(exc))
            await self._send_error(conn, "snapshot_unavailable", "Live state temporarily unavailable")
            return
        await self._send(conn, {
            "type": WSServerMsgType.SNAPSHOT.value,
            "table": LIVE_TABLE,
            "rows": [r.model_dump(mode="json") for r in rows],
        })

    async def broadcast_change(self, change: LiveStateChange) -> None:
        """ChangeFeed handler: push one change to every connection."""
        message = {"type": WSServerMsgType.CHANGE.value, **change.model_dump(mode="json")}
        conns = list(self._connections.values())
        if not conns:
            return
        await asyncio.gather(*(self._send(c, message) for c in conns), return_exceptions=True)
        WS_MESSAGES.labels(direction="out").inc(len(conns))

    async def _run_heartbeat(self) -> None:
        """Ping clients, drop silent ones, and keep presence for visible ones alive."""
        interval = self._settings.ws_heartbeat_interval_s
        while not self._shutdown.is_set():
            try:
                await asyncio.sleep(interval)
                now = time.monotonic()
                for conn in list(self._connections.values()):
                    if now - conn.last_seen_at > interval * 2 + HEARTBEAT_TIMEOUT_S:
                        logger.info(
                            "ws_heartbeat_timeout",
                            connection_id=conn.connection_id,
                            alive_seconds=round(conn.alive_seconds, 1),
                        )
                        await self._close_connection(conn, code=1000, reason="heartbeat_timeout")
                        continue
                    await self._send(conn, {"type": "ping", "timestamp": time.time()})
                    if conn.visible:
                        await self._mark_presence(conn)
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("ws_heartbeat_error", error=str(exc))

    async def _send(self, conn: WSConnection, message: dict[str, Any]) -> None:
        try:
            if conn.ws.client_state == WebSocketState.CONNECTED:
                await conn.ws.send_text(json.dumps(message, default=str))
        except Exception as exc:
            logger.debug("ws_send_error", connection_id=conn.connection_id, error=str(exc))

    async def _send_error(self, conn: WSConnection, code: str, message: str) -> None:
        await self._send(conn, {
            "type": WSServerMsgType.ERROR.value,
            "error": {"code": code, "message": message},
        })

    async def _close_connection(self, conn: WSConnection, code: int = 1000, reason: str = "") -> None:
        try:
            if conn.ws.client_state == WebSocketState.CONNECTED:
                await conn.ws.close(code=code, reason=reason)
        except Exception as exc:
            logger.debug("ws_close_error", connection_id=conn.connection_id, error=str(exc))
        await self._cleanup_connection(conn)

    async def _cleanup_connection(self, conn: WSConnection) -> None:
        if self._connections.pop(conn.connection_id, None) is None:
            return
        WS_CONNECTIONS.dec()
        try:
            await self._redis.remove_presence(self._settings.active_competition, conn.connection_id)
        except Exception as exc:
            logger.warning("ws_presence_update_failed", connection_id=conn.connection_id, error=str(exc))
        logger.info(
            "ws_disconnected",
            connection_id=conn.connection_id,
            alive_seconds=round(conn.alive_seconds, 1),
        )
