"""
FastAPI application factory for the live-state viewer API.

Creates the app with:
- REST routes (live state, operator controls)
- WebSocket endpoint bridging the change feed to viewers
- Middleware stack
- Health check endpoints
- Lifespan management (startup/shutdown)
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Awaitable, Callable

from fastapi import FastAPI, WebSocket

from shared.config import get_settings
from shared.utils.database import DatabaseManager
from shared.utils.fanout import ChangeFeed
from shared.utils.logging import get_logger, setup_logging
from shared.utils.metrics import start_metrics_server
from shared.utils.redis_manager import RedisManager

from api.dependencies import get_db, get_redis, init_dependencies
from api.middleware import setup_middleware
from api.routes.control import router as control_router
from api.routes.live import router as live_router
from api.ws.manager import WebSocketManager
from ingest.store import SqlLiveStateRepository

logger = get_logger(__name__)

# Module-level reference for the WS manager (accessed by the ws endpoint)
_ws_manager: WebSocketManager | None = None

# Retry connection on startup (Redis/DB may come up after the API container)
_CONNECT_RETRY_ATTEMPTS = 10
_CONNECT_RETRY_BASE_DELAY_S = 2.0


async def _connect_with_retry(connect_fn: Callable[[], Awaitable[None]], name: str) -> None:
    """Call async connect_fn(); retry with exponential backoff on failure."""
    for attempt in range(1, _CONNECT_RETRY_ATTEMPTS + 1):
        try:
            await connect_fn()
            return
        except Exception as exc:
            if attempt == _CONNECT_RETRY_ATTEMPTS:
                raise
            delay = _CONNECT_RETRY_BASE_DELAY_S * (2 ** (attempt - 1))
            logger.warning(
                "connect_retry",
                name=name,
                attempt=attempt,
                max_attempts=_CONNECT_RETRY_ATTEMPTS,
                delay_s=delay,
                error=str(exc),
            )
            await asyncio.sleep(delay)


@asynccontextmanager
async def _noop_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """No-op lifespan for testing without DB/Redis."""
    yield


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Connect infrastructure, start the change feed and WS manager; undo on shutdown."""
    global _ws_manager

    settings = get_settings()
    setup_logging("api")
    start_metrics_server()

    redis = RedisManager(settings)
    db = DatabaseManager(settings)
    await _connect_with_retry(redis.connect, "Redis")
    await _connect_with_retry(db.connect, "Database")

    feed = ChangeFeed(redis)
    store = SqlLiveStateRepository(db, feed)
    init_dependencies(redis, db, store)

    _ws_manager = WebSocketManager(redis, feed, store, settings)
    await _ws_manager.start()
    await feed.start()

    logger.info("api_service_started", host=settings.api_host, port=settings.api_port)

    yield

    await feed.stop()
    if _ws_manager:
        await _ws_manager.stop()
        _ws_manager = None
    await db.disconnect()
    await redis.disconnect()
    logger.info("api_service_stopped")


def create_app(*, use_lifespan: bool = True) -> FastAPI:
    """Create and configure the FastAPI application. Set use_lifespan=False for testing without DB/Redis."""
    app = FastAPI(
        title="Live Sync API",
        description="Live match state for tracked athletes",
        version="1.0.0",
        lifespan=lifespan if use_lifespan else _noop_lifespan,
    )

    setup_middleware(app)
    app.include_router(live_router)
    app.include_router(control_router)

    @app.get("/health", tags=["system"])
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": "api"}

    @app.get("/ready", tags=["system"])
    async def readiness() -> dict[str, Any]:
        """Readiness probe; checks downstream dependencies."""
        try:
            redis_ok = await get_redis().ping()
        except RuntimeError:
            redis_ok = False
        try:
            db_ok = await get_db().ping()
        except RuntimeError:
            db_ok = False
        return {
            "status": "ok" if (redis_ok and db_ok) else "degraded",
            "redis": redis_ok,
            "database": db_ok,
        }

    @app.websocket("/ws")
    async def websocket_endpoint(ws: WebSocket) -> None:
        """
        Live-state stream.

        Server messages: state (welcome), snapshot (live rows), change
        (LiveStateChange envelope), pong, error.
        """
        if _ws_manager is None:
            await ws.close(code=1013, reason="service_unavailable")
            return
        await _ws_manager.handle_connection(ws)

    return app


# For running with uvicorn directly
app = create_app()
