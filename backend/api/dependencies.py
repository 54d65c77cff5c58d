"""
Dependency injection for the API service.
Provides the live-state repository and Redis connection to route handlers.
"""
from __future__ import annotations

from shared.utils.database import DatabaseManager
from shared.utils.redis_manager import RedisManager

from ingest.store import LiveStateRepository

# Module-level singletons, initialized at startup
_redis: RedisManager | None = None
_db: DatabaseManager | None = None
_store: LiveStateRepository | None = None


def init_dependencies(
    redis: RedisManager | None, db: DatabaseManager | None, store: LiveStateRepository | None
) -> None:
    """Initialize module-level singletons. Called once at startup (and by tests)."""
    global _redis, _db, _store
    _redis = redis
    _db = db
    _store = store


def get_redis() -> RedisManager:
    """FastAPI dependency: returns the shared RedisManager."""
    if _redis is None:
        raise RuntimeError("RedisManager not initialized; call init_dependencies first")
    return _redis


def get_db() -> DatabaseManager:
    if _db is None:
        raise RuntimeError("DatabaseManager not initialized; call init_dependencies first")
    return _db


def get_store() -> LiveStateRepository:
    if _store is None:
        raise RuntimeError("LiveStateRepository not initialized; call init_dependencies first")
    return _store
