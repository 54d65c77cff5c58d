"""
Operator controls for the poll scheduler.

GET /control/polling: effective controls, viewers and the last scheduler status.
PUT /control/polling: set the enable flag or interval, or clear a credential fault.

Controls are stored in Redis; the scheduler process picks them up on its
next control refresh.
"""
from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from shared.config import Settings, get_settings
from shared.utils.logging import get_logger
from shared.utils.redis_manager import RedisManager, parse_flag

from api.dependencies import get_redis

logger = get_logger(__name__)
router = APIRouter(prefix="/control", tags=["control"])


class PollingControlUpdate(BaseModel):
    enabled: Optional[bool] = None
    interval_s: Optional[float] = Field(default=None, gt=0)
    clear_fault: bool = False


async def _effective(redis: RedisManager, settings: Settings) -> dict[str, Any]:
    competition = settings.active_competition
    raw = await redis.get_polling_control(competition)
    enabled = parse_flag(raw.get("enabled"), settings.poll_enabled)
    try:
        interval = float(raw.get("interval_s", settings.poll_interval_s))
    except ValueError:
        interval = settings.poll_interval_s
    return {
        "competition": competition,
        "enabled": enabled,
        "interval_s": max(interval, settings.poll_min_interval_s),
        "viewers": await redis.get_presence_count(competition),
        "scheduler": await redis.get_scheduler_status(competition),
    }


@router.get("/polling")
async def get_polling(redis: RedisManager = Depends(get_redis)) -> dict[str, Any]:
    return await _effective(redis, get_settings())


@router.put("/polling")
async def put_polling(
    update: PollingControlUpdate,
    redis: RedisManager = Depends(get_redis),
) -> dict[str, Any]:
    settings = get_settings()
    await redis.set_polling_control(
        settings.active_competition,
        enabled=update.enabled,
        interval_s=update.interval_s,
        clear_fault=True if update.clear_fault else None,
    )
    logger.info(
        "polling_control_updated",
        enabled=update.enabled,
        interval_s=update.interval_s,
        clear_fault=update.clear_fault,
    )
    return await _effective(redis, settings)
