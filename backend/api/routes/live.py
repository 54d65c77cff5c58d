"""
Live-state REST endpoints.

GET /live               Rows currently live or at halftime, by kickoff.
GET /live/recent        Most recently finished rows (still inside retention).
GET /live/{subject_id}  The subject's row, whatever its phase.
"""
from __future__ import annotations

import uuid
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from shared.utils.logging import get_logger

from api.dependencies import get_store
from ingest.store import LiveStateRepository

logger = get_logger(__name__)
router = APIRouter(prefix="/live", tags=["live"])


@router.get("")
async def list_live(
    competition: Optional[str] = Query(default=None),
    store: LiveStateRepository = Depends(get_store),
) -> dict[str, Any]:
    rows = await store.live_rows(competition)
    return {"rows": [r.model_dump(mode="json") for r in rows], "count": len(rows)}


@router.get("/recent")
async def list_recent(
    limit: int = Query(default=5, ge=1, le=50),
    store: LiveStateRepository = Depends(get_store),
) -> dict[str, Any]:
    rows = await store.recent_finished(limit)
    return {"rows": [r.model_dump(mode="json") for r in rows], "count": len(rows)}


@router.get("/{subject_id}")
async def get_subject_state(
    subject_id: uuid.UUID,
    store: LiveStateRepository = Depends(get_store),
) -> dict[str, Any]:
    row = await store.get_live_state(subject_id)
    if row is None:
        raise HTTPException(status_code=404, detail="No live state for subject")
    return row.model_dump(mode="json")
