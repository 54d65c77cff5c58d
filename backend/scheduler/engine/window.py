"""
Match-window gate for the poll scheduler.

A tick is worth a provider call only if a fixture for the active competition
starts inside the poll window, or a live/halftime row already exists (a game
running past the lookback must keep being followed until it ends).
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from shared.config import Settings, get_settings
from shared.models.domain import PollWindow, utcnow
from shared.utils.logging import get_logger

from ingest.store import LiveStateRepository

logger = get_logger(__name__)

REASON_FIXTURE = "fixture_in_window"
REASON_LIVE_ROW = "live_row_present"
REASON_NOTHING = "no_fixture_in_window"
REASON_STORE_ERROR = "store_read_failed"


@dataclass(frozen=True)
class WindowDecision:
    in_window: bool
    reason: str
    window: PollWindow


class MatchWindowPredicate:
    """Stateless; safe to share across ticks."""

    def __init__(self, store: LiveStateRepository, settings: Settings | None = None) -> None:
        self._store = store
        self._settings = settings or get_settings()

    def window_for(self, now: datetime) -> PollWindow:
        return PollWindow.around(now, self._settings.poll_lookback_hours, self._settings.poll_lookahead_minutes)

    async def evaluate(self, now: Optional[datetime] = None) -> WindowDecision:
        now = now or utcnow()
        window = self.window_for(now)
        sport = self._settings.active_sport
        competition = self._settings.active_competition or None
        try:
            if await self._store.has_fixture_in_window(sport, competition, window):
                return WindowDecision(True, REASON_FIXTURE, window)
            if await self._store.has_live_rows(sport, competition):
                return WindowDecision(True, REASON_LIVE_ROW, window)
        except Exception as exc:
            logger.warning("window_check_failed", error=str(exc), competition=competition)
            return WindowDecision(False, REASON_STORE_ERROR, window)
        return WindowDecision(False, REASON_NOTHING, window)

    async def is_within_match_window(self, now: Optional[datetime] = None) -> bool:
        return (await self.evaluate(now)).in_window
