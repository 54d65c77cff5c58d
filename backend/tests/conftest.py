"""
Shared fixtures: an in-memory live-state repository with the same write
semantics as the SQL one, a scriptable provider, and test settings.
"""
from __future__ import annotations

import asyncio
import uuid
from datetime import date, datetime, timezone
from typing import Callable, Optional
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from shared.config import Settings
from shared.models.domain import (
    LiveMatchState,
    LiveStateChange,
    PollWindow,
    ProviderGame,
    ProviderStatLine,
    ScheduledFixture,
    TrackedSubject,
)
from shared.models.enums import ChangeOp, MatchPhase, ProviderName, Sport
from shared.utils.http_client import ProviderError

from ingest.providers.base import BaseProvider
from ingest.providers.registry import ProviderRegistry
from ingest.store import LIVE_TABLE, LiveStateRepository


def at(hour: int, minute: int = 0, day: int = 15) -> datetime:
    return datetime(2026, 1, day, hour, minute, tzinfo=timezone.utc)


class InMemoryLiveStateRepository(LiveStateRepository):
    """Dict-backed repository; records every change it would have published."""

    def __init__(self) -> None:
        self.subjects: list[TrackedSubject] = []
        self.fixtures: list[ScheduledFixture] = []
        self.rows: dict[uuid.UUID, LiveMatchState] = {}
        self.changes: list[LiveStateChange] = []
        self.fail_reads = False
        self.fail_writes = False

    def _check_read(self) -> None:
        if self.fail_reads:
            raise OperationalError("SELECT", {}, Exception("database unavailable"))

    def _check_write(self) -> None:
        if self.fail_writes:
            raise OperationalError("UPDATE", {}, Exception("database unavailable"))

    def _record(self, op: ChangeOp, subject_id: uuid.UUID, row: Optional[LiveMatchState] = None) -> None:
        self.changes.append(LiveStateChange(table=LIVE_TABLE, op=op, subject_id=subject_id, row=row))

    def _sport_ids(self, sport: Sport) -> set[uuid.UUID]:
        return {s.id for s in self.subjects if s.sport == sport}

    async def list_subjects(self, sport: Sport) -> list[TrackedSubject]:
        self._check_read()
        return sorted((s for s in self.subjects if s.sport == sport), key=lambda s: s.name)

    async def has_fixture_in_window(self, sport: Sport, competition: Optional[str], window: PollWindow) -> bool:
        self._check_read()
        ids = self._sport_ids(sport)
        return any(
            f.subject_id in ids
            and window.contains(f.start_time)
            and (not competition or f.competition == competition)
            for f in self.fixtures
        )

    async def has_live_rows(self, sport: Sport, competition: Optional[str]) -> bool:
        self._check_read()
        ids = self._sport_ids(sport)
        return any(
            r.subject_id in ids and r.phase.is_live and (not competition or r.competition == competition)
            for r in self.rows.values()
        )

    async def live_rows(self, competition: Optional[str] = None) -> list[LiveMatchState]:
        self._check_read()
        rows = [r for r in self.rows.values() if r.phase.is_live and (not competition or r.competition == competition)]
        return sorted(rows, key=lambda r: r.kickoff_time)

    async def recent_finished(self, limit: int = 5) -> list[LiveMatchState]:
        self._check_read()
        rows = [r for r in self.rows.values() if r.phase == MatchPhase.FINISHED]
        return sorted(rows, key=lambda r: r.updated_at, reverse=True)[:limit]

    async def get_live_state(self, subject_id: uuid.UUID) -> Optional[LiveMatchState]:
        self._check_read()
        return self.rows.get(subject_id)

    async def upsert_live_state(self, state: LiveMatchState) -> LiveMatchState:
        self._check_write()
        self.rows[state.subject_id] = state
        self._record(ChangeOp.UPSERT, state.subject_id, state)
        return state

    async def promote_to_finished(self, state: LiveMatchState) -> bool:
        self._check_write()
        existing = self.rows.get(state.subject_id)
        if existing is None or not existing.phase.is_live:
            return False
        if existing.provider_game_id != state.provider_game_id:
            return False
        self.rows[state.subject_id] = state
        self._record(ChangeOp.UPSERT, state.subject_id, state)
        return True

    async def delete_live_state(self, subject_id: uuid.UUID, finished_before: datetime) -> bool:
        self._check_write()
        existing = self.rows.get(subject_id)
        if existing is None:
            return False
        stale_final = existing.phase == MatchPhase.FINISHED and existing.updated_at < finished_before
        if not (existing.phase.is_live or stale_final):
            return False
        del self.rows[subject_id]
        self._record(ChangeOp.DELETE, subject_id)
        return True

    async def sweep_finished(self, sport: Sport, competition: Optional[str], finished_before: datetime) -> int:
        self._check_write()
        ids = self._sport_ids(sport)
        doomed = [
            r.subject_id
            for r in self.rows.values()
            if r.subject_id in ids
            and r.phase == MatchPhase.FINISHED
            and r.updated_at < finished_before
            and (not competition or r.competition == competition)
        ]
        for subject_id in doomed:
            del self.rows[subject_id]
            self._record(ChangeOp.DELETE, subject_id)
        return len(doomed)


class FakeProvider(BaseProvider):
    """Scripted provider: set games/stats/event or the matching *_error."""

    def __init__(self, sport: Sport = Sport.BASKETBALL) -> None:
        super().__init__(ProviderName.BALLDONTLIE, MagicMock(), sport)
        self.games: list[ProviderGame] = []
        self.stats = ProviderStatLine(values={"points": 10, "rebounds": 4, "assists": 3})
        self.event: Optional[str] = None
        self.games_error: Optional[ProviderError] = None
        self.stats_error: Optional[ProviderError] = None
        self.event_error: Optional[ProviderError] = None
        self.gate: Optional[asyncio.Event] = None
        self.game_calls: list[tuple[str, tuple[date, date]]] = []
        self.stats_calls = 0

    async def fetch_games_in_range(self, provider_team_id: str, date_range: tuple[date, date]) -> list[ProviderGame]:
        self.game_calls.append((provider_team_id, date_range))
        if self.gate is not None:
            await self.gate.wait()
        if self.games_error is not None:
            raise self.games_error
        return list(self.games)

    async def fetch_live_stats_for_game(
        self,
        provider_player_id: str,
        game_id: str,
        provider_team_id: Optional[str] = None,
        player_name: Optional[str] = None,
    ) -> ProviderStatLine:
        self.stats_calls += 1
        if self.stats_error is not None:
            raise self.stats_error
        return self.stats

    async def fetch_last_event(self, game_id: str) -> Optional[str]:
        if self.event_error is not None:
            raise self.event_error
        return self.event


@pytest.fixture
def settings() -> Settings:
    return Settings(
        active_sport=Sport.BASKETBALL,
        active_competition="NBA",
        poll_enabled=False,
        poll_interval_s=30.0,
        poll_min_interval_s=5.0,
        poll_lookahead_minutes=90,
        poll_lookback_hours=4,
        poll_concurrency=1,
        finished_retention_s=0.0,
        control_refresh_s=5.0,
        metrics_enabled=False,
        balldontlie_api_key="test-key",
        api_football_key="test-key",
    )


@pytest.fixture
def store() -> InMemoryLiveStateRepository:
    return InMemoryLiveStateRepository()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def registry(provider: FakeProvider) -> ProviderRegistry:
    return ProviderRegistry({Sport.BASKETBALL: provider})


@pytest.fixture
def subject(store: InMemoryLiveStateRepository) -> TrackedSubject:
    s = TrackedSubject(
        id=uuid.uuid4(),
        name="Test Forward",
        slug="test-forward",
        sport=Sport.BASKETBALL,
        team="Los Angeles Lakers",
        provider_team_id="14",
        provider_player_id="237",
    )
    store.subjects.append(s)
    return s


@pytest.fixture
def fixture_at_1900(store: InMemoryLiveStateRepository, subject: TrackedSubject) -> ScheduledFixture:
    f = ScheduledFixture(
        subject_id=subject.id,
        opponent="Boston Celtics",
        competition="NBA",
        start_time=at(19),
    )
    store.fixtures.append(f)
    return f


@pytest.fixture
def make_game() -> Callable[..., ProviderGame]:
    def _make(
        status: str,
        clock: Optional[str] = None,
        game_id: str = "1001",
        start_time: Optional[datetime] = None,
        home_score: int = 0,
        away_score: int = 0,
        home_team_id: str = "14",
        away_team_id: str = "2",
    ) -> ProviderGame:
        return ProviderGame(
            game_id=game_id,
            home_team_id=home_team_id,
            home_team_name="Los Angeles Lakers" if home_team_id == "14" else f"Team {home_team_id}",
            away_team_id=away_team_id,
            away_team_name="Boston Celtics" if away_team_id == "2" else f"Team {away_team_id}",
            home_score=home_score,
            away_score=away_score,
            raw_status=status,
            raw_clock=clock,
            start_time=start_time or at(19),
            competition="NBA",
        )

    return _make
