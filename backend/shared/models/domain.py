"""
Pydantic v2 domain models shared across the live-sync services.
These are the canonical wire/internal representations, not ORM models.
"""
from __future__ import annotations

import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from shared.models.enums import (
    ChangeOp,
    FailureKind,
    HomeAway,
    MatchPhase,
    ReconcileOutcome,
    Sport,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Base ────────────────────────────────────────────────────────────────
class DomainModel(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


# ── Reference entities ──────────────────────────────────────────────────
class TrackedSubject(DomainModel):
    """An athlete whose team's games are tracked live."""
    id: uuid.UUID
    name: str
    slug: str = ""
    sport: Sport
    team: str
    provider_team_id: Optional[str] = None
    provider_player_id: Optional[str] = None

    @property
    def is_trackable(self) -> bool:
        return bool(self.provider_team_id)


class ScheduledFixture(DomainModel):
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    subject_id: uuid.UUID
    opponent: str
    competition: str
    start_time: datetime
    home_away: HomeAway = HomeAway.HOME


# ── Poll window ─────────────────────────────────────────────────────────
class PollWindow(DomainModel):
    """[now - lookback, now + lookahead], inclusive on both ends."""
    start: datetime
    end: datetime

    @classmethod
    def around(cls, now: datetime, lookback_hours: int, lookahead_minutes: int) -> "PollWindow":
        return cls(
            start=now - timedelta(hours=lookback_hours),
            end=now + timedelta(minutes=lookahead_minutes),
        )

    def contains(self, ts: datetime) -> bool:
        return self.start <= ts <= self.end

    def date_range(self) -> tuple[date, date]:
        """
        Provider date range covering the window.

        Providers key games by local calendar date, so one day of padding on
        each side keeps late-evening games from falling off the UTC edge.
        """
        return (
            (self.start - timedelta(days=1)).date(),
            (self.end + timedelta(days=1)).date(),
        )


# ── Provider records ────────────────────────────────────────────────────
class ProviderGame(DomainModel):
    """One game as reported by a provider. Status/clock stay raw strings."""
    game_id: str
    home_team_id: str
    home_team_name: str
    away_team_id: str
    away_team_name: str
    home_score: int = 0
    away_score: int = 0
    raw_status: str = ""
    raw_clock: Optional[str] = None
    start_time: datetime
    competition: str = ""

    def involves(self, provider_team_id: str) -> bool:
        return provider_team_id in (self.home_team_id, self.away_team_id)


class ProviderStatLine(DomainModel):
    """Flat per-subject stat line; missing fields have already defaulted to zero."""
    values: dict[str, Any] = Field(default_factory=dict)

    def as_stat_bag(self) -> dict[str, Any]:
        return dict(self.values)


class ClockReading(DomainModel):
    display: str
    elapsed_minutes: int = 0

    def __str__(self) -> str:
        return self.display


# ── Live state ──────────────────────────────────────────────────────────
class LiveMatchState(DomainModel):
    """The single authoritative live row for a tracked subject."""
    subject_id: uuid.UUID
    provider_game_id: str
    opponent: str
    competition: str
    home_away: HomeAway
    phase: MatchPhase
    kickoff_time: datetime
    current_minute: int = 0
    home_score: int = 0
    away_score: int = 0
    subject_stats: dict[str, Any] = Field(default_factory=dict)
    last_event: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)

    def content(self) -> dict[str, Any]:
        """Everything except the write timestamp; equal content means an idempotent rewrite."""
        return self.model_dump(exclude={"updated_at"})


class LiveStateChange(DomainModel):
    """Fan-out envelope published after every committed live-state write."""
    table: str
    op: ChangeOp
    subject_id: uuid.UUID
    row: Optional[LiveMatchState] = None
    emitted_at: datetime = Field(default_factory=utcnow)


# ── Reconciliation ──────────────────────────────────────────────────────
class ReconcileResult(DomainModel):
    subject_id: uuid.UUID
    outcome: ReconcileOutcome
    phase: Optional[MatchPhase] = None
    failure: Optional[FailureKind] = None
    stats_failure: Optional[FailureKind] = None
    provider_game_id: Optional[str] = None
    detail: str = ""

    @property
    def halting_failure(self) -> Optional[FailureKind]:
        """The failure kind that should stop the rest of the tick, if any."""
        kinds = {self.failure, self.stats_failure}
        for kind in (FailureKind.UNAUTHORIZED, FailureKind.RATE_LIMITED):
            if kind in kinds:
                return kind
        return None
