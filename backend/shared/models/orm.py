"""
SQLAlchemy 2.0 ORM models for the live-sync store.
Tracked subjects and fixtures are written by out-of-process tooling; this
codebase only writes live_match_state.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class TrackedSubjectORM(Base):
    __tablename__ = "tracked_subjects"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    slug: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    sport: Mapped[str] = mapped_column(String(20), nullable=False)
    team: Mapped[str] = mapped_column(String(200), nullable=False)
    provider_team_id: Mapped[Optional[str]] = mapped_column(String(50))
    provider_player_id: Mapped[Optional[str]] = mapped_column(String(50))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    fixtures: Mapped[list["ScheduledFixtureORM"]] = relationship(back_populates="subject")
    live_state: Mapped[Optional["LiveMatchStateORM"]] = relationship(back_populates="subject", uselist=False)


class ScheduledFixtureORM(Base):
    __tablename__ = "scheduled_fixtures"
    __table_args__ = (
        Index("ix_scheduled_fixtures_competition_start", "competition", "start_time"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    subject_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tracked_subjects.id", ondelete="CASCADE"), nullable=False
    )
    opponent: Mapped[str] = mapped_column(String(200), nullable=False)
    competition: Mapped[str] = mapped_column(String(200), nullable=False)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    home_away: Mapped[str] = mapped_column(String(4), nullable=False, default="home")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    subject: Mapped["TrackedSubjectORM"] = relationship(back_populates="fixtures")


class LiveMatchStateORM(Base):
    __tablename__ = "live_match_state"
    __table_args__ = (
        UniqueConstraint("subject_id", name="uq_live_match_state_subject"),
        CheckConstraint(
            "phase IN ('scheduled', 'live', 'halftime', 'finished')", name="chk_live_match_state_phase"
        ),
        Index("ix_live_match_state_competition_phase", "competition", "phase"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    subject_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tracked_subjects.id", ondelete="CASCADE"), nullable=False
    )
    provider_game_id: Mapped[str] = mapped_column(String(50), nullable=False)
    opponent: Mapped[str] = mapped_column(String(200), nullable=False)
    competition: Mapped[str] = mapped_column(String(200), nullable=False)
    home_away: Mapped[str] = mapped_column(String(4), nullable=False)
    phase: Mapped[str] = mapped_column(String(20), nullable=False)
    kickoff_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    current_minute: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    home_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    away_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    subject_stats: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    last_event: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    subject: Mapped["TrackedSubjectORM"] = relationship(back_populates="live_state")
