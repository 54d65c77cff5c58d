"""
Live-state persistence.

LiveStateRepository is the narrow contract the reconciler, window predicate
and API depend on. SqlLiveStateRepository implements it on PostgreSQL and
publishes a LiveStateChange after every committed write that touched a row.

Writes never read-modify-write: every mutation is a single statement whose
values come from the caller, guarded by a phase predicate where needed.
"""
from __future__ import annotations

import abc
import uuid
from datetime import datetime
from typing import Any, Optional, Sequence

from sqlalchemy import and_, delete, exists, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert

from shared.models.domain import (
    LiveMatchState,
    LiveStateChange,
    PollWindow,
    TrackedSubject,
)
from shared.models.enums import LIVE_PHASES, ChangeOp, MatchPhase, Sport
from shared.models.orm import LiveMatchStateORM, ScheduledFixtureORM, TrackedSubjectORM
from shared.utils.database import DatabaseManager
from shared.utils.fanout import ChangeFeed
from shared.utils.logging import get_logger

logger = get_logger(__name__)

LIVE_TABLE = LiveMatchStateORM.__tablename__

_LIVE_VALUES = [p.value for p in LIVE_PHASES]
_MUTABLE_COLUMNS = (
    "provider_game_id",
    "opponent",
    "competition",
    "home_away",
    "phase",
    "kickoff_time",
    "current_minute",
    "home_score",
    "away_score",
    "subject_stats",
    "last_event",
    "updated_at",
)


def _row_values(state: LiveMatchState) -> dict[str, Any]:
    data = state.model_dump(mode="python")
    values = {col: data[col] for col in _MUTABLE_COLUMNS}
    values["home_away"] = state.home_away.value
    values["phase"] = state.phase.value
    return values


class LiveStateRepository(abc.ABC):
    """Read access to subjects/fixtures and the only write path for live rows."""

    # ── Reads ───────────────────────────────────────────────────────────
    @abc.abstractmethod
    async def list_subjects(self, sport: Sport) -> list[TrackedSubject]:
        ...

    @abc.abstractmethod
    async def has_fixture_in_window(self, sport: Sport, competition: Optional[str], window: PollWindow) -> bool:
        ...

    @abc.abstractmethod
    async def has_live_rows(self, sport: Sport, competition: Optional[str]) -> bool:
        ...

    @abc.abstractmethod
    async def live_rows(self, competition: Optional[str] = None) -> list[LiveMatchState]:
        """Rows with phase live/halftime, ordered by kickoff."""
        ...

    @abc.abstractmethod
    async def recent_finished(self, limit: int = 5) -> list[LiveMatchState]:
        """Most recently updated finished rows, newest first."""
        ...

    @abc.abstractmethod
    async def get_live_state(self, subject_id: uuid.UUID) -> Optional[LiveMatchState]:
        ...

    # ── Writes ──────────────────────────────────────────────────────────
    @abc.abstractmethod
    async def upsert_live_state(self, state: LiveMatchState) -> LiveMatchState:
        """Insert or fully replace the subject's row."""
        ...

    @abc.abstractmethod
    async def promote_to_finished(self, state: LiveMatchState) -> bool:
        """
        Replace the subject's row with `state` only if the existing row is
        live/halftime and tracks the same provider game.
        """
        ...

    @abc.abstractmethod
    async def delete_live_state(self, subject_id: uuid.UUID, finished_before: datetime) -> bool:
        """
        Delete the subject's row if it is live/halftime, or finished and last
        written before `finished_before`. Returns whether a row was removed.
        """
        ...

    @abc.abstractmethod
    async def sweep_finished(self, sport: Sport, competition: Optional[str], finished_before: datetime) -> int:
        """Delete finished rows written before `finished_before`. Returns the count removed."""
        ...


class SqlLiveStateRepository(LiveStateRepository):
    """PostgreSQL implementation over DatabaseManager sessions."""

    def __init__(self, db: DatabaseManager, feed: Optional[ChangeFeed] = None) -> None:
        self._db = db
        self._feed = feed

    async def _publish(self, op: ChangeOp, subject_id: uuid.UUID, row: Optional[LiveMatchState] = None) -> None:
        if self._feed is None:
            return
        change = LiveStateChange(table=LIVE_TABLE, op=op, subject_id=subject_id, row=row)
        try:
            await self._feed.publish(change)
        except Exception as exc:
            # The write is already committed; viewers catch up on the next change.
            logger.warning("live_state_publish_failed", subject_id=str(subject_id), op=op.value, error=str(exc))

    @staticmethod
    def _subject_scope(sport: Sport, competition: Optional[str], column: Any) -> list[Any]:
        clauses = [TrackedSubjectORM.sport == sport.value]
        if competition:
            clauses.append(column == competition)
        return clauses

    # ── Reads ───────────────────────────────────────────────────────────
    async def list_subjects(self, sport: Sport) -> list[TrackedSubject]:
        async with self._db.read_session() as session:
            result = await session.execute(
                select(TrackedSubjectORM)
                .where(TrackedSubjectORM.sport == sport.value)
                .order_by(TrackedSubjectORM.name)
            )
            return [TrackedSubject.model_validate(row) for row in result.scalars().all()]

    async def has_fixture_in_window(self, sport: Sport, competition: Optional[str], window: PollWindow) -> bool:
        stmt = select(
            exists()
            .where(ScheduledFixtureORM.subject_id == TrackedSubjectORM.id)
            .where(ScheduledFixtureORM.start_time.between(window.start, window.end))
            .where(*self._subject_scope(sport, competition, ScheduledFixtureORM.competition))
        )
        async with self._db.read_session() as session:
            return bool((await session.execute(stmt)).scalar())

    async def has_live_rows(self, sport: Sport, competition: Optional[str]) -> bool:
        stmt = select(
            exists()
            .where(LiveMatchStateORM.subject_id == TrackedSubjectORM.id)
            .where(LiveMatchStateORM.phase.in_(_LIVE_VALUES))
            .where(*self._subject_scope(sport, competition, LiveMatchStateORM.competition))
        )
        async with self._db.read_session() as session:
            return bool((await session.execute(stmt)).scalar())

    async def live_rows(self, competition: Optional[str] = None) -> list[LiveMatchState]:
        stmt = select(LiveMatchStateORM).where(LiveMatchStateORM.phase.in_(_LIVE_VALUES))
        if competition:
            stmt = stmt.where(LiveMatchStateORM.competition == competition)
        async with self._db.read_session() as session:
            result = await session.execute(stmt.order_by(LiveMatchStateORM.kickoff_time))
            return [LiveMatchState.model_validate(row) for row in result.scalars().all()]

    async def recent_finished(self, limit: int = 5) -> list[LiveMatchState]:
        async with self._db.read_session() as session:
            result = await session.execute(
                select(LiveMatchStateORM)
                .where(LiveMatchStateORM.phase == MatchPhase.FINISHED.value)
                .order_by(LiveMatchStateORM.updated_at.desc())
                .limit(limit)
            )
            return [LiveMatchState.model_validate(row) for row in result.scalars().all()]

    async def get_live_state(self, subject_id: uuid.UUID) -> Optional[LiveMatchState]:
        async with self._db.read_session() as session:
            result = await session.execute(
                select(LiveMatchStateORM).where(LiveMatchStateORM.subject_id == subject_id)
            )
            row = result.scalar_one_or_none()
            return LiveMatchState.model_validate(row) if row is not None else None

    # ── Writes ──────────────────────────────────────────────────────────
    async def upsert_live_state(self, state: LiveMatchState) -> LiveMatchState:
        values = _row_values(state)
        stmt = (
            pg_insert(LiveMatchStateORM)
            .values(subject_id=state.subject_id, **values)
            .on_conflict_do_update(constraint="uq_live_match_state_subject", set_=values)
            .returning(LiveMatchStateORM)
        )
        async with self._db.write_session() as session:
            result = await session.execute(stmt)
            written = LiveMatchState.model_validate(result.scalar_one())
        await self._publish(ChangeOp.UPSERT, state.subject_id, written)
        logger.debug("live_state_upserted", subject_id=str(state.subject_id), phase=state.phase.value)
        return written

    async def promote_to_finished(self, state: LiveMatchState) -> bool:
        stmt = (
            update(LiveMatchStateORM)
            .where(LiveMatchStateORM.subject_id == state.subject_id)
            .where(LiveMatchStateORM.phase.in_(_LIVE_VALUES))
            .where(LiveMatchStateORM.provider_game_id == state.provider_game_id)
            .values(**_row_values(state))
            .returning(LiveMatchStateORM)
        )
        async with self._db.write_session() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            written = LiveMatchState.model_validate(row) if row is not None else None
        if written is None:
            return False
        await self._publish(ChangeOp.UPSERT, state.subject_id, written)
        return True

    async def delete_live_state(self, subject_id: uuid.UUID, finished_before: datetime) -> bool:
        stmt = (
            delete(LiveMatchStateORM)
            .where(LiveMatchStateORM.subject_id == subject_id)
            .where(
                or_(
                    LiveMatchStateORM.phase.in_(_LIVE_VALUES),
                    and_(
                        LiveMatchStateORM.phase == MatchPhase.FINISHED.value,
                        LiveMatchStateORM.updated_at < finished_before,
                    ),
                )
            )
            .returning(LiveMatchStateORM.subject_id)
        )
        async with self._db.write_session() as session:
            removed: Sequence[Any] = (await session.execute(stmt)).scalars().all()
        if not removed:
            return False
        await self._publish(ChangeOp.DELETE, subject_id)
        return True

    async def sweep_finished(self, sport: Sport, competition: Optional[str], finished_before: datetime) -> int:
        subject_ids = select(TrackedSubjectORM.id).where(TrackedSubjectORM.sport == sport.value)
        stmt = (
            delete(LiveMatchStateORM)
            .where(LiveMatchStateORM.phase == MatchPhase.FINISHED.value)
            .where(LiveMatchStateORM.updated_at < finished_before)
            .where(LiveMatchStateORM.subject_id.in_(subject_ids))
        )
        if competition:
            stmt = stmt.where(LiveMatchStateORM.competition == competition)
        stmt = stmt.returning(LiveMatchStateORM.subject_id)
        async with self._db.write_session() as session:
            removed = list((await session.execute(stmt)).scalars().all())
        for subject_id in removed:
            await self._publish(ChangeOp.DELETE, subject_id)
        if removed:
            logger.info("finished_rows_swept", count=len(removed))
        return len(removed)
