"""
Per-subject reconciliation of provider state into the live_match_state table.

One call to Reconciler.reconcile() turns the provider's view of a subject's
team into exactly one of: an upsert of the live row, a one-time promotion of
that row to finished, a delete, or nothing. Writes are computed from
provider data alone; the existing row is only read to decide whether a
finished game is the one it tracks, never to build the new one.
"""
from __future__ import annotations

import asyncio
import uuid
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from shared.config import Settings, get_settings
from shared.models.domain import (
    LiveMatchState,
    PollWindow,
    ProviderGame,
    ReconcileResult,
    TrackedSubject,
    utcnow,
)
from shared.models.enums import FailureKind, HomeAway, MatchPhase, ReconcileOutcome
from shared.utils.http_client import ProviderError
from shared.utils.logging import get_logger
from shared.utils.metrics import RECONCILE_OUTCOMES

from ingest.normalization.status import map_phase, read_clock
from ingest.providers.base import BaseProvider
from ingest.providers.registry import ProviderRegistry
from ingest.store import LiveStateRepository

logger = get_logger(__name__)


class Reconciler:
    """
    Reconciles one tracked subject at a time.

    Calls for the same subject are serialized by a per-subject lock; calls
    for different subjects run concurrently.
    """

    def __init__(
        self,
        store: LiveStateRepository,
        providers: ProviderRegistry,
        settings: Settings | None = None,
    ) -> None:
        self._store = store
        self._providers = providers
        self._settings = settings or get_settings()
        self._locks: defaultdict[uuid.UUID, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def finished_retention(self) -> timedelta:
        return timedelta(seconds=self._settings.finished_retention_s)

    async def reconcile(self, subject: TrackedSubject, now: Optional[datetime] = None) -> ReconcileResult:
        now = now or utcnow()
        async with self._locks[subject.id]:
            result = await self._reconcile(subject, now)
        RECONCILE_OUTCOMES.labels(outcome=result.outcome.value).inc()
        logger.info(
            "subject_reconciled",
            subject_id=str(subject.id),
            subject=subject.slug or subject.name,
            outcome=result.outcome.value,
            phase=result.phase.value if result.phase else None,
            failure=result.failure.value if result.failure else None,
            stats_failure=result.stats_failure.value if result.stats_failure else None,
            game_id=result.provider_game_id,
        )
        return result

    async def sweep_finished(self, now: Optional[datetime] = None) -> int:
        """Remove finished rows for the active competition older than the retention."""
        now = now or utcnow()
        return await self._store.sweep_finished(
            self._settings.active_sport,
            self._settings.active_competition or None,
            now - self.finished_retention,
        )

    async def _reconcile(self, subject: TrackedSubject, now: datetime) -> ReconcileResult:
        if not subject.is_trackable:
            return ReconcileResult(
                subject_id=subject.id, outcome=ReconcileOutcome.SKIPPED, detail="no provider team id"
            )
        provider = self._providers.get(subject.sport)
        if provider is None:
            return ReconcileResult(
                subject_id=subject.id,
                outcome=ReconcileOutcome.SKIPPED,
                detail=f"no provider for {subject.sport.value}",
            )
        team_id = str(subject.provider_team_id)

        window = PollWindow.around(
            now, self._settings.poll_lookback_hours, self._settings.poll_lookahead_minutes
        )
        try:
            games = await provider.fetch_games_in_range(team_id, window.date_range())
        except ProviderError as exc:
            logger.warning(
                "games_fetch_failed",
                subject_id=str(subject.id),
                provider=provider.name.value,
                kind=exc.kind.value,
                error=str(exc),
            )
            return ReconcileResult(
                subject_id=subject.id, outcome=ReconcileOutcome.FAILED, failure=exc.kind, detail=str(exc)
            )

        phased = [(game, map_phase(game.raw_status)) for game in games if game.involves(team_id)]
        live = [(g, p) for g, p in phased if p.is_live]
        finished = [g for g, p in phased if p == MatchPhase.FINISHED]

        try:
            if live:
                if len(live) > 1:
                    logger.warning(
                        "multiple_live_games",
                        subject_id=str(subject.id),
                        game_ids=[g.game_id for g, _ in live],
                    )
                game, phase = max(live, key=lambda gp: gp[0].start_time)
                state, stats_failure = await self._build_state(provider, subject, game, phase, now)
                await self._store.upsert_live_state(state)
                return ReconcileResult(
                    subject_id=subject.id,
                    outcome=ReconcileOutcome.UPSERTED,
                    phase=phase,
                    stats_failure=stats_failure,
                    provider_game_id=game.game_id,
                )

            game = await self._promotable(subject, finished)
            if game is not None:
                state, stats_failure = await self._build_state(provider, subject, game, MatchPhase.FINISHED, now)
                if await self._store.promote_to_finished(state):
                    return ReconcileResult(
                        subject_id=subject.id,
                        outcome=ReconcileOutcome.FINISHED,
                        phase=MatchPhase.FINISHED,
                        stats_failure=stats_failure,
                        provider_game_id=game.game_id,
                    )

            deleted = await self._store.delete_live_state(subject.id, now - self.finished_retention)
        except SQLAlchemyError as exc:
            logger.error("live_state_write_failed", subject_id=str(subject.id), error=str(exc), exc_info=True)
            return ReconcileResult(
                subject_id=subject.id,
                outcome=ReconcileOutcome.FAILED,
                failure=FailureKind.TRANSIENT,
                detail=f"store write failed: {exc}",
            )

        return ReconcileResult(
            subject_id=subject.id,
            outcome=ReconcileOutcome.DELETED if deleted else ReconcileOutcome.NOOP,
        )

    async def _promotable(self, subject: TrackedSubject, finished: list[ProviderGame]) -> Optional[ProviderGame]:
        """The finished game the subject's live row is tracking, if any."""
        if not finished:
            return None
        existing = await self._store.get_live_state(subject.id)
        if existing is None or not existing.phase.is_live:
            return None
        return next((g for g in finished if g.game_id == existing.provider_game_id), None)

    async def _build_state(
        self,
        provider: BaseProvider,
        subject: TrackedSubject,
        game: ProviderGame,
        phase: MatchPhase,
        now: datetime,
    ) -> tuple[LiveMatchState, Optional[FailureKind]]:
        """Assemble the full row. Stats and last event are best-effort."""
        team_id = str(subject.provider_team_id)
        is_home = game.home_team_id == team_id
        clock = read_clock(game.raw_status, game.raw_clock)
        stats: dict = {}
        last_event: Optional[str] = None
        secondary_failure: Optional[FailureKind] = None

        if subject.provider_player_id:
            try:
                line = await provider.fetch_live_stats_for_game(
                    subject.provider_player_id, game.game_id, provider_team_id=team_id, player_name=subject.name
                )
                stats = line.as_stat_bag()
            except ProviderError as exc:
                secondary_failure = exc.kind
                logger.warning(
                    "stats_fetch_failed",
                    subject_id=str(subject.id),
                    game_id=game.game_id,
                    kind=exc.kind.value,
                    error=str(exc),
                )

        if secondary_failure is None or not secondary_failure.halts_tick:
            try:
                last_event = await provider.fetch_last_event(game.game_id)
            except ProviderError as exc:
                if secondary_failure is None or exc.kind.halts_tick:
                    secondary_failure = exc.kind
                logger.warning(
                    "last_event_fetch_failed",
                    subject_id=str(subject.id),
                    game_id=game.game_id,
                    kind=exc.kind.value,
                    error=str(exc),
                )

        state = LiveMatchState(
            subject_id=subject.id,
            provider_game_id=game.game_id,
            opponent=game.away_team_name if is_home else game.home_team_name,
            competition=game.competition or self._settings.active_competition,
            home_away=HomeAway.HOME if is_home else HomeAway.AWAY,
            phase=phase,
            kickoff_time=game.start_time,
            current_minute=clock.elapsed_minutes,
            home_score=game.home_score,
            away_score=game.away_score,
            subject_stats=stats,
            last_event=last_event or clock.display or None,
            updated_at=now,
        )
        return state, secondary_failure
