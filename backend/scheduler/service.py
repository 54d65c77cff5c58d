"""
Poll scheduler service.

PollScheduler owns one repeating timer for the active competition and moves
between three states:

    DISABLED  operator gate off; no timer
    IDLE      enabled, but nobody is watching; no timer
    POLLING   enabled and at least one viewer attending; timer running

Entering POLLING fires one tick immediately. Leaving it cancels the timer
but never a tick already in progress. Overlapping firings are dropped by an
in-flight latch rather than queued.

ControlWatcher feeds the two inputs (operator controls and viewer presence)
from Redis into the scheduler, and main() wires everything together.
"""
from __future__ import annotations

import asyncio
import signal
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from shared.config import Settings, get_settings
from shared.models.domain import ReconcileResult, TrackedSubject, utcnow
from shared.models.enums import FailureKind, ReconcileOutcome, SchedulerState
from shared.utils.database import DatabaseManager
from shared.utils.fanout import ChangeFeed
from shared.utils.logging import get_logger, setup_logging
from shared.utils.metrics import LIVE_ROWS, SCHEDULER_TICKS, TICK_DURATION, start_metrics_server
from shared.utils.redis_manager import RedisManager, parse_flag

from ingest.providers.registry import ProviderRegistry
from ingest.reconciliation.reconciler import Reconciler
from ingest.store import LiveStateRepository, SqlLiveStateRepository
from scheduler.engine.window import MatchWindowPredicate

logger = get_logger(__name__)

SKIP_DISABLED = "disabled"
SKIP_IN_FLIGHT = "in_flight"
SKIP_FAULT = "credential_fault"
SKIP_SUBJECT_READ = "subject_read_failed"
RAN = "ran"
HALTED_RATE_LIMITED = "halted_rate_limited"
HALTED_UNAUTHORIZED = "halted_unauthorized"


@dataclass
class TickReport:
    ran: bool
    reason: str
    started_at: datetime
    results: list[ReconcileResult] = field(default_factory=list)
    skipped_subjects: list[uuid.UUID] = field(default_factory=list)
    halted_by: Optional[FailureKind] = None
    duration_s: float = 0.0

    @property
    def outcomes(self) -> Counter:
        return Counter(r.outcome.value for r in self.results)


class PollScheduler:
    """Timer, gates, and per-tick fan-out of subject reconciliation."""

    def __init__(
        self,
        store: LiveStateRepository,
        reconciler: Reconciler,
        window: MatchWindowPredicate,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._reconciler = reconciler
        self._window = window
        self._settings = settings or get_settings()
        self._clock = clock

        self._enabled = False
        self._visible = False
        self._state = SchedulerState.DISABLED
        self._interval_s = max(self._settings.poll_interval_s, self._settings.poll_min_interval_s)
        self._timer: Optional[asyncio.Task[None]] = None
        self._ticks: set[asyncio.Task[TickReport]] = set()
        self._in_flight = False
        self._fault: Optional[FailureKind] = None
        self._last_report: Optional[TickReport] = None

    # ── Introspection ───────────────────────────────────────────────────
    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def visible(self) -> bool:
        return self._visible

    @property
    def interval_s(self) -> float:
        return self._interval_s

    @property
    def fault(self) -> Optional[FailureKind]:
        return self._fault

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def last_report(self) -> Optional[TickReport]:
        return self._last_report

    def status(self) -> dict[str, Any]:
        report = self._last_report
        return {
            "state": self._state.value,
            "enabled": self._enabled,
            "visible": self._visible,
            "interval_s": self._interval_s,
            "fault": self._fault.value if self._fault else None,
            "in_flight": self._in_flight,
            "last_tick": {
                "at": report.started_at.isoformat(),
                "ran": report.ran,
                "reason": report.reason,
                "outcomes": dict(report.outcomes),
            } if report else None,
        }

    # ── Inputs ──────────────────────────────────────────────────────────
    def enable(self) -> None:
        if self._enabled:
            return
        self._enabled = True
        if self._fault is not None:
            logger.info("scheduler_fault_cleared", fault=self._fault.value, by="enable")
            self._fault = None
        self._apply()

    def disable(self) -> None:
        if not self._enabled:
            return
        self._enabled = False
        self._apply()

    def set_visible(self, visible: bool) -> None:
        if visible == self._visible:
            return
        self._visible = visible
        self._apply()

    def set_interval(self, interval_s: float) -> None:
        interval_s = max(float(interval_s), self._settings.poll_min_interval_s)
        if interval_s == self._interval_s:
            return
        self._interval_s = interval_s
        logger.info("poll_interval_changed", interval_s=interval_s)
        if self._state == SchedulerState.POLLING:
            # New cadence from now on; no extra tick.
            self._cancel_timer()
            self._start_timer(immediate=False)

    def clear_fault(self) -> None:
        if self._fault is not None:
            logger.info("scheduler_fault_cleared", fault=self._fault.value, by="operator")
        self._fault = None

    # ── State machine ───────────────────────────────────────────────────
    def _apply(self) -> None:
        if not self._enabled:
            target = SchedulerState.DISABLED
        elif self._visible:
            target = SchedulerState.POLLING
        else:
            target = SchedulerState.IDLE

        previous = self._state
        if target == previous:
            return
        if target == SchedulerState.POLLING:
            self._start_timer(immediate=True)
        elif previous == SchedulerState.POLLING:
            self._cancel_timer()
        self._state = target
        logger.info("scheduler_state_changed", previous=previous.value, state=target.value)

    def _start_timer(self, immediate: bool) -> None:
        self._timer = asyncio.create_task(self._run_timer(immediate))

    def _cancel_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    async def _run_timer(self, immediate: bool) -> None:
        if not immediate:
            await asyncio.sleep(self._interval_s)
        while True:
            self._fire()
            await asyncio.sleep(self._interval_s)

    def _fire(self) -> None:
        # Ticks run as their own tasks so cancelling the timer leaves them alone.
        task = asyncio.create_task(self.tick())
        self._ticks.add(task)
        task.add_done_callback(self._ticks.discard)

    # ── Ticks ───────────────────────────────────────────────────────────
    async def sync_now(self) -> TickReport:
        """Run one tick right away, outside the timer cadence."""
        if not self._enabled:
            report = TickReport(ran=False, reason=SKIP_DISABLED, started_at=self._clock())
            SCHEDULER_TICKS.labels(result=report.reason).inc()
            return report
        return await self.tick()

    async def tick(self) -> TickReport:
        if self._in_flight:
            logger.debug("tick_dropped_in_flight")
            SCHEDULER_TICKS.labels(result=SKIP_IN_FLIGHT).inc()
            return TickReport(ran=False, reason=SKIP_IN_FLIGHT, started_at=self._clock())
        self._in_flight = True
        try:
            report = await self._run_tick(self._clock())
        finally:
            self._in_flight = False
        self._last_report = report
        SCHEDULER_TICKS.labels(result=report.reason).inc()
        await self._refresh_live_rows()
        return report

    async def _refresh_live_rows(self) -> None:
        try:
            rows = await self._store.live_rows(self._settings.active_competition or None)
        except Exception as exc:
            logger.warning("live_rows_gauge_refresh_failed", error=str(exc))
            return
        LIVE_ROWS.set(len(rows))

    async def _run_tick(self, now: datetime) -> TickReport:
        if self._fault is not None:
            logger.warning("tick_skipped", reason=SKIP_FAULT, fault=self._fault.value)
            return TickReport(ran=False, reason=SKIP_FAULT, started_at=now)

        decision = await self._window.evaluate(now)
        if not decision.in_window:
            logger.info(
                "tick_skipped",
                reason=decision.reason,
                window_start=decision.window.start.isoformat(),
                window_end=decision.window.end.isoformat(),
            )
            try:
                await self._reconciler.sweep_finished(now)
            except Exception as exc:
                logger.warning("finished_sweep_failed", error=str(exc))
            return TickReport(ran=False, reason=decision.reason, started_at=now)

        try:
            subjects = await self._store.list_subjects(self._settings.active_sport)
        except Exception as exc:
            logger.warning("tick_skipped", reason=SKIP_SUBJECT_READ, error=str(exc))
            return TickReport(ran=False, reason=SKIP_SUBJECT_READ, started_at=now)

        trackable = [s for s in subjects if s.is_trackable]
        if len(trackable) < len(subjects):
            logger.debug("untrackable_subjects_ignored", count=len(subjects) - len(trackable))

        start = time.perf_counter()
        report = await self._reconcile_all(trackable, now)
        report.duration_s = time.perf_counter() - start
        TICK_DURATION.observe(report.duration_s)
        logger.info(
            "tick_completed",
            reason=report.reason,
            window_reason=decision.reason,
            subjects=len(trackable),
            outcomes=dict(report.outcomes),
            skipped=len(report.skipped_subjects),
            duration_ms=round(report.duration_s * 1000, 1),
        )
        return report

    async def _reconcile_all(self, subjects: list[TrackedSubject], now: datetime) -> TickReport:
        semaphore = asyncio.Semaphore(max(1, self._settings.poll_concurrency))
        halt = asyncio.Event()
        report = TickReport(ran=True, reason=RAN, started_at=now)

        async def run_one(subject: TrackedSubject) -> None:
            async with semaphore:
                if halt.is_set():
                    report.skipped_subjects.append(subject.id)
                    return
                try:
                    result = await self._reconciler.reconcile(subject, now)
                except Exception as exc:
                    logger.error("subject_reconcile_error", subject_id=str(subject.id), error=str(exc), exc_info=True)
                    result = ReconcileResult(
                        subject_id=subject.id,
                        outcome=ReconcileOutcome.FAILED,
                        failure=FailureKind.TRANSIENT,
                        detail=str(exc),
                    )
                report.results.append(result)
                kind = result.halting_failure
                if kind is None:
                    return
                halt.set()
                if report.halted_by != FailureKind.UNAUTHORIZED:
                    report.halted_by = kind
                if kind == FailureKind.UNAUTHORIZED and self._fault is None:
                    self._fault = kind
                    logger.error("provider_credentials_rejected", subject_id=str(subject.id))

        await asyncio.gather(*(run_one(s) for s in subjects))

        if report.halted_by == FailureKind.UNAUTHORIZED:
            report.reason = HALTED_UNAUTHORIZED
        elif report.halted_by == FailureKind.RATE_LIMITED:
            report.reason = HALTED_RATE_LIMITED
        if report.skipped_subjects:
            logger.warning(
                "tick_halted",
                kind=report.halted_by.value if report.halted_by else None,
                skipped=len(report.skipped_subjects),
            )
        return report

    # ── Shutdown ────────────────────────────────────────────────────────
    async def stop(self) -> None:
        """Cancel the timer and let any running tick finish."""
        self._cancel_timer()
        if self._ticks:
            await asyncio.gather(*list(self._ticks), return_exceptions=True)
        self._state = SchedulerState.DISABLED if not self._enabled else SchedulerState.IDLE


class ControlWatcher:
    """
    Applies operator controls and viewer presence from Redis to the scheduler.

    Controls live in a Redis hash so any API instance can change them; settings
    supply the defaults when no operator has written one. Presence is the
    number of attending viewers across all API instances.
    """

    def __init__(
        self, scheduler: PollScheduler, redis: RedisManager, settings: Settings | None = None
    ) -> None:
        self._scheduler = scheduler
        self._redis = redis
        self._settings = settings or get_settings()
        self._shutdown = asyncio.Event()

    async def refresh(self) -> None:
        competition = self._settings.active_competition
        control = await self._redis.get_polling_control(competition)
        viewers = await self._redis.get_presence_count(competition)

        enabled = parse_flag(control.get("enabled"), self._settings.poll_enabled)
        try:
            interval = float(control.get("interval_s", self._settings.poll_interval_s))
        except ValueError:
            logger.warning("bad_interval_control", value=control.get("interval_s"))
            interval = self._settings.poll_interval_s
        if parse_flag(control.get("clear_fault"), False):
            self._scheduler.clear_fault()
            await self._redis.set_polling_control(competition, clear_fault=False)

        self._scheduler.set_interval(interval)
        self._scheduler.set_visible(viewers > 0)
        if enabled:
            self._scheduler.enable()
        else:
            self._scheduler.disable()

        await self._redis.set_scheduler_status(
            competition,
            {**self._scheduler.status(), "viewers": viewers},
            ttl_s=int(max(self._settings.control_refresh_s * 3, 15)),
        )

    async def run(self) -> None:
        while not self._shutdown.is_set():
            try:
                await self.refresh()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                # Keep the last applied state until Redis answers again.
                logger.error("control_refresh_error", error=str(exc), exc_info=True)
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=self._settings.control_refresh_s)
            except asyncio.TimeoutError:
                pass

    def request_shutdown(self) -> None:
        self._shutdown.set()


async def main() -> None:
    """Scheduler service entrypoint."""
    settings = get_settings()
    setup_logging("scheduler")
    start_metrics_server()

    redis = RedisManager(settings)
    db = DatabaseManager(settings)
    await redis.connect()
    await db.connect()

    feed = ChangeFeed(redis)
    store = SqlLiveStateRepository(db, feed)
    providers = ProviderRegistry.from_settings(settings)
    await providers.start()

    reconciler = Reconciler(store, providers, settings)
    window = MatchWindowPredicate(store, settings)
    scheduler = PollScheduler(store, reconciler, window, settings)
    watcher = ControlWatcher(scheduler, redis, settings)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, watcher.request_shutdown)

    logger.info(
        "scheduler_service_started",
        sport=settings.active_sport.value,
        competition=settings.active_competition,
        interval_s=settings.poll_interval_s,
    )

    try:
        await watcher.run()
    finally:
        await scheduler.stop()
        await providers.close()
        await db.disconnect()
        await redis.disconnect()
        logger.info("scheduler_service_stopped")


if __name__ == "__main__":
    asyncio.run(main())
