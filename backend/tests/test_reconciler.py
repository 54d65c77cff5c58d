"""
Reconciler tests: provider state in, at most one live row per subject out.

Run: pytest backend/tests/test_reconciler.py -v
"""
from __future__ import annotations

import asyncio

import pytest

from shared.config import Settings
from shared.models.enums import ChangeOp, FailureKind, HomeAway, MatchPhase, ReconcileOutcome
from shared.utils.http_client import MalformedResponseError, RateLimitedError, TransientError
from ingest.reconciliation.reconciler import Reconciler

from conftest import at


@pytest.fixture
def reconciler(store, registry, settings: Settings) -> Reconciler:
    return Reconciler(store, registry, settings)


# ── Full game lifecycle ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_game_lifecycle_from_tipoff_to_cleanup(reconciler, store, provider, subject, make_game) -> None:
    provider.games = [make_game("7:00 pm ET")]
    result = await reconciler.reconcile(subject, at(18, 5))
    assert result.outcome == ReconcileOutcome.NOOP
    assert store.rows == {}

    provider.games = [make_game("1st Qtr", "6:30", home_score=8, away_score=5)]
    result = await reconciler.reconcile(subject, at(19, 15))
    assert result.outcome == ReconcileOutcome.UPSERTED
    row = store.rows[subject.id]
    assert row.phase == MatchPhase.LIVE
    assert row.current_minute == 6
    assert row.opponent == "Boston Celtics"
    assert row.home_away == HomeAway.HOME
    assert row.subject_stats["points"] == 10

    provider.games = [make_game("Final", home_score=102, away_score=98)]
    result = await reconciler.reconcile(subject, at(21, 40))
    assert result.outcome == ReconcileOutcome.FINISHED
    row = store.rows[subject.id]
    assert row.phase == MatchPhase.FINISHED
    assert (row.home_score, row.away_score) == (102, 98)

    provider.games = []
    result = await reconciler.reconcile(subject, at(21, 41))
    assert result.outcome == ReconcileOutcome.DELETED
    assert subject.id not in store.rows

    assert [c.op for c in store.changes] == [ChangeOp.UPSERT, ChangeOp.UPSERT, ChangeOp.DELETE]


@pytest.mark.asyncio
async def test_finished_row_survives_the_cycle_that_finished_it(reconciler, store, provider, subject, make_game) -> None:
    provider.games = [make_game("4th Qtr", "0:30")]
    await reconciler.reconcile(subject, at(21, 30))
    provider.games = [make_game("Final", home_score=102, away_score=98)]
    await reconciler.reconcile(subject, at(21, 40))
    assert store.rows[subject.id].phase == MatchPhase.FINISHED

    # Provider keeps reporting the final score; the next cycle removes the row.
    result = await reconciler.reconcile(subject, at(21, 41))
    assert result.outcome == ReconcileOutcome.DELETED
    result = await reconciler.reconcile(subject, at(21, 42))
    assert result.outcome == ReconcileOutcome.NOOP


@pytest.mark.asyncio
async def test_finished_retention_delays_cleanup(store, registry, provider, subject, make_game, settings) -> None:
    reconciler = Reconciler(store, registry, settings.model_copy(update={"finished_retention_s": 600.0}))
    provider.games = [make_game("3rd Qtr", "1:00")]
    await reconciler.reconcile(subject, at(21))
    provider.games = [make_game("Final")]
    await reconciler.reconcile(subject, at(21, 40))

    provider.games = []
    assert (await reconciler.reconcile(subject, at(21, 45))).outcome == ReconcileOutcome.NOOP
    assert subject.id in store.rows
    assert (await reconciler.reconcile(subject, at(21, 51))).outcome == ReconcileOutcome.DELETED


@pytest.mark.asyncio
async def test_finished_game_without_live_row_writes_nothing(reconciler, store, provider, subject, make_game) -> None:
    provider.games = [make_game("Final", home_score=110, away_score=99)]
    result = await reconciler.reconcile(subject, at(23))
    assert result.outcome == ReconcileOutcome.NOOP
    assert store.rows == {}
    assert store.changes == []


@pytest.mark.asyncio
async def test_earlier_final_never_replaces_todays_live_row(reconciler, store, provider, subject, make_game) -> None:
    yesterday = make_game("Final", game_id="999", start_time=at(19, day=14), home_score=90, away_score=120)
    provider.games = [yesterday, make_game("2nd Qtr", "6:00", game_id="1001")]
    await reconciler.reconcile(subject, at(19, 40))
    assert store.rows[subject.id].provider_game_id == "1001"

    # Today's game briefly reports a status that maps to scheduled.
    provider.games = [yesterday, make_game("TBD", game_id="1001")]
    result = await reconciler.reconcile(subject, at(19, 41))

    # No live game and no final for the tracked game: the row goes, it is not overwritten.
    assert result.outcome == ReconcileOutcome.DELETED
    assert subject.id not in store.rows
    assert all(c.row is None or c.row.provider_game_id != "999" for c in store.changes)


@pytest.mark.asyncio
async def test_promote_requires_matching_game(store, subject, make_game, reconciler, provider) -> None:
    provider.games = [make_game("3rd Qtr", "2:00", game_id="1001")]
    await reconciler.reconcile(subject, at(20))
    live_row = store.rows[subject.id]

    other_final = live_row.model_copy(update={"provider_game_id": "999", "phase": MatchPhase.FINISHED})
    assert await store.promote_to_finished(other_final) is False
    assert store.rows[subject.id] == live_row


@pytest.mark.asyncio
async def test_stale_final_makes_no_secondary_calls(reconciler, store, provider, subject, make_game) -> None:
    provider.games = [make_game("Final", game_id="999", start_time=at(19, day=14))]
    for minute in range(5):
        result = await reconciler.reconcile(subject, at(19, minute))
        assert result.outcome == ReconcileOutcome.NOOP
    assert provider.stats_calls == 0


@pytest.mark.asyncio
async def test_stale_final_cannot_halt_the_tick(reconciler, store, provider, subject, make_game) -> None:
    provider.stats_error = RateLimitedError("balldontlie", "HTTP 429", 429)
    provider.games = [make_game("Final", game_id="999", start_time=at(19, day=14))]
    result = await reconciler.reconcile(subject, at(19))
    assert result.outcome == ReconcileOutcome.NOOP
    assert result.halting_failure is None


@pytest.mark.asyncio
async def test_finished_row_is_not_promoted_again(store, registry, provider, subject, make_game, settings) -> None:
    reconciler = Reconciler(store, registry, settings.model_copy(update={"finished_retention_s": 600.0}))
    provider.games = [make_game("4th Qtr", "0:10")]
    await reconciler.reconcile(subject, at(21, 30))
    provider.games = [make_game("Final")]
    await reconciler.reconcile(subject, at(21, 40))
    calls_after_promotion = provider.stats_calls

    result = await reconciler.reconcile(subject, at(21, 41))
    assert result.outcome == ReconcileOutcome.NOOP
    assert provider.stats_calls == calls_after_promotion


# ── Row content ─────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_clock_fields_on_live_row(reconciler, store, provider, subject, make_game) -> None:
    provider.games = [make_game("3rd Qtr", "4:12")]
    await reconciler.reconcile(subject, at(20, 20))
    row = store.rows[subject.id]
    assert row.current_minute == 32
    assert row.last_event == "Q3 · 4:12"


@pytest.mark.asyncio
async def test_provider_event_text_wins_over_clock(reconciler, store, provider, subject, make_game) -> None:
    provider.event = "Goal! Test Forward (67')"
    provider.games = [make_game("2H", "67")]
    await reconciler.reconcile(subject, at(20))
    assert store.rows[subject.id].last_event == "Goal! Test Forward (67')"


@pytest.mark.asyncio
async def test_away_subject_gets_home_team_as_opponent(reconciler, store, provider, subject, make_game) -> None:
    provider.games = [make_game("2nd Qtr", "5:00", home_team_id="2", away_team_id="14")]
    await reconciler.reconcile(subject, at(19, 40))
    row = store.rows[subject.id]
    assert row.home_away == HomeAway.AWAY
    assert row.opponent == "Team 2"


@pytest.mark.asyncio
async def test_reconcile_is_idempotent(reconciler, store, provider, subject, make_game) -> None:
    provider.games = [make_game("2nd Qtr", "3:00", home_score=40, away_score=38)]
    first = await reconciler.reconcile(subject, at(19, 45))
    row_after_first = store.rows[subject.id]
    second = await reconciler.reconcile(subject, at(19, 45))

    assert first.outcome == second.outcome == ReconcileOutcome.UPSERTED
    assert len(store.rows) == 1
    assert store.rows[subject.id] == row_after_first
    assert all(c.op == ChangeOp.UPSERT for c in store.changes)


@pytest.mark.asyncio
async def test_upsert_fully_replaces_previous_game(reconciler, store, provider, subject, make_game) -> None:
    provider.games = [make_game("3rd Qtr", "2:00", game_id="1001", home_score=70, away_score=60)]
    await reconciler.reconcile(subject, at(20))
    provider.stats_error = TransientError("balldontlie", "stats timeout")
    provider.games = [make_game("1st Qtr", "11:00", game_id="2002", start_time=at(19, day=16))]
    await reconciler.reconcile(subject, at(19, 5, day=16))

    row = store.rows[subject.id]
    assert row.provider_game_id == "2002"
    assert (row.home_score, row.away_score) == (0, 0)
    assert row.subject_stats == {}


@pytest.mark.asyncio
async def test_multiple_live_games_pick_latest_start(reconciler, store, provider, subject, make_game) -> None:
    provider.games = [
        make_game("2nd Qtr", "1:00", game_id="early", start_time=at(17)),
        make_game("1st Qtr", "9:00", game_id="late", start_time=at(19)),
    ]
    result = await reconciler.reconcile(subject, at(19, 10))
    assert result.provider_game_id == "late"
    assert len(store.rows) == 1
    assert store.rows[subject.id].provider_game_id == "late"


@pytest.mark.asyncio
async def test_games_for_other_teams_are_ignored(reconciler, store, provider, subject, make_game) -> None:
    provider.games = [make_game("2nd Qtr", "1:00", home_team_id="5", away_team_id="6")]
    result = await reconciler.reconcile(subject, at(19, 30))
    assert result.outcome == ReconcileOutcome.NOOP
    assert store.rows == {}


# ── Failures ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_stats_failure_writes_row_with_empty_bag(reconciler, store, provider, subject, make_game) -> None:
    provider.stats_error = MalformedResponseError("balldontlie", "bad stat line")
    provider.games = [make_game("1st Qtr", "5:00")]
    result = await reconciler.reconcile(subject, at(19, 10))

    assert result.outcome == ReconcileOutcome.UPSERTED
    assert result.failure is None
    assert result.stats_failure == FailureKind.MALFORMED
    assert result.halting_failure is None
    assert store.rows[subject.id].subject_stats == {}


@pytest.mark.asyncio
async def test_rate_limited_stats_still_writes_but_halts(reconciler, store, provider, subject, make_game) -> None:
    provider.stats_error = RateLimitedError("balldontlie", "HTTP 429", 429)
    provider.games = [make_game("1st Qtr", "5:00")]
    result = await reconciler.reconcile(subject, at(19, 10))

    assert result.outcome == ReconcileOutcome.UPSERTED
    assert result.stats_failure == FailureKind.RATE_LIMITED
    assert result.halting_failure == FailureKind.RATE_LIMITED
    assert subject.id in store.rows


@pytest.mark.asyncio
async def test_subject_without_player_id_skips_stats(reconciler, store, provider, subject, make_game) -> None:
    subject = subject.model_copy(update={"provider_player_id": None})
    provider.games = [make_game("1st Qtr", "5:00")]
    await reconciler.reconcile(subject, at(19, 10))
    assert provider.stats_calls == 0
    assert store.rows[subject.id].subject_stats == {}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error,kind",
    [
        (TransientError("balldontlie", "timeout"), FailureKind.TRANSIENT),
        (MalformedResponseError("balldontlie", "bad envelope"), FailureKind.MALFORMED),
        (RateLimitedError("balldontlie", "HTTP 429", 429), FailureKind.RATE_LIMITED),
    ],
)
async def test_primary_failure_leaves_row_untouched(
    reconciler, store, provider, subject, make_game, error, kind
) -> None:
    provider.games = [make_game("2nd Qtr", "6:00")]
    await reconciler.reconcile(subject, at(19, 30))
    before = store.rows[subject.id]
    changes_before = len(store.changes)

    provider.games_error = error
    result = await reconciler.reconcile(subject, at(19, 31))

    assert result.outcome == ReconcileOutcome.FAILED
    assert result.failure == kind
    assert store.rows[subject.id] == before
    assert len(store.changes) == changes_before


@pytest.mark.asyncio
async def test_untrackable_subject_is_skipped(reconciler, store, provider, subject) -> None:
    subject = subject.model_copy(update={"provider_team_id": None})
    result = await reconciler.reconcile(subject, at(19, 30))
    assert result.outcome == ReconcileOutcome.SKIPPED
    assert provider.game_calls == []


@pytest.mark.asyncio
async def test_store_failure_reports_transient(reconciler, store, provider, subject, make_game) -> None:
    store.fail_writes = True
    provider.games = [make_game("2nd Qtr", "6:00")]
    result = await reconciler.reconcile(subject, at(19, 30))
    assert result.outcome == ReconcileOutcome.FAILED
    assert result.failure == FailureKind.TRANSIENT


# ── Concurrency ─────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_same_subject_reconciles_serially(reconciler, store, provider, subject, make_game) -> None:
    provider.games = [make_game("2nd Qtr", "6:00")]
    provider.gate = asyncio.Event()

    first = asyncio.create_task(reconciler.reconcile(subject, at(19, 30)))
    second = asyncio.create_task(reconciler.reconcile(subject, at(19, 30)))
    await asyncio.sleep(0.01)
    # The second call is waiting on the subject lock, not on the provider.
    assert len(provider.game_calls) == 1

    provider.gate.set()
    results = await asyncio.gather(first, second)
    assert [r.outcome for r in results] == [ReconcileOutcome.UPSERTED, ReconcileOutcome.UPSERTED]
    assert len(provider.game_calls) == 2
