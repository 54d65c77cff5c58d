"""
Match-window predicate tests against the in-memory repository.
"""
from __future__ import annotations

import uuid
from datetime import timedelta

import pytest

from shared.config import Settings
from shared.models.domain import LiveMatchState, ScheduledFixture, TrackedSubject
from shared.models.enums import HomeAway, MatchPhase, Sport
from scheduler.engine.window import (
    REASON_FIXTURE,
    REASON_LIVE_ROW,
    REASON_NOTHING,
    REASON_STORE_ERROR,
    MatchWindowPredicate,
)

from conftest import InMemoryLiveStateRepository, at


@pytest.fixture
def predicate(store: InMemoryLiveStateRepository, settings: Settings) -> MatchWindowPredicate:
    return MatchWindowPredicate(store, settings)


@pytest.mark.asyncio
async def test_fixture_91_minutes_out_is_outside(predicate, fixture_at_1900) -> None:
    decision = await predicate.evaluate(at(19) - timedelta(minutes=91))
    assert decision.in_window is False
    assert decision.reason == REASON_NOTHING


@pytest.mark.asyncio
async def test_fixture_89_minutes_out_is_inside(predicate, fixture_at_1900) -> None:
    decision = await predicate.evaluate(at(19) - timedelta(minutes=89))
    assert decision.in_window is True
    assert decision.reason == REASON_FIXTURE


@pytest.mark.asyncio
async def test_lookahead_bound_is_inclusive(predicate, fixture_at_1900) -> None:
    assert await predicate.is_within_match_window(at(19) - timedelta(minutes=90)) is True


@pytest.mark.asyncio
async def test_lookback_keeps_recent_kickoffs_in_window(predicate, fixture_at_1900) -> None:
    assert await predicate.is_within_match_window(at(19) + timedelta(hours=4)) is True
    assert await predicate.is_within_match_window(at(19) + timedelta(hours=4, minutes=1)) is False


@pytest.mark.asyncio
async def test_live_row_holds_window_open(predicate, store, subject) -> None:
    store.rows[subject.id] = LiveMatchState(
        subject_id=subject.id,
        provider_game_id="1001",
        opponent="Boston Celtics",
        competition="NBA",
        home_away=HomeAway.HOME,
        phase=MatchPhase.LIVE,
        kickoff_time=at(14),
    )
    decision = await predicate.evaluate(at(23))
    assert decision.in_window is True
    assert decision.reason == REASON_LIVE_ROW


@pytest.mark.asyncio
async def test_finished_row_does_not_hold_window_open(predicate, store, subject) -> None:
    store.rows[subject.id] = LiveMatchState(
        subject_id=subject.id,
        provider_game_id="1001",
        opponent="Boston Celtics",
        competition="NBA",
        home_away=HomeAway.HOME,
        phase=MatchPhase.FINISHED,
        kickoff_time=at(14),
    )
    assert await predicate.is_within_match_window(at(23)) is False


@pytest.mark.asyncio
async def test_other_competition_fixture_is_ignored(predicate, store, subject) -> None:
    store.fixtures.append(
        ScheduledFixture(subject_id=subject.id, opponent="Las Vegas Aces", competition="WNBA", start_time=at(19))
    )
    assert await predicate.is_within_match_window(at(18, 30)) is False


@pytest.mark.asyncio
async def test_other_sport_fixture_is_ignored(predicate, store) -> None:
    striker = TrackedSubject(id=uuid.uuid4(), name="Striker", sport=Sport.FOOTBALL, team="Galatasaray")
    store.subjects.append(striker)
    store.fixtures.append(
        ScheduledFixture(subject_id=striker.id, opponent="Fenerbahce", competition="NBA", start_time=at(19))
    )
    assert await predicate.is_within_match_window(at(18, 30)) is False


@pytest.mark.asyncio
async def test_empty_competition_means_whole_sport(store, subject, settings) -> None:
    store.fixtures.append(
        ScheduledFixture(subject_id=subject.id, opponent="Las Vegas Aces", competition="WNBA", start_time=at(19))
    )
    predicate = MatchWindowPredicate(store, settings.model_copy(update={"active_competition": ""}))
    assert await predicate.is_within_match_window(at(18, 30)) is True


@pytest.mark.asyncio
async def test_store_error_reads_as_outside(predicate, store, fixture_at_1900) -> None:
    store.fail_reads = True
    decision = await predicate.evaluate(at(18, 30))
    assert decision.in_window is False
    assert decision.reason == REASON_STORE_ERROR


def test_window_bounds(predicate) -> None:
    window = predicate.window_for(at(12))
    assert window.start == at(8)
    assert window.end == at(13, 30)
    assert window.date_range() == (at(8, day=14).date(), at(13, day=16).date())
