"""Domain enumerations for the live-sync platform."""
from __future__ import annotations

from enum import Enum


class Sport(str, Enum):
    FOOTBALL = "football"
    BASKETBALL = "basketball"


class MatchPhase(str, Enum):
    SCHEDULED = "scheduled"
    LIVE = "live"
    HALFTIME = "halftime"
    FINISHED = "finished"

    @property
    def is_live(self) -> bool:
        return self in (MatchPhase.LIVE, MatchPhase.HALFTIME)


LIVE_PHASES: tuple[MatchPhase, ...] = (MatchPhase.LIVE, MatchPhase.HALFTIME)


class HomeAway(str, Enum):
    HOME = "home"
    AWAY = "away"


class ProviderName(str, Enum):
    BALLDONTLIE = "balldontlie"
    API_FOOTBALL = "api_football"


class FailureKind(str, Enum):
    """Provider failure taxonomy; drives the scheduler's retry behaviour."""
    UNAUTHORIZED = "unauthorized"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    MALFORMED = "malformed"

    @property
    def halts_tick(self) -> bool:
        return self in (FailureKind.UNAUTHORIZED, FailureKind.RATE_LIMITED)


class ReconcileOutcome(str, Enum):
    UPSERTED = "upserted"
    FINISHED = "finished"
    DELETED = "deleted"
    NOOP = "noop"
    SKIPPED = "skipped"
    FAILED = "failed"


class SchedulerState(str, Enum):
    DISABLED = "disabled"
    IDLE = "idle"
    POLLING = "polling"


class ChangeOp(str, Enum):
    UPSERT = "upsert"
    DELETE = "delete"


class WSClientOp(str, Enum):
    PING = "ping"
    VISIBILITY = "visibility"


class WSServerMsgType(str, Enum):
    SNAPSHOT = "snapshot"
    CHANGE = "change"
    STATE = "state"
    PONG = "pong"
    ERROR = "error"
