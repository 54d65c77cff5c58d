"""
Status mapping for provider game states.

The only place raw provider status strings are interpreted. Both the
basketball vocabulary (balldontlie: "3rd Qtr", "Halftime", "Final",
"7:00 pm ET") and the football short codes (API-Football: "1H", "HT", "FT")
resolve through the same functions; the two vocabularies do not overlap.
Every function here is pure and total.
"""
from __future__ import annotations

import re
from typing import Optional

from shared.models.domain import ClockReading
from shared.models.enums import MatchPhase

_FINISHED = frozenset({"final", "final/ot", "ft", "aet", "pen", "full time", "match finished"})
_HALFTIME = frozenset({"halftime", "half", "ht"})
_FOOTBALL_LIVE = frozenset({"1h", "2h", "et", "bt", "p", "live"})
_GENERIC_LIVE = frozenset({"in progress"})

_QUARTER_RE = re.compile(r"(\d)(?:st|nd|rd|th)\s*(?:qtr|quarter)", re.IGNORECASE)
_OT_RE = re.compile(r"^(\d+)?\s*(?:ot|overtime)\s*(\d+)?$", re.IGNORECASE)
_CLOCK_RE = re.compile(r"(\d+):(\d+)")
_FOOTBALL_MINUTE_RE = re.compile(r"^(\d+)(?:\s*\+\s*(\d+))?'?$")

QUARTER_MINUTES = 12
OVERTIME_MINUTES = 5
REGULATION_MINUTES = 4 * QUARTER_MINUTES
BASKETBALL_HALFTIME_MINUTE = 2 * QUARTER_MINUTES
FOOTBALL_HALFTIME_MINUTE = 45


def _norm(raw_status: Optional[str]) -> str:
    return (raw_status or "").strip().lower()


def _quarter(raw_status: str) -> Optional[int]:
    m = _QUARTER_RE.search(raw_status)
    return int(m.group(1)) if m else None


def _overtime(status: str) -> Optional[int]:
    """Overtime period number (1-based) or None."""
    m = _OT_RE.match(status)
    if not m:
        return None
    return int(m.group(1) or m.group(2) or 1)


def _remaining_minutes(raw_clock: Optional[str], period_length: int) -> Optional[int]:
    if not raw_clock:
        return None
    m = _CLOCK_RE.search(raw_clock)
    if not m:
        return None
    return max(0, min(period_length, int(m.group(1))))


def _football_minute(raw_clock: Optional[str]) -> Optional[tuple[int, int]]:
    if not raw_clock:
        return None
    m = _FOOTBALL_MINUTE_RE.match(raw_clock.strip())
    if not m:
        return None
    return int(m.group(1)), int(m.group(2) or 0)


def map_phase(raw_status: Optional[str]) -> MatchPhase:
    """
    Map a provider status string to a MatchPhase.

    Unknown vocabulary (tip-off times, ISO timestamps, "NS", "PST", empty)
    maps to SCHEDULED.
    """
    s = _norm(raw_status)
    if not s:
        return MatchPhase.SCHEDULED
    if s in _FINISHED:
        return MatchPhase.FINISHED
    if s in _HALFTIME:
        return MatchPhase.HALFTIME
    if s in _FOOTBALL_LIVE or s in _GENERIC_LIVE:
        return MatchPhase.LIVE
    if _quarter(s) is not None or _overtime(s) is not None:
        return MatchPhase.LIVE
    return MatchPhase.SCHEDULED


def format_clock(raw_status: Optional[str], raw_clock: Optional[str] = None) -> str:
    """
    Human-readable clock for the live row's last_event line.

        "3rd Qtr", "4:12"  -> "Q3 · 4:12"
        "OT", "2:30"       -> "OT · 2:30"
        "2OT", "1:00"      -> "OT2 · 1:00"
        "Halftime"         -> "Halftime"
        "Final"            -> "Final"
        "2H", "67"         -> "67'"
        "1H", "45+2"       -> "45+2'"
    """
    s = _norm(raw_status)
    if s in _HALFTIME:
        return "Halftime"
    if s in _FINISHED:
        return "Final"

    clock = (raw_clock or "").strip()
    suffix = f" · {clock}" if clock else ""

    quarter = _quarter(s)
    if quarter is not None:
        return f"Q{quarter}{suffix}"

    ot = _overtime(s)
    if ot is not None:
        return f"OT{ot if ot > 1 else ''}{suffix}"

    if s in _FOOTBALL_LIVE:
        minute = _football_minute(clock)
        if minute is not None:
            base, extra = minute
            return f"{base}+{extra}'" if extra else f"{base}'"

    return (raw_status or "").strip()


def estimate_elapsed(raw_status: Optional[str], raw_clock: Optional[str] = None) -> int:
    """
    Approximate elapsed game minutes.

    Basketball counts down, so elapsed = (period - 1) * 12 + (12 - remaining);
    "3rd Qtr" with "4:12" left is 32. Overtime periods are 5 minutes after 48.
    Football clocks count up and are used as-is, stoppage included.
    """
    s = _norm(raw_status)
    if not s:
        return 0

    if s in ("halftime", "half"):
        return BASKETBALL_HALFTIME_MINUTE
    if s == "ht":
        return FOOTBALL_HALFTIME_MINUTE

    quarter = _quarter(s)
    if quarter is not None:
        elapsed = (quarter - 1) * QUARTER_MINUTES
        remaining = _remaining_minutes(raw_clock, QUARTER_MINUTES)
        if remaining is not None:
            elapsed += QUARTER_MINUTES - remaining
        return elapsed

    ot = _overtime(s)
    if ot is not None:
        elapsed = REGULATION_MINUTES + (ot - 1) * OVERTIME_MINUTES
        remaining = _remaining_minutes(raw_clock, OVERTIME_MINUTES)
        if remaining is not None:
            elapsed += OVERTIME_MINUTES - remaining
        return elapsed

    if s in _FOOTBALL_LIVE:
        minute = _football_minute(raw_clock)
        if minute is not None:
            return minute[0] + minute[1]

    return 0


def read_clock(raw_status: Optional[str], raw_clock: Optional[str] = None) -> ClockReading:
    return ClockReading(
        display=format_clock(raw_status, raw_clock),
        elapsed_minutes=estimate_elapsed(raw_status, raw_clock),
    )
