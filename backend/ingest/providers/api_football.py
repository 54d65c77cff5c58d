"""
API-Football provider connector (football).

API-Football answers most application errors with HTTP 200 and a non-empty
`errors` object, so the envelope is checked on every response.
"""
from __future__ import annotations

import unicodedata
from datetime import date, datetime, timezone
from typing import Any, Optional

from shared.config import Settings, get_settings
from shared.models.domain import ProviderGame, ProviderStatLine
from shared.models.enums import ProviderName, Sport
from shared.utils.http_client import (
    MalformedResponseError,
    ProviderHTTPClient,
    RateLimitedError,
    TransientError,
    UnauthorizedError,
)
from shared.utils.logging import get_logger

from ingest.providers.base import BaseProvider

logger = get_logger(__name__)

# Letters NFD does not decompose into base + combining mark.
_TRANSLIT = str.maketrans({"ı": "i", "ł": "l", "ø": "o", "đ": "d", "ß": "ss"})


def normalize_name(name: str) -> str:
    """Lowercase, strip accents, collapse whitespace."""
    lowered = name.lower().translate(_TRANSLIT)
    decomposed = unicodedata.normalize("NFD", lowered)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return " ".join(stripped.split())


def names_match(api_name: str, subject_name: str) -> bool:
    """
    Loose player-name match: either name contains the other, or they share a
    name part longer than three characters ("A. Güler" vs "Arda Güler").
    """
    a, b = normalize_name(api_name), normalize_name(subject_name)
    if not a or not b:
        return False
    if a in b or b in a:
        return True
    b_parts = set(b.split())
    return any(len(p) > 3 and p in b_parts for p in a.replace(".", " ").split())


def _errors_text(errors: Any) -> str:
    if isinstance(errors, dict):
        return "; ".join(f"{k}: {v}" for k, v in errors.items() if v)
    if isinstance(errors, list):
        return "; ".join(str(e) for e in errors if e)
    return str(errors or "")


def _parse_iso(raw: Any) -> Optional[datetime]:
    if not isinstance(raw, str) or not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _stat_bag(stats: dict[str, Any]) -> dict[str, Any]:
    def section(name: str) -> dict[str, Any]:
        value = stats.get(name)
        return value if isinstance(value, dict) else {}

    games, goals, shots = section("games"), section("goals"), section("shots")
    passes, tackles, duels = section("passes"), section("tackles"), section("duels")
    dribbles, fouls, cards = section("dribbles"), section("fouls"), section("cards")
    rating = games.get("rating")
    return {
        "minutes": int(games.get("minutes") or 0),
        "rating": float(rating) if rating else None,
        "goals": int(goals.get("total") or 0),
        "assists": int(goals.get("assists") or 0),
        "shots": int(shots.get("total") or 0),
        "shots_on_target": int(shots.get("on") or 0),
        "passes": int(passes.get("total") or 0),
        "pass_accuracy": int(passes.get("accuracy") or 0),
        "tackles": int(tackles.get("total") or 0),
        "interceptions": int(tackles.get("interceptions") or 0),
        "duels_won": int(duels.get("won") or 0),
        "dribbles": int(dribbles.get("success") or 0),
        "fouls_committed": int(fouls.get("committed") or 0),
        "fouls_drawn": int(fouls.get("drawn") or 0),
        "yellow_cards": int(cards.get("yellow") or 0),
        "red_cards": int(cards.get("red") or 0),
    }


def describe_event(event: dict[str, Any]) -> Optional[str]:
    """One-line text for a goal, card or substitution; None for anything else."""
    kind = str(event.get("type") or "").lower()
    player = (event.get("player") or {}).get("name") or "Unknown"
    time_info = event.get("time") or {}
    minute = time_info.get("elapsed")
    extra = time_info.get("extra")
    stamp = f"{minute}+{extra}'" if minute is not None and extra else (f"{minute}'" if minute is not None else "")
    suffix = f" ({stamp})" if stamp else ""
    if kind == "goal":
        return f"Goal! {player}{suffix}"
    if kind == "card":
        detail = str(event.get("detail") or "Card")
        return f"{detail}: {player}{suffix}"
    if kind == "subst":
        return f"Substitution: {player}{suffix}"
    return None


class ApiFootballProvider(BaseProvider):
    """Fixtures, player lines and events from v3.football.api-sports.io."""

    def __init__(self, settings: Settings | None = None, http_client: ProviderHTTPClient | None = None) -> None:
        settings = settings or get_settings()
        self._api_key = settings.api_football_key
        http = http_client or ProviderHTTPClient(
            provider_name=ProviderName.API_FOOTBALL.value,
            base_url=settings.api_football_base_url,
            headers={"x-apisports-key": self._api_key} if self._api_key else {},
            timeout_s=settings.provider_request_timeout_s,
        )
        super().__init__(ProviderName.API_FOOTBALL, http, Sport.FOOTBALL)

    async def _get(self, path: str, params: dict[str, Any], endpoint: str) -> list[dict[str, Any]]:
        if not self._api_key:
            raise UnauthorizedError(self._name.value, "API_FOOTBALL key not configured")
        body = await self._http.get_json(path, params=params, endpoint=endpoint)
        if isinstance(body, dict) and body.get("errors"):
            self._raise_body_errors(body["errors"], path)
        return self._data_list(body, "response", path)

    def _raise_body_errors(self, errors: Any, path: str) -> None:
        text = _errors_text(errors)
        if not text:
            return
        lowered = text.lower()
        if "request limit" in lowered or "ratelimit" in lowered or "too many requests" in lowered:
            logger.warning("api_football_rate_limited", path=path, errors=text)
            raise RateLimitedError(self._name.value, text)
        if "token" in lowered or "key" in lowered or "subscription" in lowered:
            logger.error("api_football_unauthorized", path=path, errors=text)
            raise UnauthorizedError(self._name.value, text)
        logger.warning("api_football_body_error", path=path, errors=text)
        raise TransientError(self._name.value, text)

    async def fetch_games_in_range(
        self, provider_team_id: str, date_range: tuple[date, date]
    ) -> list[ProviderGame]:
        start, end = date_range
        fixtures = await self._get(
            "/fixtures",
            {"team": provider_team_id, "from": start.isoformat(), "to": end.isoformat()},
            endpoint="fixtures",
        )
        games = [self._parse_fixture(f) for f in fixtures]
        logger.debug("api_football_fixtures_fetched", team_id=provider_team_id, count=len(games))
        return games

    def _parse_fixture(self, raw: Any) -> ProviderGame:
        if not isinstance(raw, dict):
            raise MalformedResponseError(self._name.value, "fixture record is not an object")
        fixture = raw.get("fixture") or {}
        teams = raw.get("teams") or {}
        home, away = teams.get("home") or {}, teams.get("away") or {}
        goals = raw.get("goals") or {}
        status = fixture.get("status") or {}
        start_time = _parse_iso(fixture.get("date"))
        if fixture.get("id") is None or not home.get("id") or not away.get("id") or start_time is None:
            logger.warning("api_football_fixture_unparseable", fixture_id=fixture.get("id"))
            raise MalformedResponseError(self._name.value, f"unparseable fixture {fixture.get('id')}")

        elapsed, extra = status.get("elapsed"), status.get("extra")
        clock: Optional[str] = None
        if elapsed is not None:
            clock = f"{elapsed}+{extra}" if extra else str(elapsed)

        try:
            return ProviderGame(
                game_id=str(fixture["id"]),
                home_team_id=str(home["id"]),
                home_team_name=home.get("name") or "Unknown",
                away_team_id=str(away["id"]),
                away_team_name=away.get("name") or "Unknown",
                home_score=int(goals.get("home") or 0),
                away_score=int(goals.get("away") or 0),
                raw_status=str(status.get("short") or ""),
                raw_clock=clock,
                start_time=start_time,
                competition=(raw.get("league") or {}).get("name") or "Unknown",
            )
        except (TypeError, ValueError) as exc:
            logger.warning("api_football_fixture_unparseable", fixture_id=fixture["id"], error=str(exc))
            raise MalformedResponseError(self._name.value, f"bad score on fixture {fixture['id']}") from exc

    async def fetch_live_stats_for_game(
        self,
        provider_player_id: str,
        game_id: str,
        provider_team_id: Optional[str] = None,
        player_name: Optional[str] = None,
    ) -> ProviderStatLine:
        team_blocks = await self._get("/fixtures/players", {"fixture": game_id}, endpoint="fixtures_players")
        if provider_team_id is not None:
            team_blocks = [
                t for t in team_blocks if str((t.get("team") or {}).get("id")) == str(provider_team_id)
            ]

        players = [p for t in team_blocks for p in (t.get("players") or []) if isinstance(p, dict)]
        match = next(
            (p for p in players if str((p.get("player") or {}).get("id")) == str(provider_player_id)),
            None,
        )
        if match is None and player_name:
            match = next(
                (p for p in players if names_match(str((p.get("player") or {}).get("name") or ""), player_name)),
                None,
            )
        if match is None:
            return ProviderStatLine()

        statistics = match.get("statistics") or []
        if not statistics or not isinstance(statistics[0], dict):
            return ProviderStatLine()
        try:
            return ProviderStatLine(values=_stat_bag(statistics[0]))
        except (TypeError, ValueError) as exc:
            raise MalformedResponseError(self._name.value, f"bad player line for fixture {game_id}") from exc

    async def fetch_last_event(self, game_id: str) -> Optional[str]:
        events = await self._get("/fixtures/events", {"fixture": game_id}, endpoint="fixtures_events")
        for event in reversed(events):
            text = describe_event(event)
            if text:
                return text
        return None
