"""
balldontlie provider connector (basketball).
"""
from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Optional

from shared.config import Settings, get_settings
from shared.models.domain import ProviderGame, ProviderStatLine
from shared.models.enums import ProviderName, Sport
from shared.utils.http_client import MalformedResponseError, ProviderHTTPClient, UnauthorizedError
from shared.utils.logging import get_logger

from ingest.providers.base import BaseProvider

logger = get_logger(__name__)

GAMES_PER_PAGE = 10


def _parse_start(game: dict[str, Any]) -> Optional[datetime]:
    # Newer responses carry a full ISO `datetime`; scheduled games also put
    # the tip-off timestamp in `status`. `date` alone is a calendar day.
    for key in ("datetime", "status", "date"):
        raw = game.get(key)
        if not isinstance(raw, str) or not raw:
            continue
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            continue
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    return None


def _made_attempted(stat: dict[str, Any], made: str, attempted: str) -> str:
    return f"{stat.get(made) or 0}/{stat.get(attempted) or 0}"


class BalldontlieProvider(BaseProvider):
    """NBA games and box-score lines from api.balldontlie.io."""

    def __init__(self, settings: Settings | None = None, http_client: ProviderHTTPClient | None = None) -> None:
        settings = settings or get_settings()
        self._api_key = settings.balldontlie_api_key
        http = http_client or ProviderHTTPClient(
            provider_name=ProviderName.BALLDONTLIE.value,
            base_url=settings.balldontlie_base_url,
            headers={"Authorization": self._api_key} if self._api_key else {},
            timeout_s=settings.provider_request_timeout_s,
        )
        super().__init__(ProviderName.BALLDONTLIE, http, Sport.BASKETBALL)

    def _require_key(self) -> None:
        if not self._api_key:
            raise UnauthorizedError(self._name.value, "BALLDONTLIE api key not configured")

    async def fetch_games_in_range(
        self, provider_team_id: str, date_range: tuple[date, date]
    ) -> list[ProviderGame]:
        self._require_key()
        start, end = date_range
        body = await self._http.get_json(
            "/games",
            params=[
                ("team_ids[]", provider_team_id),
                ("start_date", start.isoformat()),
                ("end_date", end.isoformat()),
                ("per_page", GAMES_PER_PAGE),
            ],
            endpoint="games",
        )
        games = [self._parse_game(raw) for raw in self._data_list(body, "data", "/games")]
        logger.debug(
            "balldontlie_games_fetched",
            team_id=provider_team_id,
            start=start.isoformat(),
            end=end.isoformat(),
            count=len(games),
        )
        return games

    def _parse_game(self, raw: Any) -> ProviderGame:
        if not isinstance(raw, dict):
            raise MalformedResponseError(self._name.value, "game record is not an object")
        home = raw.get("home_team") or {}
        away = raw.get("visitor_team") or {}
        start_time = _parse_start(raw)
        if raw.get("id") is None or not home.get("id") or not away.get("id") or start_time is None:
            logger.warning("balldontlie_game_unparseable", game_id=raw.get("id"))
            raise MalformedResponseError(self._name.value, f"unparseable game {raw.get('id')}")
        clock = raw.get("time")
        try:
            return ProviderGame(
                game_id=str(raw["id"]),
                home_team_id=str(home["id"]),
                home_team_name=home.get("full_name") or home.get("name") or "Unknown",
                away_team_id=str(away["id"]),
                away_team_name=away.get("full_name") or away.get("name") or "Unknown",
                home_score=int(raw.get("home_team_score") or 0),
                away_score=int(raw.get("visitor_team_score") or 0),
                raw_status=str(raw.get("status") or ""),
                raw_clock=clock.strip() if isinstance(clock, str) and clock.strip() else None,
                start_time=start_time,
                competition="NBA",
            )
        except (TypeError, ValueError) as exc:
            logger.warning("balldontlie_game_unparseable", game_id=raw.get("id"), error=str(exc))
            raise MalformedResponseError(self._name.value, f"bad score on game {raw['id']}") from exc

    async def fetch_live_stats_for_game(
        self,
        provider_player_id: str,
        game_id: str,
        provider_team_id: Optional[str] = None,
        player_name: Optional[str] = None,
    ) -> ProviderStatLine:
        self._require_key()
        body = await self._http.get_json(
            "/stats",
            params=[("player_ids[]", provider_player_id), ("game_ids[]", game_id)],
            endpoint="stats",
        )
        rows = self._data_list(body, "data", "/stats")
        if not rows:
            return ProviderStatLine()
        stat = rows[0]
        try:
            values = {
                "points": int(stat.get("pts") or 0),
                "rebounds": int(stat.get("reb") or 0),
                "assists": int(stat.get("ast") or 0),
                "steals": int(stat.get("stl") or 0),
                "blocks": int(stat.get("blk") or 0),
                "minutes": str(stat.get("min") or "0"),
                "fg": _made_attempted(stat, "fgm", "fga"),
                "fg3": _made_attempted(stat, "fg3m", "fg3a"),
                "ft": _made_attempted(stat, "ftm", "fta"),
            }
        except (TypeError, ValueError) as exc:
            raise MalformedResponseError(self._name.value, f"bad stat line for game {game_id}") from exc
        return ProviderStatLine(values=values)
