"""
Abstract base class for all sports data providers.
Defines the contract that every provider connector must implement.
"""
from __future__ import annotations

import abc
from datetime import date
from typing import Any, Optional

from shared.models.domain import ProviderGame, ProviderStatLine
from shared.models.enums import ProviderName, Sport
from shared.utils.http_client import MalformedResponseError, ProviderHTTPClient
from shared.utils.logging import get_logger

logger = get_logger(__name__)


class BaseProvider(abc.ABC):
    """
    Abstract base class for sports data providers.

    Fetch methods raise ProviderError subclasses on failure and never retry;
    the scheduler owns retry timing. JSON is treated as untyped at this
    boundary: connectors pull the fields they need and raise
    MalformedResponseError when the envelope itself is wrong.
    """

    def __init__(self, name: ProviderName, http_client: ProviderHTTPClient, sport: Sport) -> None:
        self._name = name
        self._http = http_client
        self._sport = sport

    @property
    def name(self) -> ProviderName:
        return self._name

    @property
    def sport(self) -> Sport:
        return self._sport

    async def start(self) -> None:
        """Initialize the provider HTTP client."""
        await self._http.start()

    async def close(self) -> None:
        """Shutdown the provider HTTP client."""
        await self._http.close()

    def _data_list(self, body: Any, key: str, path: str) -> list[dict[str, Any]]:
        """Pull the list payload out of a response envelope."""
        if not isinstance(body, dict) or not isinstance(body.get(key), list):
            raise MalformedResponseError(self._name.value, f"expected '{key}' list from {path}")
        return [item for item in body[key] if isinstance(item, dict)]

    # ── Abstract methods (each provider implements these) ───────────────
    @abc.abstractmethod
    async def fetch_games_in_range(
        self, provider_team_id: str, date_range: tuple[date, date]
    ) -> list[ProviderGame]:
        """All games involving the team whose calendar date falls in the range."""
        ...

    @abc.abstractmethod
    async def fetch_live_stats_for_game(
        self,
        provider_player_id: str,
        game_id: str,
        provider_team_id: Optional[str] = None,
        player_name: Optional[str] = None,
    ) -> ProviderStatLine:
        """
        The subject's stat line for one game.

        An empty ProviderStatLine means the provider has no line for the player
        yet (e.g. not checked in), which is not an error.
        """
        ...

    async def fetch_last_event(self, game_id: str) -> Optional[str]:
        """Short text for the most recent notable in-game event, if the provider has one."""
        return None
