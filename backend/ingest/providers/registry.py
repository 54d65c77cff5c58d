"""
Provider registry: one connector per sport.
"""
from __future__ import annotations

from typing import Optional

from shared.config import Settings, get_settings
from shared.models.enums import Sport
from shared.utils.logging import get_logger

from ingest.providers.api_football import ApiFootballProvider
from ingest.providers.balldontlie import BalldontlieProvider
from ingest.providers.base import BaseProvider

logger = get_logger(__name__)


class ProviderRegistry:
    """Maps each sport to its provider and owns their HTTP lifecycles."""

    def __init__(self, providers: dict[Sport, BaseProvider]) -> None:
        self._providers = providers

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "ProviderRegistry":
        settings = settings or get_settings()
        return cls({
            Sport.BASKETBALL: BalldontlieProvider(settings),
            Sport.FOOTBALL: ApiFootballProvider(settings),
        })

    @property
    def providers(self) -> dict[Sport, BaseProvider]:
        return self._providers

    def get(self, sport: Sport) -> Optional[BaseProvider]:
        return self._providers.get(sport)

    async def start(self) -> None:
        for sport, provider in self._providers.items():
            await provider.start()
            logger.info("provider_started", provider=provider.name.value, sport=sport.value)

    async def close(self) -> None:
        for provider in self._providers.values():
            try:
                await provider.close()
            except Exception as exc:
                logger.warning("provider_close_error", provider=provider.name.value, error=str(exc))
