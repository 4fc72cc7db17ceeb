"""
backend/backoffice/providers/exchange.py

Purpose:
    Exchange API adapter: one method per upstream action (catalog listings
    and the three odds feeds). Returns raw UpstreamResponse objects; shaping
    happens in the catalog sync and market feed services.

Dependencies:
    - backoffice.providers.http_client
    - backoffice.config
"""

import logging

from backoffice.config import settings
from backoffice.providers.http_client import UpstreamClient, UpstreamResponse

logger = logging.getLogger("backoffice.exchange")

PROVIDER_NAME = "exchange"


class ExchangeProvider:
    """Thin action-per-method wrapper around the exchange ``api.php`` endpoint."""

    def __init__(self, client: UpstreamClient | None = None):
        self._client = client or UpstreamClient(
            PROVIDER_NAME,
            settings.EXCHANGE_BASE_URL,
            timeout=settings.EXCHANGE_TIMEOUT_SECONDS,
        )

    async def get_sports(self) -> UpstreamResponse:
        return await self._client.fetch({"action": "sports"})

    async def get_competitions(self, sport_id: int) -> UpstreamResponse:
        # "serise" is the upstream spelling.
        return await self._client.fetch({"action": "serise", "sport_id": sport_id})

    async def get_events(self, sport_id: int, competition_id: int | str) -> UpstreamResponse:
        return await self._client.fetch(
            {"action": "event", "sport_id": sport_id, "competition_id": competition_id}
        )

    async def get_match_odds(self, market_id: str) -> UpstreamResponse:
        return await self._client.fetch({"action": "matchodds", "market_id": market_id})

    async def get_bookmaker_odds(self, market_id: str) -> UpstreamResponse:
        return await self._client.fetch({"action": "bookmakermatchodds", "market_id": market_id})

    async def get_fancy(self, event_id: str) -> UpstreamResponse:
        return await self._client.fetch({"action": "fancy", "event_id": event_id})

    async def aclose(self) -> None:
        await self._client.aclose()


exchange_provider = ExchangeProvider()
