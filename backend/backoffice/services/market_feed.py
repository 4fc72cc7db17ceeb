"""
backend/backoffice/services/market_feed.py

Purpose:
    Live odds for one market, per market category. Each category has its own
    upstream action, payload layout and runner-label field; all of them are
    normalized to the same RunnerOdds shape before reaching clients.

Dependencies:
    - backoffice.providers.exchange
    - backoffice.utils
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from backoffice.providers.exchange import ExchangeProvider, exchange_provider
from backoffice.providers.http_client import UpstreamResponse
from backoffice.utils import utcnow

logger = logging.getLogger("backoffice.market_feed")


class MarketCategory(str, Enum):
    MATCH_ODDS = "match_odds"
    BOOKMAKER = "bookmaker"
    FANCY = "fancy"


@dataclass(frozen=True)
class RunnerOdds:
    """One runner's odds as delivered to clients (label + cleaned fields)."""

    label: str
    odds: dict[str, Any]


@dataclass(frozen=True)
class FeedShape:
    """How one market category is fetched and cleaned."""

    category: MarketCategory
    label_field: str
    stripped_fields: frozenset[str]
    runners_nested: bool  # runners under payload[0]["runners"] vs. payload is the runner list
    fetch: Callable[[ExchangeProvider, str], Awaitable[UpstreamResponse]]

    def runner_rows(self, payload: Any) -> list[dict]:
        if not isinstance(payload, list) or not payload:
            return []
        if not self.runners_nested:
            return [row for row in payload if isinstance(row, dict)]
        head = payload[0]
        if not isinstance(head, dict) or not head.get("runners"):
            return []
        return [row for row in head["runners"] if isinstance(row, dict)]

    def normalize(self, payload: Any) -> list[RunnerOdds]:
        out: list[RunnerOdds] = []
        for row in self.runner_rows(payload):
            label = row.get(self.label_field)
            if label is None:
                continue
            odds = {
                key: value
                for key, value in row.items()
                if key != self.label_field and key not in self.stripped_fields
            }
            out.append(RunnerOdds(label=str(label), odds=odds))
        return out


FEED_SHAPES: dict[MarketCategory, FeedShape] = {
    MarketCategory.MATCH_ODDS: FeedShape(
        category=MarketCategory.MATCH_ODDS,
        label_field="runner",
        stripped_fields=frozenset({"ex", "status", "lastPriceTraded", "selectionId", "removalDate"}),
        runners_nested=True,
        fetch=lambda provider, feed_id: provider.get_match_odds(feed_id),
    ),
    MarketCategory.BOOKMAKER: FeedShape(
        category=MarketCategory.BOOKMAKER,
        label_field="runnerName",
        stripped_fields=frozenset({"ex", "lastPriceTraded", "selectionId"}),
        runners_nested=True,
        fetch=lambda provider, feed_id: provider.get_bookmaker_odds(feed_id),
    ),
    MarketCategory.FANCY: FeedShape(
        category=MarketCategory.FANCY,
        label_field="RunnerName",
        stripped_fields=frozenset({"SelectionId"}),
        runners_nested=False,
        fetch=lambda provider, feed_id: provider.get_fancy(feed_id),
    ),
}

_missing = set(MarketCategory) - set(FEED_SHAPES)
if _missing:
    raise RuntimeError(f"market categories without a feed shape: {sorted(c.value for c in _missing)}")


def attach_runner_odds(runner_names: list[str], snapshot: list[RunnerOdds]) -> list[dict[str, Any]]:
    """Pair stored runner names with snapshot odds by exact label.

    Unmatched runners get ``odds == {}`` so the field is always present.
    """
    by_label: dict[str, dict[str, Any]] = {}
    for entry in snapshot:
        by_label.setdefault(entry.label, entry.odds)
    return [
        {"runner_name": name, "odds": dict(by_label.get(name, {}))}
        for name in runner_names
    ]


class MarketFeedFetcher:
    def __init__(self, provider: ExchangeProvider | None = None) -> None:
        self._provider = provider or exchange_provider

    async def fetch_market_snapshot(
        self,
        category: MarketCategory | str,
        market_or_event_id: str,
    ) -> list[RunnerOdds]:
        """Current odds for one market. Non-200 means "no data yet" and returns []."""
        shape = FEED_SHAPES[MarketCategory(category)]
        resp = await shape.fetch(self._provider, str(market_or_event_id))
        if not resp.ok:
            logger.debug(
                "No %s data for %s (HTTP %d)", shape.category.value, market_or_event_id, resp.status_code,
            )
            return []
        return shape.normalize(resp.data)

    async def fetch(self, market) -> dict[str, Any] | None:
        """Broadcast payload for a MarketRef, or None when there is nothing to send.

        Runners are the market's stored runners with odds attached, the same
        shape as the event detail view. A market with no stored runners
        passes the upstream labels through.
        """
        snapshot = await self.fetch_market_snapshot(market.category, market.feed_id)
        if not snapshot:
            return None
        if market.runner_names:
            runners = attach_runner_odds(list(market.runner_names), snapshot)
        else:
            runners = [{"runner_name": entry.label, "odds": dict(entry.odds)} for entry in snapshot]
        return {
            "market_id": market.id,
            "category": MarketCategory(market.category).value,
            "runners": runners,
            "ts": utcnow().isoformat(),
        }


market_feed_fetcher = MarketFeedFetcher()
