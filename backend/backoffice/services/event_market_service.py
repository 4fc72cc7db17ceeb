"""
backend/backoffice/services/event_market_service.py

Purpose:
    Read side of the event catalog: paginated event listing, the event
    detail view with markets, runners and current odds attached, and the
    stored-market lookup that decides what a live broadcast polls.

Dependencies:
    - backoffice.database
    - backoffice.services.market_feed
    - backoffice.services.market_broadcast
    - backoffice.services.bet_lock_service
    - backoffice.utils
"""

from __future__ import annotations

import logging
import re
from typing import Any

from bson import ObjectId
from bson.errors import InvalidId

import backoffice.database as _db
from backoffice.services.bet_lock_service import viewer_bet_lock
from backoffice.services.market_broadcast import MarketRef
from backoffice.services.market_feed import MarketCategory, MarketFeedFetcher, attach_runner_odds, market_feed_fetcher
from backoffice.utils import pagination_stages

logger = logging.getLogger("backoffice.event_market")

# Market limits that fall back to the event's value when the market leaves them at 0.
_INHERITED_LIMITS = ("min_stake", "max_stake", "bet_delay")


async def list_events(
    *,
    page: int | None = None,
    per_page: int | None = None,
    sort_by: str = "match_date",
    direction: str = "desc",
    sport_id: ObjectId | None = None,
    competition_id: ObjectId | None = None,
    search: str | None = None,
) -> dict[str, Any]:
    """Paginated event listing with sport/competition names joined in."""
    filters: dict[str, Any] = {"is_deleted": {"$ne": True}}
    if sport_id is not None:
        filters["sport_id"] = sport_id
    if competition_id is not None:
        filters["competition_id"] = competition_id
    if search:
        filters["name"] = {"$regex": re.escape(search), "$options": "i"}

    pipeline: list[dict[str, Any]] = [
        {"$match": filters},
        {"$lookup": {
            "from": "sports", "localField": "sport_id", "foreignField": "_id",
            "as": "sport", "pipeline": [{"$project": {"name": 1}}],
        }},
        {"$unwind": {"path": "$sport", "preserveNullAndEmptyArrays": True}},
        {"$lookup": {
            "from": "competitions", "localField": "competition_id", "foreignField": "_id",
            "as": "competition", "pipeline": [{"$project": {"name": 1}}],
        }},
        {"$unwind": {"path": "$competition", "preserveNullAndEmptyArrays": True}},
        {"$set": {"sport_name": "$sport.name", "competition_name": "$competition.name"}},
        {"$unset": ["sport", "competition"]},
        {"$facet": {
            "total": [{"$count": "count"}],
            "records": [
                {"$sort": {sort_by: 1 if direction == "asc" else -1}},
                *pagination_stages(page, per_page),
            ],
        }},
    ]
    rows = await _db.db.events.aggregate(pipeline).to_list(length=1)
    if not rows:
        return {"records": [], "total_records": 0}
    facet = rows[0]
    total = facet.get("total") or []
    return {
        "records": facet.get("records") or [],
        "total_records": total[0]["count"] if total else 0,
    }


async def get_event_markets(
    event_id: ObjectId,
    viewer: dict | None = None,
    fetcher: MarketFeedFetcher | None = None,
) -> dict[str, Any] | None:
    """Event with its markets; each market carries runners with live odds attached."""
    fetcher = fetcher or market_feed_fetcher

    event = await _db.db.events.find_one({"_id": event_id})
    if event is None:
        return None

    markets = await _db.db.markets.find({"event_id": event_id}).to_list(length=None)
    bet_lock = await viewer_bet_lock(viewer, event)

    out_markets: list[dict[str, Any]] = []
    for market in markets:
        market = dict(market)
        for key in _INHERITED_LIMITS:
            if market.get(key) == 0:
                market[key] = event.get(key, 0)
        market["bet_lock"] = bet_lock

        runner_names = await _runner_names(market["_id"])
        market["runners"] = await _runners_with_odds(fetcher, market, event, runner_names)
        out_markets.append(market)

    event = dict(event)
    event["markets"] = out_markets
    return event


async def load_market_ref(market_id: str) -> MarketRef | None:
    """Broadcast target for a stored market, or None if it is unknown or has no live feed."""
    try:
        oid = ObjectId(market_id)
    except (InvalidId, TypeError):
        return None

    market = await _db.db.markets.find_one({"_id": oid})
    if market is None:
        return None
    event = await _db.db.events.find_one({"_id": market.get("event_id")}) or {}

    target = _feed_target(market, event)
    if target is None:
        return None
    category, feed_id = target
    return MarketRef(
        id=str(oid),
        category=category,
        feed_id=feed_id,
        runner_names=tuple(await _runner_names(oid)),
    )


async def _runner_names(market_id: ObjectId) -> list[str]:
    runners = await _db.db.market_runners.find(
        {"market_id": market_id}
    ).sort("priority", 1).to_list(length=None)
    return [r.get("runner_name", "") for r in runners]


def _feed_target(market: dict, event: dict) -> tuple[MarketCategory, str] | None:
    """Category and upstream id the market's odds are fetched with.

    Fancy markets are queried by upstream event id, the others by upstream
    market id.
    """
    try:
        category = MarketCategory(market.get("category"))
    except ValueError:
        logger.debug("Market %s has no feed category (%r)", market.get("_id"), market.get("category"))
        return None

    if category is MarketCategory.FANCY:
        feed_id = market.get("api_event_id") or event.get("api_event_id")
    else:
        feed_id = market.get("api_market_id")
    if not feed_id:
        return None
    return category, str(feed_id)


async def _runners_with_odds(
    fetcher: MarketFeedFetcher,
    market: dict,
    event: dict,
    runner_names: list[str],
) -> list[dict[str, Any]]:
    target = _feed_target(market, event)
    if target is None:
        return [{"runner_name": name, "odds": {}} for name in runner_names]
    snapshot = await fetcher.fetch_market_snapshot(*target)
    return attach_runner_odds(runner_names, snapshot)
