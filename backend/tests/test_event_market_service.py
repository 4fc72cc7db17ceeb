"""
backend/tests/test_event_market_service.py

Purpose:
    Event detail assembly (limit inheritance, runner ordering, odds attach,
    feed id per category) and the listing aggregation pipeline.
"""

from __future__ import annotations

from types import SimpleNamespace

import pytest
from bson import ObjectId

from backoffice.services import bet_lock_service, event_market_service
from backoffice.services.event_market_service import get_event_markets, list_events, load_market_ref
from backoffice.services.market_feed import MarketCategory, RunnerOdds


class _Cursor:
    def __init__(self, rows):
        self.rows = rows

    def sort(self, key, direction):
        self.rows = sorted(self.rows, key=lambda r: r.get(key, 0), reverse=direction < 0)
        return self

    async def to_list(self, length=None):
        return [dict(r) for r in self.rows]


class _FakeCollection:
    def __init__(self, docs=None, aggregate_rows=None):
        self.docs = docs or []
        self.aggregate_rows = aggregate_rows or []
        self.pipelines: list[list[dict]] = []

    async def find_one(self, query, projection=None):
        for doc in self.docs:
            if all(doc.get(k) == v for k, v in query.items()):
                return dict(doc)
        return None

    def find(self, query=None, projection=None):
        query = query or {}
        return _Cursor([d for d in self.docs if all(d.get(k) == v for k, v in query.items())])

    def aggregate(self, pipeline):
        self.pipelines.append(pipeline)
        return _Cursor(self.aggregate_rows)


class _FakeFetcher:
    def __init__(self, snapshots):
        self.snapshots = snapshots
        self.calls: list[tuple[MarketCategory, str]] = []

    async def fetch_market_snapshot(self, category, feed_id):
        self.calls.append((MarketCategory(category), feed_id))
        return self.snapshots.get(feed_id, [])


EVENT_ID = ObjectId()
MO_ID = ObjectId()
FANCY_ID = ObjectId()


def _fake_db():
    return SimpleNamespace(
        events=_FakeCollection([
            {"_id": EVENT_ID, "name": "CSK v MI", "api_event_id": "31000",
             "min_stake": 100, "max_stake": 50000, "bet_delay": 5},
        ]),
        markets=_FakeCollection([
            {"_id": MO_ID, "event_id": EVENT_ID, "category": "match_odds",
             "api_market_id": "1.234", "min_stake": 0, "max_stake": 20000, "bet_delay": 0},
            {"_id": FANCY_ID, "event_id": EVENT_ID, "category": "fancy", "max_stake": None},
        ]),
        market_runners=_FakeCollection([
            {"market_id": MO_ID, "runner_name": "Mumbai", "priority": 2},
            {"market_id": MO_ID, "runner_name": "Chennai", "priority": 1},
            {"market_id": FANCY_ID, "runner_name": "6 over runs CSK", "priority": 1},
        ]),
        users=_FakeCollection([
            {"_id": "u1", "role": "user", "parent_id": "sa", "is_bet_lock": False},
            {"_id": "sa", "role": "super_admin", "is_bet_lock": False},
        ]),
    )


@pytest.fixture
def fake_db(monkeypatch):
    db = _fake_db()
    monkeypatch.setattr(event_market_service._db, "db", db, raising=False)
    monkeypatch.setattr(bet_lock_service._db, "db", db, raising=False)
    return db


@pytest.mark.asyncio
async def test_missing_event_returns_none(fake_db):
    assert await get_event_markets(ObjectId(), fetcher=_FakeFetcher({})) is None


@pytest.mark.asyncio
async def test_event_markets_inherit_limits_and_attach_odds(fake_db):
    fetcher = _FakeFetcher({
        "1.234": [RunnerOdds("Chennai", {"back": [{"price": 1.91}]})],
        "31000": [RunnerOdds("6 over runs CSK", {"BackPrice1": 52})],
    })

    event = await get_event_markets(EVENT_ID, viewer={"_id": "u1", "role": "user"}, fetcher=fetcher)

    assert fetcher.calls == [(MarketCategory.MATCH_ODDS, "1.234"), (MarketCategory.FANCY, "31000")]
    match_odds, fancy = event["markets"]

    assert match_odds["min_stake"] == 100
    assert match_odds["max_stake"] == 20000
    assert match_odds["bet_delay"] == 5
    assert fancy["max_stake"] is None
    assert "min_stake" not in fancy
    assert match_odds["bet_lock"] is False
    assert match_odds["runners"] == [
        {"runner_name": "Chennai", "odds": {"back": [{"price": 1.91}]}},
        {"runner_name": "Mumbai", "odds": {}},
    ]
    assert fancy["runners"] == [{"runner_name": "6 over runs CSK", "odds": {"BackPrice1": 52}}]


@pytest.mark.asyncio
async def test_market_without_feed_category_gets_empty_odds(fake_db):
    fake_db.markets.docs[0]["category"] = "toss"
    fetcher = _FakeFetcher({})

    event = await get_event_markets(EVENT_ID, fetcher=fetcher)

    assert event["markets"][0]["runners"] == [
        {"runner_name": "Chennai", "odds": {}},
        {"runner_name": "Mumbai", "odds": {}},
    ]
    assert (MarketCategory.MATCH_ODDS, "1.234") not in fetcher.calls


@pytest.mark.asyncio
async def test_locked_viewer_sees_bet_lock(fake_db):
    fake_db.users.docs[0]["is_bet_lock"] = True

    event = await get_event_markets(EVENT_ID, viewer={"_id": "u1", "role": "user"}, fetcher=_FakeFetcher({}))

    assert all(m["bet_lock"] is True for m in event["markets"])


@pytest.mark.asyncio
async def test_list_events_pipeline_and_totals(monkeypatch):
    events = _FakeCollection(aggregate_rows=[{"total": [{"count": 42}], "records": [{"name": "CSK v MI"}]}])
    monkeypatch.setattr(event_market_service._db, "db", SimpleNamespace(events=events), raising=False)
    sport_id = ObjectId()

    result = await list_events(page=3, per_page=10, sort_by="name", direction="asc", sport_id=sport_id, search="csk+")

    assert result == {"records": [{"name": "CSK v MI"}], "total_records": 42}
    pipeline = events.pipelines[0]
    match = pipeline[0]["$match"]
    assert match["sport_id"] == sport_id
    assert match["name"] == {"$regex": r"csk\+", "$options": "i"}
    records = pipeline[-1]["$facet"]["records"]
    assert records == [{"$sort": {"name": 1}}, {"$skip": 20}, {"$limit": 10}]


@pytest.mark.asyncio
async def test_list_events_without_pagination_or_rows(monkeypatch):
    events = _FakeCollection(aggregate_rows=[])
    monkeypatch.setattr(event_market_service._db, "db", SimpleNamespace(events=events), raising=False)

    assert await list_events() == {"records": [], "total_records": 0}
    assert events.pipelines[0][-1]["$facet"]["records"] == [{"$sort": {"match_date": -1}}]


@pytest.mark.asyncio
async def test_load_market_ref_uses_stored_category_and_feed(fake_db):
    ref = await load_market_ref(str(MO_ID))

    assert ref.id == str(MO_ID)
    assert ref.category is MarketCategory.MATCH_ODDS
    assert ref.feed_id == "1.234"
    assert ref.runner_names == ("Chennai", "Mumbai")


@pytest.mark.asyncio
async def test_load_market_ref_fancy_uses_event_feed(fake_db):
    ref = await load_market_ref(str(FANCY_ID))

    assert ref.category is MarketCategory.FANCY
    assert ref.feed_id == "31000"


@pytest.mark.asyncio
async def test_load_market_ref_rejects_unknown_markets(fake_db):
    toss_id = ObjectId()
    fake_db.markets.docs.append({"_id": toss_id, "event_id": EVENT_ID, "category": "toss"})

    assert await load_market_ref("not-an-object-id") is None
    assert await load_market_ref(str(ObjectId())) is None
    assert await load_market_ref(str(toss_id)) is None
