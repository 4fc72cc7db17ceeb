"""
backend/backoffice/services/catalog_sync_service.py

Purpose:
    Three-stage catalog sync from the exchange API: sports, then competitions
    per stored sport, then events per stored competition. Each stage reads its
    parents back from the store, so a row is only written under a parent that
    is already persisted.

Dependencies:
    - backoffice.providers.exchange
    - backoffice.services.catalog_store
    - backoffice.utils
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from backoffice.providers.exchange import ExchangeProvider, exchange_provider
from backoffice.providers.http_client import UpstreamResponse
from backoffice.services.catalog_store import CatalogStore, catalog_store
from backoffice.utils import parse_utc

logger = logging.getLogger("backoffice.catalog_sync")


class CatalogSyncError(Exception):
    """A sync stage failed; remaining stages were not run."""

    def __init__(self, stage: str, cause: BaseException):
        super().__init__(f"catalog sync failed during {stage}: {cause}")
        self.stage = stage


def _rows(resp: UpstreamResponse, what: str) -> list[dict] | None:
    """Payload rows for a 200 response; None (skip) for any other status."""
    if not resp.ok:
        logger.warning("Skipping %s: upstream returned HTTP %d", what, resp.status_code)
        return None
    if resp.data is None:
        return []
    if not isinstance(resp.data, list):
        raise ValueError(f"{what}: expected a JSON list, got {type(resp.data).__name__}")
    return resp.data


def _parse_match_date(value: Any):
    if not value:
        return None
    return parse_utc(value)


class CatalogSyncPipeline:
    def __init__(
        self,
        provider: ExchangeProvider | None = None,
        store: CatalogStore | None = None,
    ) -> None:
        self._provider = provider or exchange_provider
        self._store = store or catalog_store
        self._run_lock = asyncio.Lock()

    async def run_full_sync(self) -> dict[str, int]:
        """Run all three stages in order. Raises CatalogSyncError on the first failure.

        Rows committed by earlier stages (and earlier items of the failing
        stage) stay committed; the next run heals the rest. Runs are
        serialized: a caller arriving mid-run waits, then runs its own sync.
        """
        if self._run_lock.locked():
            logger.info("Catalog sync already running, waiting for it to finish")
        async with self._run_lock:
            return await self._run_stages()

    async def _run_stages(self) -> dict[str, int]:
        summary: dict[str, int] = {}
        stages = (
            ("sports", "sports_created", self.sync_sports),
            ("competitions", "competitions_upserted", self.sync_competitions),
            ("events", "events_upserted", self.sync_events),
        )
        for stage, key, func in stages:
            try:
                summary[key] = await func()
            except Exception as exc:
                logger.error("Catalog sync aborted in stage %s: %s", stage, exc)
                raise CatalogSyncError(stage, exc) from exc
            logger.info("All %s have been synced (%d)", stage, summary[key])
        return summary

    async def sync_sports(self) -> int:
        """Insert sports not yet known by upstream id. Existing rows are left untouched."""
        rows = _rows(await self._provider.get_sports(), "sports")
        if rows is None:
            return 0

        created = 0
        for sport in rows:
            api_sport_id = int(sport["eventType"])
            if await self._store.find_sport_by_api_id(api_sport_id):
                continue
            await self._store.insert_sport(name=sport["name"], api_sport_id=api_sport_id)
            created += 1
        return created

    async def sync_competitions(self) -> int:
        upserted = 0
        for sport in await self._store.list_sports_with_api_id():
            api_sport_id = sport["api_sport_id"]
            rows = _rows(
                await self._provider.get_competitions(api_sport_id),
                f"competitions for sport {api_sport_id}",
            )
            if rows is None:
                continue

            for item in rows:
                competition = item["competition"]
                await self._store.upsert_competition(
                    {"api_sport_id": api_sport_id, "api_competition_id": competition["id"]},
                    {
                        "name": competition["name"],
                        "sport_id": sport["_id"],
                        "market_count": item.get("marketCount"),
                        "competition_region": item.get("competitionRegion"),
                        "is_active": True,
                    },
                )
                upserted += 1
        return upserted

    async def sync_events(self) -> int:
        upserted = 0
        for competition in await self._store.list_competitions_with_api_id():
            api_sport_id = competition["api_sport_id"]
            api_competition_id = competition["api_competition_id"]
            rows = _rows(
                await self._provider.get_events(api_sport_id, api_competition_id),
                f"events for competition {api_competition_id}",
            )
            if rows is None:
                continue

            for item in rows:
                event = item["event"]
                await self._store.upsert_event(
                    {
                        "api_event_id": event["id"],
                        "api_sport_id": api_sport_id,
                        "api_competition_id": api_competition_id,
                    },
                    {
                        "name": event["name"],
                        "sport_id": competition.get("sport_id"),
                        "competition_id": competition["_id"],
                        "match_date": _parse_match_date(event.get("openDate")),
                        "market_count": item.get("marketCount"),
                    },
                )
                upserted += 1
        return upserted


catalog_sync_pipeline = CatalogSyncPipeline()
