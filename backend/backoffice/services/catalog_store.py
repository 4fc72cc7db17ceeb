"""
backend/backoffice/services/catalog_store.py

Purpose:
    Persistence boundary for the synced catalog (sports, competitions,
    events). Owns the identity keys and upsert semantics; the sync pipeline
    talks to Mongo only through this class.

Dependencies:
    - backoffice.database
    - backoffice.utils
"""

from __future__ import annotations

import logging
from typing import Any

import backoffice.database as _db
from backoffice.utils import utcnow

logger = logging.getLogger("backoffice.catalog_store")


class CatalogStore:
    """Read/upsert operations over the ``sports``/``competitions``/``events`` collections."""

    # ---- Sports (insert-only) ----

    async def find_sport_by_api_id(self, api_sport_id: int) -> dict | None:
        return await _db.db.sports.find_one({"api_sport_id": api_sport_id})

    async def insert_sport(self, *, name: str, api_sport_id: int) -> dict:
        now = utcnow()
        doc = {
            "name": name,
            "api_sport_id": api_sport_id,
            "is_active": True,
            "is_deleted": False,
            "created_at": now,
            "updated_at": now,
        }
        result = await _db.db.sports.insert_one(doc)
        doc["_id"] = result.inserted_id
        logger.info("Inserted sport %s (api_sport_id=%s)", name, api_sport_id)
        return doc

    async def list_sports_with_api_id(self) -> list[dict]:
        return await _db.db.sports.find({"api_sport_id": {"$ne": None}}).to_list(length=None)

    # ---- Competitions ----

    async def upsert_competition(self, key: dict[str, Any], fields: dict[str, Any]) -> None:
        """Find by (api_sport_id, api_competition_id) or create; overwrite ``fields``."""
        await self._upsert(_db.db.competitions, key, fields)

    async def list_competitions_with_api_id(self) -> list[dict]:
        return await _db.db.competitions.find(
            {"api_competition_id": {"$ne": None}}
        ).to_list(length=None)

    # ---- Events ----

    async def upsert_event(self, key: dict[str, Any], fields: dict[str, Any]) -> None:
        """Find by (api_event_id, api_sport_id, api_competition_id) or create; overwrite ``fields``."""
        await self._upsert(_db.db.events, key, fields)

    @staticmethod
    async def _upsert(collection, key: dict[str, Any], fields: dict[str, Any]) -> None:
        now = utcnow()
        await collection.update_one(
            key,
            {
                "$set": {**key, **fields, "updated_at": now},
                "$setOnInsert": {"created_at": now, "is_deleted": False},
            },
            upsert=True,
        )


catalog_store = CatalogStore()
