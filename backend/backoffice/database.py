"""
backend/backoffice/database.py

Purpose:
    MongoDB connection bootstrap and index management for the catalog,
    market and user collections.

Dependencies:
    - motor.motor_asyncio
    - pymongo
    - backoffice.config
"""

import logging

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError, OperationFailure

from backoffice.config import settings

client: AsyncIOMotorClient = None
db: AsyncIOMotorDatabase = None

logger = logging.getLogger("backoffice.database")


async def connect_db() -> None:
    global client, db
    client = AsyncIOMotorClient(
        settings.MONGO_URI,
        maxPoolSize=25,
        minPoolSize=5,
    )
    db = client[settings.MONGO_DB]
    await _ensure_indexes()


async def close_db() -> None:
    global client
    if client:
        client.close()


async def get_db() -> AsyncIOMotorDatabase:
    return db


async def _ensure_indexes() -> None:
    """Create indexes on startup. Idempotent."""

    # ---- Sports (identity = upstream sport id) ----

    try:
        await db.sports.create_index("api_sport_id", unique=True, sparse=True)
    except (DuplicateKeyError, OperationFailure) as exc:
        logger.warning("Skipped unique sports index due to duplicate data: %s", exc)
        await db.sports.create_index("api_sport_id", name="sports_api_sport_id_lookup")
    await db.sports.create_index("name")

    # ---- Competitions (identity = upstream sport id + competition id) ----

    await db.competitions.create_index(
        [("api_sport_id", 1), ("api_competition_id", 1)],
        unique=True,
        partialFilterExpression={"api_competition_id": {"$exists": True}},
    )
    await db.competitions.create_index("sport_id")
    await db.competitions.create_index("is_active")

    # ---- Events (identity = upstream event/sport/competition triple) ----

    await db.events.create_index(
        [("api_event_id", 1), ("api_sport_id", 1), ("api_competition_id", 1)],
        unique=True,
        partialFilterExpression={"api_event_id": {"$exists": True}},
    )
    await db.events.create_index([("sport_id", 1), ("match_date", -1)])
    await db.events.create_index([("competition_id", 1), ("match_date", -1)])
    await db.events.create_index("match_date")

    # ---- Markets / runners (read-only here) ----

    await db.markets.create_index("event_id")
    await db.market_runners.create_index([("market_id", 1), ("priority", 1)])

    # ---- Users (parent chain walk for bet locks) ----

    await db.users.create_index("parent_id")

    # ---- Worker state ----

    await db.worker_state.create_index("synced_at")
