"""
backend/backoffice/routers/catalog.py

Purpose:
    Catalog endpoints: on-demand exchange sync trigger, event listing, and
    event detail with markets and live odds.

Dependencies:
    - backoffice.services.catalog_sync_service
    - backoffice.services.event_market_service
    - backoffice.workers._state
"""

import logging
import secrets
from typing import Literal

from bson import ObjectId
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from backoffice.config import settings
from backoffice.services.catalog_sync_service import CatalogSyncError, catalog_sync_pipeline
from backoffice.services.event_market_service import get_event_markets, list_events
from backoffice.workers._state import set_synced
from backoffice.workers.catalog_sync import WORKER_ID

logger = logging.getLogger("backoffice.catalog")
router = APIRouter(prefix="/api", tags=["catalog"])


async def verify_sync_key(x_sync_key: str = Header(...)):
    """Verify the shared key sent by the cron caller."""
    if not settings.SYNC_API_KEY:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync API key not configured on server.",
        )
    if not secrets.compare_digest(x_sync_key, settings.SYNC_API_KEY):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid sync API key.",
        )


class SyncSummary(BaseModel):
    sports_created: int
    competitions_upserted: int
    events_upserted: int


class SyncResponse(BaseModel):
    message: str
    summary: SyncSummary


@router.post(
    "/cron/sync",
    response_model=SyncResponse,
    dependencies=[Depends(verify_sync_key)],
)
async def sync_catalog_now():
    """Run sports -> competitions -> events sync and report a single outcome."""
    try:
        summary = await catalog_sync_pipeline.run_full_sync()
    except CatalogSyncError as e:
        logger.error("On-demand catalog sync failed in stage %s", e.stage)
        return JSONResponse(status_code=500, content={"error": "An error occurred"})
    await set_synced(WORKER_ID, metrics=summary)
    return SyncResponse(message="All data has been synced!", summary=SyncSummary(**summary))


def _serialize(doc):
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, dict):
        return {key: _serialize(value) for key, value in doc.items()}
    if isinstance(doc, list):
        return [_serialize(value) for value in doc]
    return doc


@router.get("/events")
async def get_events(
    page: int | None = Query(None, ge=1),
    per_page: int | None = Query(None, ge=1, le=500),
    sort_by: Literal["match_date", "name", "created_at"] = "match_date",
    direction: Literal["asc", "desc"] = "desc",
    sport_id: str | None = None,
    competition_id: str | None = None,
    search: str | None = Query(None, max_length=100),
):
    data = await list_events(
        page=page,
        per_page=per_page,
        sort_by=sort_by,
        direction=direction,
        sport_id=ObjectId(sport_id) if sport_id else None,
        competition_id=ObjectId(competition_id) if competition_id else None,
        search=search,
    )
    return _serialize(data)


@router.get("/events/{event_id}/markets")
async def get_event_detail(event_id: str, request: Request):
    # Authentication runs upstream of this service and leaves the viewer on request.state.
    viewer = getattr(request.state, "user", None)
    event = await get_event_markets(ObjectId(event_id), viewer=viewer)
    if event is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Event not found.")
    return _serialize(event)
