import logging
from datetime import timedelta

from backoffice.config import settings
from backoffice.services.catalog_sync_service import CatalogSyncError, catalog_sync_pipeline
from backoffice.workers._state import recently_synced, set_synced

logger = logging.getLogger("backoffice.catalog_sync_worker")

WORKER_ID = "catalog_sync"


async def sync_catalog() -> None:
    """Scheduled catalog sync. A failed run is logged; the next interval retries."""
    # Skip if an on-demand sync ran within the last half interval.
    window = timedelta(minutes=max(1, settings.CATALOG_SYNC_INTERVAL_MINUTES) / 2)
    if await recently_synced(WORKER_ID, window):
        logger.debug("Smart sleep: catalog synced recently, skipping")
        return

    try:
        summary = await catalog_sync_pipeline.run_full_sync()
    except CatalogSyncError as e:
        logger.error("Scheduled catalog sync failed in stage %s: %s", e.stage, e)
        return

    await set_synced(WORKER_ID, metrics=summary)
    logger.info(
        "Catalog synced: %d sports created, %d competitions, %d events",
        summary["sports_created"], summary["competitions_upserted"], summary["events_upserted"],
    )
