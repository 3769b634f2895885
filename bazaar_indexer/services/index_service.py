import asyncio
from typing import Optional

from bazaar_indexer.core import config
from bazaar_indexer.core.database import Database
from bazaar_indexer.core.logging_config import get_logger
from bazaar_indexer.db.repository import cleanup_old_health_checks, cleanup_stale_resources
from bazaar_indexer.ingestion.pipeline import IndexResult, run_index

logger = get_logger("index_service")

# One pass at a time per process; overlapping passes would double-probe every endpoint
_run_lock = asyncio.Lock()


class IndexAlreadyRunning(Exception):
    pass


async def trigger_index_job(db: Database, settings: Optional[config.Settings] = None) -> IndexResult:
    """
    Runs one indexing pass followed by retention cleanup.
    Raises IndexAlreadyRunning if a pass is in progress in this process.
    """
    settings = settings or config.get_settings()
    if _run_lock.locked():
        raise IndexAlreadyRunning("An index run is already in progress")

    async with _run_lock:
        result = await run_index(db, settings)
        await run_retention(db, settings)
    return result


async def run_retention(db: Database, settings: config.Settings):
    checks = await cleanup_old_health_checks(db, settings.HEALTH_RETENTION_DAYS)
    resources = await cleanup_stale_resources(db, settings.STALE_RESOURCE_DAYS)
    logger.info("retention_cleanup", health_checks_deleted=checks, resources_deleted=resources)
