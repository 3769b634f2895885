import asyncio

from bazaar_indexer.core.config import get_settings
from bazaar_indexer.core.database import Database
from bazaar_indexer.core.logging_config import get_logger, setup_logging
from bazaar_indexer.db.init_db import init_db

logger = get_logger("reset_db")


async def reset_db():
    settings = get_settings()
    db = Database(settings.DATABASE_URL, echo=settings.DB_ECHO)
    logger.info("db_reset_start", url=settings.DATABASE_URL)
    try:
        await init_db(db, drop=True)
    finally:
        await db.dispose()
    logger.info("db_reset_complete")


if __name__ == "__main__":
    setup_logging(get_settings().LOG_LEVEL, json=get_settings().LOG_JSON)
    asyncio.run(reset_db())
