import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bazaar_indexer.api.routes import router as api_router
from bazaar_indexer.core.config import Settings, get_settings
from bazaar_indexer.core.database import Database, get_db
from bazaar_indexer.core.logging_config import get_logger, setup_logging
from bazaar_indexer.db.init_db import init_db
from bazaar_indexer.db.repository import get_index_runs
from bazaar_indexer.services.index_service import trigger_index_job

from prometheus_fastapi_instrumentator import Instrumentator

logger = get_logger("main")


def create_app(settings: Optional[Settings] = None, database: Optional[Database] = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db = database or Database(settings.DATABASE_URL, echo=settings.DB_ECHO)
        app.state.db = db
        app.state.settings = settings
        try:
            await init_db(db)
        except Exception as e:
            logger.error("db_init_failed", error=str(e))
        if settings.RUN_INDEX_ON_STARTUP:
            logger.info("startup_index", msg="Running index pass on startup")
            try:
                await trigger_index_job(db, settings)
            except Exception as e:
                logger.error("index_startup_failed", error=str(e))
        yield
        if database is None:
            await db.dispose()

    app = FastAPI(title=settings.PROJECT_NAME, lifespan=lifespan)

    Instrumentator().instrument(app).expose(app)

    @app.get("/health")
    async def health_check(db: AsyncSession = Depends(get_db)):
        start_time = time.time()
        db_status = "unhealthy"
        index_status = "unknown"
        last_run = None

        try:
            await db.execute(select(1))
            db_status = "connected"

            runs = await get_index_runs(db, limit=1)
            if not runs:
                index_status = "no_runs_yet"
            else:
                index_status = runs[0].status
                last_run = (runs[0].completed_at or runs[0].started_at).isoformat()
        except Exception as e:
            db_status = f"error: {str(e)}"

        latency = (time.time() - start_time) * 1000

        return {
            "status": "ok",
            "db_connectivity": db_status,
            "index_status": index_status,
            "last_run": last_run,
            "latency_ms": round(latency, 2),
        }

    app.include_router(api_router)
    return app


setup_logging(get_settings().LOG_LEVEL, json=get_settings().LOG_JSON)
app = create_app()
