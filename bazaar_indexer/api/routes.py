"""
Read-only HTTP access to the index, plus a manual trigger for one indexing pass.
"""
import time
import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from bazaar_indexer.core.database import Database, get_database, get_db
from bazaar_indexer.db import repository
from bazaar_indexer.schemas.data import (
    HealthHistoryResponse,
    IndexRunView,
    MetaData,
    PaginatedResponse,
    ResourceFilter,
    ResourceView,
    StatsView,
)
from bazaar_indexer.schemas.x402 import CheckStatus
from bazaar_indexer.services.index_service import IndexAlreadyRunning, trigger_index_job

router = APIRouter()


@router.get("/resources", response_model=PaginatedResponse[ResourceView])
async def list_resources(
    status: Optional[CheckStatus] = Query(None, description="alive, dead or skipped; omit for all"),
    network: Optional[str] = Query(None, description="Filter by supported network"),
    category: Optional[str] = None,
    source: Optional[str] = None,
    search: Optional[str] = Query(None, description="Substring of url, name or description"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    start_time = time.time()
    filters = ResourceFilter(
        status=status,
        network=network,
        category=category,
        source=source,
        search=search,
        limit=limit,
        offset=offset,
    )
    data = await repository.get_resources(db, filters)

    latency = (time.time() - start_time) * 1000
    return PaginatedResponse(
        meta=MetaData(request_id=str(uuid.uuid4()), latency_ms=latency),
        data=data,
    )


async def _resource_or_404(db: AsyncSession, url: str) -> ResourceView:
    resource = await repository.get_resource_by_url(db, url)
    if resource is None:
        raise HTTPException(status_code=404, detail="Resource not found")
    return resource


@router.get("/resources/lookup", response_model=ResourceView)
async def lookup_resource(url: str = Query(..., description="Exact resource URL"), db: AsyncSession = Depends(get_db)):
    return await _resource_or_404(db, url)


@router.get("/resources/lookup/history", response_model=HealthHistoryResponse)
async def resource_history(
    url: str = Query(...),
    limit: int = Query(100, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
):
    resource = await _resource_or_404(db, url)
    checks = await repository.get_health_history(db, resource.id, limit)
    return HealthHistoryResponse(url=resource.url, checks=checks)


@router.get("/stats", response_model=StatsView)
async def get_stats(db: AsyncSession = Depends(get_db)):
    return await repository.get_stats(db)


@router.get("/runs", response_model=List[IndexRunView])
async def get_runs(limit: int = Query(10, ge=1, le=100), db: AsyncSession = Depends(get_db)):
    """Most recent index runs first."""
    return await repository.get_index_runs(db, limit)


@router.post("/index/run")
async def run_index_job(request: Request, database: Database = Depends(get_database)):
    """Runs one indexing pass and waits for it to finish."""
    try:
        result = await trigger_index_job(database, request.app.state.settings)
    except IndexAlreadyRunning as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {
        "run_id": result.run_id,
        "status": result.status.value,
        "persisted": result.persisted,
        "error": result.error,
        "summary": result.summary,
    }
