"""
Runs one indexing pass: fetch every discovery source, merge, probe, persist.

A pass is bracketed by an IndexRun row. Source and probe failures are recorded
and never stop the pass; a storage failure marks the run failed and stops it,
leaving resources committed before it in place.
"""
import asyncio
import contextlib
import os
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, List, Optional, Tuple

import httpx
from prometheus_client import Counter, Gauge, Histogram

from bazaar_indexer.core import config
from bazaar_indexer.core.database import Database
from bazaar_indexer.core.logging_config import get_logger, setup_logging
from bazaar_indexer.db.init_db import init_db
from bazaar_indexer.db.repository import (
    PersistenceError,
    complete_index_run,
    fail_index_run,
    start_index_run,
    upsert_resource,
)
from bazaar_indexer.health.checker import check_endpoint, utcnow
from bazaar_indexer.health.concurrency import check_all
from bazaar_indexer.ingestion.merger import enrich_all, merge_sources
from bazaar_indexer.ingestion.sources import discovery_api, ecosystem, partners
from bazaar_indexer.schemas.x402 import (
    EnrichedResource,
    IndexMeta,
    IndexOutput,
    IndexSummary,
    RunStatus,
    SourceError,
    SourceRecord,
)

logger = get_logger("index_pipeline")

INDEXER_VERSION = "1.0.0"

INDEX_RESOURCES_PERSISTED = Counter(
    "index_resources_persisted_total", "Resources persisted by the indexer", ["source"]
)
INDEX_HEALTH_CHECKS = Counter("index_health_checks_total", "Endpoint probes run", ["alive"])
INDEX_RUN_DURATION = Histogram("index_run_duration_seconds", "Index run duration")
INDEX_RUN_STATUS = Gauge("index_run_status", "Last index run status (1=Success, 0=Fail)")

SourceResult = Tuple[List[SourceRecord], List[SourceError]]


@dataclass
class IndexResult:
    run_id: int
    status: RunStatus
    summary: IndexSummary
    resources: List[EnrichedResource] = field(default_factory=list)
    errors: List[SourceError] = field(default_factory=list)
    persisted: int = 0
    error: Optional[str] = None


async def _no_records() -> SourceResult:
    return [], []


@contextlib.asynccontextmanager
async def _client_scope(client: Optional[httpx.AsyncClient], settings: config.Settings) -> AsyncIterator[httpx.AsyncClient]:
    if client is not None:
        yield client
        return
    limits = httpx.Limits(max_connections=settings.CONCURRENCY, max_keepalive_connections=settings.CONCURRENCY)
    async with httpx.AsyncClient(limits=limits) as owned:
        yield owned


async def fetch_sources(client: httpx.AsyncClient, settings: config.Settings) -> Tuple[List[List[SourceRecord]], List[SourceError]]:
    """Fetches all enabled sources concurrently."""
    tasks = [
        _no_records() if settings.SKIP_DISCOVERY else discovery_api.fetch_data(
            client,
            settings.FACILITATOR_URL,
            settings.TIMEOUT_MS,
            settings.PROBE_RETRIES,
            settings.RETRY_BASE_DELAY_MS,
        ),
        _no_records() if settings.SKIP_ECOSYSTEM else ecosystem.fetch_data(
            client, settings.ECOSYSTEM_URL, settings.TIMEOUT_MS
        ),
        # File reads are blocking, keep them off the loop
        asyncio.to_thread(partners.load_partners, settings.PARTNERS_DATA_PATH)
        if settings.PARTNERS_DATA_PATH else _no_records(),
    ]
    results = await asyncio.gather(*tasks)

    records = [r for r, _ in results]
    errors = [e for _, errs in results for e in errs]
    return records, errors


def calculate_summary(resources: List[EnrichedResource], started: float) -> IndexSummary:
    alive = [r for r in resources if r.health.alive]
    latencies = [r.health.latency_ms for r in alive if r.health.latency_ms is not None]

    by_category = {}
    by_network = {}
    for resource in resources:
        category = resource.category or "Uncategorized"
        by_category[category] = by_category.get(category, 0) + 1
        for network in resource.networks_supported:
            by_network[network] = by_network.get(network, 0) + 1

    return IndexSummary(
        total_resources=len(resources),
        alive_count=len(alive),
        dead_count=len(resources) - len(alive),
        avg_latency_ms=round(sum(latencies) / len(latencies)) if latencies else None,
        min_latency_ms=min(latencies) if latencies else None,
        max_latency_ms=max(latencies) if latencies else None,
        by_category=by_category,
        by_network=by_network,
        indexed_at=utcnow(),
        duration_ms=round((time.perf_counter() - started) * 1000),
        indexer_version=INDEXER_VERSION,
    )


def write_output(path: str, output: IndexOutput):
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, mode="w", encoding="utf-8") as f:
        f.write(output.model_dump_json(indent=2))


async def run_index(
    db: Database,
    settings: Optional[config.Settings] = None,
    client: Optional[httpx.AsyncClient] = None,
    check=check_endpoint,
) -> IndexResult:
    settings = settings or config.get_settings()
    started = time.perf_counter()

    run_id = await start_index_run(db, settings.FACILITATOR_URL, INDEXER_VERSION)
    logger.info("index_start", run_id=run_id, facilitator=settings.FACILITATOR_URL)

    resources: List[EnrichedResource] = []
    errors: List[SourceError] = []
    persisted = 0
    try:
        async with _client_scope(client, settings) as http:
            source_records, errors = await fetch_sources(http, settings)
            for error in errors:
                logger.warning("source_error", source=error.source, error=error.error)

            merged = merge_sources(*source_records)
            logger.info("sources_merged", unique_urls=len(merged), errors=len(errors))

            checks = {}
            if settings.SKIP_HEALTH_CHECKS:
                logger.info("health_checks_skipped")
            elif merged:
                checks = await check_all(
                    list(merged),
                    settings.TIMEOUT_MS,
                    settings.CONCURRENCY,
                    check=check,
                    client=http,
                    retries=settings.PROBE_RETRIES,
                    base_delay_ms=settings.RETRY_BASE_DELAY_MS,
                )
                for result in checks.values():
                    INDEX_HEALTH_CHECKS.labels(alive=str(result.health.alive).lower()).inc()

        resources = enrich_all(merged, checks)

        # Sequential: each upsert is its own transaction
        for resource in resources:
            await upsert_resource(db, resource)
            persisted += 1
            INDEX_RESOURCES_PERSISTED.labels(source=resource.source.value).inc()

    except PersistenceError as e:
        summary = calculate_summary(resources, started)
        logger.error("index_persist_failed", run_id=run_id, persisted=persisted, error=str(e))
        await fail_index_run(db, run_id, str(e), summary)
        INDEX_RUN_STATUS.set(0)
        INDEX_RUN_DURATION.observe(summary.duration_ms / 1000.0)
        return IndexResult(
            run_id=run_id,
            status=RunStatus.FAILED,
            summary=summary,
            resources=resources,
            errors=errors,
            persisted=persisted,
            error=str(e),
        )
    except Exception as e:
        logger.error("index_failed", run_id=run_id, error=str(e))
        await fail_index_run(db, run_id, str(e) or e.__class__.__name__)
        INDEX_RUN_STATUS.set(0)
        raise

    summary = calculate_summary(resources, started)
    await complete_index_run(db, run_id, summary)
    INDEX_RUN_STATUS.set(1)
    INDEX_RUN_DURATION.observe(summary.duration_ms / 1000.0)

    logger.info(
        "index_complete",
        run_id=run_id,
        total=summary.total_resources,
        alive=summary.alive_count,
        dead=summary.dead_count,
        avg_latency_ms=summary.avg_latency_ms,
        duration_ms=summary.duration_ms,
    )

    if settings.OUTPUT_PATH:
        output = IndexOutput(
            meta=IndexMeta(version=INDEXER_VERSION, generated_at=utcnow(), facilitator_url=settings.FACILITATOR_URL),
            summary=summary,
            resources=resources,
        )
        write_output(settings.OUTPUT_PATH, output)
        logger.info("index_output_written", path=settings.OUTPUT_PATH)

    return IndexResult(
        run_id=run_id,
        status=RunStatus.COMPLETED,
        summary=summary,
        resources=resources,
        errors=errors,
        persisted=persisted,
    )


async def main():
    settings = config.get_settings()
    db = Database(settings.DATABASE_URL, echo=settings.DB_ECHO)
    try:
        await init_db(db)
        await run_index(db, settings)
    finally:
        await db.dispose()


if __name__ == "__main__":
    settings = config.get_settings()
    setup_logging(settings.LOG_LEVEL, json=settings.LOG_JSON)
    asyncio.run(main())
