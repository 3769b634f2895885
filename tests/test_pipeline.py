import base64
import json

import httpx
import pytest
from sqlalchemy import select

from bazaar_indexer.db.models import IndexRun, Resource
from bazaar_indexer.db.repository import PersistenceError
from bazaar_indexer.ingestion import pipeline
from bazaar_indexer.schemas.x402 import RunStatus
from conftest import json_response, requirement, route_transport

A = "https://a.example/api"
B = "https://b.example/api"

ECOSYSTEM_HTML = f"""
<div class="card"><h3>Alpha API</h3><p>Forecast data</p><a href="{A}">Go</a></div>
<div class="card"><h3>Beta API</h3><p>Search agent</p><a href="{B}">Go</a></div>
"""


def discovery_body():
    return {
        "x402Version": 1,
        "items": [
            {"resource": A, "type": "http", "x402Version": 1, "accepts": [requirement(A)]},
            {"resource": B, "type": "http", "x402Version": 1, "accepts": [requirement(B)]},
        ],
        "pagination": {"limit": 100, "offset": 0, "total": 2},
    }


@pytest.fixture
def probes():
    return []


@pytest.fixture
def transport(probes):
    header = base64.b64encode(json.dumps([requirement(B, network="polygon", amount="20000")]).encode()).decode()

    def endpoint(status, headers=None):
        def respond(request):
            probes.append(str(request.url))
            return httpx.Response(status, headers=headers or {})
        return respond

    return route_transport({
        "https://facilitator.test/discovery/resources": json_response(200, discovery_body()),
        "https://ecosystem.test/ecosystem": lambda r: httpx.Response(200, text=ECOSYSTEM_HTML),
        A: endpoint(200),
        B: endpoint(402, {"X-Payment": header}),
    })


@pytest.mark.asyncio
async def test_end_to_end_index_run(database, session, settings, transport, probes):
    settings = settings.model_copy(update={"SKIP_ECOSYSTEM": False})

    async with httpx.AsyncClient(transport=transport) as client:
        result = await pipeline.run_index(database, settings, client=client)

    assert result.status == RunStatus.COMPLETED
    assert result.persisted == 2
    assert result.errors == []
    # Concurrency 1: two sequential chunks, each endpoint probed once
    assert probes == [A, B]

    by_url = {r.url: r for r in result.resources}
    assert by_url[A].name == "Alpha API"
    assert by_url[B].health.status_code == 402
    assert [(p.network, p.max_amount_required) for p in by_url[B].pricing] == [("polygon", "20000")]
    # No pricing from the probe, so the advertised terms are kept
    assert [p.network for p in by_url[A].pricing] == ["base"]

    assert result.summary.total_resources == 2
    assert result.summary.alive_count == 2
    assert result.summary.by_network == {"base": 2, "polygon": 1}

    rows = (await session.execute(select(Resource).order_by(Resource.url))).scalars().all()
    assert [(r.url, r.source, r.name) for r in rows] == [
        (A, "discovery_api", "Alpha API"),
        (B, "discovery_api", "Beta API"),
    ]
    run = (await session.execute(select(IndexRun))).scalar_one()
    assert run.status == "completed"
    assert run.total_resources == 2
    assert run.alive_count == 2


@pytest.mark.asyncio
async def test_source_errors_do_not_stop_the_run(database, settings):
    transport = route_transport({
        "https://facilitator.test/discovery/resources": json_response(500, {"error": "boom"}),
    })
    async with httpx.AsyncClient(transport=transport) as client:
        result = await pipeline.run_index(database, settings, client=client)

    assert result.status == RunStatus.COMPLETED
    assert result.summary.total_resources == 0
    assert len(result.errors) == 1


@pytest.mark.asyncio
async def test_skipped_health_checks_get_placeholder(database, settings, transport, probes):
    settings = settings.model_copy(update={"SKIP_HEALTH_CHECKS": True})

    async with httpx.AsyncClient(transport=transport) as client:
        result = await pipeline.run_index(database, settings, client=client)

    assert probes == []
    assert result.summary.dead_count == 2
    assert all(r.health.error == "Health check skipped" for r in result.resources)
    assert all(r.health.status == "skipped" for r in result.resources)


@pytest.mark.asyncio
async def test_persistence_failure_marks_run_failed(database, session, settings, transport, monkeypatch):
    real_upsert = pipeline.upsert_resource
    calls = []

    async def flaky_upsert(db, resource):
        calls.append(resource.url)
        if len(calls) == 2:
            raise PersistenceError("disk I/O error")
        return await real_upsert(db, resource)

    monkeypatch.setattr(pipeline, "upsert_resource", flaky_upsert)

    async with httpx.AsyncClient(transport=transport) as client:
        result = await pipeline.run_index(database, settings, client=client)

    assert result.status == RunStatus.FAILED
    assert result.persisted == 1
    assert result.error == "disk I/O error"

    # The resource committed before the failure stays
    urls = (await session.execute(select(Resource.url))).scalars().all()
    assert urls == [A]
    run = (await session.execute(select(IndexRun))).scalar_one()
    assert run.status == "failed"
    assert run.error == "disk I/O error"


@pytest.mark.asyncio
async def test_output_file_is_written(database, settings, transport, tmp_path):
    output = tmp_path / "out" / "index.json"
    settings = settings.model_copy(update={"OUTPUT_PATH": str(output)})

    async with httpx.AsyncClient(transport=transport) as client:
        await pipeline.run_index(database, settings, client=client)

    data = json.loads(output.read_text())
    assert data["meta"]["facilitator_url"] == "https://facilitator.test"
    assert data["summary"]["total_resources"] == 2
    assert {r["url"] for r in data["resources"]} == {A, B}


def test_summary_latency_stats_use_alive_only():
    from datetime import datetime, timezone
    from bazaar_indexer.schemas.x402 import DiscoverySource, EnrichedResource, HealthCheckResult

    now = datetime.now(timezone.utc)

    def res(url, alive, latency, category=None):
        return EnrichedResource(
            url=url,
            category=category,
            source=DiscoverySource.DISCOVERY_API,
            health=HealthCheckResult(alive=alive, status_code=200 if alive else 500, latency_ms=latency, checked_at=now),
            last_updated=now,
        )

    summary = pipeline.calculate_summary(
        [res(A, True, 100, "Data"), res(B, True, 201), res("https://c.example/api", False, 5000)], 0.0
    )
    assert summary.avg_latency_ms == 150
    assert summary.min_latency_ms == 100
    assert summary.max_latency_ms == 201
    assert summary.by_category == {"Data": 1, "Uncategorized": 2}
