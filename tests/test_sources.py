import json

import httpx
import pytest

from bazaar_indexer.ingestion.sources import discovery_api, ecosystem, partners
from bazaar_indexer.schemas.x402 import DiscoverySource
from conftest import requirement

FACILITATOR = "https://facilitator.test"


def discovery_item(url, **extra):
    return {"resource": url, "type": "http", "x402Version": 1, "accepts": [requirement(url)], **extra}


@pytest.mark.asyncio
async def test_discovery_pages_until_total():
    items = [discovery_item(f"https://svc{i}.example/api") for i in range(5)]
    offsets = []

    def handler(request):
        offset = int(request.url.params["offset"])
        limit = int(request.url.params["limit"])
        offsets.append(offset)
        page = items[offset:offset + limit]
        return httpx.Response(200, json={
            "x402Version": 1,
            "items": page,
            "pagination": {"limit": limit, "offset": offset, "total": len(items)},
        })

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        records, errors = await discovery_api.fetch_data(client, FACILITATOR, 1000, retries=0, page_size=2)

    assert errors == []
    assert offsets == [0, 2, 4]
    assert [r.url for r in records] == [item["resource"] for item in items]
    assert records[0].source == DiscoverySource.DISCOVERY_API
    assert records[0].networks == ["base"]
    assert records[0].description == "Weather lookup"


@pytest.mark.asyncio
async def test_discovery_skips_invalid_items():
    body = {"x402Version": 1, "items": [discovery_item("https://ok.example/api"), {"resource": 42}]}

    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, json=body))) as client:
        records, errors = await discovery_api.fetch_data(client, FACILITATOR, 1000, retries=0)

    assert [r.url for r in records] == ["https://ok.example/api"]
    assert errors == []


@pytest.mark.asyncio
async def test_discovery_http_error_is_reported():
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(503, text="down"))) as client:
        records, errors = await discovery_api.fetch_data(client, FACILITATOR, 1000, retries=0)

    assert records == []
    assert len(errors) == 1
    assert errors[0].source == FACILITATOR
    assert errors[0].error.startswith("HTTP 503")


ECOSYSTEM_HTML = """
<html><body>
  <div class="card">
    <h3>Agent Pay</h3>
    <p>An AI agent marketplace</p>
    <a href="https://agentpay.example">Visit</a>
  </div>
  <div class="card">
    <h3>Explorer</h3>
    <p>Block scan</p>
    <a href="https://www.x402.org/about">About</a>
  </div>
  <article>
    <h2>Weather Kit</h2>
    <a href="https://weather.example">Open</a>
  </article>
  <div class="card">
    <h3>Agent Pay again</h3>
    <a href="https://agentpay.example">Visit</a>
  </div>
</body></html>
"""


def test_parse_ecosystem_cards():
    services = ecosystem.parse_services(ECOSYSTEM_HTML)

    assert [(s.name, s.url) for s in services] == [
        ("Agent Pay", "https://agentpay.example"),
        ("Weather Kit", "https://weather.example"),
    ]
    assert services[0].description == "An AI agent marketplace"
    assert services[0].category == "AI Agents"
    assert services[1].category == "Developer Tools"


def test_infer_category_default():
    assert ecosystem.infer_category("Hello", "Greetings") == "Services"


@pytest.mark.asyncio
async def test_ecosystem_fetch_failure_is_reported():
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500))) as client:
        records, errors = await ecosystem.fetch_data(client, "https://ecosystem.test/ecosystem", 1000)

    assert records == []
    assert len(errors) == 1


@pytest.mark.asyncio
async def test_ecosystem_records_carry_source():
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, text=ECOSYSTEM_HTML))) as client:
        records, errors = await ecosystem.fetch_data(client, "https://ecosystem.test/ecosystem", 1000)

    assert errors == []
    assert {r.source for r in records} == {DiscoverySource.ECOSYSTEM}


def write_partner(root, slug, data):
    directory = root / slug
    directory.mkdir()
    (directory / "metadata.json").write_text(json.dumps(data) if not isinstance(data, str) else data)


def partner(name, facilitator=None):
    data = {
        "name": name,
        "description": f"{name} description",
        "logoUrl": f"https://{name.lower()}.example/logo.png",
        "websiteUrl": f"https://{name.lower()}.example",
        "category": "Infrastructure",
    }
    if facilitator:
        data["facilitator"] = facilitator
    return data


def test_partners_only_facilitators_become_records(tmp_path):
    facilitator = {
        "baseUrl": "https://facilitator.acme.example",
        "networks": ["base", "polygon"],
        "schemes": ["exact"],
        "assets": ["USDC"],
        "supports": {"verify": True, "settle": True, "supported": True, "list": False},
    }
    write_partner(tmp_path, "acme", partner("Acme", facilitator))
    write_partner(tmp_path, "plain", partner("Plain"))
    write_partner(tmp_path, "broken", "{not json")
    write_partner(tmp_path, "invalid", {"name": "Missing fields"})
    (tmp_path / "empty").mkdir()

    records, errors = partners.load_partners(str(tmp_path))

    assert [r.url for r in records] == ["https://facilitator.acme.example"]
    record = records[0]
    assert record.source == DiscoverySource.PARTNERS_DATA
    assert record.name == "Acme"
    assert record.networks == ["base", "polygon"]
    assert record.metadata["slug"] == "acme"
    assert record.metadata["facilitatorInfo"]["baseUrl"] == "https://facilitator.acme.example"
    assert sorted(e.source.split("/")[-2] for e in errors) == ["broken", "invalid"]


def test_partners_missing_directory(tmp_path):
    records, errors = partners.load_partners(str(tmp_path / "nope"))
    assert records == []
    assert len(errors) == 1
