import json
from typing import Callable, Dict

import httpx
import pytest
import pytest_asyncio

from bazaar_indexer.core.config import Settings
from bazaar_indexer.core.database import Database
# Explicit import to ensure metadata is populated
from bazaar_indexer.db.models import Base


# Function-scoped on-disk SQLite database; relying on pytest-asyncio 'auto' mode from pytest.ini.
@pytest_asyncio.fixture(scope="function")
async def database(tmp_path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with db.engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield db
    await db.dispose()


@pytest_asyncio.fixture
async def session(database):
    async with database.session() as s:
        yield s


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite+aiosqlite:///unused.db",
        FACILITATOR_URL="https://facilitator.test",
        ECOSYSTEM_URL="https://ecosystem.test/ecosystem",
        TIMEOUT_MS=1000,
        CONCURRENCY=1,
        PROBE_RETRIES=0,
        RETRY_BASE_DELAY_MS=0,
        SKIP_ECOSYSTEM=True,
    )


def route_transport(routes: Dict[str, Callable[[httpx.Request], httpx.Response]]) -> httpx.MockTransport:
    """MockTransport dispatching on scheme+host+path; unknown URLs answer 404."""

    def handler(request: httpx.Request) -> httpx.Response:
        key = f"{request.url.scheme}://{request.url.host}{request.url.path}"
        responder = routes.get(key)
        if responder is None:
            return httpx.Response(404, text="not found")
        return responder(request)

    return httpx.MockTransport(handler)


def json_response(status: int, body, headers=None) -> Callable[[httpx.Request], httpx.Response]:
    def respond(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, content=json.dumps(body), headers={"content-type": "application/json", **(headers or {})})

    return respond


def requirement(resource: str, network: str = "base", amount: str = "10000") -> dict:
    return {
        "scheme": "exact",
        "network": network,
        "maxAmountRequired": amount,
        "resource": resource,
        "description": "Weather lookup",
        "mimeType": "application/json",
        "payTo": "0x1111111111111111111111111111111111111111",
        "maxTimeoutSeconds": 60,
        "asset": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
    }
