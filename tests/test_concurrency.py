import asyncio

import pytest

from bazaar_indexer.health.checker import utcnow
from bazaar_indexer.health.concurrency import chunked, check_all
from bazaar_indexer.schemas.x402 import EndpointCheckResult, HealthCheckResult


class TrackingCheck:
    """Fake probe recording peak parallelism and call order."""

    def __init__(self, fail_on=()):
        self.in_flight = 0
        self.peak = 0
        self.order = []
        self.fail_on = set(fail_on)

    async def __call__(self, url, timeout_ms, client=None, **kwargs):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        self.order.append(url)
        try:
            await asyncio.sleep(0.01)
            if url in self.fail_on:
                raise RuntimeError("probe exploded")
            return EndpointCheckResult(
                health=HealthCheckResult(alive=True, status_code=200, latency_ms=10, checked_at=utcnow())
            )
        finally:
            self.in_flight -= 1


def test_chunked():
    assert chunked(["a", "b", "c", "d", "e"], 2) == [["a", "b"], ["c", "d"], ["e"]]
    assert chunked([], 3) == []


@pytest.mark.asyncio
async def test_peak_in_flight_is_bounded():
    urls = [f"https://host{i}.example/api" for i in range(10)]
    check = TrackingCheck()

    results = await check_all(urls, 1000, max_concurrency=3, check=check, client=object())

    assert len(results) == 10
    assert check.peak == 3


@pytest.mark.asyncio
async def test_progress_reported_per_chunk():
    urls = [f"https://host{i}.example/api" for i in range(5)]
    progress = []

    await check_all(urls, 1000, max_concurrency=2, check=TrackingCheck(), client=object(),
                    on_progress=lambda done, total: progress.append((done, total)))

    assert progress == [(2, 5), (4, 5), (5, 5)]


@pytest.mark.asyncio
async def test_concurrency_one_runs_sequential_chunks():
    urls = ["https://a.example/api", "https://b.example/api", "https://a.example/api"]
    check = TrackingCheck()
    progress = []

    results = await check_all(urls, 1000, max_concurrency=1, check=check, client=object(),
                              on_progress=lambda done, total: progress.append(done))

    assert list(results) == ["https://a.example/api", "https://b.example/api"]
    assert check.order == ["https://a.example/api", "https://b.example/api"]
    assert check.peak == 1
    assert progress == [1, 2]


@pytest.mark.asyncio
async def test_one_crash_does_not_abort_batch():
    urls = ["https://a.example/api", "https://b.example/api"]
    check = TrackingCheck(fail_on={"https://a.example/api"})

    results = await check_all(urls, 1000, max_concurrency=2, check=check, client=object())

    assert results["https://a.example/api"].health.alive is False
    assert results["https://a.example/api"].health.error == "probe exploded"
    assert results["https://b.example/api"].health.alive is True


@pytest.mark.asyncio
async def test_rejects_zero_concurrency():
    with pytest.raises(ValueError):
        await check_all(["https://a.example/api"], 1000, max_concurrency=0, check=TrackingCheck())


@pytest.mark.asyncio
async def test_empty_input():
    assert await check_all([], 1000, max_concurrency=2, check=TrackingCheck()) == {}
