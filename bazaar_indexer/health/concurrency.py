"""
Runs the health checker over many endpoints in fixed-size chunks.

Each chunk of ``max_concurrency`` probes runs in parallel and must finish
before the next chunk starts, so at most ``max_concurrency`` requests are in
flight. A slow endpoint therefore holds back the whole next chunk; there is no
overall deadline beyond the per-probe timeouts.
"""
import asyncio
import contextlib
from typing import AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional

import httpx

from bazaar_indexer.core.logging_config import get_logger
from bazaar_indexer.health.checker import check_endpoint, utcnow
from bazaar_indexer.schemas.x402 import EndpointCheckResult, HealthCheckResult

logger = get_logger("health_concurrency")

CheckFunc = Callable[..., Awaitable[EndpointCheckResult]]
ProgressFunc = Callable[[int, int], None]


def chunked(items: List[str], size: int) -> List[List[str]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


@contextlib.asynccontextmanager
async def _shared_client(client: Optional[httpx.AsyncClient], max_concurrency: int) -> AsyncIterator[httpx.AsyncClient]:
    if client is not None:
        yield client
        return
    limits = httpx.Limits(max_connections=max_concurrency, max_keepalive_connections=max_concurrency)
    async with httpx.AsyncClient(limits=limits) as owned:
        yield owned


async def check_all(
    urls: Iterable[str],
    timeout_ms: int,
    max_concurrency: int,
    check: CheckFunc = check_endpoint,
    client: Optional[httpx.AsyncClient] = None,
    on_progress: Optional[ProgressFunc] = None,
    **check_kwargs,
) -> Dict[str, EndpointCheckResult]:
    if max_concurrency < 1:
        raise ValueError("max_concurrency must be at least 1")

    # dict.fromkeys keeps first-seen order while deduplicating
    unique_urls = list(dict.fromkeys(urls))
    total = len(unique_urls)
    results: Dict[str, EndpointCheckResult] = {}

    logger.info("health_checks_start", total=total, concurrency=max_concurrency)
    if not unique_urls:
        return results

    async with _shared_client(client, max_concurrency) as http:
        done = 0
        for chunk in chunked(unique_urls, max_concurrency):
            outcomes = await asyncio.gather(
                *(check(url, timeout_ms, client=http, **check_kwargs) for url in chunk),
                return_exceptions=True,
            )
            for url, outcome in zip(chunk, outcomes):
                if isinstance(outcome, BaseException):
                    if isinstance(outcome, asyncio.CancelledError):
                        raise outcome
                    logger.warning("health_check_crashed", url=url, error=str(outcome))
                    outcome = EndpointCheckResult(
                        health=HealthCheckResult(
                            alive=False,
                            error=str(outcome) or outcome.__class__.__name__,
                            checked_at=utcnow(),
                        )
                    )
                results[url] = outcome

            done += len(chunk)
            logger.info("health_checks_progress", checked=done, total=total)
            if on_progress is not None:
                on_progress(done, total)

    return results
