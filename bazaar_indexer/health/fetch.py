"""
Bounded HTTP fetching: a hard per-request deadline plus retry-with-backoff for
transport failures. HTTP error statuses are answers, not failures, so they are
returned to the caller and never retried. This layer does not log.
"""
import asyncio
import socket
from typing import Awaitable, Callable, Dict, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

Sleep = Callable[[float], Awaitable[None]]

_TRANSIENT_MARKERS = ("abort", "econnreset", "enotfound", "getaddrinfo", "network", "connection reset")


class FetchError(Exception):
    pass


class FetchTimeoutError(FetchError):
    def __init__(self, url: str, timeout_ms: int):
        super().__init__(f"Request to {url} timed out after {timeout_ms}ms")
        self.url = url
        self.timeout_ms = timeout_ms


def is_transient_error(exc: BaseException) -> bool:
    if isinstance(exc, asyncio.CancelledError):
        return False
    if isinstance(exc, (FetchTimeoutError, asyncio.TimeoutError, httpx.TimeoutException)):
        return True
    if isinstance(exc, (httpx.NetworkError, httpx.RemoteProtocolError, ConnectionResetError, socket.gaierror)):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


async def fetch_with_timeout(
    client: httpx.AsyncClient,
    url: str,
    timeout_ms: int,
    method: str = "GET",
    headers: Optional[Dict[str, str]] = None,
) -> httpx.Response:
    """Sends one request and gives up exactly at ``timeout_ms`` (body included)."""
    # The client's own per-phase timeout must not fire before the deadline
    try:
        return await asyncio.wait_for(
            client.request(method, url, headers=headers, timeout=httpx.Timeout(timeout_ms / 1000)),
            timeout=timeout_ms / 1000,
        )
    except (asyncio.TimeoutError, httpx.TimeoutException) as e:
        raise FetchTimeoutError(url, timeout_ms) from e


async def fetch_with_retry(
    client: httpx.AsyncClient,
    url: str,
    timeout_ms: int,
    retries: int,
    base_delay_ms: int,
    method: str = "GET",
    headers: Optional[Dict[str, str]] = None,
    sleep: Sleep = asyncio.sleep,
) -> httpx.Response:
    """
    Retries transient failures up to ``retries`` extra times. The wait after
    failed attempt k (0-indexed) is ``base_delay_ms * 2**k``. Once the budget
    is spent the last error is re-raised unchanged.
    """
    retrying = AsyncRetrying(
        retry=retry_if_exception(is_transient_error),
        stop=stop_after_attempt(retries + 1),
        wait=wait_exponential(multiplier=base_delay_ms / 1000, exp_base=2, min=0),
        sleep=sleep,
        reraise=True,
    )
    return await retrying(fetch_with_timeout, client, url, timeout_ms, method=method, headers=headers)
