"""
Probes a single x402 endpoint.

One GET serves two purposes: liveness (any 2xx, or 402 which is the normal
answer of a payment-gated endpoint) and pricing, read from the 402 response's
payment header or its JSON ``accepts`` array.
"""
import asyncio
import base64
import binascii
import contextlib
import json
import time
from datetime import datetime, timezone
from typing import Any, AsyncIterator, List, Optional

import httpx

from bazaar_indexer.core.logging_config import get_logger
from bazaar_indexer.health.fetch import Sleep, fetch_with_retry
from bazaar_indexer.health.formatting import to_pricing_info
from bazaar_indexer.health.url_validator import validate_url
from bazaar_indexer.schemas.x402 import (
    EndpointCheckResult,
    HealthCheckResult,
    PaymentRequirements,
    PricingInfo,
    Valid,
    parse_payment_requirement,
)

logger = get_logger("health_checker")

PAYMENT_HEADER = "X-Payment"
PAYMENT_REQUIRED = 402
DEFAULT_PROBE_RETRIES = 2
DEFAULT_RETRY_BASE_DELAY_MS = 500


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_alive_status(status_code: int) -> bool:
    return 200 <= status_code < 300 or status_code == PAYMENT_REQUIRED


def _validate_requirements(data: Any) -> List[PaymentRequirements]:
    items = data if isinstance(data, list) else [data]
    results = []
    for item in items:
        parsed = parse_payment_requirement(item)
        if isinstance(parsed, Valid):
            results.append(parsed.value)
    return results


def parse_payment_header(header: str) -> List[PaymentRequirements]:
    """Decodes the payment header: base64-encoded JSON first, then raw JSON."""
    try:
        decoded = base64.b64decode(header).decode("utf-8")
        results = _validate_requirements(json.loads(decoded))
        if results:
            return results
    except (binascii.Error, UnicodeDecodeError, ValueError):
        pass

    try:
        return _validate_requirements(json.loads(header))
    except ValueError:
        logger.debug("payment_header_unparseable")
        return []


def parse_accepts_body(response: httpx.Response) -> List[PaymentRequirements]:
    try:
        body = response.json()
    except (ValueError, UnicodeDecodeError):
        return []
    if not isinstance(body, dict) or not isinstance(body.get("accepts"), list):
        return []

    return _validate_requirements(body["accepts"])


def extract_pricing(response: httpx.Response) -> List[PricingInfo]:
    if response.status_code != PAYMENT_REQUIRED:
        return []

    requirements: List[PaymentRequirements] = []
    header = response.headers.get(PAYMENT_HEADER)
    if header:
        requirements = parse_payment_header(header)
    if not requirements:
        requirements = parse_accepts_body(response)

    return [to_pricing_info(r) for r in requirements]


@contextlib.asynccontextmanager
async def _client_scope(client: Optional[httpx.AsyncClient]) -> AsyncIterator[httpx.AsyncClient]:
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient() as owned:
        yield owned


async def check_endpoint(
    url: str,
    timeout_ms: int,
    client: Optional[httpx.AsyncClient] = None,
    retries: int = DEFAULT_PROBE_RETRIES,
    base_delay_ms: int = DEFAULT_RETRY_BASE_DELAY_MS,
    sleep: Sleep = asyncio.sleep,
) -> EndpointCheckResult:
    """Runs one probe. Never raises for endpoint-level problems."""
    checked_at = utcnow()

    validation = validate_url(url)
    if not validation.valid:
        logger.debug("health_check_rejected", url=url, reason=validation.reason)
        return EndpointCheckResult(
            health=HealthCheckResult(alive=False, error=validation.reason, checked_at=checked_at)
        )

    start = time.perf_counter()
    try:
        async with _client_scope(client) as http:
            response = await fetch_with_retry(
                http,
                url,
                timeout_ms,
                retries,
                base_delay_ms,
                headers={"Accept": "application/json"},
                sleep=sleep,
            )
        latency_ms = round((time.perf_counter() - start) * 1000)
        alive = is_alive_status(response.status_code)
        pricing = extract_pricing(response)

        logger.debug(
            "health_check_done",
            url=url,
            status=response.status_code,
            latency_ms=latency_ms,
            alive=alive,
            pricing=len(pricing),
        )
        return EndpointCheckResult(
            health=HealthCheckResult(
                alive=alive,
                status_code=response.status_code,
                latency_ms=latency_ms,
                checked_at=checked_at,
            ),
            pricing=pricing,
        )
    except Exception as e:
        message = str(e) or e.__class__.__name__
        logger.debug("health_check_failed", url=url, error=message)
        return EndpointCheckResult(
            health=HealthCheckResult(alive=False, error=message, checked_at=checked_at)
        )
