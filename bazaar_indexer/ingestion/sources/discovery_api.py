from datetime import datetime, timezone
from typing import List, Optional, Tuple

import httpx
from pydantic import ValidationError

from bazaar_indexer.core.logging_config import get_logger
from bazaar_indexer.health.fetch import fetch_with_retry
from bazaar_indexer.schemas.x402 import (
    DiscoveredResource,
    DiscoveryResponse,
    DiscoverySource,
    SourceError,
    SourceRecord,
)

logger = get_logger("source_discovery")

PAGE_SIZE = 100
MAX_PAGES = 50


def _parse_last_updated(value) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        ts = value
    else:
        try:
            ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def to_source_record(item: DiscoveredResource) -> SourceRecord:
    networks = list(dict.fromkeys(a.network for a in item.accepts))
    return SourceRecord(
        url=item.resource,
        source=DiscoverySource.DISCOVERY_API,
        description=item.accepts[0].description if item.accepts else None,
        protocol_version=item.x402_version,
        accepts=item.accepts,
        networks=networks,
        metadata=item.metadata,
        last_updated=_parse_last_updated(item.last_updated),
    )


async def fetch_data(
    client: httpx.AsyncClient,
    facilitator_url: str,
    timeout_ms: int,
    retries: int = 2,
    base_delay_ms: int = 500,
    page_size: int = PAGE_SIZE,
) -> Tuple[List[SourceRecord], List[SourceError]]:
    """
    Pages through the facilitator's discovery endpoint.
    Returns (records, errors). Items failing schema validation are skipped;
    a failed page ends paging and keeps what was already fetched.
    """
    url = f"{facilitator_url.rstrip('/')}/discovery/resources"
    records: List[SourceRecord] = []
    errors: List[SourceError] = []
    offset = 0

    logger.info("discovery_fetch_start", url=url)
    for _ in range(MAX_PAGES):
        paged_url = str(httpx.URL(url, params={"limit": page_size, "offset": offset}))
        try:
            response = await fetch_with_retry(
                client,
                paged_url,
                timeout_ms,
                retries,
                base_delay_ms,
                headers={"Accept": "application/json"},
            )
        except Exception as e:
            logger.error("discovery_fetch_error", url=paged_url, error=str(e))
            errors.append(SourceError(source=facilitator_url, error=str(e) or e.__class__.__name__))
            break

        if response.status_code != 200:
            logger.warning("discovery_bad_status", url=paged_url, status=response.status_code)
            errors.append(SourceError(source=facilitator_url, error=f"HTTP {response.status_code}: {response.text[:200]}"))
            break

        try:
            page = DiscoveryResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.warning("discovery_schema_error", url=paged_url, error=str(e))
            errors.append(SourceError(source=facilitator_url, error=f"Schema validation failed: {e}"))
            break

        for raw in page.items:
            try:
                records.append(to_source_record(DiscoveredResource.model_validate(raw)))
            except ValidationError as e:
                resource = raw.get("resource") if isinstance(raw, dict) else None
                logger.warning("discovery_item_invalid", resource=resource, error=str(e))

        offset += len(page.items)
        if not page.items:
            break
        if page.pagination is not None:
            if offset >= page.pagination.total:
                break
        elif len(page.items) < page_size:
            break

    logger.info("discovery_fetch_done", count=len(records), errors=len(errors))
    return records, errors
