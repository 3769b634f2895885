"""
Combines discovery-source records into one set keyed by URL, then attaches
health and pricing results to produce the resources that get persisted.

Source priority follows ``DiscoverySource`` declaration order. The first record
seen for a URL, in priority order, owns it and sets its provenance; later
records only fill fields it left empty.
"""
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional

from bazaar_indexer.health.checker import utcnow
from bazaar_indexer.health.formatting import to_pricing_info
from bazaar_indexer.schemas.x402 import (
    CheckStatus,
    EndpointCheckResult,
    EnrichedResource,
    HealthCheckResult,
    SourceRecord,
)

SKIPPED_ERROR = "Health check skipped"

BACKFILL_FIELDS = ("name", "description", "category", "metadata", "last_updated")


def _is_empty(value) -> bool:
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return not value
    return value is None


def _union(*groups: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(n for group in groups for n in group))


def _absorb(owner: SourceRecord, other: SourceRecord) -> SourceRecord:
    updates = {
        field: getattr(other, field)
        for field in BACKFILL_FIELDS
        if _is_empty(getattr(owner, field)) and not _is_empty(getattr(other, field))
    }
    if not owner.accepts and other.accepts:
        updates["accepts"] = other.accepts
    networks = _union(owner.networks, other.networks)
    if networks != owner.networks:
        updates["networks"] = networks
    return owner.model_copy(update=updates) if updates else owner


def merge_sources(*sources: Iterable[SourceRecord]) -> Dict[str, SourceRecord]:
    """Deduplicates records from every source by URL. Result keeps first-claim order."""
    ordered = sorted(
        (record for records in sources for record in records),
        key=lambda r: r.source.priority,
    )
    merged: Dict[str, SourceRecord] = {}
    for record in ordered:
        owner = merged.get(record.url)
        merged[record.url] = record if owner is None else _absorb(owner, record)
    return merged


def skipped_health(checked_at: Optional[datetime] = None) -> HealthCheckResult:
    return HealthCheckResult(
        alive=False,
        status=CheckStatus.SKIPPED,
        error=SKIPPED_ERROR,
        checked_at=checked_at or utcnow(),
    )


def enrich(record: SourceRecord, check: Optional[EndpointCheckResult], now: Optional[datetime] = None) -> EnrichedResource:
    now = now or utcnow()
    if check is not None and check.pricing:
        pricing = check.pricing
    else:
        pricing = [to_pricing_info(a) for a in record.accepts]

    return EnrichedResource(
        url=record.url,
        name=record.name,
        description=record.description,
        category=record.category,
        protocol_version=record.protocol_version,
        health=check.health if check is not None else skipped_health(now),
        pricing=pricing,
        networks_supported=_union(record.networks, (p.network for p in pricing)),
        metadata=record.metadata,
        source=record.source,
        last_updated=record.last_updated or now,
    )


def enrich_all(
    merged: Mapping[str, SourceRecord],
    checks: Mapping[str, EndpointCheckResult],
    now: Optional[datetime] = None,
) -> List[EnrichedResource]:
    now = now or utcnow()
    return [enrich(record, checks.get(url), now) for url, record in merged.items()]
