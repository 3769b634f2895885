from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from bazaar_indexer.health.formatting import to_pricing_info
from bazaar_indexer.ingestion.merger import SKIPPED_ERROR, enrich, enrich_all, merge_sources
from bazaar_indexer.schemas.x402 import (
    CheckStatus,
    DiscoverySource,
    EndpointCheckResult,
    HealthCheckResult,
    PaymentRequirements,
    SourceRecord,
)
from conftest import requirement

A = "https://a.example/api"
B = "https://b.example/api"
NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)


def record(url, source, **fields):
    return SourceRecord(url=url, source=source, **fields)


def test_higher_priority_name_wins_and_gaps_are_backfilled():
    discovery = [record(A, DiscoverySource.DISCOVERY_API, name="Discovery A", networks=["base"])]
    ecosystem = [record(A, DiscoverySource.ECOSYSTEM, name="Ecosystem A", description="From the listing",
                        category="AI Agents")]

    # Argument order must not matter
    merged = merge_sources(ecosystem, discovery)

    a = merged[A]
    assert a.name == "Discovery A"
    assert a.description == "From the listing"
    assert a.category == "AI Agents"
    assert a.source == DiscoverySource.DISCOVERY_API


def test_networks_are_unioned_across_sources():
    merged = merge_sources(
        [record(A, DiscoverySource.DISCOVERY_API, networks=["base"])],
        [record(A, DiscoverySource.PARTNERS_DATA, networks=["solana", "base"])],
    )
    assert merged[A].networks == ["base", "solana"]


def test_blank_fields_do_not_claim():
    merged = merge_sources(
        [record(A, DiscoverySource.DISCOVERY_API, name="  ")],
        [record(A, DiscoverySource.ECOSYSTEM, name="Named")],
    )
    assert merged[A].name == "Named"


def test_each_url_appears_once():
    merged = merge_sources(
        [record(A, DiscoverySource.DISCOVERY_API), record(B, DiscoverySource.DISCOVERY_API)],
        [record(B, DiscoverySource.ECOSYSTEM), record(A, DiscoverySource.ECOSYSTEM)],
        [record(A, DiscoverySource.PARTNERS_DATA)],
    )
    assert list(merged) == [A, B]
    assert all(r.source == DiscoverySource.DISCOVERY_API for r in merged.values())


def test_enrich_prefers_probe_pricing_over_advertised():
    advertised = PaymentRequirements.model_validate(requirement(A, network="base", amount="5000"))
    probed = to_pricing_info(PaymentRequirements.model_validate(requirement(A, network="polygon", amount="1000000")))
    check = EndpointCheckResult(
        health=HealthCheckResult(alive=True, status_code=402, latency_ms=120, checked_at=NOW),
        pricing=[probed],
    )

    enriched = enrich(record(A, DiscoverySource.DISCOVERY_API, accepts=[advertised], networks=["base"]), check, NOW)

    assert [p.network for p in enriched.pricing] == ["polygon"]
    assert enriched.networks_supported == ["base", "polygon"]
    assert enriched.health.status_code == 402


def test_enrich_falls_back_to_advertised_pricing():
    advertised = PaymentRequirements.model_validate(requirement(A, amount="1000000"))
    check = EndpointCheckResult(health=HealthCheckResult(alive=False, status_code=500, latency_ms=30, checked_at=NOW))

    enriched = enrich(record(A, DiscoverySource.DISCOVERY_API, accepts=[advertised]), check, NOW)

    assert len(enriched.pricing) == 1
    assert enriched.pricing[0].formatted_amount == "1 USDC"


def test_missing_check_gets_skipped_placeholder():
    merged = merge_sources([record(A, DiscoverySource.ECOSYSTEM, name="A")])

    [enriched] = enrich_all(merged, {}, NOW)

    assert enriched.health.alive is False
    assert enriched.health.error == SKIPPED_ERROR
    assert enriched.health.status == CheckStatus.SKIPPED
    assert enriched.last_updated == NOW


def test_check_status_follows_liveness():
    assert HealthCheckResult(alive=True, status_code=200, latency_ms=5, checked_at=NOW).status == CheckStatus.ALIVE
    assert HealthCheckResult(alive=False, error="refused", checked_at=NOW).status == CheckStatus.DEAD

    with pytest.raises(ValidationError):
        HealthCheckResult(alive=True, status=CheckStatus.SKIPPED, checked_at=NOW)
    with pytest.raises(ValidationError):
        HealthCheckResult(alive=False, status="sleeping", checked_at=NOW)
