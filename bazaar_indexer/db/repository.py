"""
Data access for indexed x402 resources.

``upsert_resource`` is the only write path for resources, pricing and health.
Each call is one transaction: resource row, pricing rows, a new history row and
the recomputed 7-day rollup commit together or not at all.
"""
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from sqlalchemy import String, case, cast, delete, func, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bazaar_indexer.core.database import Database
from bazaar_indexer.db.models import HealthCheck, IndexRun, PaymentRequirement, Resource, ResourceHealth, new_uuid
from bazaar_indexer.health.formatting import format_amount
from bazaar_indexer.schemas.data import (
    IndexRunView,
    ResourceFilter,
    ResourceHealthView,
    ResourceView,
    StatsView,
)
from bazaar_indexer.schemas.x402 import (
    CheckStatus,
    DiscoverySource,
    EnrichedResource,
    HealthCheckResult,
    IndexSummary,
    PricingInfo,
    RunStatus,
)

ROLLING_WINDOW = timedelta(days=7)


class PersistenceError(Exception):
    pass


class IndexRunStateError(PersistenceError):
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _insert_for(session: AsyncSession):
    if session.bind.dialect.name == "postgresql":
        return postgresql.insert
    return sqlite.insert


def _source_rank(column):
    return case(
        {s.value: s.priority for s in DiscoverySource},
        value=column,
        else_=len(DiscoverySource),
    )


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    if value is None or not value.strip():
        return None
    return value


# --- Writes ---

async def upsert_resource(db: Database, resource: EnrichedResource, now: Optional[datetime] = None) -> str:
    """Inserts or updates ``resource`` and records its latest health check. Returns the resource id."""
    now = as_utc(now) or utcnow()
    try:
        async with db.session() as session:
            async with session.begin():
                resource_id = await _upsert_resource_row(session, resource, now)
                for pricing in resource.pricing:
                    await _upsert_pricing(session, resource_id, pricing)
                await _insert_health_check(session, resource_id, resource.health)
                await _refresh_health_rollup(session, resource_id, resource.health, now)
            return resource_id
    except SQLAlchemyError as e:
        raise PersistenceError(f"Failed to persist {resource.url}: {e}") from e


async def _upsert_resource_row(session: AsyncSession, resource: EnrichedResource, now: datetime) -> str:
    insert = _insert_for(session)
    stmt = insert(Resource).values(
        id=new_uuid(),
        url=resource.url,
        name=_blank_to_none(resource.name),
        description=_blank_to_none(resource.description),
        category=_blank_to_none(resource.category),
        type=resource.type,
        protocol_version=resource.protocol_version,
        source=resource.source.value,
        networks_supported=list(resource.networks_supported),
        resource_metadata=resource.metadata or None,
        first_seen_at=now,
        last_seen_at=now,
        last_updated=as_utc(resource.last_updated),
        created_at=now,
        updated_at=now,
    )
    excluded = stmt.excluded
    stmt = stmt.on_conflict_do_update(
        index_elements=[Resource.url],
        set_={
            "name": func.coalesce(excluded.name, Resource.name),
            "description": func.coalesce(excluded.description, Resource.description),
            "category": func.coalesce(excluded.category, Resource.category),
            "protocol_version": excluded.protocol_version,
            "source": case(
                (_source_rank(excluded.source) < _source_rank(Resource.source), excluded.source),
                else_=Resource.source,
            ),
            "networks_supported": excluded.networks_supported,
            "resource_metadata": func.coalesce(excluded.resource_metadata, Resource.resource_metadata),
            "last_updated": func.coalesce(excluded.last_updated, Resource.last_updated),
            "last_seen_at": excluded.last_seen_at,
            "updated_at": excluded.updated_at,
        },
    )
    await session.execute(stmt)

    result = await session.execute(select(Resource.id).where(Resource.url == resource.url))
    return result.scalar_one()


async def _upsert_pricing(session: AsyncSession, resource_id: str, pricing: PricingInfo):
    insert = _insert_for(session)
    stmt = insert(PaymentRequirement).values(
        id=new_uuid(),
        resource_id=resource_id,
        scheme=pricing.scheme,
        network=pricing.network,
        asset=pricing.asset,
        max_amount_required=pricing.max_amount_required,
        # Derived from amount + asset, never taken from the caller
        formatted_amount=format_amount(pricing.max_amount_required, pricing.asset),
        pay_to=pricing.pay_to,
        max_timeout_seconds=pricing.max_timeout_seconds,
    )
    excluded = stmt.excluded
    stmt = stmt.on_conflict_do_update(
        index_elements=[PaymentRequirement.resource_id, PaymentRequirement.network, PaymentRequirement.asset],
        set_={
            "scheme": excluded.scheme,
            "max_amount_required": excluded.max_amount_required,
            "formatted_amount": excluded.formatted_amount,
            "pay_to": excluded.pay_to,
            "max_timeout_seconds": excluded.max_timeout_seconds,
        },
    )
    await session.execute(stmt)


async def _insert_health_check(session: AsyncSession, resource_id: str, health: HealthCheckResult):
    session.add(HealthCheck(
        resource_id=resource_id,
        is_alive=health.alive,
        status=health.status.value,
        status_code=health.status_code,
        latency_ms=health.latency_ms,
        error=health.error,
        checked_at=as_utc(health.checked_at),
    ))
    await session.flush()


async def compute_rollup(session: AsyncSession, resource_id: str, now: datetime) -> Dict[str, Optional[float]]:
    """Aggregates the trailing 7 days of history for one resource."""
    cutoff = as_utc(now) - ROLLING_WINDOW
    result = await session.execute(
        select(
            func.count(HealthCheck.id),
            func.sum(case((HealthCheck.is_alive.is_(True), 1), else_=0)),
            func.avg(HealthCheck.latency_ms),
        ).where(
            HealthCheck.resource_id == resource_id,
            HealthCheck.checked_at >= cutoff,
        )
    )
    total, alive, avg_latency = result.one()
    total = total or 0
    alive = alive or 0
    return {
        "uptime_7d": (alive * 100 / total) if total else None,
        "avg_latency_7d": float(avg_latency) if avg_latency is not None else None,
        "check_count_7d": total,
    }


async def _refresh_health_rollup(session: AsyncSession, resource_id: str, health: HealthCheckResult, now: datetime):
    rollup = await compute_rollup(session, resource_id, now)

    insert = _insert_for(session)
    stmt = insert(ResourceHealth).values(
        resource_id=resource_id,
        is_alive=health.alive,
        status=health.status.value,
        status_code=health.status_code,
        latency_ms=health.latency_ms,
        error=health.error,
        checked_at=as_utc(health.checked_at),
        **rollup,
    )
    excluded = stmt.excluded
    stmt = stmt.on_conflict_do_update(
        index_elements=[ResourceHealth.resource_id],
        set_={
            "is_alive": excluded.is_alive,
            "status": excluded.status,
            "status_code": excluded.status_code,
            "latency_ms": excluded.latency_ms,
            "error": excluded.error,
            "checked_at": excluded.checked_at,
            "uptime_7d": excluded.uptime_7d,
            "avg_latency_7d": excluded.avg_latency_7d,
            "check_count_7d": excluded.check_count_7d,
        },
    )
    await session.execute(stmt)


# --- Index runs ---

async def start_index_run(db: Database, facilitator_url: Optional[str], indexer_version: str) -> int:
    async with db.session() as session:
        async with session.begin():
            run = IndexRun(
                started_at=utcnow(),
                facilitator_url=facilitator_url,
                indexer_version=indexer_version,
                status=RunStatus.RUNNING.value,
            )
            session.add(run)
            await session.flush()
            return run.id


async def _close_index_run(db: Database, run_id: int, values: dict):
    async with db.session() as session:
        async with session.begin():
            result = await session.execute(
                update(IndexRun)
                .where(IndexRun.id == run_id, IndexRun.status == RunStatus.RUNNING.value)
                .values(completed_at=utcnow(), **values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise IndexRunStateError(f"Index run {run_id} is not running")


async def complete_index_run(db: Database, run_id: int, summary: IndexSummary):
    await _close_index_run(db, run_id, {
        "status": RunStatus.COMPLETED.value,
        "total_resources": summary.total_resources,
        "alive_count": summary.alive_count,
        "dead_count": summary.dead_count,
        "avg_latency_ms": summary.avg_latency_ms,
        "duration_ms": summary.duration_ms,
    })


async def fail_index_run(db: Database, run_id: int, error: str, summary: Optional[IndexSummary] = None):
    values = {"status": RunStatus.FAILED.value, "error": error}
    if summary is not None:
        values.update(
            total_resources=summary.total_resources,
            alive_count=summary.alive_count,
            dead_count=summary.dead_count,
            avg_latency_ms=summary.avg_latency_ms,
            duration_ms=summary.duration_ms,
        )
    await _close_index_run(db, run_id, values)


async def get_index_runs(session: AsyncSession, limit: int = 10) -> List[IndexRunView]:
    result = await session.execute(
        select(IndexRun).order_by(IndexRun.started_at.desc(), IndexRun.id.desc()).limit(limit)
    )
    return [IndexRunView.model_validate(run) for run in result.scalars().all()]


# --- Reads ---

def _pricing_view(row: PaymentRequirement) -> PricingInfo:
    return PricingInfo(
        scheme=row.scheme,
        network=row.network,
        max_amount_required=row.max_amount_required,
        asset=row.asset,
        pay_to=row.pay_to,
        max_timeout_seconds=row.max_timeout_seconds,
        formatted_amount=row.formatted_amount or format_amount(row.max_amount_required, row.asset),
    )


def _resource_view(resource: Resource, health: Optional[ResourceHealth], pricing: List[PricingInfo]) -> ResourceView:
    return ResourceView(
        id=resource.id,
        url=resource.url,
        name=resource.name,
        description=resource.description,
        category=resource.category,
        type=resource.type,
        protocol_version=resource.protocol_version,
        source=resource.source,
        networks_supported=resource.networks_supported or [],
        metadata=resource.resource_metadata,
        first_seen_at=resource.first_seen_at,
        last_seen_at=resource.last_seen_at,
        last_updated=resource.last_updated,
        health=ResourceHealthView.model_validate(health) if health is not None else None,
        pricing=pricing,
    )


async def _pricing_by_resource(session: AsyncSession, resource_ids: List[str]) -> Dict[str, List[PricingInfo]]:
    grouped: Dict[str, List[PricingInfo]] = {}
    if not resource_ids:
        return grouped
    result = await session.execute(
        select(PaymentRequirement).where(PaymentRequirement.resource_id.in_(resource_ids))
    )
    for row in result.scalars().all():
        grouped.setdefault(row.resource_id, []).append(_pricing_view(row))
    return grouped


async def get_resources(session: AsyncSession, filters: Optional[ResourceFilter] = None) -> List[ResourceView]:
    filters = filters or ResourceFilter()
    query = select(Resource, ResourceHealth).outerjoin(ResourceHealth, Resource.id == ResourceHealth.resource_id)

    if filters.status == CheckStatus.DEAD:
        # Never-checked resources count as dead
        query = query.where(or_(ResourceHealth.status == CheckStatus.DEAD.value, ResourceHealth.status.is_(None)))
    elif filters.status is not None:
        query = query.where(ResourceHealth.status == filters.status.value)

    if filters.network:
        query = query.where(cast(Resource.networks_supported, String).like(f'%"{filters.network}"%'))
    if filters.category:
        query = query.where(Resource.category == filters.category)
    if filters.source:
        query = query.where(Resource.source == filters.source)
    if filters.search:
        pattern = f"%{filters.search}%"
        query = query.where(or_(
            Resource.url.like(pattern),
            Resource.name.like(pattern),
            Resource.description.like(pattern),
        ))

    query = (
        query.order_by(
            ResourceHealth.is_alive.desc(),
            ResourceHealth.latency_ms.asc().nulls_last(),
            Resource.url,
        )
        .limit(filters.limit)
        .offset(filters.offset)
    )
    rows = (await session.execute(query)).all()

    # One batched pricing query instead of one per resource
    pricing = await _pricing_by_resource(session, [r.id for r, _ in rows])
    return [_resource_view(r, h, pricing.get(r.id, [])) for r, h in rows]


async def get_resource_by_url(session: AsyncSession, url: str) -> Optional[ResourceView]:
    result = await session.execute(
        select(Resource, ResourceHealth)
        .outerjoin(ResourceHealth, Resource.id == ResourceHealth.resource_id)
        .where(Resource.url == url)
    )
    row = result.first()
    if row is None:
        return None
    resource, health = row
    pricing = await _pricing_by_resource(session, [resource.id])
    return _resource_view(resource, health, pricing.get(resource.id, []))


async def get_health_history(session: AsyncSession, resource_id: str, limit: int = 100) -> List[HealthCheckResult]:
    result = await session.execute(
        select(HealthCheck)
        .where(HealthCheck.resource_id == resource_id)
        .order_by(HealthCheck.checked_at.desc(), HealthCheck.id.desc())
        .limit(limit)
    )
    return [
        HealthCheckResult(
            alive=row.is_alive,
            status=row.status,
            status_code=row.status_code,
            latency_ms=row.latency_ms,
            error=row.error,
            checked_at=row.checked_at,
        )
        for row in result.scalars().all()
    ]


async def get_stats(session: AsyncSession) -> StatsView:
    totals = await session.execute(
        select(
            func.count(Resource.id),
            func.sum(case((ResourceHealth.is_alive.is_(True), 1), else_=0)),
            func.avg(ResourceHealth.latency_ms),
        ).select_from(Resource).outerjoin(ResourceHealth, Resource.id == ResourceHealth.resource_id)
    )
    total, alive, avg_latency = totals.one()
    total = total or 0
    alive = alive or 0

    category = func.coalesce(Resource.category, "Uncategorized")
    categories = await session.execute(select(category, func.count()).group_by(category))
    sources = await session.execute(select(Resource.source, func.count()).group_by(Resource.source))

    by_network: Counter = Counter()
    networks = await session.execute(select(Resource.networks_supported))
    for (nets,) in networks.all():
        by_network.update(nets or [])

    return StatsView(
        total_resources=total,
        alive_count=alive,
        dead_count=total - alive,
        avg_latency_ms=float(avg_latency) if avg_latency is not None else None,
        by_category={c: n for c, n in categories.all()},
        by_network=dict(by_network),
        by_source={s: n for s, n in sources.all()},
    )


# --- Maintenance ---

async def cleanup_old_health_checks(db: Database, days_to_keep: int = 30) -> int:
    """Deletes history older than ``days_to_keep``. The rollup window must stay covered."""
    if days_to_keep < ROLLING_WINDOW.days:
        raise ValueError(f"days_to_keep must be at least {ROLLING_WINDOW.days}")
    cutoff = utcnow() - timedelta(days=days_to_keep)
    async with db.session() as session:
        async with session.begin():
            result = await session.execute(
                delete(HealthCheck)
                .where(HealthCheck.checked_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount


async def cleanup_stale_resources(db: Database, days_unseen: int = 7) -> int:
    """Purges resources not seen for ``days_unseen`` days, with their pricing, history and rollup."""
    cutoff = utcnow() - timedelta(days=days_unseen)
    async with db.session() as session:
        async with session.begin():
            stale = select(Resource.id).where(Resource.last_seen_at < cutoff)
            for child in (PaymentRequirement, HealthCheck, ResourceHealth):
                await session.execute(
                    delete(child)
                    .where(child.resource_id.in_(stale))
                    .execution_options(synchronize_session=False)
                )
            result = await session.execute(
                delete(Resource)
                .where(Resource.last_seen_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount
