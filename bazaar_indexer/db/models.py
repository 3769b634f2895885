import uuid

from sqlalchemy import Boolean, CheckConstraint, Column, Integer, String, Text, DateTime, JSON, Float, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()

SOURCE_VALUES = "('discovery_api', 'ecosystem', 'partners_data', 'manual')"
RUN_STATUS_VALUES = "('running', 'completed', 'failed')"
CHECK_STATUS_VALUES = "('alive', 'dead', 'skipped')"


def new_uuid() -> str:
    return str(uuid.uuid4())


class Resource(Base):
    __tablename__ = "resources"

    id = Column(String(36), primary_key=True, default=new_uuid)
    url = Column(String, unique=True, nullable=False)
    name = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    category = Column(String, nullable=True, index=True)
    type = Column(String, nullable=False, default="http")
    protocol_version = Column(Integer, nullable=False, default=1)
    # Highest-priority source that has ever reported this URL
    source = Column(String, nullable=False, index=True)
    networks_supported = Column(JSON(none_as_null=True), nullable=False, default=list)
    resource_metadata = Column(JSON(none_as_null=True), nullable=True)
    first_seen_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    last_seen_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    last_updated = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        CheckConstraint(f"source IN {SOURCE_VALUES}", name="ck_resources_source"),
    )


class PaymentRequirement(Base):
    __tablename__ = "payment_requirements"

    id = Column(String(36), primary_key=True, default=new_uuid)
    resource_id = Column(String(36), ForeignKey("resources.id", ondelete="CASCADE"), nullable=False, index=True)
    scheme = Column(String, nullable=False)
    network = Column(String, nullable=False, index=True)
    asset = Column(String, nullable=False)
    max_amount_required = Column(String, nullable=False)
    formatted_amount = Column(String, nullable=True)
    pay_to = Column(String, nullable=False)
    max_timeout_seconds = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("resource_id", "network", "asset", name="uix_pricing_resource_network_asset"),
    )


class HealthCheck(Base):
    """Append-only probe history; the rolling aggregate is derived from it."""

    __tablename__ = "health_checks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    resource_id = Column(String(36), ForeignKey("resources.id", ondelete="CASCADE"), nullable=False)
    is_alive = Column(Boolean, nullable=False)
    status = Column(String(16), nullable=False)
    status_code = Column(Integer, nullable=True)
    latency_ms = Column(Integer, nullable=True)
    error = Column(Text, nullable=True)
    checked_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_health_checks_resource_time", "resource_id", "checked_at"),
        CheckConstraint(f"status IN {CHECK_STATUS_VALUES}", name="ck_health_checks_status"),
    )


class ResourceHealth(Base):
    """Latest check plus the 7-day rollup, one row per resource."""

    __tablename__ = "resource_health"

    resource_id = Column(String(36), ForeignKey("resources.id", ondelete="CASCADE"), primary_key=True)
    is_alive = Column(Boolean, nullable=False)
    status = Column(String(16), nullable=False, index=True)
    status_code = Column(Integer, nullable=True)
    latency_ms = Column(Integer, nullable=True)
    error = Column(Text, nullable=True)
    checked_at = Column(DateTime(timezone=True), nullable=False)
    uptime_7d = Column(Float, nullable=True)
    avg_latency_7d = Column(Float, nullable=True)
    check_count_7d = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint(f"status IN {CHECK_STATUS_VALUES}", name="ck_resource_health_status"),
    )


class IndexRun(Base):
    __tablename__ = "index_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    total_resources = Column(Integer, nullable=True)
    alive_count = Column(Integer, nullable=True)
    dead_count = Column(Integer, nullable=True)
    avg_latency_ms = Column(Integer, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    facilitator_url = Column(String, nullable=True)
    indexer_version = Column(String, nullable=True)
    status = Column(String, nullable=False, default="running")
    error = Column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(f"status IN {RUN_STATUS_VALUES}", name="ck_index_runs_status"),
    )
