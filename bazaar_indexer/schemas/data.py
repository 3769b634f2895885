from pydantic import BaseModel, Field
from typing import Optional, Any, Dict, List, Generic, TypeVar
from datetime import datetime

from bazaar_indexer.schemas.x402 import CheckStatus, HealthCheckResult, PricingInfo

T = TypeVar('T')

class ResourceFilter(BaseModel):
    # None matches every resource
    status: Optional[CheckStatus] = None
    network: Optional[str] = None
    category: Optional[str] = None
    source: Optional[str] = None
    search: Optional[str] = None
    limit: int = Field(100, ge=1, le=1000)
    offset: int = Field(0, ge=0)

class ResourceHealthView(BaseModel):
    is_alive: bool
    status: CheckStatus
    status_code: Optional[int] = None
    latency_ms: Optional[int] = None
    error: Optional[str] = None
    checked_at: datetime
    uptime_7d: Optional[float] = None
    avg_latency_7d: Optional[float] = None
    check_count_7d: int = 0

    class Config:
        from_attributes = True

class ResourceView(BaseModel):
    id: str
    url: str
    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    type: str
    protocol_version: int
    source: str
    networks_supported: List[str] = []
    metadata: Optional[Dict[str, Any]] = None
    first_seen_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None
    last_updated: Optional[datetime] = None
    health: Optional[ResourceHealthView] = None
    pricing: List[PricingInfo] = []

class HealthHistoryResponse(BaseModel):
    url: str
    checks: List[HealthCheckResult]

class IndexRunView(BaseModel):
    id: int
    started_at: datetime
    completed_at: Optional[datetime] = None
    total_resources: Optional[int] = None
    alive_count: Optional[int] = None
    dead_count: Optional[int] = None
    avg_latency_ms: Optional[int] = None
    duration_ms: Optional[int] = None
    status: str
    error: Optional[str] = None

    class Config:
        from_attributes = True

class StatsView(BaseModel):
    total_resources: int
    alive_count: int
    dead_count: int
    avg_latency_ms: Optional[float] = None
    by_category: Dict[str, int]
    by_network: Dict[str, int]
    by_source: Dict[str, int]

class MetaData(BaseModel):
    request_id: str
    latency_ms: float

class PaginatedResponse(BaseModel, Generic[T]):
    meta: MetaData
    data: List[T]
