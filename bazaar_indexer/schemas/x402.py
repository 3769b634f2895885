"""
Defines the x402 payment schema and the enriched resource contract used across all discovery sources.
Anything read from an untrusted endpoint is validated here before it can reach the database.
"""
import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Generic, List, Literal, Optional, TypeVar, Union
from urllib.parse import urlsplit

from pydantic import BaseModel, Field, ValidationError, validator

T = TypeVar("T")

NETWORKS = (
    "abstract",
    "abstract-testnet",
    "base-sepolia",
    "base",
    "avalanche-fuji",
    "avalanche",
    "iotex",
    "solana-devnet",
    "solana",
    "sei",
    "sei-testnet",
    "polygon",
    "polygon-amoy",
    "peaq",
    "story",
    "educhain",
    "skale-base-sepolia",
)


class DiscoverySource(str, enum.Enum):
    """Where a resource was first reported. Declaration order is merge priority."""

    DISCOVERY_API = "discovery_api"
    ECOSYSTEM = "ecosystem"
    PARTNERS_DATA = "partners_data"
    MANUAL = "manual"

    @property
    def priority(self) -> int:
        return list(DiscoverySource).index(self)


class RunStatus(str, enum.Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class CheckStatus(str, enum.Enum):
    ALIVE = "alive"
    DEAD = "dead"
    SKIPPED = "skipped"


class CamelModel(BaseModel):
    class Config:
        populate_by_name = True
        from_attributes = True


# --- Payment requirements (wire format) ---

class PaymentRequirements(CamelModel):
    scheme: Literal["exact"]
    network: Literal[NETWORKS]  # type: ignore[valid-type]
    max_amount_required: str = Field(..., alias="maxAmountRequired")
    resource: str
    description: str
    mime_type: str = Field(..., alias="mimeType")
    output_schema: Optional[Dict[str, Any]] = Field(None, alias="outputSchema")
    pay_to: str = Field(..., alias="payTo")
    max_timeout_seconds: int = Field(..., alias="maxTimeoutSeconds")
    asset: str
    extra: Optional[Dict[str, Any]] = None

    @validator("resource")
    def resource_is_url(cls, v):
        parts = urlsplit(v)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ValueError("resource must be an absolute http(s) URL")
        return v


@dataclass(frozen=True)
class Valid(Generic[T]):
    value: T


@dataclass(frozen=True)
class Invalid:
    reason: str


ParseResult = Union[Valid[PaymentRequirements], Invalid]


def parse_payment_requirement(data: Any) -> ParseResult:
    """Validates one untrusted payment requirement object."""
    if not isinstance(data, dict):
        return Invalid(f"expected object, got {type(data).__name__}")
    try:
        return Valid(PaymentRequirements.model_validate(data))
    except ValidationError as e:
        return Invalid(str(e))


# --- Discovery sources ---

class Pagination(BaseModel):
    limit: int
    offset: int
    total: int


class DiscoveredResource(CamelModel):
    resource: str
    type: Literal["http"] = "http"
    x402_version: int = Field(..., alias="x402Version")
    accepts: List[PaymentRequirements] = Field(default_factory=list)
    last_updated: Optional[Union[datetime, str]] = Field(None, alias="lastUpdated")
    metadata: Optional[Dict[str, Any]] = None


class DiscoveryResponse(CamelModel):
    x402_version: int = Field(..., alias="x402Version")
    items: List[Any]
    pagination: Optional[Pagination] = None


class FacilitatorSupports(BaseModel):
    verify: bool
    settle: bool
    supported: bool
    list: bool


class FacilitatorInfo(CamelModel):
    base_url: str = Field(..., alias="baseUrl")
    networks: List[str]
    schemes: List[str]
    assets: List[str]
    supports: FacilitatorSupports


class PartnerMetadata(CamelModel):
    name: str
    description: str
    logo_url: str = Field(..., alias="logoUrl")
    website_url: str = Field(..., alias="websiteUrl")
    category: str
    slug: Optional[str] = None
    facilitator: Optional[FacilitatorInfo] = None


class EcosystemService(BaseModel):
    name: str
    url: str
    description: str = ""
    category: str = "Services"


class SourceRecord(BaseModel):
    """The shape every discovery source hands to the merger."""

    url: str
    source: DiscoverySource
    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    protocol_version: int = 1
    accepts: List[PaymentRequirements] = Field(default_factory=list)
    networks: List[str] = Field(default_factory=list)
    metadata: Optional[Dict[str, Any]] = None
    last_updated: Optional[datetime] = None


class SourceError(BaseModel):
    source: str
    error: str


# --- Health and pricing ---

class HealthCheckResult(BaseModel):
    alive: bool
    # Derived from alive unless given; only a dead result may be skipped
    status: Optional[CheckStatus] = None
    status_code: Optional[int] = None
    latency_ms: Optional[int] = None
    error: Optional[str] = None
    checked_at: datetime

    @validator("status", always=True)
    def status_agrees_with_alive(cls, v, values):
        alive = values.get("alive")
        if v is None:
            return CheckStatus.ALIVE if alive else CheckStatus.DEAD
        if (v == CheckStatus.ALIVE) != bool(alive):
            raise ValueError(f"status {v.value} contradicts alive={alive}")
        return v

    class Config:
        frozen = True
        from_attributes = True


class PricingInfo(BaseModel):
    scheme: str
    network: str
    max_amount_required: str
    asset: str
    pay_to: str
    max_timeout_seconds: int
    formatted_amount: str

    class Config:
        from_attributes = True


class EndpointCheckResult(BaseModel):
    health: HealthCheckResult
    pricing: List[PricingInfo] = Field(default_factory=list)


class EnrichedResource(BaseModel):
    url: str
    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    type: Literal["http"] = "http"
    protocol_version: int = 1
    health: HealthCheckResult
    pricing: List[PricingInfo] = Field(default_factory=list)
    networks_supported: List[str] = Field(default_factory=list)
    metadata: Optional[Dict[str, Any]] = None
    source: DiscoverySource
    last_updated: datetime


# --- Run output ---

class IndexSummary(BaseModel):
    total_resources: int
    alive_count: int
    dead_count: int
    avg_latency_ms: Optional[int] = None
    min_latency_ms: Optional[int] = None
    max_latency_ms: Optional[int] = None
    by_category: Dict[str, int] = Field(default_factory=dict)
    by_network: Dict[str, int] = Field(default_factory=dict)
    indexed_at: datetime
    duration_ms: int
    indexer_version: str


class IndexMeta(BaseModel):
    version: str
    generated_at: datetime
    facilitator_url: str


class IndexOutput(BaseModel):
    meta: IndexMeta
    summary: IndexSummary
    resources: List[EnrichedResource]
