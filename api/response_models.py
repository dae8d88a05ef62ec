"""
Shared Pydantic response models for API endpoints.

These models give FastAPI the type information it needs to generate
accurate OpenAPI schemas instead of empty `schema: {}`.

Usage:
    from api.response_models import AggregateResponse, risk_tier

    @router.get("/aggregates/{node_id}", response_model=AggregateResponse)
    async def get_aggregate(node_id: str): ...
"""

from typing import Any

from pydantic import BaseModel, Field

from compliance_engine.engine import NodeDisplay

# ==== Risk Tiers ====
# Display banding of the additive risk score.

RISK_TIERS: tuple[tuple[float, str], ...] = (
    (45, "CRITICAL"),
    (35, "HIGH"),
    (20, "MEDIUM"),
)


def risk_tier(score: float | None) -> str | None:
    """Band a risk score for display. None when no score is available."""
    if score is None:
        return None
    for threshold, tier in RISK_TIERS:
        if score >= threshold:
            return tier
    return "LOW"


# ==== Aggregates ====


class ChildCountsModel(BaseModel):
    """Immediate-children breakdown of an aggregate."""

    total: int = Field(description="Immediate children rolled up")
    compliant: int = Field(description="Children with status COMPLIANT")
    non_compliant: int = Field(
        description="Children NON_COMPLIANT, OVERDUE or ACTION_REQUIRED"
    )
    expiring: int = Field(description="Children EXPIRING_SOON")


class AggregateResponse(BaseModel):
    """Status and risk of one hierarchy node."""

    node_id: str = Field(description="Node identifier")
    node_kind: str = Field(description="scheme, block, property, space or component")
    state: str = Field(description="MISSING, COMPUTING, FRESH or STALE")
    status: str | None = Field(default=None, description="Rolled-up compliance status")
    risk_score: float | None = Field(default=None, description="Additive risk score")
    risk_tier: str | None = Field(default=None, description="LOW, MEDIUM, HIGH or CRITICAL")
    is_stale: bool = Field(description="True when the value is older than the cache TTL")
    computed_at: str | None = Field(default=None, description="ISO timestamp of computation")
    child_counts: ChildCountsModel | None = Field(default=None, description="Children breakdown")
    stored_status: str | None = Field(
        default=None, description="complianceStatus held on the asset register (advisory)"
    )
    cached: bool = Field(default=True, description="False for transient space/component rollups")

    @classmethod
    def from_display(cls, display: NodeDisplay) -> "AggregateResponse":
        data = display.to_dict()
        data["risk_tier"] = risk_tier(display.risk_score)
        data["stored_status"] = display.node.stored_status if display.node else None
        return cls(**data)


class InvalidationResponse(BaseModel):
    """Acknowledgement of a scheduled invalidation."""

    node_id: str = Field(description="Invalidated node")
    node_kind: str = Field(description="Kind of the invalidated node")
    scheduled: bool = Field(description="False when the refresh pool is shut down")


class CacheStatsResponse(BaseModel):
    """Aggregate cache and traversal session statistics."""

    cache: dict[str, Any] = Field(description="Aggregate cache counters")
    sessions: dict[str, Any] = Field(description="Traversal session registry counters")
    refresh: list[dict[str, Any]] = Field(
        default_factory=list, description="Recent background refresh jobs"
    )


# ==== Tree ====


class TreeNodeResponse(BaseModel):
    """A hierarchy node decorated with its aggregate."""

    id: str = Field(description="Node identifier")
    kind: str = Field(description="Node kind")
    name: str = Field(description="Display name")
    reference: str | None = Field(default=None, description="Asset register reference")
    parent_id: str | None = Field(default=None, description="Parent node id")
    parent_kind: str | None = Field(default=None, description="Parent node kind")
    is_high_rise: bool = Field(default=False, description="High-rise residential building")
    aggregate: AggregateResponse | None = Field(default=None, description="Status and risk")

    model_config = {"extra": "allow"}


class RootsResponse(BaseModel):
    """Top level of a traversal session."""

    session_id: str = Field(description="Traversal session id (echo in X-Tree-Session)")
    items: list[TreeNodeResponse] = Field(default_factory=list, description="Schemes")
    total: int = Field(description="Total count")


class SearchNodeResponse(BaseModel):
    """Node of a filtered subtree."""

    id: str
    kind: str
    name: str
    reference: str | None = None
    matched: bool = Field(description="False for ancestors and context kept around a match")
    children: list["SearchNodeResponse"] = Field(default_factory=list)

    model_config = {"extra": "allow"}


class SearchResponse(BaseModel):
    """Result of a subtree search."""

    session_id: str = Field(description="Traversal session id")
    root_id: str = Field(description="Search root")
    query: str = Field(description="Search text")
    result: SearchNodeResponse | None = Field(default=None, description="Filtered subtree")
    match_count: int = Field(description="Nodes matching the query")


# ==== Health Check ====


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="healthy or degraded")
    timestamp: str = Field(description="ISO timestamp")
    store: str = Field(description="ok or unavailable")


class DetailResponse(BaseModel):
    """Error body."""

    detail: str = Field(description="Error message")
