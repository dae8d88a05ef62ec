"""
Aggregate API Router

Usage in server.py:
    from api.aggregate_router import aggregate_router
    app.include_router(aggregate_router, prefix="/api")

Endpoints:
- GET  /api/aggregates/stats                  Cache and session statistics
- GET  /api/aggregates/{node_id}              Status and risk for any node
- POST /api/aggregates/{node_id}/invalidate   Mark a node and its ancestors for recompute

Reads never block on a recompute unless ``wait=true`` is passed.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from api.dependencies import get_engine
from api.response_models import AggregateResponse, CacheStatsResponse, InvalidationResponse
from compliance_engine.engine import ComplianceEngine
from compliance_engine.errors import StoreUnavailable
from compliance_engine.models import NodeKind

logger = logging.getLogger(__name__)

aggregate_router = APIRouter(tags=["Aggregates"])


@aggregate_router.get("/aggregates/stats", response_model=CacheStatsResponse)
async def aggregate_stats(engine: ComplianceEngine = Depends(get_engine)):
    """Aggregate cache hit/miss counters, session registry size and recent refresh jobs."""
    return CacheStatsResponse(
        cache=engine.cache.stats().to_dict(),
        sessions=engine.sessions.stats().to_dict(),
        refresh=[
            status.to_dict() for status in engine.cache.refresh_statuses(limit=20)
        ],
    )


@aggregate_router.get("/aggregates/{node_id}", response_model=AggregateResponse)
def get_aggregate(
    node_id: str,
    kind: NodeKind | None = Query(None, description="Disambiguate the node kind"),
    wait: bool = Query(False, description="Block until a missing or stale record is recomputed"),
    timeout: float | None = Query(None, gt=0, le=120, description="Seconds to wait when wait=true"),
    engine: ComplianceEngine = Depends(get_engine),
):
    """
    Status and risk for one node.

    Without ``wait`` a stale record is served as-is (``is_stale=true``) and a
    background refresh is scheduled; a missing record returns ``state=COMPUTING``
    with no status.
    """
    display = engine.aggregate(node_id, kind=kind, wait=wait, timeout=timeout)
    return AggregateResponse.from_display(display)


@aggregate_router.post(
    "/aggregates/{node_id}/invalidate",
    response_model=InvalidationResponse,
    status_code=202,
)
def invalidate_aggregate(
    node_id: str,
    kind: NodeKind | None = Query(None, description="Disambiguate the node kind"),
    engine: ComplianceEngine = Depends(get_engine),
):
    """Mark a node changed. The cascade to ancestors runs in the background."""
    try:
        if kind is None:
            kind = engine.store.get_node(node_id).kind
        future = engine.invalidate(node_id, kind)
    except StoreUnavailable as e:
        logger.error(f"Invalidation of {node_id} failed: {e}")
        raise HTTPException(status_code=503, detail=str(e)) from e
    return InvalidationResponse(node_id=node_id, node_kind=str(kind), scheduled=future is not None)
