"""
Observability: structured logging, request IDs, metrics.

Usage:
    import logging
    from compliance_engine.observability import RequestContext, bind

    logger = logging.getLogger(__name__)

    with RequestContext(session_id=sid):
        with bind(node_id="blk-12", node_kind="block"):
            logger.info("Expanding node")

Metrics:
    from compliance_engine.observability import REGISTRY, refresh_duration, timed

    @timed(refresh_duration)
    def recompute():
        ...
"""

from .context import RequestContext, bind, current_fields, get_request_id, set_request_id
from .logging import (
    CorrelationIdMiddleware,
    HumanFormatter,
    JSONFormatter,
    configure_logging,
)
from .metrics import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    MetricsRegistry,
    cache_hits,
    cache_misses,
    cache_stale_serves,
    refresh_coalesced,
    refresh_duration,
    refresh_failures,
    refresh_runs,
    refresh_timeouts,
    store_reads,
    timed,
    transient_duration,
    traversal_sessions,
)

__all__ = [
    # Logging
    "configure_logging",
    "JSONFormatter",
    "HumanFormatter",
    "CorrelationIdMiddleware",
    # Context
    "RequestContext",
    "bind",
    "current_fields",
    "get_request_id",
    "set_request_id",
    # Metrics
    "REGISTRY",
    "MetricsRegistry",
    "Counter",
    "Gauge",
    "Histogram",
    "timed",
    "cache_hits",
    "cache_misses",
    "cache_stale_serves",
    "refresh_runs",
    "refresh_failures",
    "refresh_timeouts",
    "refresh_coalesced",
    "refresh_duration",
    "store_reads",
    "traversal_sessions",
    "transient_duration",
]
