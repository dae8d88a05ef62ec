"""
ComplianceEngine: the service instance that wires the store, aggregate cache,
refresh pool, sweeper and traversal sessions together.

Construct one per process and inject it where needed (the API keeps it on
``app.state.engine``).
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from compliance_engine.aggregator import AggregateComputer, utc_now
from compliance_engine.cache.aggregate_cache import AggregateCache
from compliance_engine.cache.records import InMemoryRecordTable, RecordTable, SqliteRecordTable
from compliance_engine.cache.session_registry import SessionRegistry
from compliance_engine.config import EngineSettings
from compliance_engine.errors import ComputationTimeout, StoreUnavailable
from compliance_engine.models import (
    CACHED_KINDS,
    ChildCounts,
    ComplianceStatus,
    HierarchyNode,
    NodeKind,
    Page,
    RecordState,
)
from compliance_engine.refresh import RefreshExecutor, RefreshSweeper
from compliance_engine.risk import RiskWeights
from compliance_engine.store import EntityStore, SqliteEntityStore
from compliance_engine.traversal import SearchResult, TraversalSession

logger = logging.getLogger(__name__)


@dataclass
class NodeDisplay:
    """Status and risk for one node as shown to a reader. ``status`` is None when unavailable."""

    node_id: str
    node_kind: NodeKind
    state: RecordState
    status: ComplianceStatus | None = None
    risk_score: float | None = None
    is_stale: bool = True
    computed_at: datetime | None = None
    child_counts: ChildCounts | None = None
    node: HierarchyNode | None = None
    cached: bool = True

    @property
    def available(self) -> bool:
        return self.status is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "node_kind": str(self.node_kind),
            "state": str(self.state),
            "status": str(self.status) if self.status else None,
            "risk_score": self.risk_score,
            "is_stale": self.is_stale,
            "computed_at": self.computed_at.isoformat() if self.computed_at else None,
            "child_counts": self.child_counts.to_dict() if self.child_counts else None,
            "cached": self.cached,
        }


class ComplianceEngine:
    """Aggregate reads, invalidation and lazy traversal over one entity store."""

    def __init__(
        self,
        store: EntityStore,
        settings: EngineSettings | None = None,
        records: RecordTable | None = None,
        clock=utc_now,
    ):
        self.store = store
        self.settings = settings or EngineSettings()
        self.clock = clock

        self.computer = AggregateComputer(
            store,
            weights=RiskWeights.from_dict(self.settings.risk_weights),
            ttl=timedelta(seconds=self.settings.aggregate_ttl_seconds),
            expiring_window_days=self.settings.expiring_window_days,
            clock=clock,
        )
        self.cache = AggregateCache(
            self.computer,
            records=records if records is not None else InMemoryRecordTable(),
            refresh=RefreshExecutor(max_workers=self.settings.refresh_workers),
            refresh_timeout=self.settings.refresh_timeout_seconds,
            retry_backoff=timedelta(seconds=self.settings.retry_backoff_seconds),
            clock=clock,
        )
        self.sessions: SessionRegistry[TraversalSession] = SessionRegistry(
            factory=self._new_session,
            max_size=self.settings.max_sessions,
            idle_ttl=self.settings.session_ttl_seconds,
        )
        self.sweeper = RefreshSweeper(self.sweep, self.settings.sweep_interval_seconds)

    @classmethod
    def from_db(
        cls,
        db_path: Path | str,
        settings: EngineSettings | None = None,
        persist_records: bool = True,
        clock=utc_now,
    ) -> "ComplianceEngine":
        """Engine over a SQLite asset register, optionally persisting aggregates alongside it."""
        records = SqliteRecordTable(db_path) if persist_records else InMemoryRecordTable()
        return cls(SqliteEntityStore(db_path), settings=settings, records=records, clock=clock)

    def start(self) -> None:
        self.sweeper.start()

    def sweep(self) -> int:
        """Periodic upkeep: refresh stale aggregates and drop idle traversal sessions."""
        expired = self.sessions.cleanup_expired()
        if expired:
            logger.info(f"Dropped {expired} idle traversal sessions")
        return self.cache.sweep()

    def shutdown(self, wait: bool = True) -> None:
        self.sweeper.stop()
        self.cache.shutdown(wait=wait)
        logger.info("Compliance engine shut down")

    # ==== Aggregate Read API ====

    def aggregate(
        self,
        node_id: str,
        kind: NodeKind | None = None,
        wait: bool = False,
        timeout: float | None = None,
    ) -> NodeDisplay:
        """
        Status and risk for any node.

        Raises:
            NotFound: unknown node id
            InvalidHierarchy: the node's subtree is structurally broken
        """
        try:
            node = self.store.get_node(node_id, kind)
        except StoreUnavailable:
            # Serve whatever the cache holds without the store.
            return self._cached_only(node_id, kind)
        return self.display(node, wait=wait, timeout=timeout)

    def display(
        self, node: HierarchyNode, wait: bool = False, timeout: float | None = None
    ) -> NodeDisplay:
        """Cached aggregate for property and above, transient rollup for spaces and components."""
        if node.kind not in CACHED_KINDS:
            return self._transient(node)

        if wait:
            record = self.cache.get_or_compute(node.id, node.kind, timeout=timeout)
            is_stale = record is None or record.is_stale(self.clock())
        else:
            record, is_stale = self.cache.get(node.id, node.kind)

        state = self.cache.state(node.id, node.kind)
        if record is None:
            # A refresh that finished after our read still reports as computing.
            if state != RecordState.MISSING:
                state = RecordState.COMPUTING
            return NodeDisplay(node_id=node.id, node_kind=node.kind, state=state, node=node)
        return NodeDisplay(
            node_id=node.id,
            node_kind=node.kind,
            state=state,
            status=record.status,
            risk_score=record.risk_score,
            is_stale=is_stale,
            computed_at=record.computed_at,
            child_counts=record.child_counts,
            node=node,
        )

    def invalidate(self, node_id: str, kind: NodeKind | None = None):
        """Mark a node and its ancestors for recompute. Returns the cascade Future."""
        if kind is None:
            kind = self.store.get_node(node_id).kind
        return self.cache.invalidate(node_id, kind)

    def _transient(self, node: HierarchyNode) -> NodeDisplay:
        try:
            result = self.computer.compute_transient(node)
        except (StoreUnavailable, ComputationTimeout) as e:
            logger.warning(f"Transient rollup for {node.kind} {node.id} unavailable: {e}")
            return NodeDisplay(
                node_id=node.id,
                node_kind=node.kind,
                state=RecordState.MISSING,
                node=node,
                cached=False,
            )
        return NodeDisplay(
            node_id=node.id,
            node_kind=node.kind,
            state=RecordState.FRESH,
            status=result.status,
            risk_score=result.risk_score,
            is_stale=False,
            computed_at=result.computed_at,
            child_counts=result.child_counts,
            node=node,
            cached=False,
        )

    def _cached_only(self, node_id: str, kind: NodeKind | None) -> NodeDisplay:
        kinds = [NodeKind(kind)] if kind is not None else [NodeKind.SCHEME, NodeKind.BLOCK, NodeKind.PROPERTY]
        for candidate in kinds:
            if candidate not in CACHED_KINDS:
                continue
            record = self.cache.peek(node_id, candidate)
            if record is not None:
                return NodeDisplay(
                    node_id=node_id,
                    node_kind=candidate,
                    state=RecordState.STALE,
                    status=record.status,
                    risk_score=record.risk_score,
                    is_stale=True,
                    computed_at=record.computed_at,
                    child_counts=record.child_counts,
                )
        fallback_kind = NodeKind(kind) if kind is not None else NodeKind.PROPERTY
        logger.warning(f"Store unavailable and no cached aggregate for {node_id}")
        return NodeDisplay(node_id=node_id, node_kind=fallback_kind, state=RecordState.MISSING)

    # ==== Traversal API ====

    def _new_session(self, session_id: str) -> TraversalSession:
        return TraversalSession(self.store, page_size=self.settings.page_size, session_id=session_id)

    def session(self, session_id: str | None = None) -> tuple[str, TraversalSession]:
        return self.sessions.get_or_create(session_id)

    def children(
        self,
        session: TraversalSession,
        node_id: str,
        cursor: str | None = None,
        limit: int | None = None,
    ) -> Page:
        """expand() for the first page, load_more() when a cursor is given."""
        if cursor:
            page = session.load_more(node_id, cursor, limit=limit)
        else:
            page = session.expand(node_id, limit=limit)
        # load_more only returns None when cancelled, which the API never does.
        return page if page is not None else Page(items=[])

    def search(self, session: TraversalSession, root_id: str, query: str) -> SearchResult | None:
        if not session.is_materialised(root_id):
            session.expand(root_id)
        return session.search(root_id, query)
