"""
Recompute pipeline for one hierarchy node.

Rollups climb one level at a time: a node's status is derived from its own
direct facts plus the statuses of its immediate children. Cached levels
(scheme, block, property) obtain child records through a lookup supplied by the
aggregate cache; spaces and components are rolled up transiently on every read.
Risk is scored over facts from the node's whole subtree.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta

from compliance_engine.errors import ComputationTimeout, InvalidHierarchy
from compliance_engine.models import (
    CACHED_KINDS,
    AggregateRecord,
    ChildCounts,
    ComplianceFact,
    ComplianceStatus,
    FactType,
    HierarchyNode,
    NodeKind,
    Scope,
)
from compliance_engine.observability.metrics import timed, transient_duration
from compliance_engine.risk import DEFAULT_WEIGHTS, FactSet, RiskWeights, score
from compliance_engine.rollup import count_children, rollup
from compliance_engine.store import EntityStore

logger = logging.getLogger(__name__)

Path = tuple[str, ...]


def utc_now() -> datetime:
    return datetime.now(UTC)


class Deadline:
    """Cooperative time budget checked between store calls."""

    def __init__(self, seconds: float | None, monotonic: Callable[[], float] = time.monotonic):
        self._monotonic = monotonic
        self.expires_at = None if seconds is None else monotonic() + seconds

    @classmethod
    def unbounded(cls) -> "Deadline":
        return cls(None)

    def remaining(self) -> float | None:
        if self.expires_at is None:
            return None
        return max(self.expires_at - self._monotonic(), 0.0)

    def expired(self) -> bool:
        return self.expires_at is not None and self._monotonic() >= self.expires_at

    def check(self, node_id: str) -> None:
        if self.expired():
            raise ComputationTimeout(f"Recompute of {node_id} exceeded its time budget")


ChildLookup = Callable[[HierarchyNode, Deadline, Path], AggregateRecord]


@dataclass(frozen=True)
class TransientAggregate:
    """Uncached aggregate for a space or component."""

    node: HierarchyNode
    status: ComplianceStatus
    risk_score: float
    child_counts: ChildCounts
    computed_at: datetime


class AggregateComputer:
    """Builds AggregateRecords from entity store reads."""

    def __init__(
        self,
        store: EntityStore,
        weights: RiskWeights = DEFAULT_WEIGHTS,
        ttl: timedelta = timedelta(hours=6),
        expiring_window_days: int = 30,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.weights = weights
        self.ttl = ttl
        self.expiring_window_days = expiring_window_days
        self.clock = clock

    # ==== Cached levels ====

    def compute(
        self,
        node: HierarchyNode,
        deadline: Deadline,
        child_lookup: ChildLookup,
        path: Path = (),
    ) -> AggregateRecord:
        """
        Recompute the aggregate for a scheme, block or property.

        Raises:
            InvalidHierarchy: cycle, duplicate child or mis-parented child
            ComputationTimeout: deadline passed between store calls
            StoreUnavailable: entity store read failed
        """
        if node.kind not in CACHED_KINDS:
            raise ValueError(f"{node.kind} aggregates are not cached")
        path = _enter(node, path)
        now = self.clock()
        as_of = now.date()

        high_rise = node.kind == NodeKind.BLOCK and node.is_high_rise
        child_statuses: list[ComplianceStatus] = []
        for child in self._children(node, deadline):
            if child.kind in CACHED_KINDS:
                record = child_lookup(child, deadline, path)
                child_statuses.append(record.status)
                if node.kind == NodeKind.SCHEME and child.kind == NodeKind.BLOCK:
                    high_rise = high_rise or child.is_high_rise
            else:
                status, _ = self._transient_rollup(child, as_of, deadline, path)
                child_statuses.append(status)

        deadline.check(node.id)
        status = rollup(self._own_facts(node), child_statuses, as_of, self.expiring_window_days)

        deadline.check(node.id)
        risk = score(self._subtree_facts(node), as_of, is_high_rise=high_rise, weights=self.weights)
        deadline.check(node.id)

        return AggregateRecord(
            node_id=node.id,
            node_kind=node.kind,
            status=status,
            risk_score=risk,
            computed_at=now,
            child_counts=count_children(child_statuses),
            ttl=self.ttl,
        )

    # ==== Transient levels ====

    @timed(transient_duration)
    def compute_transient(
        self, node: HierarchyNode, deadline: Deadline | None = None
    ) -> TransientAggregate:
        """Direct, uncached rollup for a space or component."""
        if node.kind in CACHED_KINDS:
            raise ValueError(f"{node.kind} aggregates are served from the cache")
        deadline = deadline or Deadline.unbounded()
        now = self.clock()
        as_of = now.date()
        status, counts = self._transient_rollup(node, as_of, deadline, ())
        risk = score(self._subtree_facts(node), as_of, weights=self.weights)
        return TransientAggregate(
            node=node, status=status, risk_score=risk, child_counts=counts, computed_at=now
        )

    def _transient_rollup(
        self, node: HierarchyNode, as_of: date, deadline: Deadline, path: Path
    ) -> tuple[ComplianceStatus, ChildCounts]:
        path = _enter(node, path)
        deadline.check(node.id)

        own: list[ComplianceFact] = self._own_facts(node)
        child_statuses: list[ComplianceStatus] = []
        if node.kind == NodeKind.COMPONENT:
            own.extend(
                self.store.list_facts(
                    node.id, FactType.COMPONENT_CONDITION, Scope.DIRECT, kind=node.kind
                )
            )
        else:
            for child in self._children(node, deadline):
                status, _ = self._transient_rollup(child, as_of, deadline, path)
                child_statuses.append(status)

        status = rollup(own, child_statuses, as_of, self.expiring_window_days)
        return status, count_children(child_statuses)

    # ==== Store reads ====

    def _children(self, node: HierarchyNode, deadline: Deadline) -> list[HierarchyNode]:
        children: list[HierarchyNode] = []
        seen: set[str] = set()
        for child in self.store.iter_children(node.id, node.kind):
            deadline.check(node.id)
            if child.id in seen:
                raise InvalidHierarchy(
                    f"Child {child.id} listed twice under {node.kind} {node.id}", node_id=child.id
                )
            if child.parent_id != node.id:
                raise InvalidHierarchy(
                    f"Child {child.id} listed under {node.id} but attached to {child.parent_id}",
                    node_id=child.id,
                )
            seen.add(child.id)
            children.append(child)
        return children

    def _own_facts(self, node: HierarchyNode) -> list[ComplianceFact]:
        facts: list[ComplianceFact] = []
        for fact_type in (FactType.CERTIFICATE, FactType.REMEDIAL_ACTION):
            facts.extend(self.store.list_facts(node.id, fact_type, Scope.DIRECT, kind=node.kind))
        return facts

    def _subtree_facts(self, node: HierarchyNode) -> FactSet:
        return FactSet(
            certificates=self.store.list_facts(
                node.id, FactType.CERTIFICATE, Scope.SUBTREE, kind=node.kind
            ),
            remedial_actions=self.store.list_facts(
                node.id, FactType.REMEDIAL_ACTION, Scope.SUBTREE, kind=node.kind
            ),
            components=self.store.list_facts(
                node.id, FactType.COMPONENT_CONDITION, Scope.SUBTREE, kind=node.kind
            ),
        )


def _enter(node: HierarchyNode, path: Path) -> Path:
    if node.id in path:
        chain = " -> ".join((*path, node.id))
        raise InvalidHierarchy(f"Cycle detected: {chain}", node_id=node.id)
    return (*path, node.id)
