"""
Domain types for the UKHDS asset hierarchy and its compliance aggregates.

Hierarchy: Organisation -> Scheme -> Block -> Property -> Space -> Component.
Spaces attach to exactly one of Scheme, Block or Property.
"""

from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from enum import StrEnum
from typing import Any


class NodeKind(StrEnum):
    """Hierarchy levels below the organisation."""

    SCHEME = "scheme"
    BLOCK = "block"
    PROPERTY = "property"
    SPACE = "space"
    COMPONENT = "component"


# Levels that get a cached AggregateRecord
CACHED_KINDS = frozenset({NodeKind.SCHEME, NodeKind.BLOCK, NodeKind.PROPERTY})

# Sort rank used for stable child ordering (kind first, then name)
KIND_RANK = {
    NodeKind.SCHEME: 0,
    NodeKind.BLOCK: 1,
    NodeKind.PROPERTY: 2,
    NodeKind.SPACE: 3,
    NodeKind.COMPONENT: 4,
}


class ComplianceStatus(StrEnum):
    """Aggregate compliance status. Declaration order is severity order."""

    NON_COMPLIANT = "NON_COMPLIANT"
    OVERDUE = "OVERDUE"
    ACTION_REQUIRED = "ACTION_REQUIRED"
    EXPIRING_SOON = "EXPIRING_SOON"
    PENDING = "PENDING"
    COMPLIANT = "COMPLIANT"
    UNKNOWN = "UNKNOWN"


# Index 0 = most severe
STATUS_ORDER: tuple[ComplianceStatus, ...] = tuple(ComplianceStatus)


class RecordState(StrEnum):
    """Lifecycle of an AggregateRecord as seen by readers."""

    MISSING = "MISSING"
    COMPUTING = "COMPUTING"
    FRESH = "FRESH"
    STALE = "STALE"


class FactType(StrEnum):
    CERTIFICATE = "certificate"
    REMEDIAL_ACTION = "remedial_action"
    COMPONENT_CONDITION = "component_condition"


class Scope(StrEnum):
    DIRECT = "direct"
    SUBTREE = "subtree"


class CertificateType(StrEnum):
    GAS_SAFETY = "GAS_SAFETY"
    EICR = "EICR"
    EPC = "EPC"
    FIRE_RISK_ASSESSMENT = "FIRE_RISK_ASSESSMENT"
    LEGIONELLA_ASSESSMENT = "LEGIONELLA_ASSESSMENT"
    ASBESTOS_SURVEY = "ASBESTOS_SURVEY"
    LIFT_LOLER = "LIFT_LOLER"
    OTHER = "OTHER"


class CertificateStatus(StrEnum):
    UPLOADED = "UPLOADED"
    PROCESSING = "PROCESSING"
    EXTRACTED = "EXTRACTED"
    NEEDS_REVIEW = "NEEDS_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"


class CertificateOutcome(StrEnum):
    SATISFACTORY = "SATISFACTORY"
    UNSATISFACTORY = "UNSATISFACTORY"
    PASS = "PASS"
    FAIL = "FAIL"
    AT_RISK = "AT_RISK"
    IMMEDIATELY_DANGEROUS = "IMMEDIATELY_DANGEROUS"


class Severity(StrEnum):
    IMMEDIATE = "IMMEDIATE"
    URGENT = "URGENT"
    PRIORITY = "PRIORITY"
    ROUTINE = "ROUTINE"
    ADVISORY = "ADVISORY"


class ActionStatus(StrEnum):
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    SCHEDULED = "SCHEDULED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


CLOSED_ACTION_STATUSES = frozenset({ActionStatus.COMPLETED, ActionStatus.CANCELLED})


class Condition(StrEnum):
    GOOD = "GOOD"
    FAIR = "FAIR"
    POOR = "POOR"
    CRITICAL = "CRITICAL"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: str | None) -> "Condition":
        """Conditions are free text in the asset register; match case-insensitively."""
        if not value:
            return cls.UNKNOWN
        try:
            return cls(value.strip().upper())
        except ValueError:
            return cls.UNKNOWN


# ============================================================
# Parent attachment
# ============================================================


@dataclass(frozen=True)
class OrganisationParent:
    id: str
    kind = None


@dataclass(frozen=True)
class SchemeParent:
    id: str
    kind = NodeKind.SCHEME


@dataclass(frozen=True)
class BlockParent:
    id: str
    kind = NodeKind.BLOCK


@dataclass(frozen=True)
class PropertyParent:
    id: str
    kind = NodeKind.PROPERTY


@dataclass(frozen=True)
class SpaceParent:
    id: str
    kind = NodeKind.SPACE


ParentRef = OrganisationParent | SchemeParent | BlockParent | PropertyParent | SpaceParent

_PARENT_TYPES = {
    NodeKind.SCHEME: SchemeParent,
    NodeKind.BLOCK: BlockParent,
    NodeKind.PROPERTY: PropertyParent,
    NodeKind.SPACE: SpaceParent,
}


def parent_ref(kind: NodeKind, parent_id: str) -> ParentRef:
    """Build the tagged parent reference for a parent of the given kind."""
    return _PARENT_TYPES[kind](parent_id)


@dataclass(frozen=True)
class HierarchyNode:
    """One node of the asset hierarchy. Children live in traversal view state."""

    id: str
    kind: NodeKind
    name: str
    reference: str | None = None
    parent: ParentRef | None = None
    stored_status: str | None = None
    is_high_rise: bool = False

    @property
    def parent_id(self) -> str | None:
        return self.parent.id if self.parent is not None else None

    def matches(self, query: str) -> bool:
        """Case-insensitive substring match on name or reference."""
        needle = query.lower()
        if needle in self.name.lower():
            return True
        return bool(self.reference) and needle in self.reference.lower()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": str(self.kind),
            "name": self.name,
            "reference": self.reference,
            "parent_id": self.parent_id,
            "parent_kind": str(self.parent.kind) if self.parent and self.parent.kind else None,
            "stored_status": self.stored_status,
            "is_high_rise": self.is_high_rise,
        }


# ============================================================
# Compliance facts (immutable snapshots owned by the entity store)
# ============================================================


@dataclass(frozen=True)
class Certificate:
    id: str
    certificate_type: CertificateType
    status: CertificateStatus
    outcome: CertificateOutcome | None = None
    issue_date: date | None = None
    expiry_date: date | None = None
    attached_kind: NodeKind | None = None
    attached_id: str | None = None


@dataclass(frozen=True)
class RemedialAction:
    id: str
    severity: Severity
    status: ActionStatus
    due_date: date | None = None
    certificate_id: str | None = None
    attached_kind: NodeKind | None = None
    attached_id: str | None = None

    @property
    def is_open(self) -> bool:
        return self.status not in CLOSED_ACTION_STATUSES


@dataclass(frozen=True)
class ComponentCondition:
    id: str
    condition: Condition
    needs_verification: bool = False
    is_active: bool = True
    attached_kind: NodeKind | None = None
    attached_id: str | None = None


ComplianceFact = Certificate | RemedialAction | ComponentCondition


# ============================================================
# Aggregates
# ============================================================

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)
"""computed_at value of an invalidated record."""


@dataclass(frozen=True)
class ChildCounts:
    total: int = 0
    compliant: int = 0
    non_compliant: int = 0
    expiring: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "compliant": self.compliant,
            "non_compliant": self.non_compliant,
            "expiring": self.expiring,
        }


@dataclass(frozen=True)
class AggregateRecord:
    """Cached rollup for one (node_id, node_kind)."""

    node_id: str
    node_kind: NodeKind
    status: ComplianceStatus
    risk_score: float
    computed_at: datetime
    child_counts: ChildCounts = field(default_factory=ChildCounts)
    ttl: timedelta = timedelta(hours=6)

    @property
    def key(self) -> tuple[str, NodeKind]:
        return (self.node_id, self.node_kind)

    @property
    def is_invalidated(self) -> bool:
        return self.computed_at <= EPOCH

    def is_stale(self, now: datetime) -> bool:
        return now - self.computed_at > self.ttl

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "node_kind": str(self.node_kind),
            "status": str(self.status),
            "risk_score": self.risk_score,
            "computed_at": self.computed_at.isoformat(),
            "child_counts": self.child_counts.to_dict(),
            "ttl_seconds": int(self.ttl.total_seconds()),
        }


@dataclass
class Page:
    """One page of a cursor-paginated listing."""

    items: list[Any]
    next_cursor: str | None = None
    remaining_count: int = 0

    @property
    def has_more(self) -> bool:
        return self.next_cursor is not None

    def next_batch_size(self, page_size: int) -> int:
        """Size of the next "Show N more" batch."""
        return min(page_size, self.remaining_count)
