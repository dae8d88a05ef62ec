"""
Risk scoring over a node's full subtree.

score = w_expired * expired certificates
      + w_expiring * certificates expiring within 7 days
      + w_urgent * open IMMEDIATE/URGENT remedial actions
      + w_overdue * open remedial actions past due
      + w_critical * active components in CRITICAL condition
      + w_high_rise * high-rise flag (blocks and schemes only)

Counts are distinct by entity id. The score is unbounded; display tiers are
applied by callers.
"""

from collections.abc import Iterable
from dataclasses import asdict, dataclass, field, fields
from datetime import date, timedelta
from typing import Any

from compliance_engine.models import (
    Certificate,
    ComponentCondition,
    Condition,
    RemedialAction,
    Severity,
)

EXPIRING_SOON_DAYS = 7
URGENT_SEVERITIES = frozenset({Severity.IMMEDIATE, Severity.URGENT})


@dataclass(frozen=True)
class RiskWeights:
    """Weights applied to each risk signal."""

    expired_certificate: float = 25.0
    expiring_certificate: float = 15.0
    urgent_action: float = 30.0
    overdue_action: float = 20.0
    critical_component: float = 35.0
    high_rise: float = 10.0

    def __post_init__(self):
        for f in fields(self):
            if getattr(self, f.name) < 0:
                raise ValueError(f"Risk weight {f.name} must be non-negative")

    @classmethod
    def from_dict(cls, overrides: dict[str, Any] | None) -> "RiskWeights":
        """Build weights from a partial mapping (e.g. engine.yaml risk_weights)."""
        if not overrides:
            return cls()
        known = {f.name for f in fields(cls)}
        unknown = set(overrides) - known
        if unknown:
            raise ValueError(f"Unknown risk weights: {sorted(unknown)}")
        return cls(**{k: float(v) for k, v in overrides.items()})

    def to_dict(self) -> dict[str, float]:
        return asdict(self)


DEFAULT_WEIGHTS = RiskWeights()


@dataclass
class FactSet:
    """Compliance facts gathered for one scoring pass."""

    certificates: list[Certificate] = field(default_factory=list)
    remedial_actions: list[RemedialAction] = field(default_factory=list)
    components: list[ComponentCondition] = field(default_factory=list)


@dataclass(frozen=True)
class RiskBreakdown:
    expired_certificates: int
    expiring_certificates: int
    urgent_actions: int
    overdue_actions: int
    critical_components: int
    is_high_rise: bool
    score: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _distinct(items: Iterable, predicate) -> int:
    return len({item.id for item in items if predicate(item)})


def breakdown(
    facts: FactSet,
    as_of: date,
    is_high_rise: bool = False,
    weights: RiskWeights = DEFAULT_WEIGHTS,
) -> RiskBreakdown:
    """Count each risk signal and apply the weights."""
    expiring_cutoff = as_of + timedelta(days=EXPIRING_SOON_DAYS)

    expired = _distinct(
        facts.certificates,
        lambda c: c.expiry_date is not None and c.expiry_date < as_of,
    )
    expiring = _distinct(
        facts.certificates,
        lambda c: c.expiry_date is not None and as_of <= c.expiry_date < expiring_cutoff,
    )
    urgent = _distinct(
        facts.remedial_actions,
        lambda a: a.is_open and a.severity in URGENT_SEVERITIES,
    )
    overdue = _distinct(
        facts.remedial_actions,
        lambda a: a.is_open and a.due_date is not None and a.due_date < as_of,
    )
    critical = _distinct(
        facts.components,
        lambda c: c.is_active and c.condition == Condition.CRITICAL,
    )

    total = (
        weights.expired_certificate * expired
        + weights.expiring_certificate * expiring
        + weights.urgent_action * urgent
        + weights.overdue_action * overdue
        + weights.critical_component * critical
        + (weights.high_rise if is_high_rise else 0.0)
    )

    return RiskBreakdown(
        expired_certificates=expired,
        expiring_certificates=expiring,
        urgent_actions=urgent,
        overdue_actions=overdue,
        critical_components=critical,
        is_high_rise=is_high_rise,
        score=float(total),
    )


def score(
    facts: FactSet,
    as_of: date,
    is_high_rise: bool = False,
    weights: RiskWeights = DEFAULT_WEIGHTS,
) -> float:
    """Raw, non-negative risk score."""
    return breakdown(facts, as_of, is_high_rise, weights).score
