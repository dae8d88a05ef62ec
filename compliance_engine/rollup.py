"""
Status rollup: worst-wins reduction over a fixed severity order.

A node's status is the most severe status among its own direct facts and the
already-computed statuses of its immediate children. Grandchild facts are never
read directly; rollups always climb one level at a time.
"""

from collections.abc import Iterable
from datetime import date, timedelta

from compliance_engine.models import (
    STATUS_ORDER,
    Certificate,
    CertificateOutcome,
    CertificateStatus,
    ChildCounts,
    ComplianceFact,
    ComplianceStatus,
    ComponentCondition,
    Condition,
    RemedialAction,
)

_RANK = {status: index for index, status in enumerate(STATUS_ORDER)}

BREACH_OUTCOMES = frozenset(
    {
        CertificateOutcome.UNSATISFACTORY,
        CertificateOutcome.FAIL,
        CertificateOutcome.IMMEDIATELY_DANGEROUS,
    }
)

PENDING_CERTIFICATE_STATUSES = frozenset(
    {
        CertificateStatus.UPLOADED,
        CertificateStatus.PROCESSING,
        CertificateStatus.EXTRACTED,
        CertificateStatus.NEEDS_REVIEW,
    }
)

NON_COMPLIANT_FAMILY = frozenset(
    {
        ComplianceStatus.NON_COMPLIANT,
        ComplianceStatus.OVERDUE,
        ComplianceStatus.ACTION_REQUIRED,
    }
)


def severity_rank(status: ComplianceStatus) -> int:
    """0 for the most severe status."""
    return _RANK[status]


def worst(statuses: Iterable[ComplianceStatus]) -> ComplianceStatus:
    """
    Return the most severe status present, or UNKNOWN for an empty input.

    Order-independent: the result depends only on the set of statuses.
    """
    present = set(statuses)
    for status in STATUS_ORDER:
        if status in present:
            return status
    return ComplianceStatus.UNKNOWN


def certificate_status(
    cert: Certificate, as_of: date, expiring_window_days: int = 30
) -> ComplianceStatus:
    candidates: list[ComplianceStatus] = []

    if cert.outcome in BREACH_OUTCOMES:
        candidates.append(ComplianceStatus.NON_COMPLIANT)
    if cert.expiry_date is not None:
        if cert.expiry_date < as_of:
            candidates.append(ComplianceStatus.OVERDUE)
        elif cert.expiry_date <= as_of + timedelta(days=expiring_window_days):
            candidates.append(ComplianceStatus.EXPIRING_SOON)
    if cert.outcome == CertificateOutcome.AT_RISK:
        candidates.append(ComplianceStatus.ACTION_REQUIRED)
    if cert.status in PENDING_CERTIFICATE_STATUSES:
        candidates.append(ComplianceStatus.PENDING)
    elif cert.status == CertificateStatus.APPROVED:
        candidates.append(ComplianceStatus.COMPLIANT)

    return worst(candidates)


def action_status(action: RemedialAction, as_of: date) -> ComplianceStatus:
    if not action.is_open:
        return ComplianceStatus.UNKNOWN
    if action.due_date is not None and action.due_date < as_of:
        return ComplianceStatus.OVERDUE
    return ComplianceStatus.ACTION_REQUIRED


def condition_status(component: ComponentCondition) -> ComplianceStatus:
    if not component.is_active:
        return ComplianceStatus.UNKNOWN
    if component.condition == Condition.CRITICAL:
        return ComplianceStatus.NON_COMPLIANT
    if component.condition == Condition.POOR:
        return ComplianceStatus.ACTION_REQUIRED
    if component.needs_verification:
        return ComplianceStatus.PENDING
    if component.condition in (Condition.GOOD, Condition.FAIR):
        return ComplianceStatus.COMPLIANT
    return ComplianceStatus.UNKNOWN


def fact_status(
    fact: ComplianceFact, as_of: date, expiring_window_days: int = 30
) -> ComplianceStatus:
    """Map a single compliance fact to the status it contributes."""
    if isinstance(fact, Certificate):
        return certificate_status(fact, as_of, expiring_window_days)
    if isinstance(fact, RemedialAction):
        return action_status(fact, as_of)
    if isinstance(fact, ComponentCondition):
        return condition_status(fact)
    raise TypeError(f"Unsupported compliance fact: {type(fact).__name__}")


def rollup(
    own_facts: Iterable[ComplianceFact],
    child_statuses: Iterable[ComplianceStatus],
    as_of: date,
    expiring_window_days: int = 30,
) -> ComplianceStatus:
    """
    Roll a node's own facts and its children's statuses into one status.

    An own UNKNOWN never masks a known child status, since UNKNOWN sorts last.
    """
    own = (fact_status(fact, as_of, expiring_window_days) for fact in own_facts)
    return worst([*own, *child_statuses])


def count_children(statuses: Iterable[ComplianceStatus]) -> ChildCounts:
    """Summarise immediate child statuses for an AggregateRecord."""
    total = compliant = non_compliant = expiring = 0
    for status in statuses:
        total += 1
        if status == ComplianceStatus.COMPLIANT:
            compliant += 1
        elif status in NON_COMPLIANT_FAMILY:
            non_compliant += 1
        elif status == ComplianceStatus.EXPIRING_SOON:
            expiring += 1
    return ChildCounts(
        total=total, compliant=compliant, non_compliant=non_compliant, expiring=expiring
    )
