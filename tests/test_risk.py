"""
Tests for the risk score calculator.

Tests cover:
- Each weighted signal
- Distinct-entity counting
- High-rise flag
- Weight overrides and validation
"""

from datetime import date

import pytest

from compliance_engine.models import (
    ActionStatus,
    Certificate,
    CertificateStatus,
    CertificateType,
    ComponentCondition,
    Condition,
    RemedialAction,
    Severity,
)
from compliance_engine.risk import DEFAULT_WEIGHTS, FactSet, RiskWeights, breakdown, score

AS_OF = date(2025, 6, 1)


def _cert(cert_id: str, expiry: date | None) -> Certificate:
    return Certificate(
        id=cert_id,
        certificate_type=CertificateType.EICR,
        status=CertificateStatus.APPROVED,
        expiry_date=expiry,
    )


def _action(
    action_id: str,
    severity: Severity = Severity.ROUTINE,
    status: ActionStatus = ActionStatus.OPEN,
    due: date | None = None,
) -> RemedialAction:
    return RemedialAction(id=action_id, severity=severity, status=status, due_date=due)


class TestRiskSignals:
    """One test per weighted signal."""

    def test_no_facts_scores_zero(self):
        """An empty subtree has no risk."""
        assert score(FactSet(), AS_OF) == 0.0

    def test_expired_certificate(self):
        """One expired and one valid certificate score 25."""
        facts = FactSet(
            certificates=[_cert("old", date(2025, 3, 1)), _cert("new", date(2027, 1, 1))]
        )
        assert score(facts, AS_OF) == 25.0

    def test_expiring_within_seven_days(self):
        """Expiry in [as_of, as_of + 7) scores 15; day 7 does not."""
        facts = FactSet(
            certificates=[
                _cert("today", AS_OF),
                _cert("day6", date(2025, 6, 7)),
                _cert("day7", date(2025, 6, 8)),
            ]
        )
        result = breakdown(facts, AS_OF)
        assert result.expiring_certificates == 2
        assert result.score == 30.0

    def test_urgent_open_actions(self):
        """Open IMMEDIATE and URGENT actions score 30 each; closed ones do not."""
        facts = FactSet(
            remedial_actions=[
                _action("a1", Severity.IMMEDIATE),
                _action("a2", Severity.URGENT),
                _action("a3", Severity.URGENT, status=ActionStatus.COMPLETED),
                _action("a4", Severity.ROUTINE),
            ]
        )
        assert breakdown(facts, AS_OF).urgent_actions == 2
        assert score(facts, AS_OF) == 60.0

    def test_overdue_actions(self):
        """Open actions past due score 20."""
        facts = FactSet(
            remedial_actions=[
                _action("a1", due=date(2025, 5, 1)),
                _action("a2", due=date(2025, 7, 1)),
                _action("a3", due=date(2025, 5, 1), status=ActionStatus.CANCELLED),
            ]
        )
        assert score(facts, AS_OF) == 20.0

    def test_urgent_and_overdue_both_count(self):
        """An urgent overdue action scores both signals."""
        facts = FactSet(remedial_actions=[_action("a1", Severity.URGENT, due=date(2025, 5, 20))])
        assert score(facts, AS_OF) == 50.0

    def test_critical_components(self):
        """Active CRITICAL components score 35; inactive ones do not."""
        facts = FactSet(
            components=[
                ComponentCondition(id="c1", condition=Condition.CRITICAL),
                ComponentCondition(id="c2", condition=Condition.CRITICAL, is_active=False),
                ComponentCondition(id="c3", condition=Condition.POOR),
            ]
        )
        assert score(facts, AS_OF) == 35.0

    def test_high_rise_flag(self):
        """High-rise adds 10 once."""
        assert score(FactSet(), AS_OF, is_high_rise=True) == 10.0


class TestDistinctCounting:
    """Duplicate joins must not double-count an entity."""

    def test_duplicate_certificate_rows_count_once(self):
        """The same certificate id appearing twice counts once."""
        expired = _cert("dup", date(2025, 1, 1))
        facts = FactSet(certificates=[expired, expired])
        assert score(facts, AS_OF) == 25.0

    def test_two_expired_certificates_count_twice(self):
        """Distinct certificates of the same type each count."""
        facts = FactSet(
            certificates=[_cert("a", date(2025, 1, 1)), _cert("b", date(2025, 2, 1))]
        )
        assert score(facts, AS_OF) == 50.0


class TestRiskWeights:
    """Configurable weights."""

    def test_defaults(self):
        """Default weights match the published model."""
        assert DEFAULT_WEIGHTS.to_dict() == {
            "expired_certificate": 25.0,
            "expiring_certificate": 15.0,
            "urgent_action": 30.0,
            "overdue_action": 20.0,
            "critical_component": 35.0,
            "high_rise": 10.0,
        }

    def test_partial_override(self):
        """from_dict overrides only the keys given."""
        weights = RiskWeights.from_dict({"high_rise": 50})
        assert weights.high_rise == 50.0
        assert weights.expired_certificate == 25.0
        assert score(FactSet(), AS_OF, is_high_rise=True, weights=weights) == 50.0

    def test_empty_override_is_default(self):
        """None or {} gives the defaults."""
        assert RiskWeights.from_dict(None) == DEFAULT_WEIGHTS
        assert RiskWeights.from_dict({}) == DEFAULT_WEIGHTS

    def test_unknown_weight_rejected(self):
        """Typos in weight names are errors."""
        with pytest.raises(ValueError, match="Unknown risk weights"):
            RiskWeights.from_dict({"expired_certs": 10})

    def test_negative_weight_rejected(self):
        """Scores stay non-negative."""
        with pytest.raises(ValueError):
            RiskWeights(urgent_action=-1)
