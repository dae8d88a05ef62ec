# UKHDS Compliance Engine - Core Library
"""
Hierarchical compliance aggregation and risk scoring for social-housing assets.
"""

from .engine import ComplianceEngine, NodeDisplay
from .errors import ComputationTimeout, EngineError, InvalidHierarchy, NotFound, StoreUnavailable
from .models import AggregateRecord, ComplianceStatus, HierarchyNode, NodeKind
from .rollup import rollup
from .risk import RiskWeights, score

__all__ = [
    "ComplianceEngine",
    "NodeDisplay",
    "AggregateRecord",
    "ComplianceStatus",
    "HierarchyNode",
    "NodeKind",
    "RiskWeights",
    "rollup",
    "score",
    "EngineError",
    "NotFound",
    "StoreUnavailable",
    "ComputationTimeout",
    "InvalidHierarchy",
]
