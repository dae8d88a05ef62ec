"""
Error taxonomy for the aggregation engine.

Transient errors (StoreUnavailable, ComputationTimeout) are absorbed at the
aggregate cache boundary. Structural errors (InvalidHierarchy) and NotFound
propagate to callers.
"""


class EngineError(Exception):
    """Base class for all engine errors."""

    pass


class NotFound(EngineError):
    """Raised when a node id does not exist in the entity store."""

    def __init__(self, node_id: str, kind: str | None = None):
        self.node_id = node_id
        self.kind = kind
        label = f"{kind} {node_id}" if kind else node_id
        super().__init__(f"Node not found: {label}")


class StoreUnavailable(EngineError):
    """Raised when an entity store read fails. Recoverable."""

    pass


class ComputationTimeout(EngineError):
    """Raised when a recompute exceeds its time budget. Recoverable."""

    pass


class InvalidHierarchy(EngineError):
    """Raised on a cycle or multi-parent attachment. Fatal for the affected subtree."""

    def __init__(self, message: str, node_id: str | None = None):
        self.node_id = node_id
        super().__init__(message)
