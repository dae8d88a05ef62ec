"""
Log context bound through contextvars.

Fields bound here (request id, traversal session, the node being recomputed)
are added to every log line the formatters write inside the block. Refresh
jobs run on pool threads, which start with an empty context, so they bind
their own node fields.
"""

import contextvars
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from types import MappingProxyType
from typing import Any

CONTEXT_FIELDS = ("request_id", "session_id", "node_id", "node_kind")

_EMPTY: MappingProxyType = MappingProxyType({})
_log_context: contextvars.ContextVar[MappingProxyType] = contextvars.ContextVar(
    "log_context", default=_EMPTY
)


def current_fields() -> dict[str, Any]:
    """Fields bound in the current context, innermost binding winning."""
    return dict(_log_context.get())


def get_request_id() -> str | None:
    return _log_context.get().get("request_id")


def set_request_id(request_id: str) -> contextvars.Token:
    """Bind a request id without a block. Returns the token for reset."""
    return _push({"request_id": request_id})


def generate_request_id() -> str:
    return f"req-{uuid.uuid4().hex[:16]}"


def _push(fields: dict[str, Any]) -> contextvars.Token:
    unknown = set(fields) - set(CONTEXT_FIELDS)
    if unknown:
        raise ValueError(f"Unknown log context fields: {sorted(unknown)}")
    merged = {**_log_context.get(), **{k: v for k, v in fields.items() if v is not None}}
    return _log_context.set(MappingProxyType(merged))


@contextmanager
def bind(**fields: Any) -> Iterator[None]:
    """
    Add *fields* to the log context for the duration of the block.

    Usage:
        with bind(node_id="blk-12", node_kind="block"):
            logger.info("Recomputing")
    """
    token = _push(fields)
    try:
        yield
    finally:
        _log_context.reset(token)


class RequestContext:
    """
    Request-scoped log context: a request id and, for tree calls, the session.

    Usage:
        with RequestContext() as ctx:
            logger.info("Expanding node")  # log lines carry ctx.request_id

        with RequestContext(request_id="req-abc123", session_id="tree-9f2c"):
            ...
    """

    def __init__(self, request_id: str | None = None, session_id: str | None = None):
        self.request_id = request_id or generate_request_id()
        self.session_id = session_id
        self._token: contextvars.Token | None = None

    def __enter__(self) -> "RequestContext":
        self._token = _push({"request_id": self.request_id, "session_id": self.session_id})
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._token is not None:
            _log_context.reset(self._token)
            self._token = None
