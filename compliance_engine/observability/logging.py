"""
Log formatting for the engine: JSON for deployments, one-line text for the CLI.

Both formatters stamp each line with the bound log context (request id,
traversal session, node under recompute) and with engine fields passed through
``extra=``.
"""

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

from .context import CONTEXT_FIELDS, RequestContext, current_fields, generate_request_id

REQUEST_ID_HEADER = b"x-request-id"
SESSION_HEADER = b"x-tree-session"

# Engine fields callers may pass via ``extra=``; anything else on the record is ignored.
ENGINE_FIELDS = (
    *CONTEXT_FIELDS,
    "status",
    "risk_score",
    "state",
    "duration_ms",
    "scheduled",
    "cursor",
)

_ENGINE_LOGGERS = ("compliance_engine", "api", "cli")


def _context_for(record: logging.LogRecord) -> dict[str, Any]:
    fields = current_fields()
    for name in ENGINE_FIELDS:
        value = record.__dict__.get(name)
        if value is not None:
            fields[name] = value
    return fields


class JSONFormatter(logging.Formatter):
    """
    One JSON object per line:

    {"timestamp": "2025-06-01T09:00:00.000Z", "level": "INFO",
     "logger": "compliance_engine.cache.aggregate_cache",
     "message": "Refreshed block blk-12", "request_id": "req-3f9a",
     "node_id": "blk-12", "node_kind": "block", "status": "OVERDUE"}
    """

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, UTC)
        log_obj: dict[str, Any] = {
            "timestamp": created.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_context_for(record),
        }
        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_obj, default=str)


class HumanFormatter(logging.Formatter):
    """``09:00:00 INFO  aggregate_cache [req-3f9a blk-12] message``"""

    def format(self, record: logging.LogRecord) -> str:
        fields = _context_for(record)
        tags = [
            str(fields[name])[:16]
            for name in ("request_id", "session_id", "node_id")
            if name in fields
        ]
        tag = f" [{' '.join(tags)}]" if tags else ""
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        short_name = record.name.rsplit(".", 1)[-1]
        line = f"{stamp} {record.levelname:<5} {short_name}{tag} {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(level: str = "INFO", json_format: bool | None = None) -> None:
    """
    Route engine, API and CLI logs to stderr.

    Args:
        level: Log level for the engine's own loggers
        json_format: JSON lines. If None, JSON unless stderr is a TTY.
    """
    if json_format is None:
        json_format = not sys.stderr.isatty()

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if json_format else HumanFormatter())

    root = logging.getLogger()
    for existing in root.handlers[:]:
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(logging.WARNING)

    for name in _ENGINE_LOGGERS:
        logging.getLogger(name).setLevel(level.upper())


class CorrelationIdMiddleware:
    """
    ASGI middleware binding X-Request-ID (echoed or generated) and any
    X-Tree-Session the client sent to the log context of the request.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = dict(scope.get("headers", []))
        request_id = headers.get(REQUEST_ID_HEADER, b"").decode("latin-1") or generate_request_id()
        session_id = headers.get(SESSION_HEADER, b"").decode("latin-1") or None

        async def send_with_id(message):
            if message["type"] == "http.response.start":
                message["headers"] = [
                    *message.get("headers", []),
                    (REQUEST_ID_HEADER, request_id.encode("latin-1")),
                ]
            await send(message)

        with RequestContext(request_id=request_id, session_id=session_id):
            await self.app(scope, receive, send_with_id)
