"""
Centralized configuration for the compliance engine.

Deployment defaults come from environment variables. An optional
``engine.yaml`` in the config directory overrides them per installation.
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from compliance_engine import paths

logger = logging.getLogger(__name__)

# ============================================================
# Aggregate cache
# ============================================================

AGGREGATE_TTL_SECONDS: int = int(os.environ.get("COMPLIANCE_AGGREGATE_TTL", str(6 * 3600)))
"""Age after which a cached aggregate is served as stale and refreshed."""

REFRESH_WORKERS: int = int(os.environ.get("COMPLIANCE_REFRESH_WORKERS", "4"))
"""Worker threads in the background refresh pool."""

REFRESH_TIMEOUT_SECONDS: float = float(os.environ.get("COMPLIANCE_REFRESH_TIMEOUT", "30"))
"""Budget for one recompute; exceeding it abandons the result."""

RETRY_BACKOFF_SECONDS: float = float(os.environ.get("COMPLIANCE_RETRY_BACKOFF", "60"))
"""Minimum delay before a failed refresh is rescheduled."""

SWEEP_INTERVAL_SECONDS: float = float(os.environ.get("COMPLIANCE_SWEEP_INTERVAL", "300"))
"""Period of the background stale-record sweep."""

EXPIRING_WINDOW_DAYS: int = int(os.environ.get("COMPLIANCE_EXPIRING_WINDOW_DAYS", "30"))
"""Certificates expiring within this many days roll up as EXPIRING_SOON."""

# ============================================================
# Traversal
# ============================================================

DEFAULT_PAGE_SIZE: int = int(os.environ.get("COMPLIANCE_PAGE_SIZE", "25"))
"""Children returned per expand / load-more call."""

MIN_PAGE_SIZE: int = 10
MAX_PAGE_SIZE: int = 100

SESSION_TTL_SECONDS: int = int(os.environ.get("COMPLIANCE_SESSION_TTL", "3600"))
"""Idle lifetime of a traversal session."""

MAX_SESSIONS: int = int(os.environ.get("COMPLIANCE_MAX_SESSIONS", "500"))
"""Traversal sessions kept before least-recently-used eviction."""

# ============================================================
# Logging
# ============================================================

LOG_LEVEL: str = os.environ.get("COMPLIANCE_LOG_LEVEL", "INFO")


@dataclass
class EngineSettings:
    """Resolved settings for one engine instance."""

    aggregate_ttl_seconds: int = AGGREGATE_TTL_SECONDS
    refresh_workers: int = REFRESH_WORKERS
    refresh_timeout_seconds: float = REFRESH_TIMEOUT_SECONDS
    retry_backoff_seconds: float = RETRY_BACKOFF_SECONDS
    sweep_interval_seconds: float = SWEEP_INTERVAL_SECONDS
    expiring_window_days: int = EXPIRING_WINDOW_DAYS
    page_size: int = DEFAULT_PAGE_SIZE
    session_ttl_seconds: int = SESSION_TTL_SECONDS
    max_sessions: int = MAX_SESSIONS
    risk_weights: dict[str, float] = field(default_factory=dict)

    def __post_init__(self):
        if self.aggregate_ttl_seconds <= 0:
            raise ValueError("aggregate_ttl_seconds must be positive")
        if self.refresh_workers < 1:
            raise ValueError("refresh_workers must be >= 1")
        if self.refresh_timeout_seconds <= 0:
            raise ValueError("refresh_timeout_seconds must be positive")
        if not MIN_PAGE_SIZE <= self.page_size <= MAX_PAGE_SIZE:
            raise ValueError(f"page_size must be between {MIN_PAGE_SIZE} and {MAX_PAGE_SIZE}")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EngineSettings":
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            if key in known:
                kwargs[key] = value
            else:
                logger.warning(f"Ignoring unknown engine setting: {key}")
        return cls(**kwargs)


def load_settings(path: Path | None = None) -> EngineSettings:
    """
    Load engine settings.

    Reads *path*, or paths.config_file() by default, when present; keys in
    the file override the environment defaults above.
    """
    if path is None:
        path = paths.config_file()

    if not path.exists():
        logger.debug(f"No engine config at {path}, using defaults")
        return EngineSettings()

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Engine config must be a mapping: {path}")

    logger.info(f"Loaded engine config from {path}")
    return EngineSettings.from_dict(data)
