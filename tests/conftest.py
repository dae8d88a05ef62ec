"""
Test configuration — ensures repo root is in sys.path + determinism guards.

This allows tests to import from top-level packages (compliance_engine, api, cli).
Every test runs with COMPLIANCE_ENGINE_HOME pointed at a temp directory so
nothing touches the live asset register or the user's config.
"""

import sqlite3
import sys
import threading
from datetime import datetime, timedelta
from pathlib import Path

import pytest

# Add repo root to sys.path so tests can import compliance_engine.*, api.*, cli.*
REPO_ROOT = Path(__file__).parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from tests.fixtures.fixture_db import FIXED_NOW, create_fixture_db, guard_no_live_db  # noqa: E402

# =============================================================================
# DETERMINISM GUARD: Block live database access
# =============================================================================

_original_sqlite_connect = sqlite3.connect


def _guarded_sqlite_connect(database, *args, **kwargs):
    """Intercept sqlite3.connect to block live DB access."""
    guard_no_live_db(str(database))
    return _original_sqlite_connect(database, *args, **kwargs)


@pytest.fixture(autouse=True)
def guard_live_db_access(monkeypatch, tmp_path):
    """Automatically guard all tests against live DB access."""
    monkeypatch.setattr(sqlite3, "connect", _guarded_sqlite_connect)
    monkeypatch.setenv("COMPLIANCE_ENGINE_HOME", str(tmp_path / "home"))
    monkeypatch.delenv("COMPLIANCE_ENGINE_DB", raising=False)
    monkeypatch.delenv("COMPLIANCE_ENGINE_CONFIG", raising=False)


# =============================================================================
# CONTROLLED CLOCK
# =============================================================================


class FakeClock:
    """Callable clock for TTL tests. Advance it instead of sleeping."""

    def __init__(self, now: datetime = FIXED_NOW):
        self._now = now
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, **kwargs) -> datetime:
        with self._lock:
            self._now += timedelta(**kwargs)
            return self._now

    def set(self, now: datetime) -> None:
        with self._lock:
            self._now = now


@pytest.fixture
def clock():
    return FakeClock()


# =============================================================================
# FIXTURE DB FOR INTEGRATION TESTS
# =============================================================================


@pytest.fixture(scope="session")
def fixture_db_path(tmp_path_factory):
    """
    Session-scoped fixture DB path for read-only tests.
    Creates once per test session, reused across all tests.
    """
    db_path = tmp_path_factory.mktemp("db") / "fixture_assets.db"
    conn = create_fixture_db(db_path)
    conn.close()
    return db_path


@pytest.fixture
def fresh_db_path(tmp_path):
    """Per-test fixture DB for tests that write (aggregate records, extra rows)."""
    db_path = tmp_path / "assets.db"
    conn = create_fixture_db(db_path)
    conn.close()
    return db_path
