"""
Tests for the ComplianceEngine facade.

Tests cover:
- Cached aggregate reads (blocking and non-blocking)
- Transient rollups for spaces and components
- Serving cached values while the entity store is down
- Invalidation with kind resolution
- Children paging and search through traversal sessions
- Durable records via from_db
"""

import sqlite3

import pytest

from compliance_engine.cache.session_registry import SessionRegistry
from compliance_engine.config import EngineSettings
from compliance_engine.engine import ComplianceEngine
from compliance_engine.errors import NotFound
from compliance_engine.models import ComplianceStatus, NodeKind, RecordState
from compliance_engine.store import SqliteEntityStore
from tests.fixtures.fake_store import ControlledStore


@pytest.fixture
def settings():
    return EngineSettings(aggregate_ttl_seconds=3600, refresh_workers=2, page_size=25)


@pytest.fixture
def store(fixture_db_path):
    return ControlledStore(SqliteEntityStore(fixture_db_path))


@pytest.fixture
def engine(store, settings, clock):
    engine = ComplianceEngine(store, settings=settings, clock=clock)
    yield engine
    engine.shutdown(wait=True)


class TestAggregate:
    """Reads for cached levels."""

    def test_wait_returns_fresh_value(self, engine):
        display = engine.aggregate("blk-tower", wait=True, timeout=10)

        assert display.state == RecordState.FRESH
        assert display.status == ComplianceStatus.NON_COMPLIANT
        assert display.risk_score == 145.0
        assert display.is_stale is False
        assert display.cached is True
        assert display.child_counts.total == 31
        assert display.node.is_high_rise

    def test_cold_read_reports_computing(self, engine):
        """Without wait a missing record yields no status and state COMPUTING."""
        display = engine.aggregate("prop-t02")

        assert display.state == RecordState.COMPUTING
        assert display.status is None
        assert not display.available

    def test_kind_filter(self, engine):
        with pytest.raises(NotFound):
            engine.aggregate("blk-tower", kind=NodeKind.PROPERTY)

    def test_unknown_node(self, engine):
        with pytest.raises(NotFound):
            engine.aggregate("blk-nowhere")

    def test_to_dict(self, engine):
        data = engine.aggregate("prop-l02", wait=True, timeout=5).to_dict()
        assert data["status"] == "EXPIRING_SOON"
        assert data["node_kind"] == "property"
        assert data["state"] == "FRESH"
        assert data["child_counts"] == {
            "total": 0,
            "compliant": 0,
            "non_compliant": 0,
            "expiring": 0,
        }


class TestTransient:
    """Spaces and components are rolled up on every read."""

    def test_component(self, engine):
        display = engine.aggregate("cmp-pump")

        assert display.cached is False
        assert display.state == RecordState.FRESH
        assert display.status == ComplianceStatus.NON_COMPLIANT
        assert display.risk_score == 35.0

    def test_space(self, engine):
        display = engine.aggregate("spc-plant")

        assert display.status == ComplianceStatus.NON_COMPLIANT
        assert display.child_counts.total == 1
        assert display.child_counts.non_compliant == 1

    def test_not_cached(self, engine):
        engine.aggregate("spc-kitchen-t01")
        assert engine.cache.stats().size == 0

    def test_store_failure_degrades(self, engine, store):
        """A store failure mid-rollup returns an unavailable display."""
        node = store.get_node("cmp-pump")
        store.fail = True
        display = engine.display(node)

        assert display.state == RecordState.MISSING
        assert not display.available


class TestStoreDown:
    """The engine keeps answering from the cache when the store is unreachable."""

    def test_serves_cached_record(self, engine, store):
        engine.aggregate("prop-t02", wait=True, timeout=5)
        store.fail = True

        display = engine.aggregate("prop-t02")

        assert display.state == RecordState.STALE
        assert display.is_stale is True
        assert display.status == ComplianceStatus.OVERDUE
        assert display.node_kind == NodeKind.PROPERTY

    def test_nothing_cached(self, engine, store):
        store.fail = True
        display = engine.aggregate("prop-t03")

        assert display.state == RecordState.MISSING
        assert display.status is None


class TestInvalidate:
    def test_kind_resolved_from_store(self, engine):
        """Invalidating a component refreshes its cached ancestors."""
        engine.aggregate("sch-riverside", wait=True, timeout=10)

        refreshed = engine.invalidate("cmp-pump").result(timeout=10)

        assert [r.node_id for r in refreshed] == ["blk-tower", "sch-riverside"]

    def test_unknown_node(self, engine):
        with pytest.raises(NotFound):
            engine.invalidate("cmp-nowhere")


class TestTraversal:
    """Children paging and search through the session registry."""

    def test_session_reused(self, engine):
        sid, session = engine.session()
        assert engine.session(sid) == (sid, session)

    def test_children_pages(self, engine):
        _, session = engine.session()
        first = engine.children(session, "blk-tower")
        rest = engine.children(session, "blk-tower", cursor=first.next_cursor)

        assert len(first.items) == 25
        assert len(rest.items) == 6
        assert not rest.has_more

    def test_children_limit_clamped(self, engine):
        _, session = engine.session()
        page = engine.children(session, "blk-tower", limit=1000)
        assert len(page.items) == 31

    def test_search_expands_unloaded_root(self, engine):
        """Searching under a node the session has not seen loads its first page."""
        _, session = engine.session()
        result = engine.search(session, "spc-kitchen-t01", "boiler")

        assert [r.node.id for r in result.iter_nodes() if r.matched] == ["cmp-boiler-t01"]

    def test_unknown_session_id_replaced(self, engine):
        sid, _ = engine.session("made-up")
        assert sid != "made-up"
        assert sid.startswith("tree-")

    def test_sweep_drops_idle_sessions(self, engine):
        """The periodic sweep releases sessions idle past their TTL."""
        now = [1000.0]
        engine.sessions = SessionRegistry(
            factory=engine._new_session, idle_ttl=60, monotonic=lambda: now[0]
        )
        sid, _ = engine.session()
        now[0] += 61

        engine.sweep()

        assert engine.sessions.stats().size == 0
        assert engine.session(sid)[0] != sid


class TestFromDb:
    def test_records_persist_between_engines(self, fresh_db_path, settings, clock):
        first = ComplianceEngine.from_db(fresh_db_path, settings=settings, clock=clock)
        try:
            first.aggregate("blk-low", wait=True, timeout=10)
        finally:
            first.shutdown()

        conn = sqlite3.connect(fresh_db_path)
        try:
            count = conn.execute("SELECT COUNT(*) FROM aggregate_records").fetchone()[0]
        finally:
            conn.close()
        assert count == 3

        second = ComplianceEngine.from_db(fresh_db_path, settings=settings, clock=clock)
        try:
            display = second.aggregate("blk-low")
            assert display.state == RecordState.FRESH
            assert display.status == ComplianceStatus.ACTION_REQUIRED
        finally:
            second.shutdown()

    def test_in_memory_records(self, fresh_db_path, settings, clock):
        engine = ComplianceEngine.from_db(
            fresh_db_path, settings=settings, persist_records=False, clock=clock
        )
        try:
            engine.aggregate("prop-t01", wait=True, timeout=5)
            assert engine.cache.stats().size == 1
        finally:
            engine.shutdown()
