"""
Tests for lazy tree traversal sessions and the session registry.

Tests cover:
- Eager loading of schemes and their immediate children
- Paged expansion with "show N more" continuation
- Re-expansion served from view state without store reads
- Cancelled load-more leaves view state untouched
- Search over the materialised subtree keeps ancestors of matches
- Multi-parent attachment rejected
- Session registry idle expiry and LRU eviction
"""

import threading

import pytest

from compliance_engine.cache.session_registry import SessionRegistry
from compliance_engine.errors import InvalidHierarchy, NotFound
from compliance_engine.models import HierarchyNode, NodeKind, SchemeParent
from compliance_engine.store import SqliteEntityStore
from compliance_engine.traversal import TraversalSession
from tests.fixtures.fake_store import ControlledStore, DictStore
from tests.fixtures.fixture_db import TOWER_FLATS


@pytest.fixture
def store(fixture_db_path):
    return ControlledStore(SqliteEntityStore(fixture_db_path))


@pytest.fixture
def session(store):
    return TraversalSession(store, page_size=25, session_id="test-session")


def ids(nodes) -> list[str]:
    return [node.id for node in nodes]


class TestOpen:
    """Top levels load eagerly."""

    def test_open_loads_schemes_and_children(self, session):
        """Schemes come back ordered by name with their children attached."""
        roots = session.open()

        assert ids(roots) == ["sch-meadow", "sch-orchard", "sch-riverside"]
        assert ids(session.children("sch-riverside")) == ["blk-low", "blk-tower", "spc-grounds"]
        assert ids(session.children("sch-meadow")) == ["blk-meadow"]
        assert session.children("sch-orchard") == []
        assert session.opened

    def test_open_does_not_load_below_schemes(self, session):
        session.open()
        assert not session.is_materialised("prop-t01")
        assert not session.view("blk-tower").loaded

    def test_open_is_idempotent(self, session, store):
        session.open()
        calls = dict(store.calls)
        assert ids(session.open()) == ["sch-meadow", "sch-orchard", "sch-riverside"]
        assert dict(store.calls) == calls


class TestExpand:
    """Paged expansion below the eager levels."""

    def test_first_page_and_remaining_count(self, session):
        """The tower's 31 children come back 25 first, then 6 more."""
        session.open()
        page = session.expand("blk-tower")

        assert len(page.items) == 25
        assert page.items[0].name == "Flat 01"
        assert page.remaining_count == TOWER_FLATS + 1 - 25
        assert page.next_batch_size(25) == 6
        assert page.has_more

    def test_load_more_finishes_listing(self, session):
        """The continuation returns the rest, properties before spaces."""
        session.open()
        first = session.expand("blk-tower")
        rest = session.load_more("blk-tower", first.next_cursor)

        assert ids(rest.items) == [f"prop-t{n:02d}" for n in range(26, 31)] + ["spc-plant"]
        assert rest.next_cursor is None
        assert rest.remaining_count == 0
        assert len(session.children("blk-tower")) == TOWER_FLATS + 1
        assert session.view("blk-tower").remaining_count == 0

    def test_re_expand_uses_view_state(self, session, store):
        """Expanding an already expanded node never touches the store."""
        session.open()
        session.expand("blk-tower")
        before = store.calls["list_children"]

        session.collapse("blk-tower")
        page = session.expand("blk-tower")

        assert store.calls["list_children"] == before
        assert len(page.items) == 25
        assert page.remaining_count == 6
        assert session.view("blk-tower").expanded

    def test_load_more_cached_cursor(self, session, store):
        """Repeating a continuation returns the stored page."""
        session.open()
        cursor = session.expand("blk-tower").next_cursor
        first = session.load_more("blk-tower", cursor)
        before = store.calls["list_children"]

        assert session.load_more("blk-tower", cursor) is first
        assert store.calls["list_children"] == before

    def test_cancelled_load_more_leaves_view(self, session):
        """A cancelled continuation returns None and attaches nothing."""
        session.open()
        first = session.expand("blk-tower")
        cancel = threading.Event()
        cancel.set()

        assert session.load_more("blk-tower", first.next_cursor, cancel=cancel) is None
        view = session.view("blk-tower")
        assert len(view.children) == 25
        assert view.next_cursor == first.next_cursor
        assert first.next_cursor not in view.pages

    def test_expand_without_open_attaches_ancestors(self, session):
        """Expanding a deep node pulls in its ancestor chain."""
        page = session.expand("prop-t01")

        assert ids(page.items) == ["spc-kitchen-t01"]
        assert ids(session.roots()) == ["sch-riverside"]
        assert session.view("prop-t01").parent_id == "blk-tower"
        assert session.view("blk-tower").parent_id == "sch-riverside"

    def test_expand_leaf(self, session):
        """Components have no children."""
        page = session.expand("cmp-pump")
        assert page.items == []
        assert not page.has_more

    def test_expand_unknown_node(self, session):
        with pytest.raises(NotFound):
            session.expand("prop-missing")

    def test_malformed_cursor(self, session):
        session.open()
        session.expand("blk-tower")
        with pytest.raises(ValueError):
            session.load_more("blk-tower", "not-a-cursor")


class TestSearch:
    """Search over what the session has materialised."""

    @pytest.fixture
    def deep_session(self, session):
        session.open()
        session.expand("blk-tower")
        session.expand("prop-t01")
        session.expand("spc-kitchen-t01")
        return session

    def test_match_keeps_every_ancestor(self, deep_session):
        """A component match returns the full path from the scheme."""
        result = deep_session.search("sch-riverside", "boiler")

        path = result.path_to("cmp-boiler-t01")
        assert ids(path) == [
            "sch-riverside",
            "blk-tower",
            "prop-t01",
            "spc-kitchen-t01",
            "cmp-boiler-t01",
        ]
        matched = [r.node.id for r in result.iter_nodes() if r.matched]
        assert matched == ["cmp-boiler-t01"]

    def test_non_matching_siblings_pruned(self, deep_session):
        result = deep_session.search("sch-riverside", "boiler")
        assert result.path_to("prop-t02") is None
        assert result.path_to("blk-low") is None

    def test_case_insensitive_and_reference(self, deep_session):
        """Names match case-insensitively and references match too."""
        by_name = deep_session.search("sch-riverside", "BOILER")
        by_reference = deep_session.search("sch-riverside", "blr-0001")
        assert by_name.path_to("cmp-boiler-t01") is not None
        assert by_reference.path_to("cmp-boiler-t01") is not None

    def test_match_keeps_loaded_children(self, deep_session):
        """A matching node with no matching descendants keeps its loaded children."""
        result = deep_session.search("sch-riverside", "Flat 01")
        flat = result.path_to("prop-t01")[-1]
        assert flat.id == "prop-t01"
        assert result.path_to("spc-kitchen-t01") is not None

    def test_no_match(self, deep_session):
        assert deep_session.search("sch-riverside", "no such asset") is None

    def test_directly_expanded_branch_is_searched(self, session):
        """Expanding a property without its block still links it under the scheme."""
        session.open()
        session.expand("prop-t01")
        session.expand("spc-kitchen-t01")

        assert session.view("blk-tower").children == []
        result = session.search("sch-riverside", "boiler")

        assert ids(result.path_to("cmp-boiler-t01")) == [
            "sch-riverside",
            "blk-tower",
            "prop-t01",
            "spc-kitchen-t01",
            "cmp-boiler-t01",
        ]

    def test_direct_link_not_duplicated_by_later_page(self, session):
        """Paging the parent afterwards lists the linked child once, in listing order."""
        session.open()
        session.expand("prop-t01")
        session.expand("blk-tower")

        result = session.search("sch-riverside", "Riverside Tower")
        tower = next(r for r in result.iter_nodes() if r.node.id == "blk-tower")
        child_ids = [r.node.id for r in tower.children]
        assert tower.matched is True
        assert child_ids.count("prop-t01") == 1
        assert child_ids[0] == "prop-t01"
        assert len(child_ids) == 25

    def test_unloaded_nodes_not_searched(self, session):
        """Search only sees materialised nodes."""
        session.open()
        assert session.search("sch-riverside", "boiler") is None

    def test_to_dict_nests_children(self, deep_session):
        data = deep_session.search("sch-riverside", "boiler").to_dict()
        assert data["id"] == "sch-riverside"
        assert data["matched"] is False
        assert data["children"][0]["id"] == "blk-tower"


class TestStructure:
    """View state refuses inconsistent hierarchies."""

    def test_multi_parent_rejected(self):
        """A block listed under two schemes raises InvalidHierarchy."""
        store = DictStore()
        store.add(HierarchyNode(id="S1", kind=NodeKind.SCHEME, name="North"))
        store.add(HierarchyNode(id="S2", kind=NodeKind.SCHEME, name="South"))
        block = HierarchyNode(id="B", kind=NodeKind.BLOCK, name="Shared", parent=SchemeParent("S1"))
        store.add(block, under="S1")
        store.children["S2"] = ["B"]

        session = TraversalSession(store, page_size=25)
        with pytest.raises(InvalidHierarchy, match="appears under both"):
            session.open()

    def test_cycle_in_view_rejected(self):
        """Search refuses a view whose child links loop."""
        store = DictStore()
        store.add(HierarchyNode(id="S", kind=NodeKind.SCHEME, name="Loop"))
        session = TraversalSession(store, page_size=25)
        session.open()
        session.view("S").children.append("S")

        with pytest.raises(InvalidHierarchy, match="Cycle"):
            session.search("S", "zzz")


class FakeMonotonic:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestSessionRegistry:
    """Idle TTL and LRU eviction of traversal sessions."""

    @pytest.fixture
    def monotonic(self):
        return FakeMonotonic()

    def make(self, monotonic, **kwargs) -> SessionRegistry:
        return SessionRegistry(factory=lambda sid: {"id": sid}, monotonic=monotonic, **kwargs)

    def test_create_and_reuse(self, monotonic):
        registry = self.make(monotonic)
        sid, session = registry.get_or_create()

        assert sid.startswith("tree-")
        assert registry.get_or_create(sid) == (sid, session)
        assert registry.stats().hits == 1

    def test_unknown_id_gets_fresh_id(self, monotonic):
        """Clients cannot choose session ids; an unknown one is replaced."""
        registry = self.make(monotonic)
        sid, session = registry.get_or_create("client-chosen")

        assert sid != "client-chosen"
        assert sid.startswith("tree-")
        assert session == {"id": sid}
        assert registry.get("client-chosen") is None

    def test_same_unknown_id_twice_gives_separate_sessions(self, monotonic):
        registry = self.make(monotonic)
        first, _ = registry.get_or_create("stale-id")
        second, _ = registry.get_or_create("stale-id")

        assert first != second
        assert registry.stats().size == 2

    def test_idle_expiry(self, monotonic):
        """A session idle past its TTL is replaced by a fresh one."""
        registry = self.make(monotonic, idle_ttl=60)
        sid, session = registry.get_or_create()

        monotonic.now += 61
        assert registry.get(sid) is None
        new_sid, replacement = registry.get_or_create(sid)
        assert new_sid != sid
        assert replacement is not session

    def test_access_extends_lifetime(self, monotonic):
        registry = self.make(monotonic, idle_ttl=60)
        sid, session = registry.get_or_create()

        monotonic.now += 50
        assert registry.get(sid) is session
        monotonic.now += 50
        assert registry.get(sid) is session

    def test_lru_eviction(self, monotonic):
        """The least recently used session goes first."""
        registry = self.make(monotonic, max_size=2)
        a, _ = registry.get_or_create()
        monotonic.now += 1
        b, _ = registry.get_or_create()
        monotonic.now += 1
        registry.get(a)
        monotonic.now += 1
        registry.get_or_create()

        assert registry.get(b) is None
        assert registry.get(a) is not None
        assert registry.stats().evictions == 1

    def test_create_drops_expired_sessions(self, monotonic):
        """Idle sessions are released when the next one is created."""
        registry = self.make(monotonic, idle_ttl=60)
        registry.get_or_create()
        registry.get_or_create()
        monotonic.now += 61

        registry.get_or_create()

        assert registry.stats().size == 1

    def test_cleanup_and_drop(self, monotonic):
        registry = self.make(monotonic, idle_ttl=60)
        registry.get_or_create()
        monotonic.now += 61

        assert registry.cleanup_expired() == 1
        sid, _ = registry.get_or_create()
        assert registry.drop(sid) is True
        assert registry.drop(sid) is False
        assert registry.stats().size == 0
