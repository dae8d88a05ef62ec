"""
Tests for the SQLite entity store adapter.

Tests cover:
- Node lookup and NotFound
- Tagged parent references (space attaches to exactly one parent)
- Stable child ordering and cursor pagination
- Direct and subtree fact scopes
- High-rise detection
- Store failures wrapped as StoreUnavailable
"""

import sqlite3

import pytest

from compliance_engine.db import validate_identifier
from compliance_engine.errors import InvalidHierarchy, NotFound, StoreUnavailable
from compliance_engine.models import (
    KIND_RANK,
    BlockParent,
    FactType,
    NodeKind,
    OrganisationParent,
    PropertyParent,
    SchemeParent,
    Scope,
)
from compliance_engine.pagination import decode_cursor, encode_cursor
from compliance_engine.store import _NODE_SELECTS, SqliteEntityStore
from tests.fixtures.fixture_db import TOWER_FLATS, insert_rows


@pytest.fixture(scope="module")
def store(fixture_db_path):
    return SqliteEntityStore(fixture_db_path)


class TestNodes:
    """Node lookup."""

    def test_get_scheme(self, store):
        """Schemes carry their organisation and stored status."""
        node = store.get_node("sch-riverside")
        assert node.kind == NodeKind.SCHEME
        assert node.name == "Riverside Estate"
        assert node.reference == "RIV"
        assert node.parent == OrganisationParent("org-1")
        assert node.stored_status == "COMPLIANT"

    def test_get_with_kind(self, store):
        """A kind hint narrows the lookup."""
        assert store.get_node("blk-tower", NodeKind.BLOCK).kind == NodeKind.BLOCK
        with pytest.raises(NotFound):
            store.get_node("blk-tower", NodeKind.PROPERTY)

    def test_unknown_node(self, store):
        """Unknown ids raise NotFound."""
        with pytest.raises(NotFound) as exc:
            store.get_node("nope")
        assert exc.value.node_id == "nope"

    def test_space_parent_variants(self, store):
        """Spaces resolve to a tagged parent of the right kind."""
        assert store.get_node("spc-plant").parent == BlockParent("blk-tower")
        assert store.get_node("spc-kitchen-t01").parent == PropertyParent("prop-t01")
        assert store.get_node("spc-grounds").parent == SchemeParent("sch-riverside")

    def test_property_reference_is_uprn(self, store):
        """Property reference searches match the UPRN."""
        assert store.get_node("prop-l01").reference == "200000000001"

    def test_high_rise(self, store):
        """HRB flag or 7+ floors marks a block high-rise."""
        assert store.get_node("blk-tower").is_high_rise is True
        assert store.get_node("blk-low").is_high_rise is False

    def test_ancestors(self, store):
        """Ancestors run from the parent up to the scheme."""
        node = store.get_node("cmp-boiler-t01")
        assert [a.id for a in store.ancestors(node)] == [
            "spc-kitchen-t01",
            "prop-t01",
            "blk-tower",
            "sch-riverside",
        ]

    def test_get_parent_of_scheme(self, store):
        """Schemes have no hierarchy parent."""
        assert store.get_parent(store.get_node("sch-meadow")) is None


class TestListing:
    """Child listing and pagination."""

    def test_list_schemes_ordered_by_name(self, store):
        """Schemes are listed alphabetically."""
        page = store.list_schemes()
        assert [s.id for s in page.items] == ["sch-meadow", "sch-orchard", "sch-riverside"]
        assert page.next_cursor is None
        assert page.remaining_count == 0

    def test_list_schemes_by_organisation(self, store):
        """Organisation scoping filters schemes."""
        assert store.list_schemes("org-1").items
        assert store.list_schemes("org-other").items == []

    def test_children_ordered_by_kind_then_name(self, store):
        """Blocks come before scheme-level spaces even when the space sorts first by name."""
        page = store.list_children("sch-riverside", NodeKind.SCHEME)
        assert [c.id for c in page.items] == ["blk-low", "blk-tower", "spc-grounds"]

    def test_block_children_include_block_level_components(self, store):
        """Components attached straight to a block are its children."""
        page = store.list_children("blk-meadow", NodeKind.BLOCK)
        assert [c.id for c in page.items] == ["prop-m01", "cmp-lift"]

    def test_pagination(self, store):
        """Pages carry a cursor and the remaining count."""
        first = store.list_children("blk-tower", NodeKind.BLOCK, limit=25)
        assert len(first.items) == 25
        assert first.items[0].name == "Flat 01"
        assert first.remaining_count == TOWER_FLATS + 1 - 25
        assert first.next_batch_size(25) == 6

        second = store.list_children("blk-tower", NodeKind.BLOCK, cursor=first.next_cursor, limit=25)
        assert [c.id for c in second.items][-1] == "spc-plant"
        assert second.next_cursor is None
        assert second.remaining_count == 0

        ids = [c.id for c in first.items + second.items]
        assert len(ids) == len(set(ids))

    def test_iter_children_pages_through_everything(self, store):
        """iter_children follows cursors to the end."""
        children = list(store.iter_children("blk-tower", NodeKind.BLOCK, page_size=10))
        assert len(children) == TOWER_FLATS + 1

    def test_component_has_no_children(self, store):
        """Components are leaves."""
        assert store.list_children("cmp-pump", NodeKind.COMPONENT).items == []

    def test_malformed_cursor(self, store):
        """Garbage cursors are rejected."""
        with pytest.raises(ValueError):
            store.list_children("blk-tower", NodeKind.BLOCK, cursor="not-a-cursor!")


class TestCursor:
    """Opaque cursor encoding."""

    def test_round_trip(self):
        """An encoded offset decodes to itself."""
        assert decode_cursor(encode_cursor(40)) == 40

    def test_missing_cursor_is_start(self):
        """None means offset 0."""
        assert decode_cursor(None) == 0

    @pytest.mark.parametrize("bad", ["x", "bzotMQ", "bzphYmM"])
    def test_rejects_bad_cursors(self, bad):
        """Malformed or negative offsets raise ValueError."""
        with pytest.raises(ValueError):
            decode_cursor(bad)


class TestFacts:
    """Direct and subtree fact scopes."""

    def test_direct_certificates(self, store):
        """DIRECT returns facts attached to the node only."""
        facts = store.list_facts("blk-tower", FactType.CERTIFICATE, Scope.DIRECT)
        assert [f.id for f in facts] == ["cert-fra-tower"]

    def test_subtree_certificates(self, store):
        """SUBTREE includes every descendant's facts."""
        facts = store.list_facts("blk-tower", FactType.CERTIFICATE, Scope.SUBTREE)
        assert {f.id for f in facts} == {
            "cert-fra-tower",
            "cert-gas-t01",
            "cert-gas-t02",
            "cert-eicr-t02",
        }

    def test_subtree_components_through_spaces(self, store):
        """Components under spaces are reached through the edge view."""
        facts = store.list_facts("sch-riverside", FactType.COMPONENT_CONDITION, Scope.SUBTREE)
        assert {f.id for f in facts} == {"cmp-boiler-t01", "cmp-pump", "cmp-alarm-l01"}

    def test_direct_components_of_block(self, store):
        """DIRECT components are the node's component children."""
        facts = store.list_facts("blk-meadow", FactType.COMPONENT_CONDITION, Scope.DIRECT)
        assert [f.id for f in facts] == ["cmp-lift"]

    def test_component_condition_of_component(self, store):
        """A component's own condition is its only condition fact."""
        facts = store.list_facts("cmp-alarm-l01", FactType.COMPONENT_CONDITION, Scope.DIRECT)
        assert len(facts) == 1
        assert facts[0].attached_id == "prop-l01"

    def test_remedial_actions(self, store):
        """Remedial actions parse severity, status and due date."""
        facts = store.list_facts("blk-tower", FactType.REMEDIAL_ACTION, Scope.DIRECT)
        assert len(facts) == 1
        assert facts[0].is_open
        assert facts[0].certificate_id == "cert-fra-tower"


class TestStructuralErrors:
    """Malformed hierarchy rows."""

    def test_space_with_two_parents(self, fresh_db_path):
        """A space pointing at two parents is InvalidHierarchy."""
        conn = sqlite3.connect(str(fresh_db_path))
        insert_rows(
            conn,
            "spaces",
            [
                {
                    "id": "spc-bad",
                    "block_id": "blk-low",
                    "property_id": "prop-l01",
                    "name": "Ambiguous Cupboard",
                }
            ],
        )
        conn.commit()
        conn.close()

        store = SqliteEntityStore(fresh_db_path)
        with pytest.raises(InvalidHierarchy):
            store.get_node("spc-bad")
        with pytest.raises(InvalidHierarchy):
            store.list_children("blk-low", NodeKind.BLOCK)


class TestUnavailable:
    """sqlite errors surface as StoreUnavailable."""

    def test_missing_tables(self, tmp_path):
        """A database without the schema is unavailable, not NotFound."""
        store = SqliteEntityStore(tmp_path / "empty.db")
        with pytest.raises(StoreUnavailable):
            store.get_node("sch-riverside")

    def test_ping(self, store):
        """ping succeeds on a healthy store."""
        assert store.ping() is True


class TestIdentifiers:
    """Table names interpolated into SQL are validated."""

    @pytest.mark.parametrize("name", ["certificates", "remedial_actions", "_tmp1"])
    def test_valid(self, name):
        assert validate_identifier(name) == name

    @pytest.mark.parametrize("name", ["certificates; DROP TABLE blocks", "1table", "a-b", ""])
    def test_invalid(self, name):
        with pytest.raises(ValueError, match="Invalid SQL identifier"):
            validate_identifier(name)

    def test_node_rows_carry_kind_rank(self, fixture_db_path):
        """The rank column in listings follows KIND_RANK."""
        conn = sqlite3.connect(fixture_db_path)
        try:
            rows = conn.execute(
                f"SELECT kind, rank FROM ({_NODE_SELECTS[NodeKind.SPACE]} "  # noqa: S608
                f"UNION ALL {_NODE_SELECTS[NodeKind.BLOCK]})"
            ).fetchall()
        finally:
            conn.close()
        assert {kind: rank for kind, rank in rows} == {
            "space": KIND_RANK[NodeKind.SPACE],
            "block": KIND_RANK[NodeKind.BLOCK],
        }
