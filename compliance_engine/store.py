"""
Entity Store Adapter: read-only filtered access to the asset register.

The engine never writes hierarchy or compliance facts; it only lists children
(paginated, stable order by name) and fetches facts either attached directly to
a node or anywhere in its subtree.
"""

import logging
import sqlite3
from abc import ABC, abstractmethod
from collections.abc import Generator, Iterator
from contextlib import contextmanager
from datetime import date
from enum import StrEnum
from pathlib import Path
from typing import Any, TypeVar

from compliance_engine.db import get_connection, validate_identifier
from compliance_engine.errors import InvalidHierarchy, NotFound, StoreUnavailable
from compliance_engine.models import (
    KIND_RANK,
    ActionStatus,
    Certificate,
    CertificateOutcome,
    CertificateStatus,
    CertificateType,
    ComplianceFact,
    ComponentCondition,
    Condition,
    FactType,
    HierarchyNode,
    NodeKind,
    OrganisationParent,
    Page,
    ParentRef,
    RemedialAction,
    Scope,
    Severity,
    parent_ref,
)
from compliance_engine.observability.metrics import store_reads
from compliance_engine.pagination import decode_cursor, make_page

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=StrEnum)

HIGH_RISE_MIN_FLOORS = 7
DEFAULT_LIST_LIMIT = 100


class EntityStore(ABC):
    """Query interface the engine consumes. Implementations must be safe for concurrent reads."""

    @abstractmethod
    def get_node(self, node_id: str, kind: NodeKind | None = None) -> HierarchyNode:
        """Fetch one node. Raises NotFound."""

    @abstractmethod
    def list_schemes(
        self,
        organisation_id: str | None = None,
        cursor: str | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> Page:
        """Top-level schemes, optionally scoped to one organisation."""

    @abstractmethod
    def list_children(
        self,
        parent_id: str,
        kind: NodeKind,
        cursor: str | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> Page:
        """Immediate children of the *kind* node *parent_id*, ordered by kind then name."""

    @abstractmethod
    def list_facts(
        self,
        node_id: str,
        fact_type: FactType,
        scope: Scope,
        kind: NodeKind | None = None,
    ) -> list[ComplianceFact]:
        """Facts attached to the node itself (DIRECT) or anywhere below it (SUBTREE)."""

    def ping(self) -> bool:
        """Cheap reachability check. Raises StoreUnavailable."""
        return True

    def get_parent(self, node: HierarchyNode) -> HierarchyNode | None:
        """Parent node, or None for schemes."""
        if node.parent is None or isinstance(node.parent, OrganisationParent):
            return None
        return self.get_node(node.parent.id, kind=node.parent.kind)

    def ancestors(self, node: HierarchyNode) -> list[HierarchyNode]:
        """Ancestors from the immediate parent up to the scheme."""
        chain: list[HierarchyNode] = []
        seen = {node.id}
        current = self.get_parent(node)
        while current is not None:
            if current.id in seen:
                raise InvalidHierarchy(f"Cycle detected above {node.id}", node_id=current.id)
            seen.add(current.id)
            chain.append(current)
            current = self.get_parent(current)
        return chain

    def iter_children(
        self, parent_id: str, kind: NodeKind, page_size: int = 500
    ) -> Iterator[HierarchyNode]:
        """Iterate every child, paging through the store."""
        cursor = None
        while True:
            page = self.list_children(parent_id, kind, cursor=cursor, limit=page_size)
            yield from page.items
            if page.next_cursor is None:
                return
            cursor = page.next_cursor


# ============================================================
# SQLite implementation
# ============================================================

_NODE_SOURCES: dict[NodeKind, tuple[str, str]] = {
    NodeKind.SCHEME: (
        "schemes",
        "id, name, reference, organisation_id, NULL AS scheme_id, NULL AS block_id,"
        " NULL AS property_id, NULL AS space_id, 0 AS is_hrb, NULL AS floors, compliance_status",
    ),
    NodeKind.BLOCK: (
        "blocks",
        "id, name, reference, NULL AS organisation_id, scheme_id, NULL AS block_id,"
        " NULL AS property_id, NULL AS space_id, is_hrb, floors, compliance_status",
    ),
    NodeKind.PROPERTY: (
        "properties",
        "id, name, uprn AS reference, NULL AS organisation_id, NULL AS scheme_id, block_id,"
        " NULL AS property_id, NULL AS space_id, 0 AS is_hrb, NULL AS floors,"
        " NULL AS compliance_status",
    ),
    NodeKind.SPACE: (
        "spaces",
        "id, name, reference, NULL AS organisation_id, scheme_id, block_id, property_id,"
        " NULL AS space_id, 0 AS is_hrb, NULL AS floors, NULL AS compliance_status",
    ),
    NodeKind.COMPONENT: (
        "components",
        "id, name, asset_tag AS reference, NULL AS organisation_id, NULL AS scheme_id,"
        " block_id, property_id, space_id, 0 AS is_hrb, NULL AS floors,"
        " NULL AS compliance_status",
    ),
}


def _node_select(kind: NodeKind) -> str:
    """Uniform node row for *kind*; `rank` orders mixed-kind child listings."""
    table, columns = _NODE_SOURCES[kind]
    return (
        f"SELECT {KIND_RANK[kind]} AS rank, '{kind}' AS kind, {columns} "  # noqa: S608
        f"FROM {validate_identifier(table)}"
    )


_NODE_SELECTS = {kind: _node_select(kind) for kind in NodeKind}

# Raw parent columns, not the resolved edge view, so that a space attached to
# two parents shows up under both and fails validation under either.
_CHILD_FILTERS: dict[NodeKind, list[tuple[NodeKind, str]]] = {
    NodeKind.SCHEME: [
        (NodeKind.BLOCK, "scheme_id = :parent"),
        (NodeKind.SPACE, "scheme_id = :parent"),
    ],
    NodeKind.BLOCK: [
        (NodeKind.PROPERTY, "block_id = :parent"),
        (NodeKind.SPACE, "block_id = :parent"),
        (NodeKind.COMPONENT, "block_id = :parent AND property_id IS NULL AND space_id IS NULL"),
    ],
    NodeKind.PROPERTY: [
        (NodeKind.SPACE, "property_id = :parent"),
        (NodeKind.COMPONENT, "property_id = :parent AND space_id IS NULL"),
    ],
    NodeKind.SPACE: [
        (NodeKind.COMPONENT, "space_id = :parent"),
    ],
    NodeKind.COMPONENT: [],
}

_SUBTREE_CTE = """
WITH RECURSIVE subtree(kind, id) AS (
    SELECT :kind, :node
    UNION
    SELECT e.child_kind, e.child_id
    FROM v_hierarchy_edges e
    JOIN subtree s ON e.parent_kind = s.kind AND e.parent_id = s.id
)
"""


def _parse_enum(cls: type[E], value: Any, default: E | None = None) -> E | None:
    if value is None:
        return default
    try:
        return cls(str(value).upper())
    except ValueError:
        logger.warning(f"Unrecognised {cls.__name__} value {value!r}")
        return default


def _parse_date(value: Any) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        logger.warning(f"Unparseable date {value!r}")
        return None


def _space_parent(row: sqlite3.Row) -> ParentRef:
    attached = [
        (kind, row[column])
        for kind, column in (
            (NodeKind.PROPERTY, "property_id"),
            (NodeKind.BLOCK, "block_id"),
            (NodeKind.SCHEME, "scheme_id"),
        )
        if row[column] is not None
    ]
    if len(attached) != 1:
        raise InvalidHierarchy(
            f"Space {row['id']} must attach to exactly one of property/block/scheme, "
            f"found {len(attached)}",
            node_id=row["id"],
        )
    kind, parent_id = attached[0]
    return parent_ref(kind, parent_id)


def _component_parent(row: sqlite3.Row) -> ParentRef:
    if row["space_id"] is not None:
        return parent_ref(NodeKind.SPACE, row["space_id"])
    if row["property_id"] is not None:
        return parent_ref(NodeKind.PROPERTY, row["property_id"])
    if row["block_id"] is not None:
        return parent_ref(NodeKind.BLOCK, row["block_id"])
    raise InvalidHierarchy(f"Component {row['id']} has no parent", node_id=row["id"])


def row_to_node(row: sqlite3.Row) -> HierarchyNode:
    """Convert a unified node row (see _NODE_SELECTS) into a HierarchyNode."""
    kind = NodeKind(row["kind"])
    stored_status = row["compliance_status"]
    is_high_rise = False

    if kind == NodeKind.SCHEME:
        parent = OrganisationParent(row["organisation_id"]) if row["organisation_id"] else None
    elif kind == NodeKind.BLOCK:
        parent = parent_ref(NodeKind.SCHEME, row["scheme_id"])
        is_high_rise = bool(row["is_hrb"]) or (row["floors"] or 0) >= HIGH_RISE_MIN_FLOORS
    elif kind == NodeKind.PROPERTY:
        parent = parent_ref(NodeKind.BLOCK, row["block_id"])
    elif kind == NodeKind.SPACE:
        parent = _space_parent(row)
    else:
        parent = _component_parent(row)

    return HierarchyNode(
        id=row["id"],
        kind=kind,
        name=row["name"],
        reference=row["reference"],
        parent=parent,
        stored_status=stored_status,
        is_high_rise=is_high_rise,
    )


def row_to_certificate(row: sqlite3.Row) -> Certificate:
    return Certificate(
        id=row["id"],
        certificate_type=_parse_enum(CertificateType, row["certificate_type"], CertificateType.OTHER),
        status=_parse_enum(CertificateStatus, row["status"], CertificateStatus.UPLOADED),
        outcome=_parse_enum(CertificateOutcome, row["outcome"]),
        issue_date=_parse_date(row["issue_date"]),
        expiry_date=_parse_date(row["expiry_date"]),
        attached_kind=NodeKind(row["attached_kind"]),
        attached_id=row["attached_id"],
    )


def row_to_action(row: sqlite3.Row) -> RemedialAction:
    return RemedialAction(
        id=row["id"],
        severity=_parse_enum(Severity, row["severity"], Severity.ROUTINE),
        status=_parse_enum(ActionStatus, row["status"], ActionStatus.OPEN),
        due_date=_parse_date(row["due_date"]),
        certificate_id=row["certificate_id"],
        attached_kind=NodeKind(row["attached_kind"]),
        attached_id=row["attached_id"],
    )


def row_to_component(row: sqlite3.Row) -> ComponentCondition:
    if row["space_id"] is not None:
        attached_kind, attached_id = NodeKind.SPACE, row["space_id"]
    elif row["property_id"] is not None:
        attached_kind, attached_id = NodeKind.PROPERTY, row["property_id"]
    else:
        attached_kind, attached_id = NodeKind.BLOCK, row["block_id"]
    return ComponentCondition(
        id=row["id"],
        condition=Condition.parse(row["condition"]),
        needs_verification=bool(row["needs_verification"]),
        is_active=bool(row["is_active"]),
        attached_kind=attached_kind,
        attached_id=attached_id,
    )


class SqliteEntityStore(EntityStore):
    """EntityStore over the SQLite asset register (see compliance_engine.db)."""

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)

    @contextmanager
    def _read(self) -> Generator[sqlite3.Connection, None, None]:
        store_reads.inc()
        try:
            with get_connection(self.db_path) as conn:
                yield conn
        except sqlite3.Error as e:
            logger.error(f"Entity store read failed ({self.db_path}): {e}")
            raise StoreUnavailable(f"Entity store unavailable: {e}") from e

    def ping(self) -> bool:
        with self._read() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    # ==== Nodes ====

    def get_node(self, node_id: str, kind: NodeKind | None = None) -> HierarchyNode:
        kinds = [kind] if kind is not None else list(_NODE_SELECTS)
        selects = [f"{_NODE_SELECTS[k]} WHERE id = :id" for k in kinds]
        sql = " UNION ALL ".join(selects)
        with self._read() as conn:
            rows = conn.execute(sql, {"id": node_id}).fetchall()

        if not rows:
            raise NotFound(node_id, str(kind) if kind else None)
        if len(rows) > 1:
            found = ", ".join(row["kind"] for row in rows)
            raise InvalidHierarchy(f"Node id {node_id} is ambiguous ({found})", node_id=node_id)
        return row_to_node(rows[0])

    def _paged(self, union_sql: str, params: dict[str, Any], cursor: str | None, limit: int) -> Page:
        offset = decode_cursor(cursor)
        if limit < 1:
            raise ValueError("limit must be >= 1")
        with self._read() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) FROM ({union_sql})",  # noqa: S608
                params,
            ).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM ({union_sql}) "  # noqa: S608
                "ORDER BY rank, name COLLATE NOCASE, id LIMIT :limit OFFSET :offset",
                {**params, "limit": limit, "offset": offset},
            ).fetchall()
        return make_page([row_to_node(row) for row in rows], offset, total)

    def list_schemes(
        self,
        organisation_id: str | None = None,
        cursor: str | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> Page:
        sql = _NODE_SELECTS[NodeKind.SCHEME]
        params: dict[str, Any] = {}
        if organisation_id is not None:
            sql += " WHERE organisation_id = :org"
            params["org"] = organisation_id
        return self._paged(sql, params, cursor, limit)

    def list_children(
        self,
        parent_id: str,
        kind: NodeKind,
        cursor: str | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> Page:
        kind = NodeKind(kind)
        filters = _CHILD_FILTERS[kind]
        if not filters:
            return Page(items=[])
        union_sql = " UNION ALL ".join(
            f"{_NODE_SELECTS[child_kind]} WHERE {where}" for child_kind, where in filters
        )
        return self._paged(union_sql, {"parent": parent_id}, cursor, limit)

    # ==== Facts ====

    def list_facts(
        self,
        node_id: str,
        fact_type: FactType,
        scope: Scope,
        kind: NodeKind | None = None,
    ) -> list[ComplianceFact]:
        if kind is None:
            kind = self.get_node(node_id).kind
        fact_type = FactType(fact_type)
        scope = Scope(scope)
        params = {"kind": str(kind), "node": node_id}

        if fact_type == FactType.CERTIFICATE:
            table, convert = "certificates", row_to_certificate
        elif fact_type == FactType.REMEDIAL_ACTION:
            table, convert = "remedial_actions", row_to_action
        else:
            return self._component_facts(node_id, kind, scope)
        table = validate_identifier(table)

        if scope == Scope.DIRECT:
            sql = (
                f"SELECT * FROM {table} "  # noqa: S608
                "WHERE attached_kind = :kind AND attached_id = :node ORDER BY id"
            )
        else:
            sql = (
                _SUBTREE_CTE + f"SELECT DISTINCT f.* FROM {table} f "  # noqa: S608
                "JOIN subtree s ON f.attached_kind = s.kind AND f.attached_id = s.id "
                "ORDER BY f.id"
            )
        with self._read() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [convert(row) for row in rows]

    def _component_facts(
        self, node_id: str, kind: NodeKind, scope: Scope
    ) -> list[ComponentCondition]:
        params = {"kind": str(kind), "node": node_id}
        if kind == NodeKind.COMPONENT:
            sql = "SELECT * FROM components WHERE id = :node"
        elif scope == Scope.DIRECT:
            sql = (
                "SELECT c.* FROM components c "
                "JOIN v_hierarchy_edges e ON e.child_kind = 'component' AND e.child_id = c.id "
                "WHERE e.parent_kind = :kind AND e.parent_id = :node ORDER BY c.id"
            )
        else:
            sql = (
                _SUBTREE_CTE + "SELECT DISTINCT c.* FROM components c "
                "JOIN subtree s ON s.kind = 'component' AND s.id = c.id ORDER BY c.id"
            )
        with self._read() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [row_to_component(row) for row in rows]
