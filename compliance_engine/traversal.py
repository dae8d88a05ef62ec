"""
Lazy tree traversal with per-session view state.

Schemes and their immediate children are loaded eagerly when a session opens.
Everything below is fetched a page at a time when a node is expanded, with a
"show N more" continuation carrying the remaining count. Pages are kept for the
session so re-expanding a node never re-fetches. Search runs over whatever is
materialised and keeps the ancestors of every match.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any

from compliance_engine.errors import InvalidHierarchy, NotFound
from compliance_engine.models import HierarchyNode, Page
from compliance_engine.pagination import clamp_page_size
from compliance_engine.store import EntityStore

logger = logging.getLogger(__name__)

EAGER_PAGE_SIZE = 500


@dataclass
class NodeView:
    """Session-local state of one materialised node."""

    node: HierarchyNode
    parent_id: str | None
    children: list[str] = field(default_factory=list)
    # Children attached by expanding them directly, before any page of ours held them.
    linked: list[str] = field(default_factory=list)
    pages: dict[str | None, Page] = field(default_factory=dict)
    next_cursor: str | None = None
    remaining_count: int = 0
    loaded: bool = False
    expanded: bool = False

    def known_children(self) -> list[str]:
        """Paged children in listing order, then directly attached ones."""
        return self.children + [cid for cid in self.linked if cid not in self.children]


@dataclass
class SearchResult:
    """A node of a filtered subtree. ``matched`` is False for retained ancestors and context."""

    node: HierarchyNode
    matched: bool
    children: list["SearchResult"] = field(default_factory=list)

    def iter_nodes(self):
        yield self
        for child in self.children:
            yield from child.iter_nodes()

    def path_to(self, node_id: str) -> list[HierarchyNode] | None:
        """Root-to-node path within this result, or None if absent."""
        if self.node.id == node_id:
            return [self.node]
        for child in self.children:
            tail = child.path_to(node_id)
            if tail is not None:
                return [self.node, *tail]
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.node.to_dict(),
            "matched": self.matched,
            "children": [child.to_dict() for child in self.children],
        }


class TraversalSession:
    """Incrementally materialised view of the hierarchy for one client session."""

    def __init__(
        self,
        store: EntityStore,
        page_size: int | None = None,
        session_id: str | None = None,
        organisation_id: str | None = None,
    ):
        self.store = store
        self.page_size = clamp_page_size(page_size)
        self.session_id = session_id
        self.organisation_id = organisation_id
        self._views: dict[str, NodeView] = {}
        self._roots: list[str] = []
        self._lock = threading.RLock()
        self.opened = False

    # ==== Eager top levels ====

    def open(self) -> list[HierarchyNode]:
        """Load every scheme and all scheme children. Idempotent."""
        with self._lock:
            if self.opened:
                return self.roots()

        schemes: list[HierarchyNode] = []
        cursor = None
        while True:
            page = self.store.list_schemes(self.organisation_id, cursor=cursor, limit=EAGER_PAGE_SIZE)
            schemes.extend(page.items)
            if page.next_cursor is None:
                break
            cursor = page.next_cursor

        with self._lock:
            for scheme in schemes:
                self._attach(scheme, None)

        for scheme in schemes:
            self._load_all(scheme.id)

        with self._lock:
            self.opened = True
            logger.info(
                f"Session {self.session_id} opened: {len(schemes)} schemes, "
                f"{len(self._views)} nodes materialised"
            )
            return self.roots()

    def _load_all(self, node_id: str) -> None:
        view = self._views[node_id]
        cursor = None
        while True:
            page = self.store.list_children(
                view.node.id, view.node.kind, cursor=cursor, limit=EAGER_PAGE_SIZE
            )
            with self._lock:
                self._apply(view, cursor, page)
            if page.next_cursor is None:
                return
            cursor = page.next_cursor

    # ==== Lazy levels ====

    def expand(self, node_id: str, limit: int | None = None) -> Page:
        """
        First page of a node's children.

        A node expanded before returns everything loaded so far for it, with
        the continuation cursor, without touching the store.
        """
        view = self._materialise(node_id)
        with self._lock:
            view.expanded = True
            if view.loaded:
                return self._loaded_page(view)

        page = self.store.list_children(
            view.node.id, view.node.kind, limit=clamp_page_size(limit, self.page_size)
        )
        with self._lock:
            if view.loaded:
                return self._loaded_page(view)
            self._apply(view, None, page)
        return page

    def load_more(
        self,
        node_id: str,
        cursor: str,
        cancel: threading.Event | None = None,
        limit: int | None = None,
    ) -> Page | None:
        """
        Next page after *cursor*.

        Returns None, leaving view state untouched, when *cancel* is set
        before the page is applied.
        """
        view = self._materialise(node_id)
        with self._lock:
            cached = view.pages.get(cursor)
        if cached is not None:
            return cached

        page = self.store.list_children(
            view.node.id, view.node.kind, cursor=cursor, limit=clamp_page_size(limit, self.page_size)
        )
        if cancel is not None and cancel.is_set():
            logger.debug(f"load_more({node_id}) cancelled, discarding page")
            return None

        with self._lock:
            if cursor in view.pages:
                return view.pages[cursor]
            view.expanded = True
            self._apply(view, cursor, page)
        return page

    def collapse(self, node_id: str) -> None:
        with self._lock:
            self._require(node_id).expanded = False

    # ==== Lookups ====

    def roots(self) -> list[HierarchyNode]:
        with self._lock:
            return [self._views[root_id].node for root_id in self._roots]

    def view(self, node_id: str) -> NodeView:
        with self._lock:
            return self._require(node_id)

    def children(self, node_id: str) -> list[HierarchyNode]:
        with self._lock:
            view = self._require(node_id)
            return [self._views[cid].node for cid in view.children]

    def is_materialised(self, node_id: str) -> bool:
        with self._lock:
            return node_id in self._views

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._views)

    # ==== Search ====

    def search(self, root_id: str, query: str) -> SearchResult | None:
        """
        Filter the materialised subtree under *root_id*.

        A node is kept if it matches or any loaded descendant matches; a match
        with no matching descendants keeps all of its loaded children.
        Returns None when nothing under *root_id* matches.
        """
        needle = (query or "").strip()
        with self._lock:
            self._require(root_id)
            return self._filter(root_id, needle, set())

    def _filter(self, node_id: str, needle: str, path: set[str]) -> SearchResult | None:
        if node_id in path:
            raise InvalidHierarchy(f"Cycle detected at {node_id}", node_id=node_id)
        path = path | {node_id}
        view = self._views[node_id]

        filtered = [
            result
            for child_id in view.known_children()
            if (result := self._filter(child_id, needle, path)) is not None
        ]
        matched = view.node.matches(needle)

        if filtered:
            return SearchResult(view.node, matched, filtered)
        if matched:
            return SearchResult(
                view.node, True, [self._unfiltered(cid, path) for cid in view.known_children()]
            )
        return None

    def _unfiltered(self, node_id: str, path: set[str]) -> SearchResult:
        if node_id in path:
            raise InvalidHierarchy(f"Cycle detected at {node_id}", node_id=node_id)
        path = path | {node_id}
        view = self._views[node_id]
        return SearchResult(
            view.node, False, [self._unfiltered(cid, path) for cid in view.known_children()]
        )

    # ==== View state ====

    def _require(self, node_id: str) -> NodeView:
        view = self._views.get(node_id)
        if view is None:
            raise NotFound(node_id)
        return view

    def _materialise(self, node_id: str) -> NodeView:
        """Return the view for *node_id*, attaching it and its ancestor chain if needed."""
        with self._lock:
            view = self._views.get(node_id)
        if view is not None:
            return view

        node = self.store.get_node(node_id)
        chain = list(reversed(self.store.ancestors(node)))
        with self._lock:
            parent_id = None
            for ancestor in chain:
                self._link(ancestor, parent_id)
                parent_id = ancestor.id
            return self._link(node, parent_id)

    def _link(self, node: HierarchyNode, parent_id: str | None) -> NodeView:
        """Attach *node* and make it reachable from its parent's view."""
        view = self._attach(node, parent_id)
        if parent_id is not None:
            parent = self._views[parent_id]
            if node.id not in parent.children and node.id not in parent.linked:
                parent.linked.append(node.id)
        return view

    def _attach(self, node: HierarchyNode, parent_id: str | None) -> NodeView:
        existing = self._views.get(node.id)
        if existing is not None:
            if existing.parent_id != parent_id:
                raise InvalidHierarchy(
                    f"{node.kind} {node.id} appears under both "
                    f"{existing.parent_id} and {parent_id}",
                    node_id=node.id,
                )
            return existing
        if parent_id is not None and node.parent_id != parent_id:
            raise InvalidHierarchy(
                f"{node.kind} {node.id} listed under {parent_id} but attached to {node.parent_id}",
                node_id=node.id,
            )

        view = NodeView(node=node, parent_id=parent_id)
        self._views[node.id] = view
        if parent_id is None:
            self._roots.append(node.id)
        return view

    def _apply(self, view: NodeView, cursor: str | None, page: Page) -> None:
        """Attach a fetched page. Must be called with the lock held."""
        for child in page.items:
            self._attach(child, view.node.id)
            if child.id not in view.children:
                view.children.append(child.id)
        view.pages[cursor] = page
        if not view.loaded or cursor == view.next_cursor:
            view.next_cursor = page.next_cursor
            view.remaining_count = page.remaining_count
        view.loaded = True

    def _loaded_page(self, view: NodeView) -> Page:
        return Page(
            items=[self._views[cid].node for cid in view.children],
            next_cursor=view.next_cursor,
            remaining_count=view.remaining_count,
        )
