"""
Tree API Router: lazy traversal of the asset hierarchy.

Usage in server.py:
    from api.tree_router import tree_router
    app.include_router(tree_router, prefix="/api")

Endpoints:
- GET /api/tree/roots                 Schemes (loaded eagerly with their children)
- GET /api/tree/{node_id}/children    One page of children, "Show N more" via cursor
- GET /api/tree/search                Filter the loaded subtree, keeping ancestors of matches

View state lives in a traversal session. Clients echo the ``X-Tree-Session``
response header on later calls; an unknown or expired id starts a new session.
"""

import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response

from api.dependencies import get_engine
from api.pagination import ChildrenPage, ChildrenParams, children_params
from api.response_models import (
    AggregateResponse,
    RootsResponse,
    SearchResponse,
    TreeNodeResponse,
)
from compliance_engine.engine import ComplianceEngine
from compliance_engine.errors import InvalidHierarchy, NotFound
from compliance_engine.models import HierarchyNode
from compliance_engine.traversal import TraversalSession

logger = logging.getLogger(__name__)

tree_router = APIRouter(tags=["Tree"])

SESSION_HEADER = "X-Tree-Session"


# ==== Helpers ====


def _session(
    engine: ComplianceEngine, response: Response, session_id: str | None
) -> tuple[str, TraversalSession]:
    sid, session = engine.session(session_id)
    response.headers[SESSION_HEADER] = sid
    return sid, session


def _decorate(engine: ComplianceEngine, node: HierarchyNode) -> TreeNodeResponse:
    """Attach the node's aggregate; a broken subtree degrades to no aggregate."""
    try:
        aggregate = AggregateResponse.from_display(engine.display(node))
    except (InvalidHierarchy, NotFound) as e:
        logger.warning(f"No aggregate for {node.kind} {node.id}: {e}")
        aggregate = None
    return TreeNodeResponse(**node.to_dict(), aggregate=aggregate)


# ==== Endpoints ====


@tree_router.get("/tree/roots", response_model=RootsResponse)
def tree_roots(
    response: Response,
    x_tree_session: str | None = Header(None),
    engine: ComplianceEngine = Depends(get_engine),
):
    """Open (or resume) a session and list its schemes."""
    sid, session = _session(engine, response, x_tree_session)
    schemes = session.open()
    return RootsResponse(
        session_id=sid,
        items=[_decorate(engine, scheme) for scheme in schemes],
        total=len(schemes),
    )


@tree_router.get("/tree/search", response_model=SearchResponse)
def tree_search(
    response: Response,
    root_id: str = Query(..., description="Subtree to search"),
    q: str = Query(
        "", description="Case-insensitive name or reference text; empty keeps the loaded subtree"
    ),
    x_tree_session: str | None = Header(None),
    engine: ComplianceEngine = Depends(get_engine),
):
    """
    Search the loaded part of a subtree.

    Only materialised nodes are searched; expand further to widen the search.
    """
    sid, session = _session(engine, response, x_tree_session)
    result = engine.search(session, root_id, q)
    match_count = sum(1 for n in result.iter_nodes() if n.matched) if result else 0
    return SearchResponse(
        session_id=sid,
        root_id=root_id,
        query=q,
        result=result.to_dict() if result else None,
        match_count=match_count,
    )


@tree_router.get("/tree/{node_id}/children", response_model=ChildrenPage)
def tree_children(
    node_id: str,
    response: Response,
    params: ChildrenParams = Depends(children_params),
    x_tree_session: str | None = Header(None),
    engine: ComplianceEngine = Depends(get_engine),
):
    """
    One page of a node's children, each with its aggregate.

    Without a cursor this expands the node; a node expanded earlier in the
    session returns everything loaded so far without re-reading the store.
    """
    sid, session = _session(engine, response, x_tree_session)
    try:
        page = engine.children(session, node_id, cursor=params.cursor, limit=params.limit)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    return ChildrenPage(
        session_id=sid,
        node_id=node_id,
        items=[_decorate(engine, child) for child in page.items],
        next_cursor=page.next_cursor,
        remaining_count=page.remaining_count,
        next_batch_size=page.next_batch_size(params.limit),
        has_more=page.has_more,
    )
