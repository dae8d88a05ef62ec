"""
Cursor pagination for tree endpoints.

Features:
- ChildrenParams: FastAPI dependency for cursor/limit query parameters
- ChildrenPage: response model carrying the "Show N more" continuation
"""

from fastapi import Query
from pydantic import BaseModel, Field

from api.response_models import TreeNodeResponse
from compliance_engine import config


class ChildrenParams(BaseModel):
    """Pagination parameters."""

    cursor: str | None = Field(default=None, description="Opaque continuation cursor")
    limit: int = Field(
        ge=config.MIN_PAGE_SIZE,
        le=config.MAX_PAGE_SIZE,
        default=config.DEFAULT_PAGE_SIZE,
        description="Children per page",
    )


class ChildrenPage(BaseModel):
    """One page of a node's children."""

    session_id: str = Field(..., description="Traversal session id (echo in X-Tree-Session)")
    node_id: str = Field(..., description="Expanded node")
    items: list[TreeNodeResponse] = Field(..., description="Children on this page")
    next_cursor: str | None = Field(None, description="Cursor for the next page (if has_more)")
    remaining_count: int = Field(..., description="Children not yet returned")
    next_batch_size: int = Field(..., description="Size of the next 'Show N more' batch")
    has_more: bool = Field(..., description="Whether more children exist")


def children_params(
    cursor: str | None = Query(None, description="Continuation cursor from a previous page"),
    limit: int = Query(
        config.DEFAULT_PAGE_SIZE,
        ge=config.MIN_PAGE_SIZE,
        le=config.MAX_PAGE_SIZE,
        description="Children per page",
    ),
) -> ChildrenParams:
    """FastAPI dependency to extract pagination parameters from query string."""
    return ChildrenParams(cursor=cursor, limit=limit)
