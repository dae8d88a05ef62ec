"""
Cursor pagination helpers shared by the entity store and traversal sessions.

Cursors are opaque to callers: a urlsafe-base64 encoded offset into a listing
with stable ordering.
"""

import base64
import binascii

from compliance_engine import config
from compliance_engine.models import Page

_CURSOR_PREFIX = "o:"


def encode_cursor(offset: int) -> str:
    """Encode an offset as an opaque cursor."""
    raw = f"{_CURSOR_PREFIX}{offset}".encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def decode_cursor(cursor: str | None) -> int:
    """
    Decode a cursor back into an offset.

    Returns 0 for a missing cursor. Raises ValueError for a malformed one.
    """
    if not cursor:
        return 0
    padded = cursor + "=" * (-len(cursor) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode()).decode()
    except (binascii.Error, UnicodeDecodeError) as e:
        raise ValueError(f"Malformed cursor: {cursor!r}") from e
    if not raw.startswith(_CURSOR_PREFIX):
        raise ValueError(f"Malformed cursor: {cursor!r}")
    try:
        offset = int(raw[len(_CURSOR_PREFIX) :])
    except ValueError as e:
        raise ValueError(f"Malformed cursor: {cursor!r}") from e
    if offset < 0:
        raise ValueError(f"Malformed cursor: {cursor!r}")
    return offset


def clamp_page_size(limit: int | None, default: int | None = None) -> int:
    """Bound a requested page size to [MIN_PAGE_SIZE, MAX_PAGE_SIZE]."""
    if limit is None:
        limit = default if default is not None else config.DEFAULT_PAGE_SIZE
    return max(config.MIN_PAGE_SIZE, min(config.MAX_PAGE_SIZE, limit))


def make_page(items: list, offset: int, total: int) -> Page:
    """Wrap a slice fetched at *offset* out of *total* rows."""
    consumed = offset + len(items)
    remaining = max(total - consumed, 0)
    next_cursor = encode_cursor(consumed) if remaining > 0 else None
    return Page(items=items, next_cursor=next_cursor, remaining_count=remaining)
