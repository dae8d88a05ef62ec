"""
Test fixtures for deterministic testing.

This module provides:
- fixture_db: Creates temp SQLite asset registers with pinned seed data
- GOLDEN_EXPECTATIONS: aggregates the seed must produce at FIXED_NOW
"""

from .fixture_db import (
    FIXED_NOW,
    GOLDEN_EXPECTATIONS,
    create_fixture_db,
    get_fixture_db_path,
    guard_no_live_db,
)

__all__ = [
    "FIXED_NOW",
    "GOLDEN_EXPECTATIONS",
    "create_fixture_db",
    "get_fixture_db_path",
    "guard_no_live_db",
]
