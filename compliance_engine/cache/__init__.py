"""
Aggregate caching for the compliance engine.

Components:
- AggregateCache: stale-while-revalidate store of per-node AggregateRecords
- RecordTable: in-memory or SQLite backing table for those records
- SessionRegistry: idle-TTL/LRU registry of traversal sessions
"""

from .aggregate_cache import AggregateCache, CacheStats
from .records import InMemoryRecordTable, RecordTable, SqliteRecordTable
from .session_registry import RegistryStats, SessionRegistry

__all__ = [
    "AggregateCache",
    "CacheStats",
    "RecordTable",
    "InMemoryRecordTable",
    "SqliteRecordTable",
    "SessionRegistry",
    "RegistryStats",
]
