"""
Backing tables for AggregateRecords.

One row per (node_id, node_kind). Rows are overwritten in place on recompute
and marked invalid (computed_at reset to epoch) on upstream writes; they are
never deleted.
"""

import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from pathlib import Path

from compliance_engine.db import ensure_schema, get_connection
from compliance_engine.errors import StoreUnavailable
from compliance_engine.models import (
    EPOCH,
    AggregateRecord,
    ChildCounts,
    ComplianceStatus,
    NodeKind,
)

logger = logging.getLogger(__name__)

RecordKey = tuple[str, NodeKind]


class RecordTable(ABC):
    @abstractmethod
    def load(self, key: RecordKey) -> AggregateRecord | None: ...

    @abstractmethod
    def save(self, record: AggregateRecord) -> None: ...

    @abstractmethod
    def mark_invalid(self, key: RecordKey) -> bool:
        """Reset computed_at to epoch. Returns False when no row exists."""

    @abstractmethod
    def all(self) -> list[AggregateRecord]: ...

    def count(self) -> int:
        return len(self.all())


class InMemoryRecordTable(RecordTable):
    """Process-local table; contents are rebuilt on demand after restart."""

    def __init__(self):
        self._rows: dict[RecordKey, AggregateRecord] = {}
        self._lock = threading.Lock()

    def load(self, key: RecordKey) -> AggregateRecord | None:
        with self._lock:
            return self._rows.get(key)

    def save(self, record: AggregateRecord) -> None:
        with self._lock:
            self._rows[record.key] = record

    def mark_invalid(self, key: RecordKey) -> bool:
        with self._lock:
            record = self._rows.get(key)
            if record is None:
                return False
            self._rows[key] = AggregateRecord(
                node_id=record.node_id,
                node_kind=record.node_kind,
                status=record.status,
                risk_score=record.risk_score,
                computed_at=EPOCH,
                child_counts=record.child_counts,
                ttl=record.ttl,
            )
            return True

    def all(self) -> list[AggregateRecord]:
        with self._lock:
            return list(self._rows.values())

    def count(self) -> int:
        with self._lock:
            return len(self._rows)


class SqliteRecordTable(RecordTable):
    """Durable table in the ``aggregate_records`` relation."""

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        with get_connection(self.db_path) as conn:
            ensure_schema(conn)

    def _execute(self, sql: str, params: tuple = ()) -> tuple[list[sqlite3.Row], int]:
        try:
            with get_connection(self.db_path) as conn:
                cursor = conn.execute(sql, params)
                return cursor.fetchall(), cursor.rowcount
        except sqlite3.Error as e:
            logger.error(f"Aggregate record table error: {e}")
            raise StoreUnavailable(f"Aggregate record table unavailable: {e}") from e

    @staticmethod
    def _to_record(row: sqlite3.Row) -> AggregateRecord:
        return AggregateRecord(
            node_id=row["node_id"],
            node_kind=NodeKind(row["node_kind"]),
            status=ComplianceStatus(row["status"]),
            risk_score=row["risk_score"],
            computed_at=datetime.fromisoformat(row["computed_at"]),
            child_counts=ChildCounts(
                total=row["child_total"],
                compliant=row["child_compliant"],
                non_compliant=row["child_non_compliant"],
                expiring=row["child_expiring"],
            ),
            ttl=timedelta(seconds=row["ttl_seconds"]),
        )

    def load(self, key: RecordKey) -> AggregateRecord | None:
        node_id, kind = key
        rows, _ = self._execute(
            "SELECT * FROM aggregate_records WHERE node_id = ? AND node_kind = ?",
            (node_id, str(kind)),
        )
        return self._to_record(rows[0]) if rows else None

    def save(self, record: AggregateRecord) -> None:
        counts = record.child_counts
        self._execute(
            """
            INSERT INTO aggregate_records (
                node_id, node_kind, status, risk_score, computed_at, ttl_seconds,
                child_total, child_compliant, child_non_compliant, child_expiring
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(node_id, node_kind) DO UPDATE SET
                status = excluded.status,
                risk_score = excluded.risk_score,
                computed_at = excluded.computed_at,
                ttl_seconds = excluded.ttl_seconds,
                child_total = excluded.child_total,
                child_compliant = excluded.child_compliant,
                child_non_compliant = excluded.child_non_compliant,
                child_expiring = excluded.child_expiring
            """,
            (
                record.node_id,
                str(record.node_kind),
                str(record.status),
                record.risk_score,
                record.computed_at.isoformat(),
                int(record.ttl.total_seconds()),
                counts.total,
                counts.compliant,
                counts.non_compliant,
                counts.expiring,
            ),
        )

    def mark_invalid(self, key: RecordKey) -> bool:
        node_id, kind = key
        _, updated = self._execute(
            "UPDATE aggregate_records SET computed_at = ? WHERE node_id = ? AND node_kind = ?",
            (EPOCH.isoformat(), node_id, str(kind)),
        )
        return updated > 0

    def all(self) -> list[AggregateRecord]:
        rows, _ = self._execute("SELECT * FROM aggregate_records ORDER BY node_kind, node_id")
        return [self._to_record(row) for row in rows]

    def count(self) -> int:
        rows, _ = self._execute("SELECT COUNT(*) FROM aggregate_records")
        return rows[0][0]
