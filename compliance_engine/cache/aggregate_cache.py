"""
Materialized aggregate cache with bounded staleness.

Features:
- One AggregateRecord per (node_id, kind) for schemes, blocks and properties
- Stale-while-revalidate reads: get() never waits for a recompute
- At most one in-flight recompute per node (coalesced via RefreshExecutor)
- Per-node locks; unrelated nodes recompute concurrently
- Write-time invalidation with asynchronous cascade to ancestors
- Failed refreshes keep the previous record and back off before retrying
- Hit/miss/stale statistics
"""

import itertools
import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime, timedelta

from compliance_engine.aggregator import AggregateComputer, Deadline, Path, utc_now
from compliance_engine.cache.records import InMemoryRecordTable, RecordKey, RecordTable
from compliance_engine.errors import (
    ComputationTimeout,
    EngineError,
    InvalidHierarchy,
    NotFound,
    StoreUnavailable,
)
from compliance_engine.models import (
    CACHED_KINDS,
    AggregateRecord,
    HierarchyNode,
    NodeKind,
    RecordState,
)
from compliance_engine.observability.context import bind
from compliance_engine.observability.metrics import (
    cache_hits,
    cache_misses,
    cache_stale_serves,
    refresh_duration,
    refresh_failures,
    refresh_runs,
    refresh_timeouts,
)
from compliance_engine.refresh import RefreshExecutor, RefreshStatus

logger = logging.getLogger(__name__)


@dataclass
class CacheStats:
    """Aggregate cache statistics."""

    hits: int = 0
    misses: int = 0
    stale_serves: int = 0
    size: int = 0
    refreshes: int = 0
    failures: int = 0
    timeouts: int = 0
    in_flight: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses + self.stale_serves
        return self.hits / total if total > 0 else 0.0

    def to_dict(self) -> dict:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "stale_serves": self.stale_serves,
            "size": self.size,
            "hit_rate": self.hit_rate,
            "refreshes": self.refreshes,
            "failures": self.failures,
            "timeouts": self.timeouts,
            "in_flight": self.in_flight,
        }


class AggregateCache:
    """Owns AggregateRecord lifetimes and schedules their recomputation."""

    def __init__(
        self,
        computer: AggregateComputer,
        records: RecordTable | None = None,
        refresh: RefreshExecutor | None = None,
        refresh_timeout: float | None = 30.0,
        retry_backoff: timedelta = timedelta(seconds=60),
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize the aggregate cache.

        Args:
            computer: Recompute pipeline (holds the entity store and TTL)
            records: Backing table. Defaults to an in-memory table.
            refresh: Background pool. Defaults to a 4-worker RefreshExecutor.
            refresh_timeout: Seconds before a recompute is abandoned (None = unbounded)
            retry_backoff: Minimum delay before rescheduling a failed node
            clock: Source of "now" for staleness checks
        """
        self.computer = computer
        self._records = records if records is not None else InMemoryRecordTable()
        self._refresh = refresh if refresh is not None else RefreshExecutor()
        self.refresh_timeout = refresh_timeout
        self.retry_backoff = retry_backoff
        self.clock = clock

        self._node_locks: dict[RecordKey, threading.RLock] = {}
        self._node_locks_guard = threading.Lock()
        self._failed_at: dict[RecordKey, datetime] = {}
        self._structural_errors: dict[RecordKey, EngineError] = {}
        self._lock = threading.RLock()
        self._cascade_ids = itertools.count(1)

        self._hits = 0
        self._misses = 0
        self._stale_serves = 0
        self._refreshes = 0
        self._failures = 0
        self._timeouts = 0

    @property
    def ttl(self) -> timedelta:
        return self.computer.ttl

    # ==== Reads ====

    def get(self, node_id: str, kind: NodeKind) -> tuple[AggregateRecord | None, bool]:
        """
        Return (record, is_stale) without waiting for computation.

        A missing record returns (None, True); missing, stale and invalidated
        records schedule a background refresh.

        Raises:
            InvalidHierarchy, NotFound: when the last refresh of this node
                failed structurally
        """
        record, stale, _ = self._read(_key(node_id, kind))
        return record, stale

    def get_or_compute(
        self, node_id: str, kind: NodeKind, timeout: float | None = None
    ) -> AggregateRecord | None:
        """
        Blocking read: wait up to *timeout* seconds for a missing or stale record.

        Transient failures are absorbed and the best-known record (possibly
        stale, possibly None) is returned. Structural errors propagate.
        """
        record, stale, future = self._read(_key(node_id, kind))
        if not stale or future is None:
            return record

        try:
            result = future.result(timeout=timeout)
        except FutureTimeout:
            logger.info(f"Timed out waiting for {kind} {node_id}; serving best-known record")
            return record
        except (InvalidHierarchy, NotFound):
            raise
        except (StoreUnavailable, ComputationTimeout):
            return record
        return result if result is not None else record

    def state(self, node_id: str, kind: NodeKind) -> RecordState:
        key = _key(node_id, kind)
        if self._refresh.is_in_flight(key):
            return RecordState.COMPUTING
        record = self._load(key)
        if record is None:
            return RecordState.MISSING
        return RecordState.STALE if record.is_stale(self.clock()) else RecordState.FRESH

    def peek(self, node_id: str, kind: NodeKind) -> AggregateRecord | None:
        """Stored record without touching statistics or scheduling."""
        return self._load(_key(node_id, kind))

    def refresh(self, node_id: str, kind: NodeKind) -> Future | None:
        """
        Schedule a recompute of one node, joining any refresh already in flight.

        Returns None while the node is backing off after a failure.
        """
        key = _key(node_id, kind)
        current = self._load(key)
        return self._schedule(key, observed=current.computed_at if current else None)

    # ==== Writes ====

    def invalidate(self, node_id: str, kind: NodeKind | None = None) -> Future | None:
        """
        Mark a node for recompute and cascade to its ancestors.

        The node's own record (if cached) is marked invalid immediately; ancestor
        invalidation and the bottom-up recompute run in the background.

        Returns the cascade job's Future, or None when the pool is shut down.
        """
        if kind is not None and NodeKind(kind) in CACHED_KINDS:
            self._mark_invalid(_key(node_id, kind))

        try:
            # Not coalesced: a write after an in-flight cascade read its facts
            # still needs its own pass.
            future, _ = self._refresh.submit(
                ("cascade", node_id, next(self._cascade_ids)), self._cascade_job, node_id, kind
            )
        except RuntimeError as e:
            logger.warning(f"Cannot schedule invalidation of {node_id}: {e}")
            return None
        logger.info(f"Invalidation of {node_id} scheduled")
        return future

    def sweep(self) -> int:
        """Schedule refreshes for stale, invalidated and previously failed records."""
        now = self.clock()
        scheduled = 0
        try:
            records = self._records.all()
        except StoreUnavailable as e:
            logger.warning(f"Sweep skipped, record table unavailable: {e}")
            return 0

        seen: set[RecordKey] = set()
        for record in records:
            seen.add(record.key)
            if record.is_stale(now) and self._schedule(record.key, record.computed_at) is not None:
                scheduled += 1

        with self._lock:
            orphans = [key for key in self._failed_at if key not in seen]
        for key in orphans:
            if self._schedule(key, observed=None) is not None:
                scheduled += 1

        logger.debug(f"Sweep checked {len(records)} records, scheduled {scheduled}")
        return scheduled

    def stats(self) -> CacheStats:
        try:
            size = self._records.count()
        except StoreUnavailable:
            size = 0
        with self._lock:
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                stale_serves=self._stale_serves,
                size=size,
                refreshes=self._refreshes,
                failures=self._failures,
                timeouts=self._timeouts,
                in_flight=self._refresh.in_flight_count(),
            )

    def refresh_statuses(self, limit: int | None = None) -> list[RefreshStatus]:
        """Most recently submitted background jobs first."""
        statuses = sorted(
            self._refresh.list_statuses(), key=lambda s: s.submitted_at, reverse=True
        )
        return statuses[:limit] if limit is not None else statuses

    def shutdown(self, wait: bool = True) -> None:
        self._refresh.shutdown(wait=wait)

    # ==== Scheduling ====

    def _read(self, key: RecordKey) -> tuple[AggregateRecord | None, bool, Future | None]:
        with self._lock:
            structural = self._structural_errors.get(key)
        if structural is not None:
            raise structural

        record = self._load(key)
        now = self.clock()

        if record is None:
            self._bump("_misses")
            cache_misses.inc()
            return None, True, self._schedule(key, observed=None)

        if record.is_stale(now):
            self._bump("_stale_serves")
            cache_stale_serves.inc()
            return record, True, self._schedule(key, observed=record.computed_at)

        self._bump("_hits")
        cache_hits.inc()
        return record, False, None

    def _schedule(self, key: RecordKey, observed: datetime | None) -> Future | None:
        """Submit (or join) a refresh unless the node is backing off after a failure."""
        with self._lock:
            failed_at = self._failed_at.get(key)
        if failed_at is not None and self.clock() - failed_at < self.retry_backoff:
            logger.debug(f"Refresh of {key} backing off after failure at {failed_at}")
            return None
        try:
            future, _ = self._refresh.submit(key, self._refresh_job, key, observed)
        except RuntimeError as e:
            logger.warning(f"Cannot schedule refresh of {key}: {e}")
            return None
        return future

    def _refresh_job(self, key: RecordKey, observed: datetime | None) -> AggregateRecord | None:
        node_id, kind = key
        deadline = Deadline(self.refresh_timeout)
        try:
            node = self.computer.store.get_node(node_id, kind)
            with bind(node_id=node_id, node_kind=str(kind)):
                return self._compute_locked(node, deadline, (), observed=observed)
        except (StoreUnavailable, ComputationTimeout) as e:
            self._record_failure(key, e)
            raise
        except (InvalidHierarchy, NotFound) as e:
            self._record_failure(key, e, structural=True)
            raise

    def _cascade_job(self, node_id: str, kind: NodeKind | None) -> list[AggregateRecord]:
        """Invalidate *node_id* and every ancestor, then recompute them bottom-up."""
        node = self.computer.store.get_node(node_id, kind)
        chain = [n for n in [node, *self.computer.store.ancestors(node)] if n.kind in CACHED_KINDS]

        for n in chain:
            self._mark_invalid(_key(n.id, n.kind))

        refreshed: list[AggregateRecord] = []
        for n in chain:
            key = _key(n.id, n.kind)
            deadline = Deadline(self.refresh_timeout)
            try:
                with bind(node_id=n.id, node_kind=str(n.kind)):
                    refreshed.append(self._compute_locked(n, deadline, (), force=True))
            except (StoreUnavailable, ComputationTimeout) as e:
                # Ancestors stay invalid; the sweep picks them up.
                self._record_failure(key, e)
                break
            except InvalidHierarchy as e:
                self._record_failure(key, e, structural=True)
                raise
        logger.info(f"Cascade from {node.kind} {node.id} refreshed {len(refreshed)} aggregates")
        return refreshed

    # ==== Computation ====

    def child_aggregate(
        self, child: HierarchyNode, deadline: Deadline, path: Path
    ) -> AggregateRecord:
        """Child record for a parent recompute: stale is accepted, invalid or missing is recomputed."""
        key = _key(child.id, child.kind)
        record = self._load(key)
        if record is not None and not record.is_invalidated:
            if record.is_stale(self.clock()):
                self._schedule(key, observed=record.computed_at)
            return record
        observed = record.computed_at if record is not None else None
        return self._compute_locked(child, deadline, path, observed=observed)

    def _compute_locked(
        self,
        node: HierarchyNode,
        deadline: Deadline,
        path: Path,
        observed: datetime | None = None,
        force: bool = False,
    ) -> AggregateRecord:
        if node.id in path:
            raise InvalidHierarchy(f"Cycle detected at {node.id}", node_id=node.id)

        key = _key(node.id, node.kind)
        lock = self._lock_for(key)
        remaining = deadline.remaining()
        if not lock.acquire(timeout=-1 if remaining is None else remaining):
            raise ComputationTimeout(f"Timed out waiting for recompute lock on {node.id}")
        try:
            if not force:
                current = self._records.load(key)
                if _superseded(current, observed, self.clock()):
                    logger.debug(f"{node.kind} {node.id} already refreshed, skipping")
                    return current

            start = time.perf_counter()
            record = self.computer.compute(node, deadline, self.child_aggregate, path)
            deadline.check(node.id)
            self._records.save(record)
            elapsed = time.perf_counter() - start

            with self._lock:
                self._refreshes += 1
                self._failed_at.pop(key, None)
                self._structural_errors.pop(key, None)
            refresh_runs.inc()
            refresh_duration.observe(elapsed)
            logger.info(
                f"Recomputed {node.kind} {node.id}: {record.status} "
                f"risk={record.risk_score:g} ({elapsed * 1000:.0f}ms)"
            )
            return record
        finally:
            lock.release()

    # ==== Internals ====

    def _load(self, key: RecordKey) -> AggregateRecord | None:
        try:
            return self._records.load(key)
        except StoreUnavailable as e:
            logger.warning(f"Record table read failed for {key}: {e}")
            return None

    def _mark_invalid(self, key: RecordKey) -> None:
        try:
            if self._records.mark_invalid(key):
                logger.debug(f"Invalidated aggregate {key}")
        except StoreUnavailable as e:
            logger.warning(f"Could not invalidate {key}: {e}")

    def _lock_for(self, key: RecordKey) -> threading.RLock:
        with self._node_locks_guard:
            lock = self._node_locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._node_locks[key] = lock
            return lock

    def _record_failure(self, key: RecordKey, error: Exception, structural: bool = False) -> None:
        with self._lock:
            self._failed_at[key] = self.clock()
            if structural:
                self._structural_errors[key] = error
            if isinstance(error, ComputationTimeout):
                self._timeouts += 1
            else:
                self._failures += 1
        if isinstance(error, ComputationTimeout):
            refresh_timeouts.inc()
        else:
            refresh_failures.inc()
        if structural:
            logger.error(f"Refresh of {key} failed structurally: {error}")
        else:
            logger.warning(f"Refresh of {key} failed, keeping previous record: {error}")

    def _bump(self, counter: str) -> None:
        with self._lock:
            setattr(self, counter, getattr(self, counter) + 1)


def _key(node_id: str, kind: NodeKind) -> RecordKey:
    return (node_id, NodeKind(kind))


def _superseded(
    current: AggregateRecord | None, observed: datetime | None, now: datetime
) -> bool:
    """True when someone refreshed the record after the requester looked at it."""
    if current is None or current.is_invalidated or current.is_stale(now):
        return False
    return observed is None or current.computed_at > observed
