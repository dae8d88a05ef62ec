"""
Background refresh pool for aggregate recomputes.

Features:
- RefreshExecutor: ThreadPoolExecutor with at most one in-flight job per key
- RefreshStatus: per-key lifecycle snapshot (pending/running/completed/failed/timed_out)
- RefreshSweeper: periodic daemon that asks the cache to reschedule stale records
"""

import logging
import threading
from collections.abc import Callable, Hashable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

from compliance_engine.errors import ComputationTimeout
from compliance_engine.observability.metrics import refresh_coalesced

logger = logging.getLogger(__name__)


class RefreshStatusEnum(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass
class RefreshStatus:
    """Snapshot of the latest refresh job for one key."""

    key: Hashable
    status: RefreshStatusEnum
    submitted_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": "/".join(str(part) for part in self.key)
            if isinstance(self.key, tuple)
            else str(self.key),
            "status": str(self.status),
            "submitted_at": self.submitted_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error": self.error,
        }


class RefreshExecutor:
    """
    Thread pool that coalesces jobs by key.

    Submitting a key that already has a pending or running job returns the
    existing Future instead of queueing a second one.
    """

    def __init__(self, max_workers: int = 4, history_ttl: timedelta = timedelta(hours=1)):
        """
        Initialize RefreshExecutor.

        Args:
            max_workers: Maximum number of concurrent refresh threads
            history_ttl: How long finished job statuses are kept
        """
        self.max_workers = max_workers
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="aggregate-refresh"
        )
        self._statuses: dict[Hashable, dict[str, Any]] = {}
        self._in_flight: dict[Hashable, Future] = {}
        self._lock = threading.RLock()
        self._history_ttl = history_ttl
        self._closed = False

    def submit(self, key: Hashable, func: Callable, *args: Any, **kwargs: Any) -> tuple[Future, bool]:
        """
        Schedule *func* for *key* unless a job for *key* is already in flight.

        Returns:
            (future, submitted) where submitted is False when coalesced onto
            an existing job.

        Raises:
            RuntimeError: if the executor has been shut down
        """
        with self._lock:
            existing = self._in_flight.get(key)
            if existing is not None and not existing.done():
                refresh_coalesced.inc()
                logger.debug(f"Refresh for {key} coalesced onto in-flight job")
                return existing, False

            if self._closed:
                raise RuntimeError("RefreshExecutor is shut down")

            self._statuses[key] = {
                "status": RefreshStatusEnum.PENDING,
                "submitted_at": datetime.now(),
                "started_at": None,
                "completed_at": None,
                "error": None,
            }
            future = self._executor.submit(self._run, key, func, args, kwargs)
            self._in_flight[key] = future
            future.add_done_callback(lambda f, k=key: self._release(k, f))

            self._cleanup_old_statuses()
            logger.debug(f"Refresh for {key} submitted")

        return future, True

    def _run(self, key: Hashable, func: Callable, args: tuple, kwargs: dict) -> Any:
        with self._lock:
            self._statuses[key]["status"] = RefreshStatusEnum.RUNNING
            self._statuses[key]["started_at"] = datetime.now()

        try:
            result = func(*args, **kwargs)
        except ComputationTimeout as e:
            self._finish(key, RefreshStatusEnum.TIMED_OUT, str(e))
            raise
        except Exception as e:
            self._finish(key, RefreshStatusEnum.FAILED, str(e))
            logger.error(f"Refresh for {key} failed: {e}")
            raise

        self._finish(key, RefreshStatusEnum.COMPLETED)
        return result

    def _finish(self, key: Hashable, status: RefreshStatusEnum, error: str | None = None) -> None:
        with self._lock:
            entry = self._statuses.get(key)
            if entry is None:
                return
            entry["status"] = status
            entry["completed_at"] = datetime.now()
            entry["error"] = error

    def _release(self, key: Hashable, future: Future) -> None:
        with self._lock:
            if self._in_flight.get(key) is future:
                del self._in_flight[key]

    def is_in_flight(self, key: Hashable) -> bool:
        with self._lock:
            future = self._in_flight.get(key)
            return future is not None and not future.done()

    def in_flight_count(self) -> int:
        with self._lock:
            return sum(1 for f in self._in_flight.values() if not f.done())

    def get_status(self, key: Hashable) -> RefreshStatus | None:
        with self._lock:
            entry = self._statuses.get(key)
            if entry is None:
                return None
            return RefreshStatus(key=key, **entry)

    def list_statuses(self) -> list[RefreshStatus]:
        with self._lock:
            return [RefreshStatus(key=key, **entry) for key, entry in self._statuses.items()]

    def _cleanup_old_statuses(self) -> None:
        """Drop finished statuses older than the history TTL. Must be called with lock held."""
        now = datetime.now()
        expired = [
            key
            for key, entry in self._statuses.items()
            if entry["completed_at"] is not None
            and (now - entry["completed_at"]) > self._history_ttl
        ]
        for key in expired:
            del self._statuses[key]

    def shutdown(self, wait: bool = True) -> None:
        """
        Stop accepting jobs and shut the pool down.

        Args:
            wait: If True, wait for queued and running jobs to finish
        """
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait, cancel_futures=not wait)
        logger.info("RefreshExecutor shutdown")


class RefreshSweeper:
    """Daemon thread that calls *sweep* every *interval* seconds."""

    def __init__(self, sweep: Callable[[], int], interval: float):
        if interval <= 0:
            raise ValueError("Sweep interval must be positive")
        self._sweep = sweep
        self.interval = interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="aggregate-sweeper", daemon=True)
        self._thread.start()
        logger.info(f"Aggregate sweeper started (interval={self.interval}s)")

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                scheduled = self._sweep()
                if scheduled:
                    logger.info(f"Sweep scheduled {scheduled} aggregate refreshes")
            except Exception as e:
                # Keep the sweeper alive; the next tick retries.
                logger.error(f"Aggregate sweep failed: {e}")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Aggregate sweeper stopped")
