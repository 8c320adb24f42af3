"""
royalty_services.reconciliation_orchestrator -- parallel reconciliation workers.

Responsibility:
    Reads the authoritative EventLog from a cursor and hands events to a
    pool of workers.  Events are partitioned by work (or by identity for
    work-less events); each partition is applied in log order by one
    worker, different partitions run in parallel.  Every event is applied
    in its own database transaction.

Architecture position:
    Services -- stateful orchestration over the kernel's
    ReconciliationService.  Owns sessions and commit boundaries.

Invariants enforced:
    - Per-work ordering: events of one work never run concurrently and run
      in ascending log position.
    - Crash safety: the cursor only advances after a batch is fully
      reconciled; replaying a partly applied batch is absorbed by the
      de-duplication key.
    - Bounded retry: transient database errors (lock timeouts, deadlocks,
      concurrent wallet creation) are retried up to ``max_apply_attempts``
      times, then raised.  Rejected events are never retried.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from royalty_kernel.domain.clock import Clock, SystemClock
from royalty_kernel.domain.events import LedgerEvent
from royalty_kernel.logging_config import LogContext, get_logger
from royalty_kernel.services.event_log import EventLog
from royalty_kernel.services.reconciliation_service import (
    LagReport,
    ReconcileResult,
    ReconcileStatus,
    ReconciliationMonitor,
    ReconciliationService,
)

logger = get_logger("services.reconciliation_pool")

EventInput = LedgerEvent | dict[str, Any]


@dataclass(frozen=True)
class CatchUpReport:
    """Counts from one ``catch_up()`` pass."""

    applied: int
    skipped: int
    rejected: int
    cursor: int

    @property
    def processed(self) -> int:
        return self.applied + self.skipped + self.rejected


def partition_of(event: Any) -> str:
    """Ordering scope of an event or wire record."""
    if isinstance(event, LedgerEvent):
        return event.partition_key
    if isinstance(event, dict):
        if event.get("work_id") is not None:
            return f"work:{event['work_id']}"
        return f"identity:{event.get('identity')}"
    return "malformed"


def _position_of(event: Any) -> int:
    position = event.log_position if isinstance(event, LedgerEvent) else (
        event.get("log_position") if isinstance(event, dict) else None
    )
    if isinstance(position, int) and not isinstance(position, bool):
        return position
    return -1


class ReconciliationWorkerPool:
    """
    Worker pool that keeps the relational mirror in step with the log.

    Contract:
        ``reconcile(events)`` applies any iterable of events and returns one
        ReconcileResult per input, in input order.  ``catch_up()`` drains
        the EventLog from the internal cursor.  ``start()``/``stop()`` run
        ``catch_up()`` periodically on a background thread.
    """

    def __init__(
        self,
        event_log: EventLog,
        session_factory: Callable[[], Session],
        clock: Clock | None = None,
        workers: int = 4,
        batch_size: int = 500,
        max_apply_attempts: int = 5,
        retry_backoff_seconds: float = 0.05,
    ):
        if workers < 1 or batch_size < 1 or max_apply_attempts < 1:
            raise ValueError("workers, batch_size and max_apply_attempts must be positive")
        self._log = event_log
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._workers = workers
        self._batch_size = batch_size
        self._max_attempts = max_apply_attempts
        self._backoff = retry_backoff_seconds
        self._executor = ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="royalty-reconcile"
        )
        self._cursor = 0
        self._catch_up_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def cursor(self) -> int:
        """Highest log position whose batch has been fully reconciled."""
        return self._cursor

    # -------------------------------------------------------------------------
    # Applying events
    # -------------------------------------------------------------------------

    def apply_one(self, event: EventInput) -> ReconcileResult:
        """Apply one event in its own transaction, retrying transient errors."""
        attempt = 0
        while True:
            attempt += 1
            session = self._session_factory()
            try:
                result = ReconciliationService(session, self._clock).apply(event)
                session.commit()
                return result
            except (OperationalError, IntegrityError) as exc:
                session.rollback()
                if attempt >= self._max_attempts:
                    logger.error(
                        "reconcile_attempts_exhausted",
                        extra={"attempts": attempt, "partition": partition_of(event)},
                        exc_info=True,
                    )
                    raise
                logger.warning(
                    "reconcile_retry",
                    extra={
                        "attempt": attempt,
                        "partition": partition_of(event),
                        "error": type(exc).__name__,
                    },
                )
                time.sleep(self._backoff * attempt)
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    def _run_partition(
        self, partition: str, items: list[tuple[int, EventInput]]
    ) -> list[tuple[int, ReconcileResult]]:
        with LogContext.bind(worker_id=threading.current_thread().name):
            ordered = sorted(items, key=lambda item: _position_of(item[1]))
            return [(index, self.apply_one(event)) for index, event in ordered]

    def reconcile(self, events: Iterable[EventInput]) -> list[ReconcileResult]:
        """Apply events partition-parallel; results follow input order."""
        partitions: dict[str, list[tuple[int, EventInput]]] = {}
        count = 0
        for index, event in enumerate(events):
            partitions.setdefault(partition_of(event), []).append((index, event))
            count += 1

        futures = [
            self._executor.submit(self._run_partition, partition, items)
            for partition, items in partitions.items()
        ]

        results: list[ReconcileResult | None] = [None] * count
        for future in futures:
            for index, result in future.result():
                results[index] = result
        return results  # type: ignore[return-value]

    # -------------------------------------------------------------------------
    # Log following
    # -------------------------------------------------------------------------

    def catch_up(self) -> CatchUpReport:
        """Reconcile every event appended since the last pass."""
        applied = skipped = rejected = 0
        with self._catch_up_lock:
            while True:
                batch = self._log.read(after_position=self._cursor, limit=self._batch_size)
                if not batch:
                    break
                for result in self.reconcile(batch):
                    if result.status == ReconcileStatus.APPLIED:
                        applied += 1
                    elif result.status == ReconcileStatus.SKIPPED_DUPLICATE:
                        skipped += 1
                    else:
                        rejected += 1
                self._cursor = batch[-1].log_position
            cursor = self._cursor

        if applied or skipped or rejected:
            logger.info(
                "reconciliation_caught_up",
                extra={
                    "applied": applied,
                    "skipped": skipped,
                    "rejected": rejected,
                    "cursor": cursor,
                },
            )
        return CatchUpReport(applied, skipped, rejected, cursor)

    def lag(self) -> LagReport:
        session = self._session_factory()
        try:
            return ReconciliationMonitor(session).report(self._log.latest_position())
        finally:
            session.close()

    # -------------------------------------------------------------------------
    # Background operation
    # -------------------------------------------------------------------------

    def start(self, interval_seconds: float = 1.0) -> None:
        """Run ``catch_up()`` every ``interval_seconds`` on a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            args=(interval_seconds,),
            name="royalty-reconcile-loop",
            daemon=True,
        )
        self._thread.start()
        logger.info("reconciliation_started", extra={"interval_seconds": interval_seconds})

    def stop(self, timeout: float = 30.0) -> None:
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("reconciliation_stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self, interval_seconds: float) -> None:
        while not self._stop_event.is_set():
            try:
                self.catch_up()
            except Exception:
                logger.exception("reconciliation_pass_failed")
            self._stop_event.wait(timeout=interval_seconds)

    def close(self) -> None:
        self.stop()
        self._executor.shutdown(wait=True)
