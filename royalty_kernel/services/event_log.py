"""
EventLog -- the authoritative, append-only event source.

Responsibility:
    Every registration, split change, distribution, claim and emergency
    withdrawal is written here as a ``LedgerEvent``.  Events are staged in
    a ``LogTransaction`` and appended only if the mutating call completes,
    so a failed call leaves no trace in the log.

Architecture position:
    Kernel > Services -- the single writer side of the event-sourced
    projection.  The ReconciliationPipeline is the only reader that
    derives state from it.

Invariants enforced:
    - Append-only: committed events are never modified or removed.
    - Log positions are allocated under one lock, strictly increasing from 1,
      so ``(origin_tx_id, log_position)`` is globally unique.
    - All events of one transaction are appended contiguously.

Failure modes:
    - An exception inside ``transaction()`` discards every staged event.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any
from uuid import uuid4

from royalty_kernel.domain.clock import Clock, SystemClock
from royalty_kernel.domain.events import EventType, LedgerEvent
from royalty_kernel.logging_config import get_logger

logger = get_logger("services.event_log")


def new_origin_tx_id() -> str:
    """Identity for a call that was not triggered by an external transaction."""
    return f"tx-{uuid4().hex}"


class LogTransaction:
    """Events staged by one mutating call, committed together or not at all."""

    def __init__(self, origin_tx_id: str):
        self.origin_tx_id = origin_tx_id
        self._staged: list[tuple[EventType, dict[str, Any]]] = []
        self.committed: list[LedgerEvent] = []

    def emit(self, event_type: EventType, **fields: Any) -> None:
        self._staged.append((event_type, fields))

    @property
    def staged_count(self) -> int:
        return len(self._staged)


class EventLog:
    """
    In-process append-only log.

    Contract:
        ``transaction()`` yields a LogTransaction; on normal exit its staged
        events receive positions and timestamps and become visible to
        ``read()``.  On exception nothing is appended.

    Guarantees:
        - ``read(after_position)`` returns events in position order.
        - ``latest_position()`` is 0 for an empty log.
    """

    def __init__(self, clock: Clock | None = None):
        self._clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._events: list[LedgerEvent] = []

    @contextmanager
    def transaction(self, origin_tx_id: str | None = None) -> Iterator[LogTransaction]:
        tx = LogTransaction(origin_tx_id or new_origin_tx_id())
        yield tx
        self._commit(tx)

    def _commit(self, tx: LogTransaction) -> None:
        if not tx.staged_count:
            return
        with self._lock:
            timestamp = self._clock.now()
            for event_type, fields in tx._staged:
                event = LedgerEvent(
                    event_type=event_type,
                    origin_tx_id=tx.origin_tx_id,
                    log_position=len(self._events) + 1,
                    timestamp=timestamp,
                    **fields,
                )
                self._events.append(event)
                tx.committed.append(event)

        for event in tx.committed:
            logger.debug(
                "event_appended",
                extra={
                    "event_type": event.event_type.value,
                    "dedup_key": event.dedup_key,
                    "work_id": event.work_id,
                },
            )

    def read(self, after_position: int = 0, limit: int | None = None) -> list[LedgerEvent]:
        """Events with ``log_position > after_position``, oldest first."""
        with self._lock:
            selected = self._events[max(after_position, 0):]
        if limit is not None:
            selected = selected[:limit]
        return list(selected)

    def latest_position(self) -> int:
        with self._lock:
            return len(self._events)

    def __len__(self) -> int:
        return self.latest_position()

    def __iter__(self) -> Iterator[LedgerEvent]:
        return iter(self.read())
