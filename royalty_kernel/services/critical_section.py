"""
KeyedCriticalSection -- per-key mutual exclusion with re-entry rejection.

Responsibility:
    Serializes mutating engine calls that touch the same work or identity
    while letting calls on unrelated keys run in parallel.  There is no
    global lock; each live key owns a ``threading.Lock`` that is dropped
    once no call holds or waits for it.

Architecture position:
    Kernel > Services -- infrastructure shared by SplitRegistry,
    DistributionEngine and WithdrawalLedger.

Invariants enforced:
    - At most one mutating call holds a given key at a time.
    - Multi-key acquisition is always in sorted key order, so two calls
      that need overlapping key sets cannot deadlock.
    - While a context holds any key (for example during an external
      transfer inside ``claim``), a nested mutating call from that same
      context raises ReentrantCallError instead of waiting or interleaving.
      The held-key set lives in a ContextVar, so callbacks run through
      ``contextvars.copy_context()`` on another thread are also rejected.

Failure modes:
    - ReentrantCallError on nested entry.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar

from royalty_kernel.exceptions import ReentrantCallError
from royalty_kernel.logging_config import get_logger

logger = get_logger("services.critical_section")

LockKey = tuple[str, str]

_held_keys: ContextVar[frozenset[LockKey]] = ContextVar(
    "royalty_held_keys", default=frozenset()
)


def work_key(work_id: str) -> LockKey:
    return ("work", work_id)


def balance_key(identity: str) -> LockKey:
    return ("balance", identity)


CUSTODY_KEY: LockKey = ("custody", "*")
REGISTRY_KEY: LockKey = ("registry", "*")


def held_keys() -> frozenset[LockKey]:
    """Keys held by the current context."""
    return _held_keys.get()


class _KeyLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class KeyedCriticalSection:
    """
    Lock per key, acquired in a global sorted order.

    A key's lock exists only while some call holds or waits for it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[LockKey, _KeyLock] = {}

    def _checkout(self, key: LockKey) -> _KeyLock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _KeyLock()
            entry.users += 1
            return entry

    def _checkin(self, key: LockKey, entry: _KeyLock) -> None:
        with self._guard:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    def active_keys(self) -> int:
        """Number of keys currently held or awaited."""
        with self._guard:
            return len(self._locks)

    def ensure_not_reentrant(self, operation: str) -> None:
        """Raise ReentrantCallError if the current context holds any key."""
        current = _held_keys.get()
        if current:
            held = sorted(f"{kind}:{name}" for kind, name in current)
            logger.warning(
                "reentrant_call_rejected",
                extra={"operation": operation, "held_keys": held},
            )
            raise ReentrantCallError(operation, held)

    @contextmanager
    def hold(self, keys: Iterable[LockKey], operation: str) -> Iterator[None]:
        """
        Hold every key in ``keys`` for the duration of the block.

        Raises:
            ReentrantCallError: The current context already holds keys.
        """
        self.ensure_not_reentrant(operation)

        ordered = sorted(set(keys))
        acquired: list[tuple[LockKey, _KeyLock]] = []
        try:
            for key in ordered:
                entry = self._checkout(key)
                try:
                    entry.lock.acquire()
                except BaseException:
                    self._checkin(key, entry)
                    raise
                acquired.append((key, entry))
            token = _held_keys.set(frozenset(ordered))
            try:
                yield
            finally:
                _held_keys.reset(token)
        finally:
            for key, entry in reversed(acquired):
                entry.lock.release()
                self._checkin(key, entry)
