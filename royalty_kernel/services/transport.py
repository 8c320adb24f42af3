"""
Payout transports -- the external payment step invoked by claims.

A transport moves value out of custody to an identity and returns an
external reference (a transaction hash, a bank transfer id).  It signals
failure by raising; the WithdrawalLedger rolls the debit back.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from uuid import uuid4


class PayoutTransport(ABC):
    """Moves ``amount`` smallest units to ``identity``."""

    @abstractmethod
    def send(self, identity: str, amount: int) -> str | None:
        """Perform the transfer and return an external reference, or raise."""
        ...


@dataclass(frozen=True)
class TransferRecord:
    identity: str
    amount: int
    reference: str


class InMemoryTransport(PayoutTransport):
    """Records transfers in process. Used for embedding and tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._delivered: dict[str, int] = defaultdict(int)
        self._transfers: list[TransferRecord] = []

    def send(self, identity: str, amount: int) -> str:
        reference = f"transfer-{uuid4().hex}"
        with self._lock:
            self._delivered[identity] += amount
            self._transfers.append(TransferRecord(identity, amount, reference))
        return reference

    def delivered_to(self, identity: str) -> int:
        with self._lock:
            return self._delivered.get(identity, 0)

    @property
    def transfers(self) -> list[TransferRecord]:
        with self._lock:
            return list(self._transfers)
