"""
RoyaltySplitter -- the registry/engine API surface.

Responsibility:
    Wires SplitRegistry, DistributionEngine, WithdrawalLedger and EventLog
    around one shared KeyedCriticalSection and exposes the synchronous
    operations callers use: register_work, set_splits, deposit_revenue,
    claim, emergency_withdraw, get_recipients.

Architecture position:
    Kernel > Services -- facade over the authoritative side.  The
    reconciliation side only ever sees this object's ``event_log``.

Invariants enforced:
    - All components share one critical-section registry, so a claim's
      transfer excludes deposits crediting the same identity and any
      callback into this facade during a transfer is rejected.
    - Every call either returns a result or raises one typed
      RoyaltyKernelError with no partial state change.
"""

from __future__ import annotations

from collections.abc import Sequence

from royalty_kernel.domain.clock import Clock, SystemClock
from royalty_kernel.domain.values import Identity, SplitSet, Work
from royalty_kernel.logging_config import get_logger
from royalty_kernel.services.critical_section import KeyedCriticalSection
from royalty_kernel.services.distribution_engine import DepositResult, DistributionEngine
from royalty_kernel.services.event_log import EventLog
from royalty_kernel.services.split_registry import SplitRegistry
from royalty_kernel.services.transport import InMemoryTransport, PayoutTransport
from royalty_kernel.services.withdrawal_ledger import PayoutReceipt, WithdrawalLedger

logger = get_logger("services.royalty_splitter")


class RoyaltySplitter:
    """Single entry point for registration, deposits and withdrawals."""

    def __init__(
        self,
        administrator: Identity,
        transport: PayoutTransport | None = None,
        clock: Clock | None = None,
        event_log: EventLog | None = None,
        transfer_timeout_seconds: float | None = None,
    ):
        self._clock = clock or SystemClock()
        self.event_log = event_log or EventLog(self._clock)
        self.transport = transport or InMemoryTransport()
        sections = KeyedCriticalSection()

        self.registry = SplitRegistry(self.event_log, administrator, sections)
        self.ledger = WithdrawalLedger(
            self.event_log,
            self.transport,
            administrator,
            sections,
            transfer_timeout_seconds=transfer_timeout_seconds,
        )
        self.engine = DistributionEngine(self.registry, self.ledger, self.event_log, sections)

        logger.info(
            "splitter_initialized",
            extra={
                "administrator": administrator,
                "transport": type(self.transport).__name__,
                "transfer_timeout_seconds": transfer_timeout_seconds,
            },
        )

    @property
    def administrator(self) -> Identity:
        return self.registry.administrator

    # Registry

    def authorize_registrant(
        self, registrant: Identity, *, caller: Identity, origin_tx_id: str | None = None
    ) -> None:
        self.registry.authorize_registrant(registrant, caller=caller, origin_tx_id=origin_tx_id)

    def register_work(
        self,
        work_id: object,
        owner: Identity,
        asset_reference: str | None = None,
        *,
        caller: Identity | None = None,
        origin_tx_id: str | None = None,
    ) -> Work:
        """Register a work; ``caller`` defaults to the administrator."""
        return self.registry.register_work(
            work_id,
            owner,
            asset_reference,
            caller=caller if caller is not None else self.administrator,
            origin_tx_id=origin_tx_id,
        )

    def set_splits(
        self,
        work_id: object,
        recipients: Sequence[Identity],
        shares_bps: Sequence[int],
        *,
        caller: Identity,
        origin_tx_id: str | None = None,
    ) -> SplitSet:
        return self.registry.set_splits(
            work_id, recipients, shares_bps, caller=caller, origin_tx_id=origin_tx_id
        )

    def get_recipients(self, work_id: object) -> tuple[Identity, ...]:
        return self.registry.get_recipients(work_id)

    def get_split_set(self, work_id: object) -> SplitSet | None:
        return self.registry.get_split_set(work_id)

    def get_work(self, work_id: object) -> Work:
        return self.registry.get_work(work_id)

    # Engine

    def deposit_revenue(
        self,
        work_id: object,
        amount: int,
        *,
        depositor: Identity | None = None,
        origin_tx_id: str | None = None,
    ) -> DepositResult:
        return self.engine.deposit_revenue(
            work_id, amount, depositor=depositor, origin_tx_id=origin_tx_id
        )

    # Ledger

    def claim(self, identity: Identity, *, origin_tx_id: str | None = None) -> PayoutReceipt:
        return self.ledger.claim(identity, origin_tx_id=origin_tx_id)

    def emergency_withdraw(
        self, amount: int, *, caller: Identity, origin_tx_id: str | None = None
    ) -> PayoutReceipt:
        return self.ledger.emergency_withdraw(amount, caller=caller, origin_tx_id=origin_tx_id)

    def pending_balance(self, identity: Identity) -> int:
        return self.ledger.pending_balance(identity)

    def custodied_total(self) -> int:
        return self.ledger.custodied_total()

    def close(self) -> None:
        self.ledger.close()
