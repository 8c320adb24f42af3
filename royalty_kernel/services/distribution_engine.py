"""
DistributionEngine -- splits deposited revenue and credits pending balances.

Responsibility:
    For one deposit against a work, computes every recipient's floored share
    and the owner's remainder (``domain.distribution``), credits the
    WithdrawalLedger, and emits exactly one ``revenue.distributed`` event.

Architecture position:
    Kernel > Services -- reads SplitRegistry, writes WithdrawalLedger and
    EventLog.  Never touches the relational mirror.

Invariants enforced:
    - Conservation: total credited == deposited amount for every input.
    - The split set used is the one installed when the work and balance
      keys were acquired; a concurrent ``set_splits`` either happens wholly
      before or wholly after this deposit.
    - All validation happens before any credit, so failures change nothing.

Failure modes:
    - WorkNotFoundError, NoRecipientsError, InvalidAmountError,
      ReentrantCallError.
"""

from __future__ import annotations

from dataclasses import dataclass

from royalty_kernel.domain.distribution import Distribution, compute_distribution
from royalty_kernel.domain.events import EventType, LedgerEvent
from royalty_kernel.domain.values import Identity, is_whole_amount, normalize_work_id
from royalty_kernel.exceptions import InvalidAmountError, NoRecipientsError
from royalty_kernel.logging_config import LogContext, get_logger
from royalty_kernel.services.critical_section import (
    KeyedCriticalSection,
    balance_key,
    work_key,
)
from royalty_kernel.services.event_log import EventLog
from royalty_kernel.services.split_registry import SplitRegistry
from royalty_kernel.services.withdrawal_ledger import WithdrawalLedger

logger = get_logger("services.distribution_engine")


@dataclass(frozen=True)
class DepositResult:
    """A committed distribution and the event that records it."""

    distribution: Distribution
    event: LedgerEvent


class DistributionEngine:
    """Applies deposits to the WithdrawalLedger according to installed split sets."""

    def __init__(
        self,
        registry: SplitRegistry,
        ledger: WithdrawalLedger,
        event_log: EventLog,
        sections: KeyedCriticalSection | None = None,
    ):
        self._registry = registry
        self._ledger = ledger
        self._log = event_log
        self._sections = sections or KeyedCriticalSection()

    def deposit_revenue(
        self,
        work_id: object,
        amount: int,
        *,
        depositor: Identity | None = None,
        origin_tx_id: str | None = None,
    ) -> DepositResult:
        """
        Split ``amount`` across the work's split set and credit balances.

        Preconditions:
            - The work is registered and has a split set.
            - ``amount`` is a positive int in smallest units.

        Postconditions:
            - Every recipient's balance grew by ``floor(amount * bps / 10000)``.
            - The owner's balance additionally grew by the remainder.
            - One ``revenue.distributed`` event is in the log.

        Raises:
            WorkNotFoundError, NoRecipientsError, InvalidAmountError,
            ReentrantCallError.
        """
        self._sections.ensure_not_reentrant("deposit_revenue")
        key = normalize_work_id(work_id)

        with LogContext.bind(work_id=key):
            while True:
                work = self._registry.get_work(key)
                snapshot = self._registry.get_split_set(key)
                if snapshot is None:
                    raise NoRecipientsError(key)
                if not is_whole_amount(amount) or amount <= 0:
                    raise InvalidAmountError(amount)

                keys = [work_key(key), balance_key(work.owner)]
                keys.extend(balance_key(r) for r in snapshot.recipients)

                with self._sections.hold(keys, "deposit_revenue"):
                    if self._registry.get_split_set(key) is not snapshot:
                        # Splits replaced between snapshot and lock; recompute keys.
                        continue

                    distribution = compute_distribution(amount, snapshot, work.owner)
                    with self._log.transaction(origin_tx_id) as tx:
                        tx.emit(
                            EventType.REVENUE_DISTRIBUTED,
                            work_id=key,
                            actor=depositor,
                            recipients=distribution.recipients,
                            shares=distribution.shares,
                            amount=amount,
                            remainder=distribution.remainder,
                            remainder_recipient=distribution.remainder_recipient,
                            attributes={"shares_bps": list(snapshot.shares_bps)},
                        )
                    self._ledger.credit(distribution.credits(), amount)

                logger.info(
                    "revenue_distributed",
                    extra={
                        "amount": amount,
                        "distributed": distribution.distributed,
                        "remainder": distribution.remainder,
                        "recipient_count": len(distribution.allocations),
                    },
                )
                return DepositResult(distribution, tx.committed[0])
