"""
WithdrawalLedger -- pending balances and the pull-payment protocol.

Responsibility:
    Holds each identity's withdrawable balance and the total value in
    custody.  ``claim`` zeroes a balance and pays it out through the
    PayoutTransport; ``emergency_withdraw`` lets the administrator move
    custodied value out of band.

Architecture position:
    Kernel > Services -- authoritative engine state.  Only the
    DistributionEngine credits balances; only ``claim`` debits them.

Invariants enforced:
    - Balances are never negative and never reset except by a claim.
    - Debit before transfer: the balance is zeroed while the identity's key
      is held, then the transfer runs as the last fallible step.  If it
      raises, or times out before the transport started, the balance and
      custody are restored and no event is emitted.
    - A transfer that times out while the transport is still running is
      outstanding: the debit stays in place and further claims for that
      identity fail until the transport returns.  A late success emits the
      payout event; a late failure restores the balance and custody.
    - While a transfer is outstanding no other mutating call for the same
      identity can start; a callback from the transport into the engine is
      rejected with ReentrantCallError.
    - Emergency withdrawals never touch per-identity balances and are logged
      and emitted as administrative actions.

Failure modes:
    - NoPendingBalanceError, InsufficientFundsError, UnauthorizedError,
      InvalidAmountError, TransferFailedError, TransferTimeoutError,
      ReentrantCallError.
"""

from __future__ import annotations

import contextvars
import threading
from collections.abc import Callable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from functools import partial

from royalty_kernel.domain.events import EventType, LedgerEvent
from royalty_kernel.domain.values import Identity, is_whole_amount
from royalty_kernel.exceptions import (
    InsufficientFundsError,
    InvalidAmountError,
    NoPendingBalanceError,
    TransferFailedError,
    TransferTimeoutError,
    UnauthorizedError,
)
from royalty_kernel.logging_config import LogContext, get_logger
from royalty_kernel.services.critical_section import (
    CUSTODY_KEY,
    KeyedCriticalSection,
    balance_key,
    held_keys,
)
from royalty_kernel.services.event_log import EventLog
from royalty_kernel.services.transport import PayoutTransport

logger = get_logger("services.withdrawal_ledger")


@dataclass(frozen=True)
class PayoutReceipt:
    """Outcome of a successful claim or emergency withdrawal."""

    identity: Identity
    amount: int
    transfer_reference: str | None
    event: LedgerEvent


def _late_failure(future: Future) -> str | None:
    """Failure reason of a finished transfer future, or None if it succeeded."""
    if future.cancelled():
        return "cancelled"
    exc = future.exception()
    if exc is not None:
        return f"{type(exc).__name__}: {exc}"
    return None


class WithdrawalLedger:
    """
    Pending-balance store with atomic claim semantics.

    Contract:
        ``credit`` must be called with the balance keys of every credited
        identity already held by the caller (the DistributionEngine does
        this).  ``claim`` and ``emergency_withdraw`` take their own keys.
    """

    def __init__(
        self,
        event_log: EventLog,
        transport: PayoutTransport,
        administrator: Identity,
        sections: KeyedCriticalSection | None = None,
        transfer_timeout_seconds: float | None = None,
    ):
        self._log = event_log
        self._transport = transport
        self._administrator = administrator
        self._sections = sections or KeyedCriticalSection()
        self._timeout = transfer_timeout_seconds
        self._balances: dict[Identity, int] = {}
        self._custody = 0
        self._custody_lock = threading.Lock()
        self._executor: ThreadPoolExecutor | None = None
        self._executor_lock = threading.Lock()
        # Guarded by the identity's balance key.
        self._outstanding_claims: dict[Identity, int] = {}
        self._settled = threading.Condition()
        self._unsettled = 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def pending_balance(self, identity: Identity) -> int:
        return self._balances.get(identity, 0)

    def custodied_total(self) -> int:
        with self._custody_lock:
            return self._custody

    def balances(self) -> dict[Identity, int]:
        """Snapshot of non-zero pending balances."""
        return {k: v for k, v in dict(self._balances).items() if v}

    def outstanding_amount(self, identity: Identity) -> int:
        """Amount debited from ``identity`` whose transfer has not returned yet."""
        return self._outstanding_claims.get(identity, 0)

    def wait_for_settlement(self, timeout: float | None = None) -> bool:
        """Block until every outstanding transfer has settled. False on timeout."""
        with self._settled:
            return self._settled.wait_for(lambda: self._unsettled == 0, timeout)

    # ------------------------------------------------------------------
    # Credit side (DistributionEngine only)
    # ------------------------------------------------------------------

    def credit(self, credits: Mapping[Identity, int], deposited: int) -> None:
        """Add ``credits`` to balances and ``deposited`` to custody."""
        held = held_keys()
        for identity in credits:
            assert balance_key(identity) in held, f"balance key for {identity} not held"
        assert sum(credits.values()) == deposited, "credits must equal the deposit"

        with self._custody_lock:
            self._custody += deposited
        for identity, amount in credits.items():
            self._balances[identity] = self._balances.get(identity, 0) + amount

    # ------------------------------------------------------------------
    # Debit side
    # ------------------------------------------------------------------

    def claim(self, identity: Identity, *, origin_tx_id: str | None = None) -> PayoutReceipt:
        """
        Zero ``identity``'s balance and transfer it out.

        Raises:
            NoPendingBalanceError: Nothing owed.
            InsufficientFundsError: Custody cannot cover the balance.
            TransferFailedError: Transport raised, or an earlier transfer to
                ``identity`` is still outstanding.
            TransferTimeoutError: Transport did not return in time.  When
                ``outstanding`` is set the debit stays until it does.
        """
        abandoned: list[Future] = []
        with LogContext.bind(identity=identity):
            try:
                with self._sections.hold([balance_key(identity)], "claim"):
                    outstanding = self._outstanding_claims.get(identity)
                    if outstanding is not None:
                        raise TransferFailedError(
                            identity, outstanding, "an earlier transfer is still outstanding"
                        )

                    amount = self._balances.get(identity, 0)
                    if amount == 0:
                        raise NoPendingBalanceError(identity)

                    self._reserve_custody(amount)
                    self._balances[identity] = 0
                    try:
                        reference = self._transfer(identity, amount, abandoned.append)
                    except TransferTimeoutError as exc:
                        if exc.outstanding:
                            self._outstanding_claims[identity] = amount
                            logger.warning("claim_transfer_outstanding", extra={"amount": amount})
                        else:
                            self._restore_balance(identity, amount)
                            logger.warning("claim_rolled_back", extra={"amount": amount}, exc_info=True)
                        raise
                    except TransferFailedError:
                        self._restore_balance(identity, amount)
                        logger.warning("claim_rolled_back", extra={"amount": amount}, exc_info=True)
                        raise

                    receipt = self._record_claim(identity, amount, reference, origin_tx_id)
            finally:
                # Attached once the key is released; a transfer that has
                # already finished runs its callback right here.
                for future in abandoned:
                    future.add_done_callback(partial(self._settle_claim, identity, origin_tx_id))
        return receipt

    def emergency_withdraw(
        self,
        amount: int,
        *,
        caller: Identity,
        origin_tx_id: str | None = None,
    ) -> PayoutReceipt:
        """
        Administrator-only withdrawal from custody to the administrator.

        Does not touch pending balances.  Recorded as an administrative
        action both in the log stream and in the event log.  A transfer
        still running at the timeout keeps its custody reservation until
        it returns.

        Raises:
            UnauthorizedError: Caller is not the administrator.
            InvalidAmountError: Amount is not a positive integer.
            InsufficientFundsError: Amount exceeds custody.
            TransferFailedError: Transport raised or timed out.
        """
        abandoned: list[Future] = []
        with LogContext.bind(identity=caller):
            try:
                with self._sections.hold([CUSTODY_KEY], "emergency_withdraw"):
                    if caller != self._administrator:
                        raise UnauthorizedError(caller, "emergency_withdraw", "administrator only")
                    if not is_whole_amount(amount) or amount <= 0:
                        raise InvalidAmountError(amount)

                    self._reserve_custody(amount)
                    try:
                        reference = self._transfer(caller, amount, abandoned.append)
                    except TransferTimeoutError as exc:
                        if exc.outstanding:
                            logger.warning("emergency_withdrawal_outstanding", extra={"amount": amount})
                        else:
                            self._release_custody(amount)
                            logger.warning(
                                "emergency_withdrawal_rolled_back", extra={"amount": amount}, exc_info=True
                            )
                        raise
                    except TransferFailedError:
                        self._release_custody(amount)
                        logger.warning("emergency_withdrawal_rolled_back", extra={"amount": amount}, exc_info=True)
                        raise

                    receipt = self._record_emergency(caller, amount, reference, origin_tx_id)
            finally:
                for future in abandoned:
                    future.add_done_callback(
                        partial(self._settle_emergency, caller, amount, origin_tx_id)
                    )
        return receipt

    # ------------------------------------------------------------------
    # Late settlement
    # ------------------------------------------------------------------

    def _settle_claim(self, identity: Identity, origin_tx_id: str | None, future: Future) -> None:
        """Done-callback for a claim transfer that outlived its timeout."""
        try:
            with LogContext.bind(identity=identity), self._sections.hold(
                [balance_key(identity)], "settle_claim"
            ):
                amount = self._outstanding_claims.pop(identity)
                failure = _late_failure(future)
                if failure is not None:
                    self._restore_balance(identity, amount)
                    logger.warning("late_transfer_failed", extra={"amount": amount, "reason": failure})
                    return
                self._record_claim(identity, amount, future.result(), origin_tx_id)
                logger.info("late_transfer_settled", extra={"amount": amount})
        finally:
            self._mark_settled()

    def _settle_emergency(
        self,
        caller: Identity,
        amount: int,
        origin_tx_id: str | None,
        future: Future,
    ) -> None:
        try:
            with LogContext.bind(identity=caller), self._sections.hold([CUSTODY_KEY], "settle_emergency"):
                failure = _late_failure(future)
                if failure is not None:
                    self._release_custody(amount)
                    logger.warning("late_transfer_failed", extra={"amount": amount, "reason": failure})
                    return
                self._record_emergency(caller, amount, future.result(), origin_tx_id)
        finally:
            self._mark_settled()

    def _mark_settled(self) -> None:
        with self._settled:
            self._unsettled -= 1
            self._settled.notify_all()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _record_claim(
        self,
        identity: Identity,
        amount: int,
        reference: str | None,
        origin_tx_id: str | None,
    ) -> PayoutReceipt:
        with self._log.transaction(origin_tx_id) as tx:
            tx.emit(
                EventType.PAYOUT_CLAIMED,
                identity=identity,
                actor=identity,
                amount=amount,
                attributes={"transfer_reference": reference},
            )
        logger.info("payout_claimed", extra={"amount": amount, "transfer_reference": reference})
        return PayoutReceipt(identity, amount, reference, tx.committed[0])

    def _record_emergency(
        self,
        caller: Identity,
        amount: int,
        reference: str | None,
        origin_tx_id: str | None,
    ) -> PayoutReceipt:
        with self._log.transaction(origin_tx_id) as tx:
            tx.emit(
                EventType.EMERGENCY_WITHDRAWAL,
                identity=caller,
                actor=caller,
                amount=amount,
                attributes={"administrative": True, "transfer_reference": reference},
            )
        logger.warning(
            "emergency_withdrawal",
            extra={
                "administrative": True,
                "amount": amount,
                "custody_remaining": self.custodied_total(),
                "transfer_reference": reference,
            },
        )
        return PayoutReceipt(caller, amount, reference, tx.committed[0])

    def _restore_balance(self, identity: Identity, amount: int) -> None:
        # Credits may have landed while a late transfer was outstanding.
        self._balances[identity] = self._balances.get(identity, 0) + amount
        self._release_custody(amount)

    def _reserve_custody(self, amount: int) -> None:
        with self._custody_lock:
            if amount > self._custody:
                raise InsufficientFundsError(amount, self._custody)
            self._custody -= amount

    def _release_custody(self, amount: int) -> None:
        with self._custody_lock:
            self._custody += amount

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(thread_name_prefix="royalty-transfer")
            return self._executor

    def _transfer(
        self,
        identity: Identity,
        amount: int,
        on_abandoned: Callable[[Future], None],
    ) -> str | None:
        """
        Run the transport; every failure surfaces as TransferFailedError.

        A send still running at the timeout cannot be cancelled.  Its future
        goes to ``on_abandoned`` and the timeout is raised with
        ``outstanding=True``.
        """
        try:
            if self._timeout is None:
                return self._transport.send(identity, amount)

            # Copy the context so the held-key set follows the call into the
            # worker thread and callbacks from the transport stay rejected.
            ctx = contextvars.copy_context()
            future = self._get_executor().submit(ctx.run, self._transport.send, identity, amount)
            done, _ = wait([future], timeout=self._timeout)
            if not done:
                if future.cancel():
                    raise TransferTimeoutError(identity, amount, self._timeout)
                with self._settled:
                    self._unsettled += 1
                on_abandoned(future)
                raise TransferTimeoutError(identity, amount, self._timeout, outstanding=True)
            return future.result()
        except TransferFailedError:
            raise
        except Exception as exc:
            raise TransferFailedError(identity, amount, f"{type(exc).__name__}: {exc}") from exc

    def close(self) -> None:
        """Release the transfer thread pool, if one was started."""
        with self._executor_lock:
            if self._executor is not None:
                self._executor.shutdown(wait=False, cancel_futures=True)
                self._executor = None
