"""
Tests for the pull-payment protocol.

Covers debit-before-transfer with rollback, timeouts, re-entrant callbacks
from the transport, custody accounting and emergency withdrawals.
"""

import threading
import time

import pytest

from royalty_kernel.domain.events import EventType
from royalty_kernel.exceptions import (
    InsufficientFundsError,
    InvalidAmountError,
    NoPendingBalanceError,
    ReentrantCallError,
    TransferFailedError,
    TransferTimeoutError,
    UnauthorizedError,
)
from royalty_kernel.services.royalty_splitter import RoyaltySplitter
from royalty_kernel.services.transport import InMemoryTransport, PayoutTransport

ADMIN = "admin"
OWNER = "owner"


class FailingTransport(PayoutTransport):
    def __init__(self):
        self.attempts = 0

    def send(self, identity, amount):
        self.attempts += 1
        raise ConnectionError("payment rail unavailable")


class FlakyTransport(PayoutTransport):
    """Fails the first ``failures`` sends, then succeeds."""

    def __init__(self, failures):
        self.failures = failures
        self.delivered: dict[str, int] = {}

    def send(self, identity, amount):
        if self.failures:
            self.failures -= 1
            raise TimeoutError("gateway timeout")
        self.delivered[identity] = self.delivered.get(identity, 0) + amount
        return f"ok-{identity}"


class BlockingTransport(PayoutTransport):
    """Blocks every send until released, then succeeds or fails."""

    def __init__(self, fail=False):
        self.release = threading.Event()
        self.fail = fail

    def send(self, identity, amount):
        self.release.wait(timeout=5)
        if self.fail:
            raise ConnectionError("payment rail dropped the transfer")
        return "late-reference"


class SlowFirstTransport(PayoutTransport):
    """The first send outlasts the claim timeout; later sends return at once."""

    def __init__(self, delay):
        self.delay = delay
        self.calls = 0
        self.delivered: dict[str, int] = {}
        self._lock = threading.Lock()

    def send(self, identity, amount):
        with self._lock:
            self.calls += 1
            first = self.calls == 1
        if first:
            time.sleep(self.delay)
        with self._lock:
            self.delivered[identity] = self.delivered.get(identity, 0) + amount
        return f"ref-{identity}"


class CallbackTransport(PayoutTransport):
    """Calls back into the splitter from inside the transfer."""

    def __init__(self, callback):
        self.callback = callback
        self.seen: list[BaseException] = []

    def send(self, identity, amount):
        try:
            self.callback()
        except Exception as exc:
            self.seen.append(exc)
            raise
        return "unreachable"


def _funded(transport, timeout=None, amount=100):
    splitter = RoyaltySplitter(ADMIN, transport=transport, transfer_timeout_seconds=timeout)
    splitter.register_work(1, OWNER)
    splitter.set_splits(1, ["alice", "bob"], [7000, 3000], caller=OWNER)
    splitter.deposit_revenue(1, amount)
    return splitter


class TestClaimRollback:
    def test_failed_transfer_restores_balance(self):
        transport = FailingTransport()
        splitter = _funded(transport)
        events_before = len(splitter.event_log)

        with pytest.raises(TransferFailedError) as exc_info:
            splitter.claim("alice")

        assert exc_info.value.retryable
        assert "ConnectionError" in exc_info.value.reason
        assert splitter.pending_balance("alice") == 70
        assert splitter.custodied_total() == 100
        assert len(splitter.event_log) == events_before

    def test_claim_succeeds_after_transport_recovers(self):
        transport = FlakyTransport(failures=1)
        splitter = _funded(transport)
        with pytest.raises(TransferFailedError):
            splitter.claim("alice")

        receipt = splitter.claim("alice")

        assert receipt.amount == 70
        assert splitter.pending_balance("alice") == 0
        assert transport.delivered == {"alice": 70}

    def test_rollback_is_logged(self, captured_logs):
        splitter = _funded(FailingTransport())
        with pytest.raises(TransferFailedError):
            splitter.claim("alice")

        logs = [r for r in captured_logs() if r["message"] == "claim_rolled_back"]
        assert logs and logs[0]["amount"] == 70
        assert logs[0]["identity"] == "alice"


class TestClaimTimeout:
    def test_timeout_keeps_debit_while_transfer_outstanding(self):
        transport = BlockingTransport()
        splitter = _funded(transport, timeout=0.05)
        try:
            with pytest.raises(TransferTimeoutError) as exc_info:
                splitter.claim("alice")

            assert exc_info.value.timeout_seconds == 0.05
            assert exc_info.value.outstanding
            assert isinstance(exc_info.value, TransferFailedError)
            assert splitter.pending_balance("alice") == 0
            assert splitter.ledger.outstanding_amount("alice") == 70
            assert splitter.custodied_total() == 30
        finally:
            transport.release.set()
            splitter.ledger.wait_for_settlement(timeout=5)
            splitter.close()

    def test_late_success_records_payout(self):
        transport = BlockingTransport()
        splitter = _funded(transport, timeout=0.05)
        try:
            with pytest.raises(TransferTimeoutError):
                splitter.claim("alice", origin_tx_id="0xclaim")
            transport.release.set()

            assert splitter.ledger.wait_for_settlement(timeout=5)
            (claimed,) = [e for e in splitter.event_log.read() if e.event_type == EventType.PAYOUT_CLAIMED]
            assert (claimed.identity, claimed.amount) == ("alice", 70)
            assert claimed.origin_tx_id == "0xclaim"
            assert claimed.attributes["transfer_reference"] == "late-reference"
            assert splitter.ledger.outstanding_amount("alice") == 0
            assert splitter.custodied_total() == 30
        finally:
            splitter.close()

    def test_late_failure_restores_balance(self, captured_logs):
        transport = BlockingTransport(fail=True)
        splitter = _funded(transport, timeout=0.05)
        events_before = len(splitter.event_log)
        try:
            with pytest.raises(TransferTimeoutError):
                splitter.claim("alice")
            transport.release.set()

            assert splitter.ledger.wait_for_settlement(timeout=5)
            assert splitter.pending_balance("alice") == 70
            assert splitter.custodied_total() == 100
            assert len(splitter.event_log) == events_before
            logs = [r for r in captured_logs() if r["message"] == "late_transfer_failed"]
            assert logs[0]["identity"] == "alice"
            assert "ConnectionError" in logs[0]["reason"]
        finally:
            splitter.close()

    def test_retry_during_outstanding_transfer_does_not_pay_twice(self):
        transport = SlowFirstTransport(delay=0.3)
        splitter = _funded(transport, timeout=0.05)
        try:
            with pytest.raises(TransferTimeoutError):
                splitter.claim("alice")
            with pytest.raises(TransferFailedError, match="still outstanding"):
                splitter.claim("alice")

            assert splitter.ledger.wait_for_settlement(timeout=5)
            with pytest.raises(NoPendingBalanceError):
                splitter.claim("alice")
            assert transport.delivered == {"alice": 70}
            assert splitter.custodied_total() == 30
        finally:
            splitter.close()

    def test_credit_during_outstanding_transfer_survives_late_failure(self):
        transport = BlockingTransport(fail=True)
        splitter = _funded(transport, timeout=0.05)
        try:
            with pytest.raises(TransferTimeoutError):
                splitter.claim("alice")
            splitter.deposit_revenue(1, 10)
            transport.release.set()

            assert splitter.ledger.wait_for_settlement(timeout=5)
            assert splitter.pending_balance("alice") == 77
            assert splitter.custodied_total() == 110
        finally:
            splitter.close()

    def test_emergency_timeout_keeps_custody_reserved(self):
        transport = BlockingTransport()
        splitter = _funded(transport, timeout=0.05)
        try:
            with pytest.raises(TransferTimeoutError):
                splitter.emergency_withdraw(40, caller=ADMIN)
            assert splitter.custodied_total() == 60

            transport.release.set()
            assert splitter.ledger.wait_for_settlement(timeout=5)
            assert splitter.custodied_total() == 60
            withdrawals = [
                e for e in splitter.event_log.read() if e.event_type == EventType.EMERGENCY_WITHDRAWAL
            ]
            assert [e.amount for e in withdrawals] == [40]
        finally:
            splitter.close()

    def test_fast_transfer_within_timeout(self):
        transport = InMemoryTransport()
        splitter = _funded(transport, timeout=5)
        try:
            receipt = splitter.claim("bob")

            assert receipt.transfer_reference.startswith("transfer-")
            assert transport.delivered_to("bob") == 30
        finally:
            splitter.close()


class TestReentrancy:
    @pytest.mark.parametrize("timeout", [None, 5])
    def test_claim_from_inside_transfer_rejected(self, timeout):
        holder = {}
        transport = CallbackTransport(lambda: holder["splitter"].claim("bob"))
        splitter = _funded(transport, timeout=timeout)
        holder["splitter"] = splitter
        try:
            with pytest.raises(TransferFailedError):
                splitter.claim("alice")

            assert len(transport.seen) == 1
            assert isinstance(transport.seen[0], ReentrantCallError)
            assert splitter.pending_balance("alice") == 70
            assert splitter.pending_balance("bob") == 30
        finally:
            splitter.close()

    def test_deposit_from_inside_transfer_rejected(self):
        holder = {}
        transport = CallbackTransport(lambda: holder["splitter"].deposit_revenue(1, 50))
        splitter = _funded(transport)
        holder["splitter"] = splitter

        with pytest.raises(TransferFailedError):
            splitter.claim("alice")

        assert isinstance(transport.seen[0], ReentrantCallError)
        assert transport.seen[0].operation == "deposit_revenue"
        assert splitter.custodied_total() == 100

    def test_set_splits_from_inside_transfer_rejected(self):
        holder = {}
        transport = CallbackTransport(
            lambda: holder["splitter"].set_splits(1, ["mallory"], [10000], caller=OWNER)
        )
        splitter = _funded(transport)
        holder["splitter"] = splitter

        with pytest.raises(TransferFailedError):
            splitter.claim("alice")

        assert isinstance(transport.seen[0], ReentrantCallError)
        assert splitter.get_recipients(1) == ("alice", "bob")


class TestEmergencyWithdraw:
    def test_admin_withdraws_from_custody(self, captured_logs):
        transport = InMemoryTransport()
        splitter = _funded(transport)

        receipt = splitter.emergency_withdraw(40, caller=ADMIN)

        assert receipt.amount == 40
        assert transport.delivered_to(ADMIN) == 40
        assert splitter.custodied_total() == 60
        assert splitter.pending_balance("alice") == 70
        assert receipt.event.attributes["administrative"] is True

        logs = [r for r in captured_logs() if r["message"] == "emergency_withdrawal"]
        assert logs[0]["level"] == "WARNING"
        assert logs[0]["administrative"] is True

    def test_non_admin_rejected(self):
        splitter = _funded(InMemoryTransport())

        with pytest.raises(UnauthorizedError):
            splitter.emergency_withdraw(1, caller=OWNER)

    def test_exceeding_custody_rejected(self):
        splitter = _funded(InMemoryTransport())

        with pytest.raises(InsufficientFundsError) as exc_info:
            splitter.emergency_withdraw(101, caller=ADMIN)

        assert exc_info.value.available == 100
        assert splitter.custodied_total() == 100

    @pytest.mark.parametrize("amount", [0, -1, 2.5])
    def test_invalid_amount(self, amount):
        splitter = _funded(InMemoryTransport())

        with pytest.raises(InvalidAmountError):
            splitter.emergency_withdraw(amount, caller=ADMIN)

    def test_claim_after_drain_fails_cleanly(self):
        splitter = _funded(InMemoryTransport())
        splitter.emergency_withdraw(50, caller=ADMIN)

        with pytest.raises(InsufficientFundsError):
            splitter.claim("alice")

        assert splitter.pending_balance("alice") == 70
        assert splitter.claim("bob").amount == 30

    def test_failed_emergency_transfer_restores_custody(self):
        splitter = _funded(FailingTransport())

        with pytest.raises(TransferFailedError):
            splitter.emergency_withdraw(10, caller=ADMIN)

        assert splitter.custodied_total() == 100


class TestBalances:
    def test_no_balance(self):
        splitter = _funded(InMemoryTransport())

        with pytest.raises(NoPendingBalanceError):
            splitter.claim("stranger")

    def test_balances_snapshot_skips_zero(self):
        splitter = _funded(InMemoryTransport(), amount=1)

        assert splitter.ledger.balances() == {OWNER: 1}
