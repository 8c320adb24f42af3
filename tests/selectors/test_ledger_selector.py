"""Tests for LedgerSelector reads over a reconciled mirror."""

import pytest

from royalty_kernel.models.security_event import SeverityLevel
from royalty_kernel.selectors.ledger_selector import (
    LedgerSelector,
    RoyaltyTotal,
    SplitAllocationDTO,
)


@pytest.fixture
def selector(splitter, pool, session, admin, alice, bob, carol):
    """Two works, a claim, an authorization and an emergency withdrawal, reconciled."""
    splitter.authorize_registrant(carol, caller=admin)
    splitter.register_work(1, carol, "ipfs://one", caller=carol)
    splitter.register_work(2, carol, caller=carol)
    splitter.set_splits(1, [alice, bob], [7000, 3000], caller=carol)
    splitter.set_splits(2, [bob], [10000], caller=carol)
    splitter.deposit_revenue(1, 100)
    splitter.deposit_revenue(1, 1)
    splitter.deposit_revenue(2, 40)
    splitter.claim(alice)
    splitter.emergency_withdraw(5, caller=admin)
    pool.catch_up()
    return LedgerSelector(session)


class TestWallets:
    def test_wallet(self, selector, alice):
        wallet = selector.wallet(alice)

        assert wallet.identity == alice
        assert wallet.balance == 0
        assert wallet.total_earned == 70
        assert wallet.total_withdrawn == 70

    def test_unknown_wallet(self, selector, admin):
        assert selector.wallet(admin) is None
        assert selector.balance_of(admin) == 0

    def test_wallets_sorted_by_identity(self, selector, alice, bob, carol):
        identities = [w.identity for w in selector.wallets()]

        assert identities == sorted([alice, bob, carol])

    def test_total_outstanding_matches_engine(self, selector, splitter, alice, bob, carol):
        expected = sum(splitter.pending_balance(i) for i in (alice, bob, carol))

        assert selector.total_outstanding() == expected == 71

    def test_wallet_dto_is_frozen(self, selector, alice):
        wallet = selector.wallet(alice)

        with pytest.raises(AttributeError):
            wallet.balance = 1_000_000


class TestPayouts:
    def test_payouts_for_identity(self, selector, alice, bob):
        payouts = selector.payouts(alice)

        assert len(payouts) == 1
        assert payouts[0].amount == 70
        assert payouts[0].status == "completed"
        assert payouts[0].transfer_reference.startswith("transfer-")
        assert selector.payouts(bob) == []

    def test_emergency_withdrawal_is_not_a_payout(self, selector, admin):
        assert selector.payouts(admin) == []
        assert len(selector.payouts()) == 1


class TestWorks:
    def test_work(self, selector, carol, alice, bob):
        work = selector.work("1")

        assert work.owner == carol
        assert work.asset_reference == "ipfs://one"
        assert work.total_revenue == 101
        assert work.allocations == (
            SplitAllocationDTO(alice, 7000),
            SplitAllocationDTO(bob, 3000),
        )

    def test_unknown_work(self, selector):
        assert selector.work("99") is None
        assert selector.split_allocations("99") == []

    def test_works_owned_by(self, selector, carol, alice):
        assert selector.works_owned_by(carol) == ["1", "2"]
        assert selector.works_owned_by(alice) == []

    def test_royalty_totals(self, selector):
        assert selector.royalty_totals() == [
            RoyaltyTotal("1", deposit_count=2, total_amount=101, total_remainder=1),
            RoyaltyTotal("2", deposit_count=1, total_amount=40, total_remainder=0),
        ]
        assert selector.royalty_totals("2") == [RoyaltyTotal("2", 1, 40, 0)]


class TestOperations:
    def test_security_events(self, selector, admin, carol):
        events = selector.security_events()

        assert {(e.identity, e.severity) for e in events} == {
            (carol, "medium"),
            (admin, "high"),
        }

    def test_security_events_by_severity(self, selector, admin):
        high = selector.security_events(min_severity=SeverityLevel.HIGH)

        assert [(e.identity, e.amount) for e in high] == [(admin, 5)]
        assert len(selector.security_events(min_severity=SeverityLevel.LOW)) == 2

    def test_positions(self, selector, splitter):
        assert selector.latest_applied_position() == splitter.event_log.latest_position()
        assert selector.applied_count() == len(splitter.event_log)

    def test_rejected_events(self, selector, pool, session):
        broken = {"event_type": "payout.claimed", "origin_tx_id": "0xbad", "log_position": 999}
        pool.reconcile([broken])
        session.expire_all()

        rejected = selector.rejected_events()
        assert [(r.dedup_key, r.reason) for r in rejected] == [("0xbad:999", "validation")]
        assert rejected[0].errors[0]["code"] == "MISSING_REQUIRED_FIELD"

        assert selector.rejected_events(unresolved_only=False) == rejected
