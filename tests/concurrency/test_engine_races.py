"""
Race tests for the authoritative engine.

Threads are lined up on a Barrier so operations genuinely overlap.
"""

import time
from concurrent.futures import ThreadPoolExecutor
from threading import Barrier

import pytest

from royalty_kernel.exceptions import NoPendingBalanceError
from royalty_kernel.services.royalty_splitter import RoyaltySplitter
from royalty_kernel.services.transport import InMemoryTransport, PayoutTransport

ADMIN = "admin"
OWNER = "owner"


class SlowTransport(InMemoryTransport):
    """Widens the window between debit and event emission."""

    def send(self, identity, amount):
        time.sleep(0.01)
        return super().send(identity, amount)


def _splitter(transport: PayoutTransport) -> RoyaltySplitter:
    splitter = RoyaltySplitter(ADMIN, transport=transport)
    splitter.register_work(1, OWNER)
    splitter.set_splits(1, ["alice", "bob"], [7000, 3000], caller=OWNER)
    return splitter


class TestClaimRace:
    def test_concurrent_claims_pay_once(self):
        transport = SlowTransport()
        splitter = _splitter(transport)
        splitter.deposit_revenue(1, 1000)
        threads = 16
        barrier = Barrier(threads)

        def claim():
            barrier.wait()
            try:
                return splitter.claim("alice").amount
            except NoPendingBalanceError:
                return 0

        with ThreadPoolExecutor(max_workers=threads) as pool:
            paid = list(pool.map(lambda _: claim(), range(threads)))

        assert sorted(paid, reverse=True)[0] == 700
        assert sum(paid) == 700
        assert transport.delivered_to("alice") == 700
        assert splitter.pending_balance("alice") == 0

    def test_claims_interleaved_with_deposits_conserve(self):
        transport = SlowTransport()
        splitter = _splitter(transport)
        deposits = 40
        barrier = Barrier(4)

        def depositor():
            barrier.wait()
            for _ in range(deposits):
                splitter.deposit_revenue(1, 101)

        def claimer(identity):
            barrier.wait()
            for _ in range(deposits):
                try:
                    splitter.claim(identity)
                except NoPendingBalanceError:
                    pass

        with ThreadPoolExecutor(max_workers=4) as pool:
            futures = [
                pool.submit(depositor),
                pool.submit(claimer, "alice"),
                pool.submit(claimer, "bob"),
                pool.submit(claimer, OWNER),
            ]
            for f in futures:
                f.result()

        total_in = deposits * 101
        paid = sum(transport.delivered_to(i) for i in ("alice", "bob", OWNER))
        pending = sum(splitter.pending_balance(i) for i in ("alice", "bob", OWNER))
        assert paid + pending == total_in
        assert splitter.custodied_total() == pending


class TestSplitReplacementRace:
    def test_every_deposit_uses_one_complete_split_set(self):
        splitter = _splitter(InMemoryTransport())
        barrier = Barrier(2)
        layouts = [
            (["alice", "bob"], [7000, 3000]),
            (["carol"], [10000]),
        ]

        def flip():
            barrier.wait()
            for i in range(200):
                recipients, shares = layouts[i % 2]
                splitter.set_splits(1, recipients, shares, caller=OWNER)

        def deposit():
            barrier.wait()
            return [splitter.deposit_revenue(1, 1000).event for _ in range(200)]

        with ThreadPoolExecutor(max_workers=2) as pool:
            flipper = pool.submit(flip)
            events = pool.submit(deposit).result()
            flipper.result()

        for event in events:
            assert (list(event.recipients), event.attributes["shares_bps"]) in layouts
            assert sum(event.shares) + event.remainder == 1000

    @pytest.mark.parametrize("works", [8])
    def test_unrelated_works_proceed_in_parallel(self, works):
        splitter = RoyaltySplitter(ADMIN)
        for w in range(works):
            splitter.register_work(w, OWNER)
            splitter.set_splits(w, [f"r{w}"], [10000], caller=OWNER)
        barrier = Barrier(works)

        def run(w):
            barrier.wait()
            for _ in range(50):
                splitter.deposit_revenue(w, 3)

        with ThreadPoolExecutor(max_workers=works) as pool:
            list(pool.map(run, range(works)))

        assert splitter.custodied_total() == works * 50 * 3
        assert all(splitter.pending_balance(f"r{w}") == 150 for w in range(works))
