"""
Tests for ReconciliationWorkerPool: partitioned parallel apply, log
following, retries and the background loop.
"""

import time
from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import OperationalError

from royalty_kernel.domain.events import EventType, LedgerEvent
from royalty_kernel.services import reconciliation_service
from royalty_kernel.services.reconciliation_service import ReconcileStatus
from royalty_kernel.selectors.ledger_selector import LedgerSelector
from royalty_services.reconciliation_orchestrator import (
    ReconciliationWorkerPool,
    partition_of,
)

from conftest import ALICE, BOB, CAROL


@pytest.fixture
def populated(splitter, admin, alice, bob, carol):
    """Three works with deposits and claims interleaved across them."""
    for work_id in (1, 2, 3):
        splitter.register_work(work_id, carol)
        splitter.set_splits(work_id, [alice, bob], [6000, 4000], caller=carol)
    for amount in (100, 7, 250):
        for work_id in (1, 2, 3):
            splitter.deposit_revenue(work_id, amount)
    splitter.claim(alice)
    splitter.deposit_revenue(2, 10)
    return splitter


def _selector_check(session_factory, splitter, *identities):
    with session_factory() as session:
        selector = LedgerSelector(session)
        for identity in identities:
            assert selector.balance_of(identity) == splitter.pending_balance(identity)


class TestPartitioning:
    def test_work_events_partition_by_work(self):
        event = LedgerEvent(
            event_type=EventType.SPLITS_UPDATED,
            origin_tx_id="0x1",
            log_position=1,
            timestamp=datetime(2025, 1, 1, tzinfo=timezone.utc),
            work_id="7",
            identity=CAROL,
        )
        assert partition_of(event) == "work:7"
        assert partition_of(event.to_record()) == "work:7"

    def test_identity_events_partition_by_identity(self):
        event = LedgerEvent(
            event_type=EventType.PAYOUT_CLAIMED,
            origin_tx_id="0x1",
            log_position=1,
            timestamp=datetime(2025, 1, 1, tzinfo=timezone.utc),
            identity=ALICE,
            amount=5,
        )
        assert partition_of(event) == f"identity:{ALICE}"

    def test_invalid_arguments(self, splitter, session_factory):
        with pytest.raises(ValueError):
            ReconciliationWorkerPool(splitter.event_log, session_factory, workers=0)
        with pytest.raises(ValueError):
            ReconciliationWorkerPool(splitter.event_log, session_factory, batch_size=0)


class TestCatchUp:
    def test_mirror_matches_engine(self, populated, pool, session_factory, alice, bob, carol):
        report = pool.catch_up()

        assert report.applied == len(populated.event_log)
        assert report.skipped == 0
        assert report.rejected == 0
        assert report.cursor == populated.event_log.latest_position()
        _selector_check(session_factory, populated, alice, bob, carol)

    def test_catch_up_is_incremental(self, populated, pool, session_factory, alice, bob):
        first = pool.catch_up()

        populated.deposit_revenue(1, 1000)
        second = pool.catch_up()

        assert second.applied == 1
        assert second.cursor == first.cursor + 1
        _selector_check(session_factory, populated, alice, bob)

    def test_idle_catch_up(self, pool):
        report = pool.catch_up()

        assert report.processed == 0
        assert report.cursor == 0

    def test_batches_smaller_than_log(self, populated, session_factory, clock, alice, bob, carol):
        small = ReconciliationWorkerPool(
            populated.event_log,
            session_factory,
            clock=clock,
            workers=2,
            batch_size=3,
            retry_backoff_seconds=0.01,
        )
        try:
            report = small.catch_up()
        finally:
            small.close()

        assert report.applied == len(populated.event_log)
        _selector_check(session_factory, populated, alice, bob, carol)

    def test_lag_reported_before_and_after(self, populated, pool):
        before = pool.lag()
        pool.catch_up()
        after = pool.lag()

        assert before.unapplied_count == len(populated.event_log)
        assert not before.caught_up
        assert after.caught_up
        assert after.latest_applied_position == populated.event_log.latest_position()


class TestReconcile:
    def test_results_follow_input_order(self, populated, pool):
        events = list(reversed(populated.event_log.read()))

        results = pool.reconcile(events)

        assert [r.dedup_key for r in results] == [e.dedup_key for e in events]
        assert all(r.status == ReconcileStatus.APPLIED for r in results)

    def test_replay_of_whole_log_is_skipped(self, populated, pool, session_factory, alice, bob, carol):
        pool.catch_up()

        results = pool.reconcile(populated.event_log.read())

        assert all(r.status == ReconcileStatus.SKIPPED_DUPLICATE for r in results)
        _selector_check(session_factory, populated, alice, bob, carol)

    def test_partition_applies_in_log_order(self, splitter, pool, session_factory, carol, alice, bob):
        splitter.register_work(1, carol)
        splitter.set_splits(1, [alice], [10000], caller=carol)
        splitter.set_splits(1, [bob], [10000], caller=carol)

        # Newest first; the partition re-sorts by log position.
        pool.reconcile(list(reversed(splitter.event_log.read())))

        with session_factory() as session:
            allocations = LedgerSelector(session).split_allocations("1")
        assert [a.recipient for a in allocations] == [bob]

    def test_mixed_records_and_rejections(self, populated, pool):
        events = populated.event_log.read()
        broken = events[0].to_record()
        broken["origin_tx_id"] = "0xbroken"
        broken["log_position"] = 10_000
        broken["identity"] = None

        results = pool.reconcile([*events, broken])

        assert results[-1].status == ReconcileStatus.REJECTED
        assert all(r.status == ReconcileStatus.APPLIED for r in results[:-1])


class TestRetry:
    def test_transient_error_is_retried(self, populated, pool, monkeypatch, captured_logs):
        original = reconciliation_service.ReconciliationService.apply
        failures = {"remaining": 2}

        def flaky_apply(self, event):
            if failures["remaining"]:
                failures["remaining"] -= 1
                raise OperationalError("INSERT", {}, Exception("database is locked"))
            return original(self, event)

        monkeypatch.setattr(reconciliation_service.ReconciliationService, "apply", flaky_apply)

        result = pool.apply_one(populated.event_log.read()[0])

        assert result.status == ReconcileStatus.APPLIED
        retries = [r for r in captured_logs() if r["message"] == "reconcile_retry"]
        assert [r["attempt"] for r in retries] == [1, 2]

    def test_attempts_exhausted(self, populated, session_factory, clock, monkeypatch, captured_logs):
        def always_locked(self, event):
            raise OperationalError("INSERT", {}, Exception("database is locked"))

        monkeypatch.setattr(reconciliation_service.ReconciliationService, "apply", always_locked)
        impatient = ReconciliationWorkerPool(
            populated.event_log,
            session_factory,
            clock=clock,
            max_apply_attempts=3,
            retry_backoff_seconds=0,
        )
        try:
            with pytest.raises(OperationalError):
                impatient.apply_one(populated.event_log.read()[0])
        finally:
            impatient.close()

        messages = [r["message"] for r in captured_logs()]
        assert messages.count("reconcile_retry") == 2
        assert "reconcile_attempts_exhausted" in messages

    def test_unexpected_error_is_not_retried(self, populated, pool, monkeypatch):
        calls = []

        def broken(self, event):
            calls.append(event)
            raise KeyError("boom")

        monkeypatch.setattr(reconciliation_service.ReconciliationService, "apply", broken)

        with pytest.raises(KeyError):
            pool.apply_one(populated.event_log.read()[0])
        assert len(calls) == 1


class TestBackgroundLoop:
    def test_loop_follows_the_log(self, populated, pool, alice):
        pool.start(interval_seconds=0.05)
        try:
            assert pool.is_running
            deadline = time.monotonic() + 10
            while pool.cursor < populated.event_log.latest_position():
                assert time.monotonic() < deadline, "reconciliation loop did not catch up"
                time.sleep(0.02)
        finally:
            pool.stop()

        assert not pool.is_running
        assert pool.lag().caught_up

    def test_start_twice_keeps_one_thread(self, pool):
        pool.start(interval_seconds=0.05)
        try:
            first = pool._thread
            pool.start(interval_seconds=0.05)
            assert pool._thread is first
        finally:
            pool.stop()
