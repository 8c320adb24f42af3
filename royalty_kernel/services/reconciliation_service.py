"""
ReconciliationService -- folds ledger events into the relational mirror.

Responsibility:
    Takes one event from the authoritative log (a ``LedgerEvent`` or its
    wire record), validates it, claims its de-duplication key and applies
    its effect to wallets, payouts, work projections, royalty records and
    security events.  Each event moves through
    ``Received -> Validated -> Applied | Rejected | Skipped(duplicate)``.

Architecture position:
    Kernel > Services -- imperative shell over the mirror.  Called by the
    reconciliation worker pool with one session per event.

Invariants enforced:
    - Exactly once: the ProcessedEvent row for ``(origin_tx_id,
      log_position)`` is inserted before any effect.  Its UNIQUE constraint
      is the compare-and-swap; a concurrent or replayed apply fails the
      insert and degrades to Skipped(duplicate).
    - Atomicity: every effect is flushed in the caller's transaction, so a
      crash before commit leaves neither the key nor the effect behind.
    - Payload integrity: an already-applied key delivered with a different
      payload hash is Rejected, never skipped.
    - Monotonic reporting: split allocations of a work only move forward in
      log order; a stale splits event is recorded but does not overwrite.
    - Wallet rows are locked in sorted identity order.

Failure modes:
    - Rejected (validation): malformed record, parked in ``rejected_events``.
    - Rejected (payload mismatch): same key, different payload.
    - IntegrityError / OperationalError from effect writes (concurrent
      wallet creation, lock timeouts) propagate; the caller rolls back and
      retries the whole event.

Non-goals:
    - Does NOT call ``session.commit()`` -- the caller owns the transaction.
    - Does NOT retry rejected events.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from royalty_kernel.domain.clock import Clock, SystemClock
from royalty_kernel.domain.dtos import ValidationError
from royalty_kernel.domain.event_validator import validate_event_record
from royalty_kernel.domain.events import EventType, LedgerEvent
from royalty_kernel.domain.values import is_whole_amount
from royalty_kernel.logging_config import LogContext, get_logger
from royalty_kernel.models.payout import Payout, PayoutStatus
from royalty_kernel.models.processed_event import ProcessedEvent, RejectedEvent
from royalty_kernel.models.royalty_record import RoyaltyRecord
from royalty_kernel.models.security_event import SecurityEvent, SeverityLevel
from royalty_kernel.models.wallet import Wallet
from royalty_kernel.models.work_projection import SplitAllocation, WorkProjection
from royalty_kernel.utils.hashing import canonicalize_json, hash_payload
from royalty_kernel.utils.idempotency import make_dedup_key

logger = get_logger("services.reconciliation")


class ReconcileStatus(str, Enum):
    """Terminal state of one event."""

    APPLIED = "applied"
    SKIPPED_DUPLICATE = "skipped_duplicate"
    REJECTED = "rejected"


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of reconciling one event."""

    status: ReconcileStatus
    dedup_key: str | None
    event_type: str | None = None
    errors: tuple[ValidationError, ...] = ()
    message: str | None = None

    @property
    def is_success(self) -> bool:
        """Applied and duplicate are both success; only rejection needs an operator."""
        return self.status in (ReconcileStatus.APPLIED, ReconcileStatus.SKIPPED_DUPLICATE)


class ReconciliationService:
    """
    Applies ledger events to the relational mirror exactly once.

    Contract:
        ``apply(event)`` returns a ReconcileResult and leaves its writes
        flushed but uncommitted.  The caller commits on return and rolls
        back if it raises.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()

    def apply(self, event: LedgerEvent | dict[str, Any]) -> ReconcileResult:
        """
        Reconcile one event.

        Preconditions:
            - The session has no pending writes.  A duplicate rolls the
              session back, so events are never batched in one transaction.

        Postconditions:
            - APPLIED: a ProcessedEvent row and the event's effects are
              flushed.
            - SKIPPED_DUPLICATE: nothing written.
            - REJECTED: one RejectedEvent row is flushed (or already existed).
        """
        # Received
        record = event.to_record() if isinstance(event, LedgerEvent) else event

        validation = validate_event_record(record)
        if not validation.is_valid:
            return self._reject(record, validation.errors, reason="validation")

        # Validated
        parsed = LedgerEvent.from_record(record)
        payload = parsed.to_record()
        payload_hash = hash_payload(payload)
        dedup_key = parsed.dedup_key

        with LogContext.bind(origin_tx_id=parsed.origin_tx_id, work_id=parsed.work_id):
            processed = ProcessedEvent(
                origin_tx_id=parsed.origin_tx_id,
                log_position=parsed.log_position,
                dedup_key=dedup_key,
                event_type=parsed.event_type.value,
                work_id=parsed.work_id,
                payload=payload,
                payload_hash=payload_hash,
                emitted_at=parsed.timestamp,
                processed_at=self._clock.now(),
            )
            self._session.add(processed)
            try:
                self._session.flush()
            except IntegrityError as conflict:
                # The key is already applied, by an earlier delivery or a
                # concurrent worker that committed first.
                self._session.rollback()
                return self._resolve_duplicate(parsed, payload, payload_hash, conflict)

            # Applied
            self._apply_effects(parsed, dedup_key)
            self._session.flush()

            logger.info(
                "event_applied",
                extra={
                    "event_type": parsed.event_type.value,
                    "dedup_key": dedup_key,
                    "log_position": parsed.log_position,
                },
            )
        return ReconcileResult(
            status=ReconcileStatus.APPLIED,
            dedup_key=dedup_key,
            event_type=parsed.event_type.value,
        )

    def resolve_rejected(self, dedup_key: str, note: str) -> bool:
        """
        Mark a parked rejection as handled by an operator.

        Returns False if no unresolved rejection exists for ``dedup_key``.
        Resolving does not re-apply the event; a corrected event is
        delivered through ``apply`` like any other.
        """
        rejected = self._session.execute(
            select(RejectedEvent)
            .where(RejectedEvent.dedup_key == dedup_key, RejectedEvent.resolved.is_(False))
            .with_for_update()
        ).scalar_one_or_none()
        if rejected is None:
            return False

        rejected.resolved = True
        rejected.resolved_at = self._clock.now()
        rejected.resolution_note = note
        self._session.flush()
        logger.info("rejected_event_resolved", extra={"dedup_key": dedup_key})
        return True

    # ------------------------------------------------------------------
    # Duplicate and rejection paths
    # ------------------------------------------------------------------

    def _resolve_duplicate(
        self,
        event: LedgerEvent,
        payload: dict[str, Any],
        payload_hash: str,
        conflict: IntegrityError,
    ) -> ReconcileResult:
        existing = self._session.execute(
            select(ProcessedEvent).where(
                ProcessedEvent.origin_tx_id == event.origin_tx_id,
                ProcessedEvent.log_position == event.log_position,
            )
        ).scalar_one_or_none()

        if existing is None:
            # The winning writer rolled back after our insert failed; the
            # caller retries the whole event.
            raise conflict

        if existing.payload_hash != payload_hash:
            error = ValidationError(
                code="PAYLOAD_MISMATCH",
                message=(
                    f"Key {event.dedup_key} was applied with payload hash "
                    f"{existing.payload_hash}, redelivered with {payload_hash}"
                ),
                field=None,
                details={"expected": existing.payload_hash, "received": payload_hash},
            )
            return self._reject(payload, (error,), reason="payload_mismatch")

        logger.info(
            "event_skipped_duplicate",
            extra={"event_type": event.event_type.value, "dedup_key": event.dedup_key},
        )
        return ReconcileResult(
            status=ReconcileStatus.SKIPPED_DUPLICATE,
            dedup_key=event.dedup_key,
            event_type=event.event_type.value,
        )

    def _reject(
        self,
        record: Any,
        errors: tuple[ValidationError, ...],
        reason: str,
    ) -> ReconcileResult:
        dedup_key = _derive_dedup_key(record)
        event_type = record.get("event_type") if isinstance(record, dict) else None
        if event_type is not None:
            event_type = str(event_type)[:100]

        logger.error(
            "event_rejected",
            extra={
                "reason": reason,
                "dedup_key": dedup_key,
                "event_type": event_type,
                "error_codes": [e.code for e in errors],
            },
        )

        already_parked = dedup_key is not None and self._session.execute(
            select(RejectedEvent.id).where(RejectedEvent.dedup_key == dedup_key)
        ).first() is not None

        if not already_parked:
            self._session.add(
                RejectedEvent(
                    dedup_key=dedup_key,
                    event_type=event_type,
                    payload=_storable_payload(record),
                    errors=[e.to_dict() for e in errors],
                    reason=reason,
                    rejected_at=self._clock.now(),
                )
            )
            try:
                self._session.flush()
            except IntegrityError:
                # Parked concurrently by another worker.
                self._session.rollback()

        return ReconcileResult(
            status=ReconcileStatus.REJECTED,
            dedup_key=dedup_key,
            event_type=event_type,
            errors=tuple(errors),
            message=reason,
        )

    # ------------------------------------------------------------------
    # Effects
    # ------------------------------------------------------------------

    def _apply_effects(self, event: LedgerEvent, dedup_key: str) -> None:
        handler = {
            EventType.WORK_REGISTERED: self._apply_work_registered,
            EventType.SPLITS_UPDATED: self._apply_splits_updated,
            EventType.REVENUE_DISTRIBUTED: self._apply_revenue_distributed,
            EventType.PAYOUT_CLAIMED: self._apply_payout_claimed,
            EventType.EMERGENCY_WITHDRAWAL: self._apply_emergency_withdrawal,
            EventType.REGISTRANT_AUTHORIZED: self._apply_registrant_authorized,
        }[event.event_type]
        handler(event, dedup_key)

    def _apply_work_registered(self, event: LedgerEvent, dedup_key: str) -> None:
        projection = self._projection(event.work_id, event.log_position)
        projection.owner = event.identity
        projection.asset_reference = event.attributes.get("asset_reference")
        projection.registered_at = event.timestamp

    def _apply_splits_updated(self, event: LedgerEvent, dedup_key: str) -> None:
        projection = self._projection(event.work_id, event.log_position)
        if projection.owner is None:
            projection.owner = event.identity

        if event.log_position <= projection.split_log_position:
            logger.info(
                "stale_splits_ignored",
                extra={
                    "log_position": event.log_position,
                    "current_position": projection.split_log_position,
                },
            )
            return

        self._session.execute(
            delete(SplitAllocation).where(SplitAllocation.work_id == event.work_id)
        )
        for ordinal, (recipient, share_bps) in enumerate(zip(event.recipients, event.shares)):
            self._session.add(
                SplitAllocation(
                    work_id=event.work_id,
                    recipient=recipient,
                    share_bps=share_bps,
                    ordinal=ordinal,
                )
            )
        projection.split_log_position = event.log_position

    def _apply_revenue_distributed(self, event: LedgerEvent, dedup_key: str) -> None:
        credits: dict[str, int] = {}
        for recipient, amount in zip(event.recipients, event.shares):
            credits[recipient] = credits.get(recipient, 0) + amount
        credits[event.remainder_recipient] = (
            credits.get(event.remainder_recipient, 0) + event.remainder
        )

        for identity in sorted(credits):
            amount = credits[identity]
            if amount == 0:
                continue
            wallet = self._wallet(identity)
            wallet.balance += amount
            wallet.total_earned += amount
            wallet.last_updated = _later(wallet.last_updated, event.timestamp)

        distributed = event.amount - event.remainder
        self._session.add(
            RoyaltyRecord(
                work_id=event.work_id,
                amount=event.amount,
                distributed=distributed,
                remainder=event.remainder,
                remainder_recipient=event.remainder_recipient,
                depositor=event.actor,
                distributed_at=event.timestamp,
                origin_reference=dedup_key,
            )
        )

        projection = self._projection(event.work_id, event.log_position)
        projection.total_revenue += event.amount

    def _apply_payout_claimed(self, event: LedgerEvent, dedup_key: str) -> None:
        wallet = self._wallet(event.identity)
        # A claim may be applied before the distributions it pays out when
        # they sit in other partitions; the balance converges once they land.
        wallet.balance -= event.amount
        wallet.total_withdrawn += event.amount
        wallet.last_updated = _later(wallet.last_updated, event.timestamp)

        self._session.add(
            Payout(
                wallet_id=wallet.id,
                amount=event.amount,
                occurred_at=event.timestamp,
                status=PayoutStatus.COMPLETED.value,
                origin_reference=dedup_key,
                transfer_reference=event.attributes.get("transfer_reference"),
            )
        )

    def _apply_emergency_withdrawal(self, event: LedgerEvent, dedup_key: str) -> None:
        self._session.add(
            SecurityEvent(
                identity=event.identity,
                event_type=event.event_type.value,
                severity=SeverityLevel.HIGH.value,
                amount=event.amount,
                occurred_at=event.timestamp,
                description=(
                    f"Administrative emergency withdrawal of {event.amount} from custody "
                    f"(transfer {event.attributes.get('transfer_reference')})"
                ),
                origin_reference=dedup_key,
            )
        )

    def _apply_registrant_authorized(self, event: LedgerEvent, dedup_key: str) -> None:
        self._session.add(
            SecurityEvent(
                identity=event.identity,
                event_type=event.event_type.value,
                severity=SeverityLevel.MEDIUM.value,
                amount=None,
                occurred_at=event.timestamp,
                description=f"{event.identity} authorized to register works by {event.actor}",
                origin_reference=dedup_key,
            )
        )

    # ------------------------------------------------------------------
    # Row access
    # ------------------------------------------------------------------

    def _wallet(self, identity: str) -> Wallet:
        wallet = self._session.execute(
            select(Wallet).where(Wallet.identity == identity).with_for_update()
        ).scalar_one_or_none()
        if wallet is None:
            wallet = Wallet(
                identity=identity,
                balance=0,
                total_earned=0,
                total_withdrawn=0,
                last_updated=self._clock.now(),
            )
            self._session.add(wallet)
            self._session.flush()
        return wallet

    def _projection(self, work_id: str, log_position: int) -> WorkProjection:
        projection = self._session.execute(
            select(WorkProjection).where(WorkProjection.work_id == work_id).with_for_update()
        ).scalar_one_or_none()
        if projection is None:
            projection = WorkProjection(
                work_id=work_id,
                split_log_position=0,
                last_log_position=0,
                total_revenue=0,
            )
            self._session.add(projection)
            self._session.flush()
        projection.last_log_position = max(projection.last_log_position, log_position)
        return projection


@dataclass(frozen=True)
class LagReport:
    """How far the mirror trails the authoritative log, in log positions."""

    latest_emitted_position: int
    latest_applied_position: int
    applied_count: int
    unapplied_count: int

    @property
    def lag(self) -> int:
        return max(self.latest_emitted_position - self.latest_applied_position, 0)

    @property
    def caught_up(self) -> bool:
        return self.unapplied_count == 0


class ReconciliationMonitor:
    """Read-only lag measurement between the event log and the mirror."""

    def __init__(self, session: Session):
        self._session = session

    def report(self, latest_emitted_position: int) -> LagReport:
        latest_applied, applied = self._session.execute(
            select(
                func.coalesce(func.max(ProcessedEvent.log_position), 0),
                func.count(ProcessedEvent.id),
            ).where(ProcessedEvent.log_position <= latest_emitted_position)
        ).one()

        report = LagReport(
            latest_emitted_position=latest_emitted_position,
            latest_applied_position=int(latest_applied),
            applied_count=int(applied),
            unapplied_count=max(latest_emitted_position - int(applied), 0),
        )
        logger.debug(
            "reconciliation_lag",
            extra={
                "latest_emitted": report.latest_emitted_position,
                "latest_applied": report.latest_applied_position,
                "unapplied": report.unapplied_count,
                "lag": report.lag,
            },
        )
        return report


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything stored is UTC.
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _later(current: datetime | None, candidate: datetime) -> datetime:
    if current is None:
        return _aware(candidate)
    return max(_aware(current), _aware(candidate))


def _derive_dedup_key(record: Any) -> str | None:
    if not isinstance(record, dict):
        return None
    origin = record.get("origin_tx_id")
    position = record.get("log_position")
    if isinstance(origin, str) and origin.strip() and is_whole_amount(position) and position >= 0:
        return make_dedup_key(origin, position)
    return None


def _storable_payload(record: Any) -> dict[str, Any]:
    """JSON-column-safe copy of whatever was delivered."""
    if isinstance(record, dict):
        try:
            return json.loads(canonicalize_json(record))
        except (TypeError, ValueError):
            return {"raw": repr(record)}
    return {"raw": repr(record)}
