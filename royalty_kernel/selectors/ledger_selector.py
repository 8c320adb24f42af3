"""
Module: royalty_kernel.selectors.ledger_selector
Responsibility: Reporting and compliance queries over the relational mirror:
    wallet balances, payouts, split allocations, royalty totals, rejected
    events and security events.
Architecture position: Kernel > Selectors.  May import from models/ and
    selectors/base.py.

Failure modes:
    - Returns None or empty lists when nothing has been reconciled yet.
      The mirror is eventually consistent; callers that need the live
      balance ask the engine (``RoyaltySplitter.pending_balance``).
"""

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select

from royalty_kernel.models.payout import Payout
from royalty_kernel.models.processed_event import ProcessedEvent, RejectedEvent
from royalty_kernel.models.royalty_record import RoyaltyRecord
from royalty_kernel.models.security_event import SecurityEvent, SeverityLevel
from royalty_kernel.models.wallet import Wallet
from royalty_kernel.models.work_projection import SplitAllocation, WorkProjection
from royalty_kernel.selectors.base import BaseSelector

_SEVERITY_RANK = {
    SeverityLevel.LOW.value: 0,
    SeverityLevel.MEDIUM.value: 1,
    SeverityLevel.HIGH.value: 2,
}


@dataclass(frozen=True)
class WalletDTO:
    identity: str
    balance: int
    total_earned: int
    total_withdrawn: int
    last_updated: datetime
    external_address: str | None


@dataclass(frozen=True)
class PayoutDTO:
    identity: str
    amount: int
    occurred_at: datetime
    status: str
    origin_reference: str
    transfer_reference: str | None


@dataclass(frozen=True)
class SplitAllocationDTO:
    recipient: str
    share_bps: int


@dataclass(frozen=True)
class WorkDTO:
    """Reported state of one work, with the allocations last applied."""

    work_id: str
    owner: str | None
    asset_reference: str | None
    registered_at: datetime | None
    split_log_position: int
    total_revenue: int
    allocations: tuple[SplitAllocationDTO, ...]


@dataclass(frozen=True)
class RoyaltyTotal:
    work_id: str
    deposit_count: int
    total_amount: int
    total_remainder: int


@dataclass(frozen=True)
class RejectedEventDTO:
    dedup_key: str | None
    event_type: str | None
    reason: str
    errors: tuple[dict, ...]
    rejected_at: datetime
    resolved: bool
    resolution_note: str | None


@dataclass(frozen=True)
class SecurityEventDTO:
    identity: str
    event_type: str
    severity: str
    amount: int | None
    occurred_at: datetime
    description: str


class LedgerSelector(BaseSelector):
    """
    Read path for the relational mirror.

    Guarantees:
        - Amounts are Python ints.
        - Lists are ordered deterministically (identity, time, ordinal).
    """

    # ------------------------------------------------------------------
    # Wallets and payouts
    # ------------------------------------------------------------------

    def wallet(self, identity: str) -> WalletDTO | None:
        row = self.session.execute(
            select(Wallet).where(Wallet.identity == identity)
        ).scalar_one_or_none()
        return _wallet_dto(row) if row is not None else None

    def wallets(self) -> list[WalletDTO]:
        rows = self.session.execute(select(Wallet).order_by(Wallet.identity)).scalars().all()
        return [_wallet_dto(w) for w in rows]

    def balance_of(self, identity: str) -> int:
        """Mirrored pending balance; 0 for an identity never seen."""
        dto = self.wallet(identity)
        return dto.balance if dto is not None else 0

    def total_outstanding(self) -> int:
        """Sum of all mirrored wallet balances."""
        return sum(w.balance for w in self.wallets())

    def payouts(self, identity: str | None = None) -> list[PayoutDTO]:
        query = select(Payout, Wallet.identity).join(Wallet, Payout.wallet_id == Wallet.id)
        if identity is not None:
            query = query.where(Wallet.identity == identity)
        query = query.order_by(Payout.occurred_at, Payout.origin_reference)

        return [
            PayoutDTO(
                identity=owner,
                amount=payout.amount,
                occurred_at=payout.occurred_at,
                status=_enum_value(payout.status),
                origin_reference=payout.origin_reference,
                transfer_reference=payout.transfer_reference,
            )
            for payout, owner in self.session.execute(query).all()
        ]

    # ------------------------------------------------------------------
    # Works
    # ------------------------------------------------------------------

    def split_allocations(self, work_id: str) -> list[SplitAllocationDTO]:
        rows = self.session.execute(
            select(SplitAllocation)
            .where(SplitAllocation.work_id == work_id)
            .order_by(SplitAllocation.ordinal)
        ).scalars().all()
        return [SplitAllocationDTO(r.recipient, r.share_bps) for r in rows]

    def work(self, work_id: str) -> WorkDTO | None:
        row = self.session.execute(
            select(WorkProjection).where(WorkProjection.work_id == work_id)
        ).scalar_one_or_none()
        if row is None:
            return None
        return WorkDTO(
            work_id=row.work_id,
            owner=row.owner,
            asset_reference=row.asset_reference,
            registered_at=row.registered_at,
            split_log_position=row.split_log_position,
            total_revenue=row.total_revenue,
            allocations=tuple(self.split_allocations(work_id)),
        )

    def works_owned_by(self, owner: str) -> list[str]:
        return list(
            self.session.execute(
                select(WorkProjection.work_id)
                .where(WorkProjection.owner == owner)
                .order_by(WorkProjection.work_id)
            ).scalars()
        )

    def royalty_totals(self, work_id: str | None = None) -> list[RoyaltyTotal]:
        """Per-work deposit count and totals.

        Summed in Python: amounts are stored as decimal strings outside
        PostgreSQL, where SQL SUM would coerce them through a float.
        """
        query = select(RoyaltyRecord).order_by(RoyaltyRecord.work_id)
        if work_id is not None:
            query = query.where(RoyaltyRecord.work_id == work_id)

        totals: dict[str, list[int]] = {}
        for record in self.session.execute(query).scalars():
            entry = totals.setdefault(record.work_id, [0, 0, 0])
            entry[0] += 1
            entry[1] += record.amount
            entry[2] += record.remainder

        return [
            RoyaltyTotal(work, count, amount, remainder)
            for work, (count, amount, remainder) in sorted(totals.items())
        ]

    # ------------------------------------------------------------------
    # Operations and compliance
    # ------------------------------------------------------------------

    def rejected_events(self, unresolved_only: bool = True) -> list[RejectedEventDTO]:
        query = select(RejectedEvent).order_by(RejectedEvent.rejected_at)
        if unresolved_only:
            query = query.where(RejectedEvent.resolved.is_(False))
        return [
            RejectedEventDTO(
                dedup_key=r.dedup_key,
                event_type=r.event_type,
                reason=r.reason,
                errors=tuple(r.errors),
                rejected_at=r.rejected_at,
                resolved=r.resolved,
                resolution_note=r.resolution_note,
            )
            for r in self.session.execute(query).scalars()
        ]

    def security_events(self, min_severity: SeverityLevel | None = None) -> list[SecurityEventDTO]:
        rows = self.session.execute(
            select(SecurityEvent).order_by(SecurityEvent.occurred_at, SecurityEvent.origin_reference)
        ).scalars().all()
        floor = _SEVERITY_RANK[SeverityLevel(min_severity).value] if min_severity else 0
        return [
            SecurityEventDTO(
                identity=r.identity,
                event_type=r.event_type,
                severity=_enum_value(r.severity),
                amount=r.amount,
                occurred_at=r.occurred_at,
                description=r.description,
            )
            for r in rows
            if _SEVERITY_RANK[_enum_value(r.severity)] >= floor
        ]

    def latest_applied_position(self) -> int:
        return self.session.execute(
            select(func.coalesce(func.max(ProcessedEvent.log_position), 0))
        ).scalar_one()

    def applied_count(self) -> int:
        return self.session.execute(select(func.count(ProcessedEvent.id))).scalar_one()


def _wallet_dto(row: Wallet) -> WalletDTO:
    return WalletDTO(
        identity=row.identity,
        balance=row.balance,
        total_earned=row.total_earned,
        total_withdrawn=row.total_withdrawn,
        last_updated=row.last_updated,
        external_address=row.external_address,
    )


def _enum_value(value) -> str:
    return getattr(value, "value", value)
