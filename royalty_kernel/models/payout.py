"""
Module: royalty_kernel.models.payout
Responsibility: One row per payout claimed from the engine, keyed by the
    originating event so replays never create a second payout.
Architecture position: Kernel > Models.  Written only by the
    ReconciliationPipeline.

Invariants enforced:
    - origin_reference (the event's dedup key) is UNIQUE.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import DateTime, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from royalty_kernel.db.base import Base, TokenAmount, UUIDString


class PayoutStatus(str, Enum):
    """Settlement status of a payout.

    Claims reach the mirror only after their transfer succeeded, so mirrored
    claims are COMPLETED.  PENDING and FAILED cover payouts recorded from
    external settlement systems.
    """

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class Payout(Base):
    """A transfer out of custody to a wallet."""

    __tablename__ = "payouts"

    __table_args__ = (
        UniqueConstraint("origin_reference", name="uq_payout_origin_reference"),
        Index("idx_payout_wallet", "wallet_id"),
        Index("idx_payout_transfer", "transfer_reference"),
    )

    wallet_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("wallets.id"),
        nullable=False,
    )

    amount: Mapped[int] = mapped_column(TokenAmount(), nullable=False)

    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20),
        default=PayoutStatus.PENDING.value,
        nullable=False,
    )

    # Dedup key of the ledger event that produced this payout
    origin_reference: Mapped[str] = mapped_column(String(320), nullable=False)

    # Reference returned by the payout transport (transaction hash, transfer id)
    transfer_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)

    wallet: Mapped["Wallet"] = relationship(back_populates="payouts")  # noqa: F821

    def __repr__(self) -> str:
        return f"<Payout {self.amount} {self.status}: {self.origin_reference}>"
