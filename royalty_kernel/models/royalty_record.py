"""
Module: royalty_kernel.models.royalty_record
Responsibility: One row per distributed deposit, for revenue reporting.
Architecture position: Kernel > Models.  Written only by the
    ReconciliationPipeline.

Invariants enforced:
    - origin_reference (the event's dedup key) is UNIQUE.
    - distributed + remainder == amount.
"""

from datetime import datetime

from sqlalchemy import DateTime, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from royalty_kernel.db.base import Base, TokenAmount


class RoyaltyRecord(Base):
    """Revenue received for a work and how it was split."""

    __tablename__ = "royalty_records"

    __table_args__ = (
        UniqueConstraint("origin_reference", name="uq_royalty_origin_reference"),
        Index("idx_royalty_work_date", "work_id", "distributed_at"),
    )

    work_id: Mapped[str] = mapped_column(String(255), nullable=False)

    amount: Mapped[int] = mapped_column(TokenAmount(), nullable=False)

    distributed: Mapped[int] = mapped_column(TokenAmount(), nullable=False)

    remainder: Mapped[int] = mapped_column(TokenAmount(), nullable=False)

    remainder_recipient: Mapped[str] = mapped_column(String(255), nullable=False)

    depositor: Mapped[str | None] = mapped_column(String(255), nullable=True)

    distributed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    origin_reference: Mapped[str] = mapped_column(String(320), nullable=False)

    def __repr__(self) -> str:
        return f"<RoyaltyRecord {self.work_id}: {self.amount}>"
