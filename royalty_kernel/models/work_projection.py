"""
Module: royalty_kernel.models.work_projection
Responsibility: Per-work reporting state: owner, asset reference, the split
    allocations currently in force, and the log position they came from.
Architecture position: Kernel > Models.  Written only by the
    ReconciliationPipeline.

Invariants enforced:
    - One projection per work (UNIQUE work_id).
    - One allocation per (work_id, recipient).
    - Split allocations only move forward: an older splits event arriving
      after a newer one is recorded as processed but does not overwrite.
"""

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from royalty_kernel.db.base import Base, TokenAmount


class WorkProjection(Base):
    """Mirror of a registered work."""

    __tablename__ = "work_projections"

    __table_args__ = (
        UniqueConstraint("work_id", name="uq_work_projection_work"),
        Index("idx_work_projection_owner", "owner"),
    )

    work_id: Mapped[str] = mapped_column(String(255), nullable=False)

    # Null until the registration event is applied
    owner: Mapped[str | None] = mapped_column(String(255), nullable=True)

    asset_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)

    registered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Log position of the splits event the allocations came from
    split_log_position: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Highest log position applied for this work
    last_log_position: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    total_revenue: Mapped[int] = mapped_column(TokenAmount(), nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<WorkProjection {self.work_id} owner={self.owner}>"


class SplitAllocation(Base):
    """One recipient's basis-point share of a work, as last reported."""

    __tablename__ = "split_allocations"

    __table_args__ = (
        UniqueConstraint("work_id", "recipient", name="uq_split_allocation_recipient"),
        Index("idx_split_allocation_recipient", "recipient"),
    )

    work_id: Mapped[str] = mapped_column(String(255), nullable=False)

    recipient: Mapped[str] = mapped_column(String(255), nullable=False)

    share_bps: Mapped[int] = mapped_column(Integer, nullable=False)

    # Position of the recipient within the split set
    ordinal: Mapped[int] = mapped_column(Integer, nullable=False)

    def __repr__(self) -> str:
        return f"<SplitAllocation {self.work_id}:{self.recipient} {self.share_bps}bps>"
