"""
Module: royalty_kernel.models.processed_event
Responsibility: ORM persistence for ledger events applied to the relational
    mirror, and for rejected events awaiting operator inspection.
Architecture position: Kernel > Models.  May import from db/ and exceptions.py.

Invariants enforced:
    - (origin_tx_id, log_position) is UNIQUE.  Inserting this row is the
      compare-and-swap that decides which reconciliation worker applies an
      event; every other attempt fails with IntegrityError and degrades to a
      duplicate skip.
    - ProcessedEvent rows are immutable once flushed (ORM before_update).

Failure modes:
    - IntegrityError on a duplicate key (expected under replay).
    - ImmutabilityViolationError on any UPDATE to a ProcessedEvent.
"""

from datetime import datetime

from sqlalchemy import JSON, BigInteger, Boolean, DateTime, Index, String, UniqueConstraint, event
from sqlalchemy.orm import Mapped, mapped_column

from royalty_kernel.db.base import Base
from royalty_kernel.exceptions import ImmutabilityViolationError


class ProcessedEvent(Base):
    """
    One ledger event that has been applied to the mirror.

    Guarantees:
        - At most one row per (origin_tx_id, log_position).
        - payload is the validated wire record; payload_hash is its SHA-256.
    """

    __tablename__ = "processed_events"

    __table_args__ = (
        UniqueConstraint("origin_tx_id", "log_position", name="uq_processed_event_key"),
        Index("idx_processed_event_work", "work_id", "log_position"),
        Index("idx_processed_event_type", "event_type"),
        Index("idx_processed_event_position", "log_position"),
    )

    origin_tx_id: Mapped[str] = mapped_column(String(255), nullable=False)

    log_position: Mapped[int] = mapped_column(BigInteger, nullable=False)

    dedup_key: Mapped[str] = mapped_column(String(320), nullable=False)

    event_type: Mapped[str] = mapped_column(String(100), nullable=False)

    # Null for identity-scoped events (claims, emergency withdrawals)
    work_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    payload: Mapped[dict] = mapped_column(JSON, nullable=False)

    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    # When the engine emitted the event
    emitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # When the mirror applied it
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<ProcessedEvent {self.event_type}:{self.dedup_key}>"


@event.listens_for(ProcessedEvent, "before_update")
def prevent_processed_event_update(mapper, connection, target):
    """Applied events are facts; they are never edited."""
    raise ImmutabilityViolationError(
        f"Processed events are immutable - cannot modify {target.dedup_key}"
    )


class RejectedEvent(Base):
    """
    A malformed event parked for manual inspection.

    Rejected events are never retried automatically.  A redelivery of the same
    key is recorded once; ``resolved`` is flipped by an operator.
    """

    __tablename__ = "rejected_events"

    __table_args__ = (
        UniqueConstraint("dedup_key", name="uq_rejected_event_key"),
        Index("idx_rejected_event_resolved", "resolved"),
    )

    # Null when the record was too malformed to derive a key
    dedup_key: Mapped[str | None] = mapped_column(String(320), nullable=True)

    event_type: Mapped[str | None] = mapped_column(String(100), nullable=True)

    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    errors: Mapped[list] = mapped_column(JSON, nullable=False)

    reason: Mapped[str] = mapped_column(String(50), nullable=False)

    rejected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    resolution_note: Mapped[str | None] = mapped_column(String(4000), nullable=True)

    def __repr__(self) -> str:
        return f"<RejectedEvent {self.reason}:{self.dedup_key}>"
