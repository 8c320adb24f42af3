"""
Module: royalty_kernel.models.security_event
Responsibility: Compliance trail of out-of-band administrative actions
    (emergency withdrawals) and registry authority changes.
Architecture position: Kernel > Models.  Written only by the
    ReconciliationPipeline.

Invariants enforced:
    - origin_reference (the event's dedup key) is UNIQUE.
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from royalty_kernel.db.base import Base, TokenAmount


class SeverityLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class SecurityEvent(Base):
    """An administrative action surfaced for review."""

    __tablename__ = "security_events"

    __table_args__ = (
        UniqueConstraint("origin_reference", name="uq_security_origin_reference"),
        Index("idx_security_severity", "severity"),
        Index("idx_security_identity", "identity"),
    )

    identity: Mapped[str] = mapped_column(String(255), nullable=False)

    event_type: Mapped[str] = mapped_column(String(100), nullable=False)

    severity: Mapped[str] = mapped_column(String(20), nullable=False)

    amount: Mapped[int | None] = mapped_column(TokenAmount(), nullable=True)

    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    description: Mapped[str] = mapped_column(String(4000), nullable=False)

    origin_reference: Mapped[str] = mapped_column(String(320), nullable=False)

    def __repr__(self) -> str:
        return f"<SecurityEvent {self.severity} {self.event_type}>"
