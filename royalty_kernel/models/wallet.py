"""
Module: royalty_kernel.models.wallet
Responsibility: Per-identity withdrawable balance as seen by reporting and
    compliance, derived from distribution and claim events.
Architecture position: Kernel > Models.  Written only by the
    ReconciliationPipeline.

Invariants enforced:
    - One wallet per identity (UNIQUE identity).
    - balance == total_earned - total_withdrawn after every applied event.
"""

from datetime import datetime

from sqlalchemy import DateTime, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from royalty_kernel.db.base import Base, TokenAmount


class Wallet(Base):
    """Relational mirror of one identity's pending balance."""

    __tablename__ = "wallets"

    __table_args__ = (
        UniqueConstraint("identity", name="uq_wallet_identity"),
    )

    identity: Mapped[str] = mapped_column(String(255), nullable=False)

    balance: Mapped[int] = mapped_column(TokenAmount(), nullable=False, default=0)

    total_earned: Mapped[int] = mapped_column(TokenAmount(), nullable=False, default=0)

    total_withdrawn: Mapped[int] = mapped_column(TokenAmount(), nullable=False, default=0)

    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # On-chain or bank address payouts are sent to, when known
    external_address: Mapped[str | None] = mapped_column(String(255), nullable=True)

    payouts: Mapped[list["Payout"]] = relationship(  # noqa: F821
        back_populates="wallet",
        order_by="Payout.occurred_at",
    )

    def __repr__(self) -> str:
        return f"<Wallet {self.identity}: {self.balance}>"
