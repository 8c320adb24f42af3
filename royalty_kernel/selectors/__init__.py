"""Selectors for the royalty kernel (read side of the relational mirror)."""

from royalty_kernel.selectors.ledger_selector import (
    LedgerSelector,
    PayoutDTO,
    RejectedEventDTO,
    RoyaltyTotal,
    SecurityEventDTO,
    SplitAllocationDTO,
    WalletDTO,
    WorkDTO,
)

__all__ = [
    "LedgerSelector",
    "PayoutDTO",
    "RejectedEventDTO",
    "RoyaltyTotal",
    "SecurityEventDTO",
    "SplitAllocationDTO",
    "WalletDTO",
    "WorkDTO",
]
