"""
Royalty Kernel - Split & Settlement Engine

An event-sourced royalty splitter with:
- Basis-point split registration per work
- Conservation-exact revenue distribution (floor shares, remainder to owner)
- Pull-based withdrawals with debit-before-transfer rollback
- Append-only authoritative event log
- Idempotent reconciliation into a relational mirror
"""

__version__ = "0.1.0"
