"""Services for the royalty kernel (engine and reconciliation write side)."""

from royalty_kernel.services.critical_section import KeyedCriticalSection
from royalty_kernel.services.distribution_engine import DepositResult, DistributionEngine
from royalty_kernel.services.event_log import EventLog, LogTransaction
from royalty_kernel.services.reconciliation_service import (
    LagReport,
    ReconcileResult,
    ReconcileStatus,
    ReconciliationMonitor,
    ReconciliationService,
)
from royalty_kernel.services.royalty_splitter import RoyaltySplitter
from royalty_kernel.services.split_registry import SplitRegistry
from royalty_kernel.services.transport import InMemoryTransport, PayoutTransport
from royalty_kernel.services.withdrawal_ledger import PayoutReceipt, WithdrawalLedger

__all__ = [
    "DepositResult",
    "DistributionEngine",
    "EventLog",
    "InMemoryTransport",
    "KeyedCriticalSection",
    "LagReport",
    "LogTransaction",
    "PayoutReceipt",
    "PayoutTransport",
    "ReconcileResult",
    "ReconcileStatus",
    "ReconciliationMonitor",
    "ReconciliationService",
    "RoyaltySplitter",
    "SplitRegistry",
    "WithdrawalLedger",
]
