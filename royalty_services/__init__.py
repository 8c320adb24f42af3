"""Outer orchestration: parallel reconciliation and runtime assembly."""

from royalty_services.reconciliation_orchestrator import CatchUpReport, ReconciliationWorkerPool
from royalty_services.runtime import RoyaltyRuntime, build_runtime

__all__ = [
    "CatchUpReport",
    "ReconciliationWorkerPool",
    "RoyaltyRuntime",
    "build_runtime",
]
