"""ORM models for the relational mirror."""

from royalty_kernel.models.payout import Payout, PayoutStatus
from royalty_kernel.models.processed_event import ProcessedEvent, RejectedEvent
from royalty_kernel.models.royalty_record import RoyaltyRecord
from royalty_kernel.models.security_event import SecurityEvent, SeverityLevel
from royalty_kernel.models.wallet import Wallet
from royalty_kernel.models.work_projection import SplitAllocation, WorkProjection

__all__ = [
    "Payout",
    "PayoutStatus",
    "ProcessedEvent",
    "RejectedEvent",
    "RoyaltyRecord",
    "SecurityEvent",
    "SeverityLevel",
    "SplitAllocation",
    "Wallet",
    "WorkProjection",
]
