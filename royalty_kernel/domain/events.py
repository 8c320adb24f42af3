"""
Ledger events -- the authoritative, immutable record of every mutation.

Responsibility:
    Defines the event types emitted by the engine and the ``LedgerEvent``
    record that carries them.  ``to_record()`` produces the JSON-safe wire
    form consumed by the reconciliation pipeline; ``from_record()`` parses it
    back after the record has passed ``event_validator``.

Architecture position:
    Kernel > Domain -- pure, no I/O.

Invariants enforced:
    - ``(origin_tx_id, log_position)`` is the idempotency key and is unique
      per event (positions are allocated once by the EventLog).
    - Records are frozen; a delivered record is never edited, only re-sent.

Field usage per event type:

    work.registered          work_id, identity=owner, attributes.asset_reference
    work.splits_updated      work_id, identity=owner, recipients, shares (bps)
    revenue.distributed      work_id, recipients, shares (amounts), amount,
                             remainder, remainder_recipient, actor=depositor,
                             attributes.shares_bps
    payout.claimed           identity=claimant, amount,
                             attributes.transfer_reference
    custody.emergency_withdrawal
                             identity=administrator, amount,
                             attributes.administrative, transfer_reference
    registry.registrant_authorized
                             identity=registrant, actor=administrator
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from royalty_kernel.utils.idempotency import make_dedup_key


class EventType(str, Enum):
    """Namespaced event types written to the authoritative log."""

    WORK_REGISTERED = "work.registered"
    SPLITS_UPDATED = "work.splits_updated"
    REVENUE_DISTRIBUTED = "revenue.distributed"
    PAYOUT_CLAIMED = "payout.claimed"
    EMERGENCY_WITHDRAWAL = "custody.emergency_withdrawal"
    REGISTRANT_AUTHORIZED = "registry.registrant_authorized"


@dataclass(frozen=True)
class LedgerEvent:
    """One entry in the authoritative event log."""

    event_type: EventType
    origin_tx_id: str
    log_position: int
    timestamp: datetime
    work_id: str | None = None
    identity: str | None = None
    actor: str | None = None
    recipients: tuple[str, ...] = ()
    shares: tuple[int, ...] = ()
    amount: int = 0
    remainder: int = 0
    remainder_recipient: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def dedup_key(self) -> str:
        return make_dedup_key(self.origin_tx_id, self.log_position)

    @property
    def partition_key(self) -> str:
        """Ordering scope: events sharing a partition key must apply in log order."""
        if self.work_id is not None:
            return f"work:{self.work_id}"
        return f"identity:{self.identity}"

    def to_record(self) -> dict[str, Any]:
        """JSON-safe wire form."""
        return {
            "event_type": self.event_type.value,
            "origin_tx_id": self.origin_tx_id,
            "log_position": self.log_position,
            "timestamp": self.timestamp.isoformat(),
            "work_id": self.work_id,
            "identity": self.identity,
            "actor": self.actor,
            "recipients": list(self.recipients),
            "shares": list(self.shares),
            "amount": self.amount,
            "remainder": self.remainder,
            "remainder_recipient": self.remainder_recipient,
            "attributes": dict(self.attributes),
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> LedgerEvent:
        """Parse a wire record. Callers validate first with ``validate_event_record``."""
        timestamp = record["timestamp"]
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp)
        return cls(
            event_type=EventType(record["event_type"]),
            origin_tx_id=record["origin_tx_id"],
            log_position=record["log_position"],
            timestamp=timestamp,
            work_id=record.get("work_id"),
            identity=record.get("identity"),
            actor=record.get("actor"),
            recipients=tuple(record.get("recipients") or ()),
            shares=tuple(record.get("shares") or ()),
            amount=record.get("amount", 0),
            remainder=record.get("remainder", 0),
            remainder_recipient=record.get("remainder_recipient"),
            attributes=dict(record.get("attributes") or {}),
        )
