"""EventValidator -- pure validation of ledger event wire records."""

from datetime import datetime
from typing import Any

from royalty_kernel.domain.dtos import ValidationError, ValidationResult
from royalty_kernel.domain.events import EventType
from royalty_kernel.domain.values import BPS_DENOMINATOR, is_null_identity, is_whole_amount
from royalty_kernel.logging_config import get_logger

logger = get_logger("domain.event_validator")

_COMMON_FIELDS = ("event_type", "origin_tx_id", "log_position", "timestamp")

_WORK_EVENTS = frozenset({
    EventType.WORK_REGISTERED,
    EventType.SPLITS_UPDATED,
    EventType.REVENUE_DISTRIBUTED,
})

_IDENTITY_EVENTS = frozenset({
    EventType.WORK_REGISTERED,
    EventType.SPLITS_UPDATED,
    EventType.PAYOUT_CLAIMED,
    EventType.EMERGENCY_WITHDRAWAL,
    EventType.REGISTRANT_AUTHORIZED,
})

_AMOUNT_EVENTS = frozenset({
    EventType.REVENUE_DISTRIBUTED,
    EventType.PAYOUT_CLAIMED,
    EventType.EMERGENCY_WITHDRAWAL,
})


def validate_event_record(record: Any) -> ValidationResult:
    """Validate a wire record before it is applied to the relational mirror."""
    if not isinstance(record, dict):
        return ValidationResult.failure(
            ValidationError(
                code="MALFORMED_RECORD",
                message=f"Event record must be a mapping, got {type(record).__name__}",
            )
        )

    errors: list[ValidationError] = []
    errors.extend(validate_required_fields(record, _COMMON_FIELDS))
    if errors:
        return _fail(record, errors)

    try:
        event_type = EventType(record["event_type"])
    except ValueError:
        return _fail(record, [
            ValidationError(
                code="UNKNOWN_EVENT_TYPE",
                message=f"Unknown event type: {record['event_type']!r}",
                field="event_type",
            )
        ])

    errors.extend(validate_envelope(record))

    if event_type in _WORK_EVENTS and not _non_empty_str(record.get("work_id")):
        errors.append(ValidationError(
            code="MISSING_REQUIRED_FIELD", message="work_id is required", field="work_id",
        ))

    if event_type in _IDENTITY_EVENTS and is_null_identity(record.get("identity")):
        errors.append(ValidationError(
            code="MISSING_REQUIRED_FIELD", message="identity is required", field="identity",
        ))

    if event_type in _AMOUNT_EVENTS:
        errors.extend(validate_amount(record.get("amount"), "amount"))

    if event_type == EventType.SPLITS_UPDATED:
        errors.extend(validate_split_shares(record))
    elif event_type == EventType.REVENUE_DISTRIBUTED:
        errors.extend(validate_distribution(record))

    if errors:
        return _fail(record, errors)
    return ValidationResult.success()


def _fail(record: dict[str, Any], errors: list[ValidationError]) -> ValidationResult:
    logger.warning(
        "event_validation_failed",
        extra={
            "event_type": record.get("event_type"),
            "error_count": len(errors),
            "error_codes": [e.code for e in errors],
        },
    )
    return ValidationResult.failure(*errors)


def _non_empty_str(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def validate_required_fields(
    record: dict[str, Any],
    required_fields: tuple[str, ...],
) -> list[ValidationError]:
    """Validate that required fields are present and not None."""
    return [
        ValidationError(
            code="MISSING_REQUIRED_FIELD",
            message=f"Required field missing: {name}",
            field=name,
        )
        for name in required_fields
        if record.get(name) is None
    ]


def validate_envelope(record: dict[str, Any]) -> list[ValidationError]:
    """Validate the idempotency key and timestamp."""
    errors = []
    if not _non_empty_str(record["origin_tx_id"]):
        errors.append(ValidationError(
            code="INVALID_ORIGIN_TX",
            message="origin_tx_id must be a non-empty string",
            field="origin_tx_id",
        ))

    position = record["log_position"]
    if not is_whole_amount(position) or position < 0:
        errors.append(ValidationError(
            code="INVALID_LOG_POSITION",
            message=f"log_position must be a non-negative int, got {position!r}",
            field="log_position",
        ))

    timestamp = record["timestamp"]
    if isinstance(timestamp, str):
        try:
            datetime.fromisoformat(timestamp)
        except ValueError:
            errors.append(ValidationError(
                code="INVALID_TIMESTAMP",
                message=f"timestamp is not ISO-8601: {timestamp!r}",
                field="timestamp",
            ))
    elif not isinstance(timestamp, datetime):
        errors.append(ValidationError(
            code="INVALID_TIMESTAMP",
            message="timestamp must be an ISO-8601 string or datetime",
            field="timestamp",
        ))
    return errors


def validate_amount(
    amount: Any,
    field_name: str,
    allow_zero: bool = False,
) -> list[ValidationError]:
    """Validate a whole-unit amount value."""
    if amount is None:
        return [ValidationError(
            code="MISSING_AMOUNT", message=f"{field_name} is required", field=field_name,
        )]
    if not is_whole_amount(amount):
        return [ValidationError(
            code="INVALID_AMOUNT",
            message=f"{field_name} must be an integer, got {amount!r}",
            field=field_name,
        )]
    if amount < 0:
        return [ValidationError(
            code="NEGATIVE_AMOUNT",
            message=f"{field_name} must not be negative",
            field=field_name,
            details={"value": amount},
        )]
    if amount == 0 and not allow_zero:
        return [ValidationError(
            code="ZERO_AMOUNT", message=f"{field_name} must be positive", field=field_name,
        )]
    return []


def _validate_parallel_lists(record: dict[str, Any]) -> list[ValidationError]:
    recipients = record.get("recipients")
    shares = record.get("shares")
    if not isinstance(recipients, list) or not isinstance(shares, list) or not recipients:
        return [ValidationError(
            code="MISSING_RECIPIENTS",
            message="recipients and shares must be non-empty lists",
            field="recipients",
        )]
    if len(recipients) != len(shares):
        return [ValidationError(
            code="ARITY_MISMATCH",
            message=f"{len(recipients)} recipients but {len(shares)} shares",
            field="shares",
        )]
    errors = []
    for index, recipient in enumerate(recipients):
        if is_null_identity(recipient):
            errors.append(ValidationError(
                code="INVALID_RECIPIENT",
                message=f"Recipient #{index} is the null identity",
                field=f"recipients[{index}]",
            ))
    for index, share in enumerate(shares):
        errors.extend(validate_amount(share, f"shares[{index}]", allow_zero=True))
    return errors


def validate_split_shares(record: dict[str, Any]) -> list[ValidationError]:
    """Split updates carry basis points that must total exactly 10000."""
    errors = _validate_parallel_lists(record)
    if errors:
        return errors
    total = sum(record["shares"])
    if total != BPS_DENOMINATOR:
        errors.append(ValidationError(
            code="SPLIT_SUM_MISMATCH",
            message=f"Split shares sum to {total}, expected {BPS_DENOMINATOR}",
            field="shares",
        ))
    return errors


def validate_distribution(record: dict[str, Any]) -> list[ValidationError]:
    """Distributions must conserve value: shares + remainder == amount."""
    errors = _validate_parallel_lists(record)
    errors.extend(validate_amount(record.get("remainder"), "remainder", allow_zero=True))
    if is_null_identity(record.get("remainder_recipient")):
        errors.append(ValidationError(
            code="MISSING_REQUIRED_FIELD",
            message="remainder_recipient is required",
            field="remainder_recipient",
        ))
    if errors or not is_whole_amount(record.get("amount")):
        return errors

    credited = sum(record["shares"]) + record["remainder"]
    if credited != record["amount"]:
        errors.append(ValidationError(
            code="CONSERVATION_VIOLATION",
            message=f"shares + remainder = {credited}, amount = {record['amount']}",
            field="amount",
            details={"credited": credited, "amount": record["amount"]},
        ))
    return errors
