"""Split set validation -- pure rules applied before a split set is installed."""

from collections.abc import Sequence

from royalty_kernel.domain.values import (
    BPS_DENOMINATOR,
    SplitEntry,
    SplitSet,
    is_null_identity,
    is_whole_amount,
)
from royalty_kernel.exceptions import (
    DuplicateRecipientError,
    InvalidInputError,
    InvalidRecipientError,
    InvalidShareError,
    SplitSumMismatchError,
)


def build_split_set(
    work_id: str,
    recipients: Sequence[str],
    shares_bps: Sequence[int],
) -> SplitSet:
    """
    Validate recipients/shares and return a frozen SplitSet.

    Checks run in a fixed order so the reported error is deterministic:
    arity, null recipient, share range, duplicate recipient, sum.

    Raises:
        InvalidInputError: Empty or mismatched arrays.
        InvalidRecipientError: A recipient is the null identity.
        InvalidShareError: A share is not an int in [0, 10000].
        DuplicateRecipientError: A recipient appears twice.
        SplitSumMismatchError: Shares do not total exactly 10000.
    """
    recipients = list(recipients)
    shares_bps = list(shares_bps)

    if not recipients or not shares_bps:
        raise InvalidInputError("Recipients and shares must be non-empty", field="recipients")
    if len(recipients) != len(shares_bps):
        raise InvalidInputError(
            f"Got {len(recipients)} recipients but {len(shares_bps)} shares",
            field="shares_bps",
        )

    for index, recipient in enumerate(recipients):
        if is_null_identity(recipient) or not isinstance(recipient, str):
            raise InvalidRecipientError(work_id, index)

    for index, share in enumerate(shares_bps):
        if not is_whole_amount(share) or share < 0 or share > BPS_DENOMINATOR:
            raise InvalidShareError(work_id, index, share)

    seen: set[str] = set()
    for recipient in recipients:
        if recipient in seen:
            raise DuplicateRecipientError(work_id, recipient)
        seen.add(recipient)

    total = sum(shares_bps)
    if total != BPS_DENOMINATOR:
        raise SplitSumMismatchError(work_id, total, BPS_DENOMINATOR)

    return SplitSet(
        work_id=work_id,
        entries=tuple(SplitEntry(r, s) for r, s in zip(recipients, shares_bps)),
    )
