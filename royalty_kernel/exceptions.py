"""
Typed Exception Hierarchy for the Royalty Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the splitter need to tell three kinds of failure apart without
parsing messages:

  - "your split is invalid"   -> caller's fault, fix the input
  - "transfer failed"         -> transient, retry later
  - "duplicate"               -> harmless, already applied

Every exception therefore carries:
  1. A CODE class attribute (machine-readable, API-safe)
  2. Structured DATA as instance attributes (not just a message)
  3. caller_fault / retryable class flags for user-facing classification

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    RoyaltyKernelError (base)
    |
    +-- NotFoundError
    |   +-- WorkNotFoundError
    |
    +-- UnauthorizedError
    |
    +-- InvalidInputError
    |   +-- InvalidOwnerError
    |   +-- InvalidRecipientError
    |   +-- InvalidShareError
    |   +-- InvalidAmountError
    |
    +-- ConflictError
    |   +-- WorkAlreadyExistsError
    |   +-- DuplicateRecipientError
    |   +-- SplitSumMismatchError
    |
    +-- InsufficientStateError
    |   +-- NoRecipientsError
    |   +-- NoPendingBalanceError
    |   +-- InsufficientFundsError
    |
    +-- TransferFailedError
    |   +-- TransferTimeoutError
    |
    +-- ReentrantCallError
    |
    +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                   | When Raised
----------------|------------------------|----------------------------------------
NotFound        | WORK_NOT_FOUND         | Work id was never registered
Unauthorized    | UNAUTHORIZED           | Caller is not owner / administrator
InvalidInput    | INVALID_INPUT          | Arity or shape error (empty, mismatched)
                | INVALID_OWNER          | Owner is the null identity
                | INVALID_RECIPIENT      | Recipient is the null identity
                | INVALID_SHARE          | Share not an int in [0, 10000]
                | INVALID_AMOUNT         | Deposit amount <= 0 or not an int
Conflict        | WORK_ALREADY_EXISTS    | Work id registered twice
                | DUPLICATE_RECIPIENT    | Same recipient twice in one split set
                | SPLIT_SUM_MISMATCH     | Shares do not sum to exactly 10000
InsufficientSt. | NO_RECIPIENTS          | Deposit before any split set installed
                | NO_PENDING_BALANCE     | Claim with a zero balance
                | INSUFFICIENT_FUNDS     | Withdrawal exceeds custodied value
Transfer        | TRANSFER_FAILED        | External payment step raised
                | TRANSFER_TIMEOUT       | External payment step timed out
Reentrant       | REENTRANT_CALL         | Mutation attempted during a transfer
Immutability    | IMMUTABILITY_VIOLATION | Mutating an append-only mirror row

===============================================================================
HANDLING PATTERNS
===============================================================================

    try:
        splitter.claim(alice)
    except TransferFailedError as e:
        schedule_retry(e.identity)          # e.retryable is True
    except NoPendingBalanceError:
        pass                                # nothing owed

    try:
        splitter.set_splits(work_id, recipients, shares, caller=owner)
    except RoyaltyKernelError as e:
        if e.caller_fault:
            return {"error": e.code, "message": str(e)}
        raise
"""


class RoyaltyKernelError(Exception):
    """
    Base exception for all royalty kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "ROYALTY_KERNEL_ERROR"
    caller_fault: bool = False
    retryable: bool = False


# Lookup failures


class NotFoundError(RoyaltyKernelError):
    """Base exception for absent works or identities."""

    code: str = "NOT_FOUND"
    caller_fault: bool = True


class WorkNotFoundError(NotFoundError):
    """Work id has not been registered."""

    code: str = "WORK_NOT_FOUND"

    def __init__(self, work_id: str):
        self.work_id = work_id
        super().__init__(f"Work not found: {work_id}")


# Authorization


class UnauthorizedError(RoyaltyKernelError):
    """Caller is not entitled to perform the operation."""

    code: str = "UNAUTHORIZED"
    caller_fault: bool = True

    def __init__(self, caller: str | None, operation: str, reason: str):
        self.caller = caller
        self.operation = operation
        self.reason = reason
        super().__init__(f"{caller!r} may not {operation}: {reason}")


# Input shape errors


class InvalidInputError(RoyaltyKernelError):
    """Arity or shape error in the request."""

    code: str = "INVALID_INPUT"
    caller_fault: bool = True

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class InvalidOwnerError(InvalidInputError):
    """Work owner is the null identity."""

    code: str = "INVALID_OWNER"

    def __init__(self, work_id: str):
        self.work_id = work_id
        super().__init__(f"Owner of work {work_id} must not be the null identity", field="owner")


class InvalidRecipientError(InvalidInputError):
    """A split recipient is the null identity."""

    code: str = "INVALID_RECIPIENT"

    def __init__(self, work_id: str, index: int):
        self.work_id = work_id
        self.index = index
        super().__init__(
            f"Recipient #{index} of work {work_id} is the null identity",
            field=f"recipients[{index}]",
        )


class InvalidShareError(InvalidInputError):
    """A share is not an integer basis-point value in [0, 10000]."""

    code: str = "INVALID_SHARE"

    def __init__(self, work_id: str, index: int, share: object):
        self.work_id = work_id
        self.index = index
        self.share = share
        super().__init__(
            f"Share #{index} of work {work_id} must be an int in [0, 10000], got {share!r}",
            field=f"shares_bps[{index}]",
        )


class InvalidAmountError(InvalidInputError):
    """Amount is not a positive integer number of smallest units."""

    code: str = "INVALID_AMOUNT"

    def __init__(self, amount: object):
        self.amount = amount
        super().__init__(f"Amount must be a positive integer, got {amount!r}", field="amount")


# Conflicts


class ConflictError(RoyaltyKernelError):
    """Base exception for requests that contradict existing or internal state."""

    code: str = "CONFLICT"
    caller_fault: bool = True


class WorkAlreadyExistsError(ConflictError):
    """Work id is already registered."""

    code: str = "WORK_ALREADY_EXISTS"

    def __init__(self, work_id: str):
        self.work_id = work_id
        super().__init__(f"Work already exists: {work_id}")


class DuplicateRecipientError(ConflictError):
    """Same recipient listed more than once in one split set."""

    code: str = "DUPLICATE_RECIPIENT"

    def __init__(self, work_id: str, recipient: str):
        self.work_id = work_id
        self.recipient = recipient
        super().__init__(f"Recipient {recipient} appears more than once in split for work {work_id}")


class SplitSumMismatchError(ConflictError):
    """Shares of a split set do not sum to exactly 10000 basis points."""

    code: str = "SPLIT_SUM_MISMATCH"

    def __init__(self, work_id: str, total_bps: int, expected_bps: int = 10000):
        self.work_id = work_id
        self.total_bps = total_bps
        self.expected_bps = expected_bps
        super().__init__(
            f"Shares for work {work_id} sum to {total_bps} bps, expected {expected_bps}"
        )


# Missing state


class InsufficientStateError(RoyaltyKernelError):
    """Base exception for operations whose preconditions are not yet met."""

    code: str = "INSUFFICIENT_STATE"


class NoRecipientsError(InsufficientStateError):
    """Deposit attempted before a split set was installed."""

    code: str = "NO_RECIPIENTS"

    def __init__(self, work_id: str):
        self.work_id = work_id
        super().__init__(f"Work {work_id} has no split set installed")


class NoPendingBalanceError(InsufficientStateError):
    """Claim attempted with nothing owed."""

    code: str = "NO_PENDING_BALANCE"

    def __init__(self, identity: str):
        self.identity = identity
        super().__init__(f"No pending balance for {identity}")


class InsufficientFundsError(InsufficientStateError):
    """Requested amount exceeds the custodied total."""

    code: str = "INSUFFICIENT_FUNDS"

    def __init__(self, requested: int, available: int):
        self.requested = requested
        self.available = available
        super().__init__(f"Requested {requested} exceeds custodied {available}")


# Transfer step


class TransferFailedError(RoyaltyKernelError):
    """External payment step failed; the debit is not kept."""

    code: str = "TRANSFER_FAILED"
    retryable: bool = True

    def __init__(self, identity: str, amount: int, reason: str):
        self.identity = identity
        self.amount = amount
        self.reason = reason
        super().__init__(f"Transfer of {amount} to {identity} failed: {reason}")


class TransferTimeoutError(TransferFailedError):
    """
    External payment step did not complete within the configured timeout.

    ``outstanding`` is True when the transport call could not be cancelled
    and is still running; the debit then stays in place until it settles.
    """

    code: str = "TRANSFER_TIMEOUT"

    def __init__(
        self,
        identity: str,
        amount: int,
        timeout_seconds: float,
        outstanding: bool = False,
    ):
        self.timeout_seconds = timeout_seconds
        self.outstanding = outstanding
        super().__init__(identity, amount, f"timed out after {timeout_seconds}s")


# Concurrency


class ReentrantCallError(RoyaltyKernelError):
    """A mutating call was made from inside another call's critical section."""

    code: str = "REENTRANT_CALL"

    def __init__(self, operation: str, held_keys: list[str]):
        self.operation = operation
        self.held_keys = held_keys
        super().__init__(
            f"Re-entrant {operation} rejected while holding {', '.join(held_keys)}"
        )


# Reconciliation


class ImmutabilityViolationError(RoyaltyKernelError):
    """Attempt to modify an append-only mirror row."""

    code: str = "IMMUTABILITY_VIOLATION"
