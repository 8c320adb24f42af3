"""
Value objects for works, identities and split sets.

Responsibility:
    Immutable representations of the things the engine keys its state on.
    A ``SplitSet`` is installed by swapping one frozen object for another,
    so readers never observe a partially written recipient list.

Architecture position:
    Kernel > Domain -- pure, no I/O.

Invariants enforced:
    - Basis points are integers; a complete split set totals BPS_DENOMINATOR.
    - Identities are strings; the null identity is never a valid owner or
      recipient.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from royalty_kernel.exceptions import InvalidInputError

BPS_DENOMINATOR = 10_000

NULL_IDENTITY = "0x0000000000000000000000000000000000000000"

Identity = str


def is_null_identity(identity: object) -> bool:
    """True for None, the empty string, and the all-zero address."""
    if identity is None:
        return True
    if not isinstance(identity, str):
        return False
    stripped = identity.strip()
    return stripped == "" or stripped.lower() == NULL_IDENTITY


def normalize_work_id(work_id: object) -> str:
    """Canonical string form of a work id (``1`` and ``"1"`` are the same work)."""
    if work_id is None or isinstance(work_id, bool):
        raise InvalidInputError(f"Invalid work id: {work_id!r}", field="work_id")
    key = str(work_id).strip()
    if not key:
        raise InvalidInputError("Work id must not be empty", field="work_id")
    return key


def is_whole_amount(value: object) -> bool:
    """True for ints that are not bools."""
    return isinstance(value, int) and not isinstance(value, bool)


@dataclass(frozen=True)
class Work:
    """A registered work. Identity never changes after registration."""

    work_id: str
    owner: Identity
    asset_reference: str | None = None


@dataclass(frozen=True)
class SplitEntry:
    """One recipient and its share in basis points."""

    recipient: Identity
    share_bps: int


@dataclass(frozen=True)
class SplitSet:
    """
    Ordered recipient allocations for one work.

    Contract:
        Built only by ``split_rules.build_split_set`` which enforces non-null,
        unique recipients and an exact BPS_DENOMINATOR total.
    """

    work_id: str
    entries: tuple[SplitEntry, ...] = field(default_factory=tuple)

    @property
    def recipients(self) -> tuple[Identity, ...]:
        return tuple(e.recipient for e in self.entries)

    @property
    def shares_bps(self) -> tuple[int, ...]:
        return tuple(e.share_bps for e in self.entries)

    @property
    def total_bps(self) -> int:
        return sum(self.shares_bps)

    def __len__(self) -> int:
        return len(self.entries)
