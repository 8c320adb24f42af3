"""
Distribution -- conservation-exact basis-point arithmetic.

Responsibility:
    Given a deposited amount, a split set and the work owner, compute each
    recipient's floored share and the owner's remainder.

Architecture position:
    Kernel > Domain -- pure functional core.  The DistributionEngine service
    applies the result to balances; nothing here mutates state.

Invariants enforced:
    - Conservation: ``distributed + remainder == amount`` for every input.
      Flooring never over-distributes, so the remainder is never negative.
    - The remainder goes entirely to the work owner, even when the owner
      is also a listed recipient (the owner is then credited twice).
"""

from collections import defaultdict
from dataclasses import dataclass

from royalty_kernel.domain.values import BPS_DENOMINATOR, Identity, SplitSet


@dataclass(frozen=True)
class Allocation:
    """One recipient's computed share of a deposit."""

    recipient: Identity
    share_bps: int
    amount: int


@dataclass(frozen=True)
class Distribution:
    """Result of splitting one deposit."""

    work_id: str
    amount: int
    allocations: tuple[Allocation, ...]
    remainder: int
    remainder_recipient: Identity

    @property
    def distributed(self) -> int:
        return sum(a.amount for a in self.allocations)

    @property
    def recipients(self) -> tuple[Identity, ...]:
        return tuple(a.recipient for a in self.allocations)

    @property
    def shares(self) -> tuple[int, ...]:
        return tuple(a.amount for a in self.allocations)

    def credits(self) -> dict[Identity, int]:
        """Total credit per identity, remainder included."""
        totals: dict[Identity, int] = defaultdict(int)
        for allocation in self.allocations:
            totals[allocation.recipient] += allocation.amount
        totals[self.remainder_recipient] += self.remainder
        return dict(totals)


def compute_distribution(amount: int, split_set: SplitSet, owner: Identity) -> Distribution:
    """Split ``amount`` across ``split_set`` in order; remainder to ``owner``."""
    allocations: list[Allocation] = []
    distributed = 0
    for entry in split_set.entries:
        share = amount * entry.share_bps // BPS_DENOMINATOR
        distributed += share
        allocations.append(Allocation(entry.recipient, entry.share_bps, share))

    remainder = amount - distributed
    assert remainder >= 0, "flooring must never over-distribute"

    return Distribution(
        work_id=split_set.work_id,
        amount=amount,
        allocations=tuple(allocations),
        remainder=remainder,
        remainder_recipient=owner,
    )
