"""
SplitRegistry -- works, their owners, and their basis-point split sets.

Responsibility:
    Registers works, authorizes registrants, validates and installs split
    sets.  Every successful mutation emits one event to the EventLog.

Architecture position:
    Kernel > Services -- authoritative engine state.  The DistributionEngine
    reads split sets from here; nothing else writes them.

Invariants enforced:
    - A work id is registered at most once; its owner never changes.
    - Only the work owner may replace its split set.
    - A split set is swapped in as one frozen object under the work's lock,
      so readers see either the old set or the new one, never a mix.
    - Failed calls change nothing and emit nothing.

Failure modes:
    - UnauthorizedError, WorkAlreadyExistsError, InvalidOwnerError,
      WorkNotFoundError, and the split validation errors raised by
      ``split_rules.build_split_set``.
    - ReentrantCallError when called from inside another critical section.
"""

from __future__ import annotations

from collections.abc import Sequence

from royalty_kernel.domain.events import EventType
from royalty_kernel.domain.split_rules import build_split_set
from royalty_kernel.domain.values import (
    Identity,
    SplitSet,
    Work,
    is_null_identity,
    normalize_work_id,
)
from royalty_kernel.exceptions import (
    InvalidInputError,
    InvalidOwnerError,
    UnauthorizedError,
    WorkAlreadyExistsError,
    WorkNotFoundError,
)
from royalty_kernel.logging_config import LogContext, get_logger
from royalty_kernel.services.critical_section import (
    REGISTRY_KEY,
    KeyedCriticalSection,
    work_key,
)
from royalty_kernel.services.event_log import EventLog

logger = get_logger("services.split_registry")


class SplitRegistry:
    """
    Owner of per-work recipient lists and allocations.

    Contract:
        ``register_work`` requires the administrator or an authorized
        registrant as caller.  ``set_splits`` requires the work owner.

    Guarantees:
        - ``get_split_set`` never returns a partially installed set.
        - Registration and split changes are reflected in the EventLog in
          the same order they took effect.
    """

    def __init__(
        self,
        event_log: EventLog,
        administrator: Identity,
        sections: KeyedCriticalSection | None = None,
    ):
        if is_null_identity(administrator):
            raise InvalidInputError("Administrator must not be the null identity", field="administrator")
        self._log = event_log
        self._administrator = administrator
        self._sections = sections or KeyedCriticalSection()
        self._works: dict[str, Work] = {}
        self._splits: dict[str, SplitSet] = {}
        self._registrants: set[Identity] = set()

    @property
    def administrator(self) -> Identity:
        return self._administrator

    def is_registrant(self, identity: Identity) -> bool:
        return identity == self._administrator or identity in self._registrants

    def authorize_registrant(
        self,
        registrant: Identity,
        *,
        caller: Identity,
        origin_tx_id: str | None = None,
    ) -> None:
        """Allow ``registrant`` to register works. Administrator only."""
        with self._sections.hold([REGISTRY_KEY], "authorize_registrant"):
            if caller != self._administrator:
                raise UnauthorizedError(caller, "authorize_registrant", "administrator only")
            if is_null_identity(registrant):
                raise InvalidInputError("Registrant must not be the null identity", field="registrant")
            if registrant in self._registrants:
                return

            with self._log.transaction(origin_tx_id) as tx:
                tx.emit(
                    EventType.REGISTRANT_AUTHORIZED,
                    identity=registrant,
                    actor=caller,
                )
            self._registrants.add(registrant)

        logger.info("registrant_authorized", extra={"registrant": registrant})

    def register_work(
        self,
        work_id: object,
        owner: Identity,
        asset_reference: str | None = None,
        *,
        caller: Identity,
        origin_tx_id: str | None = None,
    ) -> Work:
        """
        Register a new work owned by ``owner``.

        Raises:
            UnauthorizedError: Caller is neither administrator nor registrant.
            InvalidOwnerError: Owner is the null identity.
            WorkAlreadyExistsError: Work id already registered.
        """
        key = normalize_work_id(work_id)
        with LogContext.bind(work_id=key), self._sections.hold([work_key(key)], "register_work"):
            if not self.is_registrant(caller):
                raise UnauthorizedError(caller, "register_work", "not an authorized registrant")
            if is_null_identity(owner):
                raise InvalidOwnerError(key)
            if key in self._works:
                raise WorkAlreadyExistsError(key)

            work = Work(work_id=key, owner=owner, asset_reference=asset_reference)
            with self._log.transaction(origin_tx_id) as tx:
                tx.emit(
                    EventType.WORK_REGISTERED,
                    work_id=key,
                    identity=owner,
                    actor=caller,
                    attributes={"asset_reference": asset_reference},
                )
            self._works[key] = work

            logger.info(
                "work_registered",
                extra={"owner": owner, "asset_reference": asset_reference},
            )
        return work

    def set_splits(
        self,
        work_id: object,
        recipients: Sequence[Identity],
        shares_bps: Sequence[int],
        *,
        caller: Identity,
        origin_tx_id: str | None = None,
    ) -> SplitSet:
        """
        Validate and atomically replace the split set of a work.

        Raises:
            WorkNotFoundError: Work not registered.
            UnauthorizedError: Caller is not the work owner.
            InvalidInputError / InvalidRecipientError / InvalidShareError:
                Malformed recipients or shares.
            DuplicateRecipientError / SplitSumMismatchError: Conflicting split.
        """
        key = normalize_work_id(work_id)
        with LogContext.bind(work_id=key), self._sections.hold([work_key(key)], "set_splits"):
            work = self.get_work(key)
            if caller != work.owner:
                raise UnauthorizedError(caller, "set_splits", "only the work owner may set splits")

            split_set = build_split_set(key, recipients, shares_bps)

            with self._log.transaction(origin_tx_id) as tx:
                tx.emit(
                    EventType.SPLITS_UPDATED,
                    work_id=key,
                    identity=work.owner,
                    actor=caller,
                    recipients=split_set.recipients,
                    shares=split_set.shares_bps,
                )
            self._splits[key] = split_set

            logger.info(
                "splits_updated",
                extra={"recipient_count": len(split_set), "total_bps": split_set.total_bps},
            )
        return split_set

    # Reads take no lock: works and split sets are replaced, never edited.

    def find_work(self, work_id: object) -> Work | None:
        return self._works.get(normalize_work_id(work_id))

    def get_work(self, work_id: object) -> Work:
        key = normalize_work_id(work_id)
        work = self._works.get(key)
        if work is None:
            raise WorkNotFoundError(key)
        return work

    def get_split_set(self, work_id: object) -> SplitSet | None:
        """Installed split set, or None if the work has none yet."""
        work = self.get_work(work_id)
        return self._splits.get(work.work_id)

    def get_recipients(self, work_id: object) -> tuple[Identity, ...]:
        split_set = self.get_split_set(work_id)
        return split_set.recipients if split_set is not None else ()
