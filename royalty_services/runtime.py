"""
royalty_services.runtime -- assemble a running system from settings.

Responsibility:
    Turns ``RoyaltySettings`` into a wired ``RoyaltyRuntime``: logging
    configured, mirror engine initialized, the authoritative splitter with
    its registrants, and the reconciliation worker pool following its log.
"""

from __future__ import annotations

from dataclasses import dataclass

from royalty_config.schema import RoyaltySettings
from royalty_kernel.db.engine import create_tables, get_session_factory, init_engine_from_url
from royalty_kernel.domain.clock import Clock
from royalty_kernel.logging_config import configure_logging, get_logger
from royalty_kernel.services.royalty_splitter import RoyaltySplitter
from royalty_kernel.services.transport import PayoutTransport
from royalty_services.reconciliation_orchestrator import ReconciliationWorkerPool

logger = get_logger("services.runtime")


@dataclass
class RoyaltyRuntime:
    settings: RoyaltySettings
    splitter: RoyaltySplitter
    reconciliation: ReconciliationWorkerPool

    def close(self) -> None:
        self.reconciliation.close()
        self.splitter.close()


def build_runtime(
    settings: RoyaltySettings,
    transport: PayoutTransport | None = None,
    clock: Clock | None = None,
    create_schema: bool = True,
) -> RoyaltyRuntime:
    """
    Wire every component from ``settings``.

    Registrants listed in the settings are authorized by the administrator
    before the runtime is returned, so their authorization events are the
    first entries in the log.
    """
    configure_logging(level=settings.logging.level)

    init_engine_from_url(
        settings.database.url,
        echo=settings.database.echo,
        pool_size=settings.database.pool_size,
        max_overflow=settings.database.max_overflow,
    )
    if create_schema:
        create_tables()

    administrator = settings.engine.administrator
    splitter = RoyaltySplitter(
        administrator,
        transport=transport,
        clock=clock,
        transfer_timeout_seconds=settings.engine.transfer_timeout_seconds,
    )
    for registrant in settings.engine.registrants:
        splitter.authorize_registrant(registrant, caller=administrator)

    pool = ReconciliationWorkerPool(
        splitter.event_log,
        get_session_factory(),
        clock=clock,
        workers=settings.reconciliation.workers,
        batch_size=settings.reconciliation.batch_size,
        max_apply_attempts=settings.reconciliation.max_apply_attempts,
    )

    logger.info(
        "runtime_built",
        extra={
            "config_checksum": settings.checksum,
            "administrator": administrator,
            "workers": settings.reconciliation.workers,
        },
    )
    return RoyaltyRuntime(settings=settings, splitter=splitter, reconciliation=pool)
