"""
Runtime settings schema.

``RoyaltySettings`` is the frozen artifact ``get_active_config()`` returns.
Sections mirror the YAML layout one to one.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class DatabaseSettings:
    url: str
    echo: bool = False
    pool_size: int = 20
    max_overflow: int = 10


@dataclass(frozen=True)
class EngineSettings:
    """Authoritative engine wiring."""

    administrator: str
    registrants: tuple[str, ...] = ()
    transfer_timeout_seconds: float | None = None


@dataclass(frozen=True)
class ReconciliationSettings:
    workers: int = 4
    batch_size: int = 500
    max_apply_attempts: int = 5


@dataclass(frozen=True)
class LoggingSettings:
    level: str = "INFO"


@dataclass(frozen=True)
class RoyaltySettings:
    """Complete runtime configuration."""

    database: DatabaseSettings
    engine: EngineSettings
    reconciliation: ReconciliationSettings = field(default_factory=ReconciliationSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    source: str | None = None
    checksum: str = ""
