"""
YAML loading and parsing for runtime settings.

Responsibility:
    Reads ``defaults.yaml`` and an optional override file, merges them per
    section, validates values, and builds the frozen ``RoyaltySettings``.

Failure modes:
    - FileNotFoundError: override path does not exist.
    - yaml.YAMLError: invalid YAML.
    - KeyError: a required key is missing after merging.
    - ValueError: a value is out of range or of the wrong kind.
"""

from __future__ import annotations

import hashlib
import json
import logging
from pathlib import Path
from typing import Any

import yaml

from royalty_config.schema import (
    DatabaseSettings,
    EngineSettings,
    LoggingSettings,
    ReconciliationSettings,
    RoyaltySettings,
)
from royalty_kernel.domain.values import is_null_identity

DEFAULTS_PATH = Path(__file__).parent / "defaults.yaml"

_SECTIONS = ("database", "engine", "reconciliation", "logging")


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the top level is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping, got {type(data).__name__}")
    return data


def merge_sections(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Shallow merge per section; unknown sections are rejected."""
    unknown = set(override) - set(_SECTIONS)
    if unknown:
        raise ValueError(f"Unknown configuration sections: {sorted(unknown)}")
    merged = {name: dict(base.get(name) or {}) for name in _SECTIONS}
    for name, values in override.items():
        if values is None:
            continue
        if not isinstance(values, dict):
            raise ValueError(f"Section {name!r} must be a mapping")
        merged[name].update(values)
    return merged


def _positive_int(section: str, key: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValueError(f"{section}.{key} must be a positive integer, got {value!r}")
    return value


def parse_database(data: dict[str, Any]) -> DatabaseSettings:
    url = data["url"]
    if not isinstance(url, str) or not url:
        raise ValueError("database.url must be a non-empty string")
    return DatabaseSettings(
        url=url,
        echo=bool(data.get("echo", False)),
        pool_size=_positive_int("database", "pool_size", data.get("pool_size", 20)),
        max_overflow=int(data.get("max_overflow", 10)),
    )


def parse_engine(data: dict[str, Any]) -> EngineSettings:
    administrator = data["administrator"]
    if is_null_identity(administrator) or not isinstance(administrator, str):
        raise ValueError("engine.administrator must be a non-null identity")

    registrants = tuple(data.get("registrants") or ())
    for registrant in registrants:
        if not isinstance(registrant, str) or is_null_identity(registrant):
            raise ValueError(f"engine.registrants contains an invalid identity: {registrant!r}")

    timeout = data.get("transfer_timeout_seconds")
    if timeout is not None:
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            raise ValueError(f"engine.transfer_timeout_seconds must be positive or null, got {timeout!r}")
        timeout = float(timeout)

    return EngineSettings(
        administrator=administrator,
        registrants=registrants,
        transfer_timeout_seconds=timeout,
    )


def parse_reconciliation(data: dict[str, Any]) -> ReconciliationSettings:
    return ReconciliationSettings(
        workers=_positive_int("reconciliation", "workers", data.get("workers", 4)),
        batch_size=_positive_int("reconciliation", "batch_size", data.get("batch_size", 500)),
        max_apply_attempts=_positive_int(
            "reconciliation", "max_apply_attempts", data.get("max_apply_attempts", 5)
        ),
    )


def parse_logging(data: dict[str, Any]) -> LoggingSettings:
    level = str(data.get("level", "INFO")).upper()
    if not isinstance(logging.getLevelName(level), int):
        raise ValueError(f"logging.level is not a logging level: {level!r}")
    return LoggingSettings(level=level)


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON form of the merged settings."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def build_settings(data: dict[str, Any], source: str | None = None) -> RoyaltySettings:
    """Parse merged YAML data into ``RoyaltySettings``."""
    return RoyaltySettings(
        database=parse_database(data["database"]),
        engine=parse_engine(data["engine"]),
        reconciliation=parse_reconciliation(data["reconciliation"]),
        logging=parse_logging(data["logging"]),
        source=source,
        checksum=compute_checksum(data),
    )
