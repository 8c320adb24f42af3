"""
royalty_config -- single public entrypoint for runtime configuration.

Responsibility:
    ``get_active_config()`` is the only way the outer layers obtain
    settings.  The kernel never imports this package; ``royalty_services``
    translates settings into constructor arguments.

Invariants enforced:
    - Defaults always load first; an override file can only change keys
      inside the known sections.
    - Same merged YAML always produces the same checksum.

Failure modes:
    - FileNotFoundError, yaml.YAMLError, KeyError, ValueError (see loader).

Every successful load emits a ``ROYALTY_CONFIG_TRACE`` log entry carrying
the source path and checksum.
"""

from __future__ import annotations

import logging
from pathlib import Path

from royalty_config.loader import DEFAULTS_PATH, build_settings, load_yaml_file, merge_sections
from royalty_config.schema import (
    DatabaseSettings,
    EngineSettings,
    LoggingSettings,
    ReconciliationSettings,
    RoyaltySettings,
)

_logger = logging.getLogger("royalty_kernel.config")


def get_active_config(config_path: Path | str | None = None) -> RoyaltySettings:
    """
    Load runtime settings.

    Args:
        config_path: Optional YAML file merged over the packaged defaults.

    Returns:
        Frozen RoyaltySettings.
    """
    data = merge_sections({}, load_yaml_file(DEFAULTS_PATH))
    source = str(DEFAULTS_PATH)
    if config_path is not None:
        data = merge_sections(data, load_yaml_file(Path(config_path)))
        source = str(config_path)

    settings = build_settings(data, source=source)

    _logger.info(
        "ROYALTY_CONFIG_TRACE",
        extra={
            "trace_type": "ROYALTY_CONFIG_TRACE",
            "source": source,
            "checksum": settings.checksum,
            "workers": settings.reconciliation.workers,
            "registrant_count": len(settings.engine.registrants),
        },
    )
    return settings


__all__ = [
    "DatabaseSettings",
    "EngineSettings",
    "LoggingSettings",
    "ReconciliationSettings",
    "RoyaltySettings",
    "get_active_config",
]
