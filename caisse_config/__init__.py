"""
caisse_config -- single public entrypoint for runtime settings.

Responsibility:
    ``get_active_config()`` is the only way to obtain settings at runtime.
    It reads one YAML document (``settings/default.yaml`` unless a path is
    given), applies the ``DATABASE_URL`` environment override and returns a
    frozen ``CaisseSettings``.

Architecture position:
    Above ``caisse_kernel`` and below ``caisse_services``.  The kernel never
    imports from this package; the gateway passes the relevant values down
    as constructor arguments.

Audit relevance:
    Every call logs ``config_loaded`` with the source path and the SHA-256
    checksum of the parsed document, tying a running process to the exact
    settings it used.
"""

from __future__ import annotations

import os
from pathlib import Path

from caisse_config.loader import load_yaml_file, parse_settings
from caisse_config.schema import CaisseSettings
from caisse_kernel.logging_config import get_logger

_logger = get_logger("config")

_DEFAULT_SETTINGS = Path(__file__).parent / "settings" / "default.yaml"

DATABASE_URL_ENV = "DATABASE_URL"


def get_active_config(path: Path | str | None = None) -> CaisseSettings:
    """
    Load and validate the active settings.

    Args:
        path: Settings file.  Defaults to ``caisse_config/settings/default.yaml``.

    Raises:
        FileNotFoundError: The settings file does not exist.
        ConfigurationError: A required key is missing or a value is invalid.
    """
    source = Path(path) if path is not None else _DEFAULT_SETTINGS
    data = load_yaml_file(source)
    settings = parse_settings(data, database_url=os.environ.get(DATABASE_URL_ENV))

    _logger.info(
        "config_loaded",
        extra={
            "config_path": str(source),
            "checksum": settings.checksum,
            "production": settings.production,
        },
    )
    return settings


__all__ = ["CaisseSettings", "get_active_config"]
