"""
Settings loader (``caisse_config.loader``).

Responsibility
--------------
Reads one YAML settings document and parses it into the frozen
``caisse_config.schema`` dataclasses.  Runtime callers go through
``caisse_config.get_active_config()``; tests may call ``parse_settings``
directly with an in-memory mapping.

Failure modes
-------------
* Missing file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required key or wrongly typed value  -> ``ConfigurationError``
  naming the dotted key path.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from caisse_config.schema import (
    CaisseSettings,
    DatabaseSettings,
    DocumentSettings,
    LoggingSettings,
    NotificationSettings,
    PaginationSettings,
    ReferenceDataSettings,
    SideEffectSettings,
)
from caisse_kernel.exceptions import ConfigurationError

_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a YAML file; an empty file yields an empty dict."""
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(str(path), "top level must be a mapping")
    return data


def compute_checksum(data: Mapping[str, Any]) -> str:
    """SHA-256 of the canonical JSON form of the parsed document."""
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Typed accessors
# ---------------------------------------------------------------------------


def _section(data: Mapping[str, Any], key: str, required: bool = True) -> Mapping[str, Any]:
    value = data.get(key)
    if value is None:
        if required:
            raise ConfigurationError(key, "section is required")
        return {}
    if not isinstance(value, Mapping):
        raise ConfigurationError(key, "must be a mapping")
    return value


def _require(data: Mapping[str, Any], path: str, key: str) -> Any:
    if key not in data or data[key] is None:
        raise ConfigurationError(f"{path}.{key}", "is required")
    return data[key]


def _positive_int(data: Mapping[str, Any], path: str, key: str, default: int | None = None) -> int:
    value = data.get(key, default) if default is not None else _require(data, path, key)
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigurationError(f"{path}.{key}", "must be a positive integer")
    return value


def _positive_float(data: Mapping[str, Any], path: str, key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigurationError(f"{path}.{key}", "must be a positive number")
    return float(value)


def _recipients(data: Mapping[str, Any], path: str, key: str) -> tuple[str, ...]:
    value = data.get(key) or ()
    if isinstance(value, str):
        value = (value,)
    if not all(isinstance(item, str) and item for item in value):
        raise ConfigurationError(f"{path}.{key}", "must be a list of addresses")
    return tuple(value)


# ---------------------------------------------------------------------------
# Section parsers
# ---------------------------------------------------------------------------


def parse_database(data: Mapping[str, Any]) -> DatabaseSettings:
    url = _require(data, "database", "url")
    if not isinstance(url, str) or not url:
        raise ConfigurationError("database.url", "must be a non-empty string")

    timeout = data.get("transaction_timeout_seconds", 10.0)
    if timeout is not None:
        timeout = _positive_float(data, "database", "transaction_timeout_seconds", 10.0)

    return DatabaseSettings(
        url=url,
        echo=bool(data.get("echo", False)),
        pool_size=_positive_int(data, "database", "pool_size", 20),
        max_overflow=int(data.get("max_overflow", 10)),
        pool_timeout=_positive_int(data, "database", "pool_timeout", 30),
        busy_timeout=_positive_float(data, "database", "busy_timeout", 30.0),
        transaction_timeout_seconds=timeout,
    )


def parse_pagination(data: Mapping[str, Any], path: str) -> PaginationSettings:
    default_limit = _positive_int(data, path, "default_limit")
    max_limit = _positive_int(data, path, "max_limit")
    if default_limit > max_limit:
        raise ConfigurationError(f"{path}.default_limit", "must not exceed max_limit")
    return PaginationSettings(default_limit=default_limit, max_limit=max_limit)


def parse_side_effects(data: Mapping[str, Any]) -> SideEffectSettings:
    return SideEffectSettings(
        workers=_positive_int(data, "side_effects", "workers", 2),
        handler_timeout_seconds=_positive_float(
            data, "side_effects", "handler_timeout_seconds", 30.0
        ),
        max_attempts=_positive_int(data, "side_effects", "max_attempts", 1),
        queue_size=_positive_int(data, "side_effects", "queue_size", 1000),
    )


def parse_notifications(data: Mapping[str, Any]) -> NotificationSettings:
    return NotificationSettings(
        sender=_require(data, "notifications", "sender"),
        severity_four_recipients=_recipients(data, "notifications", "severity_four_recipients"),
        recurrence_recipients=_recipients(data, "notifications", "recurrence_recipients"),
    )


def parse_logging(data: Mapping[str, Any]) -> LoggingSettings:
    level = str(data.get("level", "INFO")).upper()
    if level not in _LOG_LEVELS:
        raise ConfigurationError("logging.level", f"unknown level {level!r}")
    return LoggingSettings(level=level)


def parse_settings(
    data: Mapping[str, Any],
    database_url: str | None = None,
) -> CaisseSettings:
    """
    Build ``CaisseSettings`` from a parsed document.

    ``database_url``, when given, replaces ``database.url`` before
    validation; the checksum is computed over the document as written.
    """
    database = dict(_section(data, "database"))
    if database_url:
        database["url"] = database_url

    return CaisseSettings(
        database=parse_database(database),
        listing=parse_pagination(_section(data, "listing"), "listing"),
        audit=parse_pagination(_section(data, "audit"), "audit"),
        reference_data=ReferenceDataSettings(
            ttl_seconds=_positive_float(
                _section(data, "reference_data", required=False),
                "reference_data",
                "ttl_seconds",
                24 * 3600,
            ),
        ),
        side_effects=parse_side_effects(_section(data, "side_effects", required=False)),
        notifications=parse_notifications(_section(data, "notifications")),
        documents=DocumentSettings(
            archive_path=str(
                _section(data, "documents", required=False).get("archive_path", "archive")
            ),
        ),
        logging=parse_logging(_section(data, "logging", required=False)),
        production=bool(data.get("production", False)),
        checksum=compute_checksum(data),
    )
