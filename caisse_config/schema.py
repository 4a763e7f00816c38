"""
Settings schema.

Typed, frozen view of ``settings/*.yaml``.  The loader parses the YAML
document into these types; nothing else in the system reads the file.
"""

from __future__ import annotations

from dataclasses import dataclass, field

# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DatabaseSettings:
    """Engine and unit-of-work parameters."""

    url: str
    echo: bool = False
    pool_size: int = 20
    max_overflow: int = 10
    pool_timeout: int = 30
    busy_timeout: float = 30.0
    transaction_timeout_seconds: float | None = 10.0


# ---------------------------------------------------------------------------
# Read side
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PaginationSettings:
    default_limit: int
    max_limit: int


@dataclass(frozen=True)
class ReferenceDataSettings:
    ttl_seconds: float = 24 * 3600


# ---------------------------------------------------------------------------
# Side effects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SideEffectSettings:
    """Worker pool for post-commit jobs.  ``max_attempts=1`` is at-most-once."""

    workers: int = 2
    handler_timeout_seconds: float = 30.0
    max_attempts: int = 1
    queue_size: int = 1000


@dataclass(frozen=True)
class NotificationSettings:
    sender: str
    severity_four_recipients: tuple[str, ...] = ()
    recurrence_recipients: tuple[str, ...] = ()


@dataclass(frozen=True)
class DocumentSettings:
    archive_path: str = "archive"


@dataclass(frozen=True)
class LoggingSettings:
    level: str = "INFO"


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CaisseSettings:
    """Complete runtime settings; ``checksum`` identifies the source document."""

    database: DatabaseSettings
    listing: PaginationSettings
    audit: PaginationSettings
    reference_data: ReferenceDataSettings = field(default_factory=ReferenceDataSettings)
    side_effects: SideEffectSettings = field(default_factory=SideEffectSettings)
    notifications: NotificationSettings = field(
        default_factory=lambda: NotificationSettings(sender="noreply@localhost")
    )
    documents: DocumentSettings = field(default_factory=DocumentSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    production: bool = False
    checksum: str = ""
