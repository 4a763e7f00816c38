"""
DTOs -- immutable data that crosses the kernel boundary.

Responsibility:
    Frozen snapshots returned by services and selectors
    (``DeclarationRecord``, ``DeclarationSummary``, ``AuditEntry``), the
    listing/audit filter objects, pagination, and use-case results.

Architecture position:
    Kernel > Domain -- zero I/O, no ORM imports.  Models build these through
    their ``to_dto()`` methods; callers above the kernel never see ORM rows.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Generic, TypeVar
from uuid import UUID

from caisse_kernel.domain.lifecycle import DeclarationStatus

T = TypeVar("T")


# =========================================================================
# Declaration snapshots
# =========================================================================


@dataclass(frozen=True)
class DeclarationRecord:
    """Full snapshot of one declaration, including its cause/measure tags."""

    id: UUID
    ref: str
    status: DeclarationStatus
    level: int
    nature: str
    recurrence: bool
    recurrence_count: int | None
    agency_code: str
    region: str | None
    submitted_by: str
    submitted_by_role: str
    submitted_from: str | None
    cashier_matricule: str
    cashier_name: str
    cashier_grade: str | None
    cashier_function: str
    cashier_function_other: str | None
    discrepancy_date: date
    discovered_time: str
    closing_time: str | None
    amount_major: int
    amount_minor: int
    cash_register_type: str
    cash_register_other: str | None
    cashier_statement: str
    supervisor_observation: str
    other_measures: str | None
    causes: tuple[str, ...]
    measures: tuple[str, ...]
    created_at: datetime
    updated_at: datetime
    status_changed_at: datetime | None = None
    status_changed_by: str | None = None
    case_handled_by: str | None = None
    case_file_number: str | None = None
    case_comment: str | None = None
    document_path: str | None = None
    agency_name: str | None = None

    @property
    def amount_display(self) -> str:
        """Amount as printed on notices, e.g. ``1500,250 DT``."""
        return f"{self.amount_major},{self.amount_minor:03d} DT"

    @property
    def is_critical(self) -> bool:
        return self.level == 4


@dataclass(frozen=True)
class DeclarationSummary:
    """Listing projection of a declaration."""

    id: UUID
    ref: str
    status: DeclarationStatus
    level: int
    created_at: datetime
    amount_major: int
    amount_minor: int
    nature: str
    agency_code: str
    agency_name: str
    cashier_matricule: str
    cashier_name: str


# =========================================================================
# Reference data
# =========================================================================


@dataclass(frozen=True)
class AgencyInfo:
    """An agency with its region, as served by the reference-data cache."""

    code: str
    name: str
    region_name: str
    region_cp_email: str | None
    director_email: str | None
    active: bool = True

    @property
    def recipients(self) -> tuple[str, ...]:
        """CP and director mailboxes, empty values removed."""
        return tuple(
            email for email in (self.region_cp_email, self.director_email) if email
        )


# =========================================================================
# Audit
# =========================================================================


@dataclass(frozen=True)
class AuditEntry:
    """Read-side view of one audit event."""

    id: UUID
    seq: int
    declaration_id: UUID | None
    actor_id: str
    actor_role: str
    action: str
    prior_status: str | None
    new_status: str | None
    network_address: str | None
    detail: dict[str, Any]
    occurred_at: datetime
    hash: str
    declaration_ref: str | None = None


# =========================================================================
# Filters and pagination
# =========================================================================


@dataclass(frozen=True)
class ListingFilters:
    """Caller-supplied listing filters.  ``agency`` only applies when unscoped."""

    status: DeclarationStatus | None = None
    level: int | None = None
    date_from: date | None = None
    date_to: date | None = None
    agency: str | None = None
    sort: str | None = None
    page: int = 1
    limit: int | None = None


@dataclass(frozen=True)
class AuditFilters:
    declaration_id: UUID | None = None
    actor_id: str | None = None
    action: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    page: int = 1
    limit: int | None = None


@dataclass(frozen=True)
class Page(Generic[T]):
    """One page of results plus the unpaginated total."""

    items: tuple[T, ...]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    def pagination(self) -> dict[str, int]:
        return {
            "total": self.total,
            "page": self.page,
            "limit": self.limit,
            "pages": self.pages,
        }


# =========================================================================
# Use-case results
# =========================================================================


@dataclass(frozen=True)
class CreationResult:
    """Outcome of a committed creation.

    ``recipients`` are the CP and director mailboxes for the agency, with
    empty values removed.
    """

    declaration: DeclarationRecord
    recipients: tuple[str, ...] = field(default_factory=tuple)

    @property
    def id(self) -> UUID:
        return self.declaration.id

    @property
    def ref(self) -> str:
        return self.declaration.ref

    @property
    def status(self) -> DeclarationStatus:
        return self.declaration.status

    @property
    def level(self) -> int:
        return self.declaration.level

    @property
    def created_at(self) -> datetime:
        return self.declaration.created_at


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of a committed transition or annotation."""

    declaration_id: UUID
    prior_status: DeclarationStatus
    status: DeclarationStatus
    audit_action: str
    audit_seq: int

    @property
    def status_changed(self) -> bool:
        return self.prior_status != self.status
