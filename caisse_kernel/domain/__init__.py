"""
Pure domain layer.

Value objects, the status state machine, level banding, access scoping and
submission parsing.  No ORM, no database, no I/O beyond logging.  Time comes
from an injected ``Clock``.
"""

from caisse_kernel.domain.access import (
    ACTION_ROLES,
    ROLE_RANKS,
    Action,
    Identity,
    Role,
    agency_scope,
    effective_agency_filter,
    ensure_can_read,
    ensure_in_scope,
    has_access,
    require_access,
    required_level,
)
from caisse_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from caisse_kernel.domain.dtos import (
    AuditEntry,
    AuditFilters,
    CreationResult,
    DeclarationRecord,
    DeclarationSummary,
    ListingFilters,
    Page,
    TransitionResult,
)
from caisse_kernel.domain.level import banded_level, computed_level, resolve_level
from caisse_kernel.domain.lifecycle import (
    DECLARATION_TRANSITIONS,
    DeclarationStatus,
    allowed_from,
    is_legal_transition,
)
from caisse_kernel.domain.submission import (
    CaseProcessing,
    Submission,
    TransitionRequest,
    parse_submission,
    parse_transition_request,
)

__all__ = [
    "ACTION_ROLES",
    "Action",
    "AuditEntry",
    "AuditFilters",
    "CaseProcessing",
    "Clock",
    "CreationResult",
    "DECLARATION_TRANSITIONS",
    "DeclarationRecord",
    "DeclarationStatus",
    "DeclarationSummary",
    "DeterministicClock",
    "Identity",
    "ListingFilters",
    "Page",
    "ROLE_RANKS",
    "Role",
    "Submission",
    "SystemClock",
    "TransitionRequest",
    "TransitionResult",
    "agency_scope",
    "allowed_from",
    "banded_level",
    "computed_level",
    "effective_agency_filter",
    "ensure_can_read",
    "ensure_in_scope",
    "has_access",
    "is_legal_transition",
    "parse_submission",
    "parse_transition_request",
    "require_access",
    "required_level",
    "resolve_level",
]
