"""
Access scoping (``caisse_kernel.domain.access``).

Responsibility
--------------
Role ranks, the per-action permission table, agency scope, and the
read/scope checks every use-case runs before touching the store.  Pure
functions over an ``Identity``; zero I/O apart from warning logs.

Roles are ranked data, not a class hierarchy: authorization is a numeric
comparison between the identity's rank and the lowest rank among the roles
allowed for an action.

Scope
-----
* CP and ADMIN are unscoped (``agency_scope`` is None).
* CAISSIER, SUPERVISEUR and DIRECTEUR are scoped to their assigned agency.
* A CAISSIER may additionally read only the declarations it submitted.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from caisse_kernel.exceptions import AccessError
from caisse_kernel.logging_config import get_logger

logger = get_logger("domain.access")


class Role(str, Enum):
    CAISSIER = "CAISSIER"
    SUPERVISEUR = "SUPERVISEUR"
    DIRECTEUR = "DIRECTEUR"
    CP = "CP"
    ADMIN = "ADMIN"


ROLE_RANKS: dict[str, int] = {
    Role.CAISSIER.value: 1,
    Role.SUPERVISEUR.value: 2,
    Role.DIRECTEUR.value: 3,
    Role.CP.value: 4,
    Role.ADMIN.value: 5,
}

UNSCOPED_ROLES: frozenset[str] = frozenset({Role.CP.value, Role.ADMIN.value})

# Rank given to an allowed role name that is not in ROLE_RANKS: nobody reaches it.
_UNKNOWN_ALLOWED_RANK = 99


@dataclass(frozen=True)
class Identity:
    """A verified caller.  ``subject_id`` is the employee matricule."""

    subject_id: str
    role: str
    name: str | None = None
    agency: str | None = None
    region: str | None = None
    token_id: str | None = None

    @property
    def rank(self) -> int:
        return role_rank(self.role)


SYSTEM_IDENTITY = Identity(subject_id="SYSTEM", role=Role.ADMIN.value, name="SYSTEM")


class Action(str, Enum):
    CREATE = "CREATE"
    LIST = "LIST"
    READ = "READ"
    TRANSITION = "TRANSITION"
    AUDIT_GLOBAL = "AUDIT_GLOBAL"
    AUDIT_DECLARATION = "AUDIT_DECLARATION"
    MANAGE_REFERENCE = "MANAGE_REFERENCE"


_ALL_ROLES = frozenset(role.value for role in Role)

ACTION_ROLES: dict[Action, frozenset[str]] = {
    Action.CREATE: frozenset({"CAISSIER", "SUPERVISEUR", "CP", "ADMIN"}),
    Action.LIST: frozenset({"SUPERVISEUR", "DIRECTEUR", "CP", "ADMIN"}),
    Action.READ: _ALL_ROLES,
    Action.TRANSITION: frozenset({"SUPERVISEUR", "DIRECTEUR", "CP", "ADMIN"}),
    Action.AUDIT_GLOBAL: frozenset({"CP", "ADMIN"}),
    Action.AUDIT_DECLARATION: _ALL_ROLES,
    Action.MANAGE_REFERENCE: frozenset({"ADMIN"}),
}


class _ScopedDeclaration(Protocol):
    submitted_by: str
    agency_code: str


def role_rank(role: str | None) -> int:
    """Rank of ``role``; unknown or missing roles rank 0."""
    return ROLE_RANKS.get(role or "", 0)


def required_level(action_roles: frozenset[str] | set[str] | tuple[str, ...]) -> int:
    """
    Minimum rank among the roles allowed for an action.

    An allowed role name that is not ranked counts as unreachable (99).

    Raises:
        ValueError: If ``action_roles`` is empty.
    """
    if not action_roles:
        raise ValueError("An action must allow at least one role")
    return min(ROLE_RANKS.get(role, _UNKNOWN_ALLOWED_RANK) for role in action_roles)


def has_access(identity_role: str | None, action_roles) -> bool:
    """True iff the identity's rank reaches the action's minimum rank."""
    return role_rank(identity_role) >= required_level(action_roles)


def require_access(identity: Identity, action: Action) -> None:
    """
    Raise ``AccessError(ROLE_INSUFFICIENT)`` unless ``identity`` may perform
    ``action``.
    """
    allowed = ACTION_ROLES[action]
    if has_access(identity.role, allowed):
        return
    logger.warning(
        "access_denied_role_insufficient",
        extra={
            "subject_id": identity.subject_id,
            "role": identity.role,
            "action": action.value,
            "required": sorted(allowed),
        },
    )
    raise AccessError(
        AccessError.ROLE_INSUFFICIENT,
        subject_id=identity.subject_id,
        role=identity.role,
        message=(
            f"Action reserved for roles: {', '.join(sorted(allowed))}. "
            f"Your role: {identity.role}."
        ),
    )


def agency_scope(identity: Identity) -> str | None:
    """None for unscoped roles, the assigned agency otherwise."""
    if identity.role in UNSCOPED_ROLES:
        return None
    return identity.agency


def is_scoped(identity: Identity) -> bool:
    return identity.role not in UNSCOPED_ROLES


def effective_agency_filter(identity: Identity, requested: str | None) -> str | None:
    """
    Agency filter to apply to a listing.

    The identity's scope always wins; a caller-supplied filter applies only
    to unscoped identities.
    """
    if is_scoped(identity):
        return agency_scope(identity)
    return requested or None


def ensure_in_scope(identity: Identity, agency_code: str) -> None:
    """Raise ``AccessError(SCOPE_VIOLATION)`` if ``agency_code`` is outside scope."""
    if not is_scoped(identity):
        return
    if agency_scope(identity) != agency_code:
        logger.warning(
            "access_denied_scope",
            extra={
                "subject_id": identity.subject_id,
                "role": identity.role,
                "agency": identity.agency,
                "target_agency": agency_code,
            },
        )
        raise AccessError(
            AccessError.SCOPE_VIOLATION,
            subject_id=identity.subject_id,
            role=identity.role,
            message="Declaration is outside your agency.",
        )


def ensure_can_read(identity: Identity, declaration: _ScopedDeclaration) -> None:
    """
    Read check for one declaration.

    A CAISSIER reads only what it submitted, whatever the agency.  Other
    scoped roles read within their agency.
    """
    if identity.role == Role.CAISSIER.value:
        if declaration.submitted_by != identity.subject_id:
            logger.warning(
                "access_denied_not_author",
                extra={"subject_id": identity.subject_id, "role": identity.role},
            )
            raise AccessError(
                AccessError.ACCESS_DENIED,
                subject_id=identity.subject_id,
                role=identity.role,
                message="Access to this declaration is not allowed.",
            )
        return
    ensure_in_scope(identity, declaration.agency_code)
