"""
Declaration lifecycle (``caisse_kernel.domain.lifecycle``).

Responsibility
--------------
The status state machine of a declaration.  Pure data plus two helpers;
zero I/O.  ``DeclarationLifecycleService`` and the ORM guard in
``db/immutability.py`` both read ``DECLARATION_TRANSITIONS``.

State machine
-------------
==========  ===============================
From        To
==========  ===============================
SOUMIS      EN_COURS, REJETE
EN_COURS    EN_ENQUETE, VALIDE, REJETE
EN_ENQUETE  VALIDE, REJETE
VALIDE      CLOTURE
REJETE      SOUMIS (same declaration re-opened)
CLOTURE     (terminal)
==========  ===============================
"""

from enum import Enum


class DeclarationStatus(str, Enum):
    """Declaration lifecycle states."""

    SOUMIS = "SOUMIS"
    EN_COURS = "EN_COURS"
    EN_ENQUETE = "EN_ENQUETE"
    VALIDE = "VALIDE"
    REJETE = "REJETE"
    CLOTURE = "CLOTURE"


DECLARATION_TRANSITIONS: dict[DeclarationStatus, frozenset[DeclarationStatus]] = {
    DeclarationStatus.SOUMIS: frozenset({
        DeclarationStatus.EN_COURS,
        DeclarationStatus.REJETE,
    }),
    DeclarationStatus.EN_COURS: frozenset({
        DeclarationStatus.EN_ENQUETE,
        DeclarationStatus.VALIDE,
        DeclarationStatus.REJETE,
    }),
    DeclarationStatus.EN_ENQUETE: frozenset({
        DeclarationStatus.VALIDE,
        DeclarationStatus.REJETE,
    }),
    DeclarationStatus.VALIDE: frozenset({
        DeclarationStatus.CLOTURE,
    }),
    DeclarationStatus.REJETE: frozenset({
        DeclarationStatus.SOUMIS,
    }),
    DeclarationStatus.CLOTURE: frozenset(),
}

INITIAL_STATUS = DeclarationStatus.SOUMIS

TERMINAL_STATUSES: frozenset[DeclarationStatus] = frozenset(
    status for status, targets in DECLARATION_TRANSITIONS.items() if not targets
)


def allowed_from(status: DeclarationStatus | str) -> frozenset[DeclarationStatus]:
    """Statuses reachable in one step from ``status`` (empty for unknown)."""
    try:
        return DECLARATION_TRANSITIONS[DeclarationStatus(status)]
    except ValueError:
        return frozenset()


def is_legal_transition(
    current: DeclarationStatus | str,
    target: DeclarationStatus | str,
) -> bool:
    """True iff ``target`` is in the allowed set of ``current``."""
    try:
        return DeclarationStatus(target) in allowed_from(current)
    except ValueError:
        return False
