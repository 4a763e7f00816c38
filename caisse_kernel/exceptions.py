"""
Typed Exception Hierarchy for the Caisse Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Every failure a caller can act on has its own class with a stable,
machine-readable ``code`` class attribute and structured attributes.
Callers catch by type and answer with ``e.code``; nobody parses messages.

    try:
        gateway.transition(identity, declaration_id, body)
    except IllegalTransitionError as e:
        api_response(code=e.code, allowed=sorted(e.allowed))

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    CaisseKernelError (base)
    |
    +-- ValidationError              (client-fixable, field-level details)
    +-- EmptyUpdateError             (no-op transition request)
    +-- BusinessRuleError            (DATE_FUTURE, AGENCE_INCONNUE, AGENCE_MISMATCH)
    +-- AuthenticationError          (TOKEN_MISSING, TOKEN_EXPIRED, TOKEN_INVALID)
    +-- AccessError                  (ROLE_INSUFFICIENT, ACCESS_DENIED, SCOPE_VIOLATION)
    +-- NotFoundError
    +-- IllegalTransitionError       (state machine edge not allowed)
    +-- PersistenceError             (transaction failure, retryable)
    +-- SideEffectError              (post-commit, logged only)
    +-- ImmutabilityViolationError   (append-only / write-once breach)
    +-- AuditChainBrokenError        (hash chain mismatch)
    +-- ConfigurationError           (settings file malformed)

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Code                  | When Raised
----------------------|------------------------------------------------------
VALIDATION_ERROR      | Submission or request fails schema checks
EMPTY_UPDATE          | Transition request carries no effective change
DATE_FUTURE           | Discrepancy date after the server date
AGENCE_INCONNUE       | Agency code unknown or inactive
AGENCE_MISMATCH       | CAISSIER submitting for another agency
TOKEN_MISSING         | No bearer credential
TOKEN_EXPIRED         | Credential past its expiry
TOKEN_INVALID         | Credential rejected by the verifier
ROLE_INSUFFICIENT     | Role rank below the action's minimum
ACCESS_DENIED         | CAISSIER reading a declaration it did not submit
SCOPE_VIOLATION       | Declaration outside the identity's agency
NOT_FOUND             | Declaration id unknown
STATUT_INCOMPATIBLE   | Transition not in the allowed set
PERSISTENCE_ERROR     | Transaction rolled back (timeout, lock, driver error)
SIDE_EFFECT_FAILED    | Notification or archival job failed
IMMUTABILITY_VIOLATION| Update/delete of an append-only or write-once field
AUDIT_CHAIN_BROKEN    | Audit hash chain validation failed
CONFIGURATION_ERROR   | Settings missing or malformed
"""

from typing import Any


class CaisseKernelError(Exception):
    """
    Base exception for all caisse kernel errors.

    All subclasses carry a ``code`` class attribute for machine-readable
    identification.
    """

    code: str = "CAISSE_KERNEL_ERROR"


class ValidationError(CaisseKernelError):
    """Input failed schema validation.

    ``details`` is a list of ``{"field": ..., "message": ...}`` dicts, one per
    offending field.
    """

    code: str = "VALIDATION_ERROR"

    def __init__(self, details: list[dict[str, str]], message: str = "Invalid data"):
        self.details = details
        super().__init__(
            f"{message}: " + "; ".join(f"{d['field']}: {d['message']}" for d in details)
        )


class EmptyUpdateError(CaisseKernelError):
    """Transition request would not change anything."""

    code: str = "EMPTY_UPDATE"

    def __init__(self, declaration_id: str):
        self.declaration_id = declaration_id
        super().__init__(f"No modification supplied for declaration {declaration_id}")


class BusinessRuleError(CaisseKernelError):
    """A domain rule rejected the request.

    The rule name doubles as the error code (``DATE_FUTURE``,
    ``AGENCE_INCONNUE``, ``AGENCE_MISMATCH``).
    """

    code: str = "BUSINESS_RULE_VIOLATION"

    DATE_FUTURE = "DATE_FUTURE"
    AGENCE_INCONNUE = "AGENCE_INCONNUE"
    AGENCE_MISMATCH = "AGENCE_MISMATCH"

    def __init__(self, rule: str, message: str, **context: Any):
        self.rule = rule
        self.code = rule
        self.context = context
        super().__init__(message)


class AuthenticationError(CaisseKernelError):
    """No usable credential was presented."""

    code: str = "NOT_AUTHENTICATED"

    TOKEN_MISSING = "TOKEN_MISSING"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    TOKEN_INVALID = "TOKEN_INVALID"

    def __init__(self, reason: str, message: str):
        self.reason = reason
        self.code = reason
        super().__init__(message)


class AccessError(CaisseKernelError):
    """Identity lacks the role or scope for the request."""

    code: str = "ACCESS_ERROR"

    ROLE_INSUFFICIENT = "ROLE_INSUFFICIENT"
    ACCESS_DENIED = "ACCESS_DENIED"
    SCOPE_VIOLATION = "SCOPE_VIOLATION"

    def __init__(self, reason: str, subject_id: str, role: str, message: str):
        self.reason = reason
        self.code = reason
        self.subject_id = subject_id
        self.role = role
        super().__init__(message)


class NotFoundError(CaisseKernelError):
    """Requested declaration does not exist."""

    code: str = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} not found: {entity_id}")


class IllegalTransitionError(CaisseKernelError):
    """Attempted status is not reachable from the current status.

    Carries the allowed set so the caller can offer remediation.
    """

    code: str = "STATUT_INCOMPATIBLE"

    def __init__(self, current_status: str, attempted_status: str, allowed: frozenset[str]):
        self.current_status = current_status
        self.attempted_status = attempted_status
        self.allowed = allowed
        possible = ", ".join(sorted(allowed)) or "none"
        super().__init__(
            f"Transition {current_status} -> {attempted_status} not allowed. "
            f"Possible transitions: {possible}."
        )


class PersistenceError(CaisseKernelError):
    """The store transaction failed and was rolled back entirely."""

    code: str = "PERSISTENCE_ERROR"

    def __init__(self, operation: str, reason: str, retryable: bool = True):
        self.operation = operation
        self.reason = reason
        self.retryable = retryable
        super().__init__(f"Persistence failure during {operation}: {reason}")


class SideEffectError(CaisseKernelError):
    """A post-commit job failed. Logged, never surfaced to the caller."""

    code: str = "SIDE_EFFECT_FAILED"

    def __init__(self, event_type: str, handler: str, reason: str):
        self.event_type = event_type
        self.handler = handler
        self.reason = reason
        super().__init__(f"Side effect {handler} failed for {event_type}: {reason}")


class ImmutabilityViolationError(CaisseKernelError):
    """Attempted to modify or delete an append-only or write-once record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


class AuditChainBrokenError(CaisseKernelError):
    """Audit hash chain validation failed."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(self, audit_event_id: str, expected_hash: str, actual_hash: str):
        self.audit_event_id = audit_event_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Audit chain broken at {audit_event_id}: "
            f"expected {expected_hash}, found {actual_hash}"
        )


class ConfigurationError(CaisseKernelError):
    """Settings file is missing a key or holds an invalid value."""

    code: str = "CONFIGURATION_ERROR"

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Invalid configuration at '{key}': {reason}")
