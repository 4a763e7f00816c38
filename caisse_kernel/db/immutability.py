"""
ORM-level immutability enforcement.

SQLAlchemy fires mapper events before UPDATE/DELETE statements reach the
database.  The listeners below check the append-only and write-once rules
and raise ``ImmutabilityViolationError`` before any SQL is sent, aborting
the flush (and, through ``session_scope``, the whole transaction).

    session.flush()
         |
         v
    [before_update] --> _check_*_immutability() --> ImmutabilityViolationError
         |
    [before_delete] --> _check_*_delete() ---------> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity               | Rule
---------------------|---------------------------------------------------------
AuditEvent           | Never updated, never deleted
Declaration          | Never deleted; only MUTABLE_DECLARATION_FIELDS change;
                     | status changes only along DECLARATION_TRANSITIONS
DeclarationCause     | Never updated, never deleted
DeclarationMeasure   | Never updated, never deleted

The status guard stands behind DeclarationLifecycleService, which checks the
same table and raises IllegalTransitionError first.

Registered by ``init_engine_from_url``.  Tests that need to write forbidden
rows can call ``unregister_immutability_listeners()`` and re-register after.
"""

from sqlalchemy import event, inspect
from sqlalchemy.orm.attributes import get_history

from caisse_kernel.exceptions import ImmutabilityViolationError
from caisse_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _blocked(entity_type: str, entity_id, operation: str, reason: str, **extra):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "operation": operation,
            **extra,
        },
    )
    return ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(entity_id),
        reason=reason,
    )


# =============================================================================
# Audit events
# =============================================================================


def _check_audit_event_immutability(mapper, connection, target):
    raise _blocked(
        "AuditEvent", target.id, "UPDATE",
        "Audit events are immutable and cannot be modified",
    )


def _check_audit_event_delete(mapper, connection, target):
    raise _blocked(
        "AuditEvent", target.id, "DELETE",
        "Audit events cannot be deleted",
    )


# =============================================================================
# Declarations
# =============================================================================


def _check_declaration_immutability(mapper, connection, target):
    """Reject writes to submission-time fields and illegal status edges."""
    from caisse_kernel.domain.lifecycle import is_legal_transition
    from caisse_kernel.models.declaration import MUTABLE_DECLARATION_FIELDS

    insp = inspect(target)
    for attr in insp.mapper.column_attrs:
        if attr.key in MUTABLE_DECLARATION_FIELDS:
            continue
        if insp.attrs[attr.key].history.has_changes():
            raise _blocked(
                "Declaration", target.id, "UPDATE",
                f"Cannot modify submission field '{attr.key}'",
                field=attr.key,
            )

    status_history = get_history(target, "status")
    if status_history.deleted and status_history.added:
        old_status = status_history.deleted[0]
        new_status = status_history.added[0]
        if not is_legal_transition(old_status, new_status):
            raise _blocked(
                "Declaration", target.id, "UPDATE",
                f"Status {old_status} -> {new_status} is not a legal transition",
                field="status",
            )


def _check_declaration_delete(mapper, connection, target):
    raise _blocked(
        "Declaration", target.id, "DELETE",
        "Declarations are never deleted",
    )


def _check_tag_immutability(mapper, connection, target):
    raise _blocked(
        type(target).__name__, target.id, "UPDATE",
        "Declaration tags are append-only",
    )


def _check_tag_delete(mapper, connection, target):
    raise _blocked(
        type(target).__name__, target.id, "DELETE",
        "Declaration tags cannot be deleted",
    )


# =============================================================================
# Registration
# =============================================================================


def _listeners():
    from caisse_kernel.models.audit_event import AuditEvent
    from caisse_kernel.models.declaration import (
        Declaration,
        DeclarationCause,
        DeclarationMeasure,
    )

    return (
        (AuditEvent, "before_update", _check_audit_event_immutability),
        (AuditEvent, "before_delete", _check_audit_event_delete),
        (Declaration, "before_update", _check_declaration_immutability),
        (Declaration, "before_delete", _check_declaration_delete),
        (DeclarationCause, "before_update", _check_tag_immutability),
        (DeclarationCause, "before_delete", _check_tag_delete),
        (DeclarationMeasure, "before_update", _check_tag_immutability),
        (DeclarationMeasure, "before_delete", _check_tag_delete),
    )


def register_immutability_listeners() -> None:
    """Register all immutability listeners.  Safe to call repeatedly."""
    for target, event_name, listener_fn in _listeners():
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)
    logger.debug("immutability_listeners_registered")


def _safe_remove_listener(target, event_name, listener_fn):
    """Remove an event listener, ignoring it if not registered."""
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners() -> None:
    """Remove all immutability listeners.  FOR TESTING ONLY."""
    for target, event_name, listener_fn in _listeners():
        _safe_remove_listener(target, event_name, listener_fn)
    logger.debug("immutability_listeners_unregistered")
