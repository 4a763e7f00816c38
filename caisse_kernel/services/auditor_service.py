"""
AuditorService -- append-only, hash-chained audit trail.

Responsibility:
    Writes one ``AuditEvent`` per committed mutation (creation, status
    change, annotation, document archival, reference-data change) inside
    the caller's transaction, and re-verifies the chain on demand.

Invariants enforced:
    - seq comes from ``SequenceService`` (locked counter row).
    - payload_hash covers every stored column; hash links to the previous
      event's hash.  Rewriting any row is detected by ``validate_chain()``.
    - Append-only: the model is protected by ORM listeners.

Failure modes:
    - AuditChainBrokenError from ``validate_chain()``.

Non-goals:
    - Does NOT call ``session.commit()`` -- caller controls boundaries.
"""

import json
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from caisse_kernel.domain.access import Identity
from caisse_kernel.domain.clock import Clock, SystemClock
from caisse_kernel.exceptions import AuditChainBrokenError
from caisse_kernel.logging_config import get_logger
from caisse_kernel.models.audit_event import AuditAction, AuditEvent
from caisse_kernel.services.sequence_service import SequenceService
from caisse_kernel.utils.hashing import canonicalize_json, hash_audit_event, hash_payload

logger = get_logger("services.auditor")

REFERENCE_SUBJECT = "REFERENTIEL"


def _subject(declaration_id: UUID | None) -> str:
    return str(declaration_id) if declaration_id else REFERENCE_SUBJECT


def _status_value(status) -> str | None:
    if status is None:
        return None
    return getattr(status, "value", status)


class AuditorService:
    """Creates and validates tamper-evident audit events."""

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()
        self._sequence_service = SequenceService(session)

    def _get_last_hash(self) -> str | None:
        last_event = self._session.execute(
            select(AuditEvent).order_by(AuditEvent.seq.desc()).limit(1)
        ).scalar_one_or_none()
        return last_event.hash if last_event else None

    def record(
        self,
        declaration_id: UUID | None,
        actor: Identity,
        action: AuditAction,
        prior_status=None,
        new_status=None,
        network_address: str | None = None,
        detail: dict[str, Any] | None = None,
    ) -> AuditEvent:
        """
        Append one audit event and flush it.

        ``detail`` is normalized through canonical JSON so the stored value
        and the hashed value are identical.
        """
        seq = self._sequence_service.next_value(SequenceService.AUDIT_EVENT)
        prev_hash = self._get_last_hash()

        event = AuditEvent(
            seq=seq,
            declaration_id=declaration_id,
            actor_id=actor.subject_id,
            actor_role=actor.role,
            action=action.value,
            prior_status=_status_value(prior_status),
            new_status=_status_value(new_status),
            network_address=network_address,
            detail=json.loads(canonicalize_json(detail or {})),
            occurred_at=self._clock.now(),
        )
        event.payload_hash = hash_payload(event.hashed_fields())
        event.prev_hash = prev_hash
        event.hash = hash_audit_event(
            subject=_subject(declaration_id),
            action=event.action,
            payload_hash=event.payload_hash,
            prev_hash=prev_hash,
        )

        self._session.add(event)
        self._session.flush()

        logger.info(
            "audit_event_recorded",
            extra={
                "seq": seq,
                "action": event.action,
                "audit_declaration_id": str(declaration_id) if declaration_id else None,
                "actor_id": actor.subject_id,
                "prior_status": event.prior_status,
                "new_status": event.new_status,
            },
        )
        return event

    def validate_chain(self) -> bool:
        """
        Re-verify the whole chain in seq order.

        Raises:
            AuditChainBrokenError: At the first event whose payload hash,
                chain hash or predecessor link does not match.
        """
        events = self._session.execute(
            select(AuditEvent).order_by(AuditEvent.seq)
        ).scalars().all()

        previous_hash: str | None = None
        for event in events:
            if event.prev_hash != previous_hash:
                logger.critical(
                    "audit_chain_broken",
                    extra={"seq": event.seq, "check": "prev_hash"},
                )
                raise AuditChainBrokenError(
                    str(event.id), previous_hash or "None", event.prev_hash or "None"
                )

            expected_payload_hash = hash_payload(event.hashed_fields())
            if event.payload_hash != expected_payload_hash:
                logger.critical(
                    "audit_chain_broken",
                    extra={"seq": event.seq, "check": "payload_hash"},
                )
                raise AuditChainBrokenError(
                    str(event.id), expected_payload_hash, event.payload_hash
                )

            expected_hash = hash_audit_event(
                subject=_subject(event.declaration_id),
                action=event.action,
                payload_hash=event.payload_hash,
                prev_hash=event.prev_hash,
            )
            if event.hash != expected_hash:
                logger.critical(
                    "audit_chain_broken",
                    extra={"seq": event.seq, "check": "hash"},
                )
                raise AuditChainBrokenError(str(event.id), expected_hash, event.hash)

            previous_hash = event.hash

        logger.info("audit_chain_valid", extra={"event_count": len(events)})
        return True
