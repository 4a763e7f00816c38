"""
DeclarationLifecycleService -- the only writer of the declaration store.

Responsibility:
    Creation (validate, resolve level, persist declaration + tags + audit),
    status transitions and case-processing annotations under a row lock,
    and the narrow document-archival write used by the archival callback.

Invariants enforced:
    - Validation, business-rule, access and transition errors are raised
      before any write.
    - Every mutation flushes exactly one AuditEvent in the same transaction.
    - Transitions follow DECLARATION_TRANSITIONS; the row is read with
      SELECT ... FOR UPDATE so concurrent transitions on one declaration
      are linearized.

Non-goals:
    - Does NOT commit.  ``session_scope()`` owns the transaction.
    - Does NOT dispatch side effects; the gateway publishes them after commit.
"""

from collections.abc import Mapping
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session, lazyload

from caisse_kernel.domain.access import SYSTEM_IDENTITY, Identity, Role, ensure_in_scope
from caisse_kernel.domain.clock import Clock, SystemClock
from caisse_kernel.domain.dtos import CreationResult, TransitionResult
from caisse_kernel.domain.level import computed_level, resolve_level
from caisse_kernel.domain.lifecycle import INITIAL_STATUS, DeclarationStatus, allowed_from
from caisse_kernel.domain.submission import (
    Submission,
    TransitionRequest,
    parse_submission,
    parse_transition_request,
)
from caisse_kernel.exceptions import (
    BusinessRuleError,
    EmptyUpdateError,
    IllegalTransitionError,
    NotFoundError,
    ValidationError,
)
from caisse_kernel.logging_config import get_logger
from caisse_kernel.models.audit_event import AuditAction
from caisse_kernel.models.declaration import (
    Declaration,
    DeclarationCause,
    DeclarationMeasure,
)
from caisse_kernel.services.auditor_service import AuditorService
from caisse_kernel.services.base import BaseService
from caisse_kernel.services.reference_data import ReferenceDataService

logger = get_logger("services.lifecycle")


def generate_ref(declaration_id: UUID, created_at) -> str:
    """``DC-YYYYMMDD-XXXXXXXX``: creation date and the first 8 hex chars of the id."""
    return f"DC-{created_at:%Y%m%d}-{declaration_id.hex[:8].upper()}"


class DeclarationLifecycleService(BaseService[Declaration]):
    """Creation and transition use-cases over one session."""

    def __init__(
        self,
        session: Session,
        reference_data: ReferenceDataService,
        clock: Clock | None = None,
        auditor: AuditorService | None = None,
    ):
        super().__init__(session)
        self._clock = clock or SystemClock()
        self._reference_data = reference_data
        self._auditor = auditor or AuditorService(session, self._clock)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_declaration(
        self,
        raw: Mapping[str, Any] | Submission,
        identity: Identity,
        network_address: str | None = None,
    ) -> CreationResult:
        """
        Validate and persist a new declaration in status SOUMIS.

        Raises:
            ValidationError: Malformed submission or duplicate client ref.
            BusinessRuleError: DATE_FUTURE, AGENCE_INCONNUE, AGENCE_MISMATCH.
        """
        submission = raw if isinstance(raw, Submission) else parse_submission(raw)
        agency_code = submission.agency.code

        gap = submission.discrepancy
        if gap.observed_at is not None:
            in_future = gap.observed_at > self._clock.now()
        else:
            in_future = gap.discrepancy_date > self._clock.today()
        if in_future:
            raise BusinessRuleError(
                BusinessRuleError.DATE_FUTURE,
                "The discrepancy date cannot be in the future.",
                discrepancy_date=(gap.observed_at or gap.discrepancy_date).isoformat(),
            )

        agency = self._reference_data.get_active_agency(agency_code)
        if agency is None:
            raise BusinessRuleError(
                BusinessRuleError.AGENCE_INCONNUE,
                f"Agency {agency_code} not found in the reference data.",
                agency_code=agency_code,
            )

        if identity.role == Role.CAISSIER.value and identity.agency != agency_code:
            logger.warning(
                "declaration_agency_mismatch",
                extra={
                    "subject_id": identity.subject_id,
                    "agency": identity.agency,
                    "target_agency": agency_code,
                },
            )
            raise BusinessRuleError(
                BusinessRuleError.AGENCE_MISMATCH,
                "You can only declare for your own agency.",
                agency_code=agency_code,
                identity_agency=identity.agency,
            )

        recurrence = submission.recurrence.flag
        level = resolve_level(
            submission.level, submission.discrepancy.amount_major, recurrence
        )

        now = self._clock.now()
        declaration_id = uuid4()
        ref = submission.client_ref or generate_ref(declaration_id, now)
        if submission.client_ref and self._ref_exists(ref):
            raise ValidationError(
                [{"field": "ref_client", "message": "is already used by another declaration"}]
            )

        declaration = self._build_declaration(
            declaration_id, ref, level, submission, identity, network_address, now
        )
        self.session.add(declaration)
        self.session.flush()

        self._auditor.record(
            declaration_id=declaration.id,
            actor=identity,
            action=AuditAction.CREATION,
            new_status=INITIAL_STATUS,
            network_address=network_address,
            detail={"ref": ref, "niveau": level},
        )

        logger.info(
            "declaration_created",
            extra={
                "ref": ref,
                "declaration_level": level,
                "submitted_level": submission.level,
                "computed_level": computed_level(
                    submission.discrepancy.amount_major, recurrence
                ),
                "agency_code": agency_code,
            },
        )

        return CreationResult(
            declaration=declaration.to_dto(),
            recipients=agency.recipients,
        )

    def _ref_exists(self, ref: str) -> bool:
        return self.session.execute(
            select(Declaration.id).where(Declaration.ref == ref)
        ).first() is not None

    @staticmethod
    def _build_declaration(
        declaration_id: UUID,
        ref: str,
        level: int,
        submission: Submission,
        identity: Identity,
        network_address: str | None,
        now,
    ) -> Declaration:
        cashier = submission.cashier
        gap = submission.discrepancy
        story = submission.circumstances

        declaration = Declaration(
            id=declaration_id,
            ref=ref,
            level=level,
            status=INITIAL_STATUS.value,
            nature=gap.nature,
            recurrence=submission.recurrence.flag,
            recurrence_count=submission.recurrence.count,
            agency_code=submission.agency.code,
            region=submission.agency.region,
            submitted_by=identity.subject_id,
            submitted_by_role=identity.role,
            submitted_from=network_address,
            cashier_matricule=cashier.matricule,
            cashier_name=cashier.name,
            cashier_grade=cashier.grade,
            cashier_function=cashier.function,
            cashier_function_other=cashier.function_other,
            discrepancy_date=gap.discrepancy_date,
            discovered_time=gap.discovered_time,
            closing_time=gap.closing_time,
            amount_major=gap.amount_major,
            amount_minor=gap.amount_minor,
            cash_register_type=gap.cash_register_type,
            cash_register_other=gap.cash_register_other,
            cashier_statement=story.cashier_statement,
            supervisor_observation=story.supervisor_observation,
            other_measures=submission.measures.other,
            created_at=now,
            updated_at=now,
        )
        declaration.causes = [
            DeclarationCause(position=i, cause=cause)
            for i, cause in enumerate(story.causes)
        ]
        declaration.measures = [
            DeclarationMeasure(position=i, measure=measure)
            for i, measure in enumerate(submission.measures.actions)
        ]
        return declaration

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _lock(self, declaration_id: UUID) -> Declaration:
        declaration = self.session.execute(
            select(Declaration)
            .where(Declaration.id == declaration_id)
            .options(lazyload(Declaration.agency))
            .with_for_update(of=Declaration)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if declaration is None:
            raise NotFoundError("Declaration", str(declaration_id))
        return declaration

    def transition_declaration(
        self,
        declaration_id: UUID,
        request: TransitionRequest | Mapping[str, Any] | None,
        identity: Identity,
        network_address: str | None = None,
    ) -> TransitionResult:
        """
        Apply a status change and/or case-processing annotations.

        Raises:
            ValidationError: Malformed request.
            EmptyUpdateError: Nothing would change.
            NotFoundError: Unknown declaration.
            AccessError: Declaration outside the identity's agency.
            IllegalTransitionError: Status not reachable from the current one.
        """
        if not isinstance(request, TransitionRequest):
            request = parse_transition_request(request)
        if request.is_empty:
            raise EmptyUpdateError(str(declaration_id))

        declaration = self._lock(declaration_id)
        ensure_in_scope(identity, declaration.agency_code)

        current = DeclarationStatus(declaration.status)
        target = request.status
        if target is not None:
            allowed = allowed_from(current)
            if target not in allowed:
                logger.info(
                    "transition_rejected",
                    extra={"from_status": current.value, "to_status": target.value},
                )
                raise IllegalTransitionError(
                    current.value,
                    target.value,
                    frozenset(status.value for status in allowed),
                )

        annotations = (
            request.case_processing.as_columns() if request.case_processing else {}
        )
        changed = {
            column: value
            for column, value in annotations.items()
            if getattr(declaration, column) != value
        }
        if target is None and not changed:
            raise EmptyUpdateError(str(declaration_id))

        now = self._clock.now()
        if target is not None:
            declaration.status = target.value
            declaration.status_changed_at = now
            declaration.status_changed_by = identity.subject_id
        for column, value in changed.items():
            setattr(declaration, column, value)
        declaration.updated_at = now
        self.session.flush()

        action = (
            AuditAction.CHANGEMENT_STATUT if target is not None else AuditAction.MODIFICATION
        )
        new_status = target or current
        event = self._auditor.record(
            declaration_id=declaration.id,
            actor=identity,
            action=action,
            prior_status=current,
            new_status=new_status,
            network_address=network_address,
            detail={
                "cp_central": (
                    request.case_processing.as_wire() if request.case_processing else None
                ),
            },
        )

        logger.info(
            "transition_applied",
            extra={
                "from_status": current.value,
                "to_status": new_status.value,
                "audit_action": action.value,
                "annotated": sorted(changed),
            },
        )

        return TransitionResult(
            declaration_id=declaration.id,
            prior_status=current,
            status=new_status,
            audit_action=action.value,
            audit_seq=event.seq,
        )

    # ------------------------------------------------------------------
    # Document archival callback
    # ------------------------------------------------------------------

    def record_archived_document(self, declaration_id: UUID, path: str) -> None:
        """Store the archived document path and audit ARCHIVAGE_DOCUMENT."""
        if not path:
            raise ValidationError([{"field": "document_path", "message": "is required"}])

        declaration = self._lock(declaration_id)
        current = DeclarationStatus(declaration.status)

        declaration.document_path = path
        declaration.updated_at = self._clock.now()
        self.session.flush()

        self._auditor.record(
            declaration_id=declaration.id,
            actor=SYSTEM_IDENTITY,
            action=AuditAction.ARCHIVAGE_DOCUMENT,
            prior_status=current,
            new_status=current,
            detail={"document_path": path},
        )
        logger.info("document_archived", extra={"document_path": path})
