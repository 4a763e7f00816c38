"""
DeclarationGateway -- the use-case surface above the kernel.

Responsibility:
    One method per operation a transport exposes.  Each call binds the
    request context for logging, checks the caller's role, runs the kernel
    service or selector inside ``session_scope()``, and returns an
    ``Envelope``.  Creation events are published to the side-effect
    dispatcher only after the transaction has committed.

Architecture position:
    Services layer.  Imports kernel and config; the kernel never imports
    from here.

Failure modes:
    Kernel errors become error envelopes with their own code and status.
    Anything unexpected is logged with its traceback and reported as
    INTERNAL_ERROR (status 500).  No exception escapes a gateway method.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from caisse_config.schema import CaisseSettings
from caisse_kernel.db.engine import session_scope
from caisse_kernel.domain.access import Action, Identity, require_access
from caisse_kernel.domain.clock import Clock, SystemClock
from caisse_kernel.domain.events import (
    DeclarationCreated,
    RecurrenceAlert,
    SeverityFourAlert,
    events_for_creation,
)
from caisse_kernel.domain.submission import (
    parse_audit_query,
    parse_flag,
    parse_listing_query,
)
from caisse_kernel.exceptions import CaisseKernelError, ValidationError
from caisse_kernel.logging_config import LogContext, get_logger
from caisse_kernel.selectors.audit_selector import AuditSelector
from caisse_kernel.selectors.declaration_selector import DeclarationSelector
from caisse_kernel.services.auditor_service import AuditorService
from caisse_kernel.services.lifecycle_service import DeclarationLifecycleService
from caisse_kernel.services.reference_data import ReferenceDataCache, ReferenceDataService
from caisse_services.envelope import Envelope, failure, success
from caisse_services.handlers import (
    DocumentArchiveHandler,
    DocumentRenderer,
    NotificationHandler,
    Notifier,
)
from caisse_services.side_effects import HandlerRegistry, SideEffectDispatcher

logger = get_logger("services.gateway")


def _parse_id(value: UUID | str) -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        raise ValidationError([{"field": "id", "message": "must be a valid UUID"}]) from None


class DeclarationGateway:
    """
    Entry point for every declaration use-case.

    Construct once per process: the reference-data cache and the dispatcher
    are shared by all calls.
    """

    def __init__(
        self,
        settings: CaisseSettings,
        clock: Clock | None = None,
        cache: ReferenceDataCache | None = None,
        dispatcher: SideEffectDispatcher | None = None,
    ):
        self._settings = settings
        self._clock = clock or SystemClock()
        self._cache = cache or ReferenceDataCache(
            ttl_seconds=settings.reference_data.ttl_seconds,
            clock=self._clock,
        )
        self._dispatcher = dispatcher

    @property
    def cache(self) -> ReferenceDataCache:
        return self._cache

    def attach_dispatcher(self, dispatcher: SideEffectDispatcher) -> None:
        self._dispatcher = dispatcher

    # -------------------------------------------------------------------------
    # Plumbing
    # -------------------------------------------------------------------------

    def _scope(self, operation: str):
        return session_scope(
            operation,
            timeout_seconds=self._settings.database.transaction_timeout_seconds,
        )

    def _services(self, session: Session) -> tuple[ReferenceDataService, DeclarationLifecycleService]:
        auditor = AuditorService(session, self._clock)
        reference = ReferenceDataService(session, self._cache, self._clock, auditor)
        lifecycle = DeclarationLifecycleService(session, reference, self._clock, auditor)
        return reference, lifecycle

    def _guarded(
        self,
        operation: str,
        identity: Identity,
        request_id: str | None,
        call: Callable[[str], Envelope],
        declaration_id: UUID | str | None = None,
    ) -> Envelope:
        request_id = request_id or str(uuid4())
        with LogContext.bind(
            correlation_id=request_id,
            actor_id=identity.subject_id,
            actor_role=identity.role,
            declaration_id=str(declaration_id) if declaration_id else None,
        ):
            try:
                return call(request_id)
            except CaisseKernelError as exc:
                logger.info(
                    "request_rejected",
                    extra={"operation": operation, "error_code": exc.code},
                )
                return self._failure(exc, request_id)
            except Exception as exc:
                logger.exception("request_failed", extra={"operation": operation})
                return self._failure(exc, request_id)

    def _failure(self, exc: Exception, request_id: str) -> Envelope:
        return failure(
            exc,
            request_id=request_id,
            now=self._clock.now(),
            production=self._settings.production,
        )

    def _success(self, data: Any, request_id: str, status_code: int = 200, **meta: Any) -> Envelope:
        return success(
            data,
            request_id=request_id,
            now=self._clock.now(),
            status_code=status_code,
            **meta,
        )

    # -------------------------------------------------------------------------
    # Declarations
    # -------------------------------------------------------------------------

    def create(
        self,
        identity: Identity,
        body: Mapping[str, Any],
        network_address: str | None = None,
        request_id: str | None = None,
    ) -> Envelope:
        """Create a declaration (201) and publish its side effects after commit."""

        def call(request_id: str) -> Envelope:
            require_access(identity, Action.CREATE)
            with self._scope("create_declaration") as session:
                _, lifecycle = self._services(session)
                result = lifecycle.create_declaration(body, identity, network_address)

            self._publish(events_for_creation(result, correlation_id=request_id))
            return self._success(
                {
                    "id": result.id,
                    "ref": result.ref,
                    "statut": result.status,
                    "niveau": result.level,
                    "created_at": result.created_at,
                },
                request_id,
                status_code=201,
            )

        return self._guarded("create_declaration", identity, request_id, call)

    def list(
        self,
        identity: Identity,
        query: Mapping[str, Any] | None = None,
        request_id: str | None = None,
    ) -> Envelope:
        """Scoped listing; ``meta.pagination`` carries the totals."""

        def call(request_id: str) -> Envelope:
            require_access(identity, Action.LIST)
            filters = parse_listing_query(query)
            with self._scope("list_declarations") as session:
                page = DeclarationSelector(
                    session,
                    default_limit=self._settings.listing.default_limit,
                    max_limit=self._settings.listing.max_limit,
                ).list(identity, filters)
            return self._success(page.items, request_id, pagination=page.pagination())

        return self._guarded("list_declarations", identity, request_id, call)

    def get(
        self,
        identity: Identity,
        declaration_id: UUID | str,
        request_id: str | None = None,
    ) -> Envelope:
        def call(request_id: str) -> Envelope:
            require_access(identity, Action.READ)
            target = _parse_id(declaration_id)
            with self._scope("get_declaration") as session:
                record = DeclarationSelector(session).get(identity, target)
            return self._success(record, request_id)

        return self._guarded("get_declaration", identity, request_id, call, declaration_id)

    def transition(
        self,
        identity: Identity,
        declaration_id: UUID | str,
        body: Mapping[str, Any] | None,
        network_address: str | None = None,
        request_id: str | None = None,
    ) -> Envelope:
        """Status change and/or case-processing annotation."""

        def call(request_id: str) -> Envelope:
            require_access(identity, Action.TRANSITION)
            target = _parse_id(declaration_id)
            with self._scope("transition_declaration") as session:
                _, lifecycle = self._services(session)
                result = lifecycle.transition_declaration(
                    target, body, identity, network_address
                )
            return self._success(
                {
                    "id": result.declaration_id,
                    "ancien_statut": result.prior_status,
                    "statut": result.status,
                    "action": result.audit_action,
                },
                request_id,
            )

        return self._guarded(
            "transition_declaration", identity, request_id, call, declaration_id
        )

    def record_archived_document(self, declaration_id: UUID, path: str) -> None:
        """Archival callback: store the PDF path in its own transaction."""
        with self._scope("record_archived_document") as session:
            _, lifecycle = self._services(session)
            lifecycle.record_archived_document(declaration_id, path)

    # -------------------------------------------------------------------------
    # Audit
    # -------------------------------------------------------------------------

    def audit_for_declaration(
        self,
        identity: Identity,
        declaration_id: UUID | str,
        request_id: str | None = None,
    ) -> Envelope:
        def call(request_id: str) -> Envelope:
            require_access(identity, Action.AUDIT_DECLARATION)
            target = _parse_id(declaration_id)
            with self._scope("audit_for_declaration") as session:
                entries = AuditSelector(session).for_declaration(identity, target)
            return self._success(entries, request_id)

        return self._guarded(
            "audit_for_declaration", identity, request_id, call, declaration_id
        )

    def search_audit(
        self,
        identity: Identity,
        query: Mapping[str, Any] | None = None,
        request_id: str | None = None,
    ) -> Envelope:
        def call(request_id: str) -> Envelope:
            require_access(identity, Action.AUDIT_GLOBAL)
            filters = parse_audit_query(query)
            with self._scope("search_audit") as session:
                page = AuditSelector(
                    session,
                    default_limit=self._settings.audit.default_limit,
                    max_limit=self._settings.audit.max_limit,
                ).search(filters)
            return self._success(page.items, request_id, pagination=page.pagination())

        return self._guarded("search_audit", identity, request_id, call)

    def verify_audit_chain(
        self,
        identity: Identity,
        request_id: str | None = None,
    ) -> Envelope:
        """Recompute the audit hash chain; AUDIT_CHAIN_BROKEN on mismatch."""

        def call(request_id: str) -> Envelope:
            require_access(identity, Action.AUDIT_GLOBAL)
            with self._scope("verify_audit_chain") as session:
                AuditorService(session, self._clock).validate_chain()
            return self._success({"valid": True}, request_id)

        return self._guarded("verify_audit_chain", identity, request_id, call)

    # -------------------------------------------------------------------------
    # Reference data
    # -------------------------------------------------------------------------

    def list_agencies(self, identity: Identity, request_id: str | None = None) -> Envelope:
        def call(request_id: str) -> Envelope:
            with self._scope("list_agencies") as session:
                reference, _ = self._services(session)
                agencies = reference.list_active_agencies()
            return self._success(agencies, request_id)

        return self._guarded("list_agencies", identity, request_id, call)

    def causes(self, identity: Identity, request_id: str | None = None) -> Envelope:
        return self._guarded(
            "list_causes",
            identity,
            request_id,
            lambda rid: self._success(ReferenceDataService.causes(), rid),
        )

    def cash_register_types(self, identity: Identity, request_id: str | None = None) -> Envelope:
        return self._guarded(
            "list_cash_register_types",
            identity,
            request_id,
            lambda rid: self._success(ReferenceDataService.cash_register_types(), rid),
        )

    def upsert_region(
        self,
        identity: Identity,
        body: Mapping[str, Any],
        network_address: str | None = None,
        request_id: str | None = None,
    ) -> Envelope:
        def call(request_id: str) -> Envelope:
            require_access(identity, Action.MANAGE_REFERENCE)
            with self._scope("upsert_region") as session:
                reference, _ = self._services(session)
                region = reference.upsert_region(
                    identity,
                    name=body.get("nom"),
                    cp_email=body.get("email_cp") or None,
                    network_address=network_address,
                )
                data = {"nom": region.name, "email_cp": region.cp_email}
            self._cache.clear()
            return self._success(data, request_id)

        return self._guarded("upsert_region", identity, request_id, call)

    def upsert_agency(
        self,
        identity: Identity,
        body: Mapping[str, Any],
        network_address: str | None = None,
        request_id: str | None = None,
    ) -> Envelope:
        """ADMIN create-or-update of an agency; the cache is cleared after commit."""

        def call(request_id: str) -> Envelope:
            require_access(identity, Action.MANAGE_REFERENCE)
            with self._scope("upsert_agency") as session:
                reference, _ = self._services(session)
                agency = reference.upsert_agency(
                    identity,
                    code=body.get("code"),
                    name=body.get("nom"),
                    region=body.get("region"),
                    director_email=body.get("email_directeur") or None,
                    active=parse_flag(body, "actif", default=True),
                    network_address=network_address,
                )
            self._cache.clear()
            return self._success(agency, request_id)

        return self._guarded("upsert_agency", identity, request_id, call)

    # -------------------------------------------------------------------------
    # Side effects
    # -------------------------------------------------------------------------

    def _publish(self, events) -> None:
        if self._dispatcher is None:
            logger.debug("side_effects_disabled", extra={"event_count": len(events)})
            return
        for event in events:
            try:
                self._dispatcher.publish(event)
            except Exception:
                logger.exception("side_effect_publish_failed", extra={"event_type": event.event_type})


def wire_side_effects(
    gateway: DeclarationGateway,
    settings: CaisseSettings,
    notifier: Notifier,
    renderer: DocumentRenderer | None = None,
) -> SideEffectDispatcher:
    """
    Wire the standard handlers to a new dispatcher and attach it to
    ``gateway``.  The caller starts and stops the dispatcher.
    """
    registry = HandlerRegistry()
    notifications = NotificationHandler(notifier, settings.notifications)
    for event_type in (DeclarationCreated, SeverityFourAlert, RecurrenceAlert):
        registry.register(event_type, notifications)
    if renderer is not None:
        registry.register(
            DeclarationCreated,
            DocumentArchiveHandler(
                renderer,
                on_archived=gateway.record_archived_document,
                archive_root=settings.documents.archive_path,
            ),
        )

    dispatcher = SideEffectDispatcher(
        registry,
        workers=settings.side_effects.workers,
        handler_timeout_seconds=settings.side_effects.handler_timeout_seconds,
        max_attempts=settings.side_effects.max_attempts,
        queue_size=settings.side_effects.queue_size,
    )
    gateway.attach_dispatcher(dispatcher)
    return dispatcher
