"""
Module: caisse_kernel.selectors.audit_selector
Responsibility: Read side of the audit log.
Architecture position: Kernel > Selectors.  Read-only.

``for_declaration`` returns one declaration's history in seq order (oldest
first) after the same read check as the declaration itself.  ``search`` is
the global journal for CP/ADMIN, newest first, paginated.
"""

from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from caisse_kernel.domain.access import Identity, ensure_can_read
from caisse_kernel.domain.dtos import AuditEntry, AuditFilters, Page
from caisse_kernel.exceptions import NotFoundError
from caisse_kernel.models.audit_event import AuditEvent
from caisse_kernel.models.declaration import Declaration
from caisse_kernel.selectors.base import BaseSelector
from caisse_kernel.selectors.declaration_selector import clamp_limit

DEFAULT_LIMIT = 50
MAX_LIMIT = 200


class AuditSelector(BaseSelector[AuditEvent]):
    def __init__(
        self,
        session: Session,
        default_limit: int = DEFAULT_LIMIT,
        max_limit: int = MAX_LIMIT,
    ):
        super().__init__(session)
        self._default_limit = default_limit
        self._max_limit = max_limit

    def for_declaration(
        self,
        identity: Identity,
        declaration_id: UUID,
    ) -> tuple[AuditEntry, ...]:
        """History of one declaration, ascending by seq."""
        declaration = self.session.execute(
            select(Declaration).where(Declaration.id == declaration_id)
        ).scalar_one_or_none()
        if declaration is None:
            raise NotFoundError("Declaration", str(declaration_id))
        ensure_can_read(identity, declaration)

        events = self.session.execute(
            select(AuditEvent)
            .where(AuditEvent.declaration_id == declaration_id)
            .order_by(AuditEvent.seq.asc())
        ).scalars().all()
        return tuple(event.to_dto(declaration_ref=declaration.ref) for event in events)

    def search(self, filters: AuditFilters | None = None) -> Page[AuditEntry]:
        """Global audit journal, newest first."""
        filters = filters or AuditFilters()
        page = max(1, filters.page or 1)
        limit = clamp_limit(filters.limit, self._default_limit, self._max_limit)

        conditions = []
        if filters.declaration_id is not None:
            conditions.append(AuditEvent.declaration_id == filters.declaration_id)
        if filters.actor_id:
            conditions.append(AuditEvent.actor_id == filters.actor_id)
        if filters.action:
            conditions.append(AuditEvent.action == filters.action.upper())
        if filters.date_from is not None:
            conditions.append(AuditEvent.occurred_at >= filters.date_from)
        if filters.date_to is not None:
            conditions.append(AuditEvent.occurred_at <= filters.date_to)

        total = self.session.execute(
            select(func.count(AuditEvent.id)).where(*conditions)
        ).scalar_one()

        rows = self.session.execute(
            select(AuditEvent, Declaration.ref)
            .outerjoin(Declaration, Declaration.id == AuditEvent.declaration_id)
            .where(*conditions)
            .order_by(AuditEvent.seq.desc())
            .limit(limit)
            .offset((page - 1) * limit)
        ).all()

        return Page(
            items=tuple(event.to_dto(declaration_ref=ref) for event, ref in rows),
            total=total,
            page=page,
            limit=limit,
        )
