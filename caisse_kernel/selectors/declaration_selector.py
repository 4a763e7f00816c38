"""
Module: caisse_kernel.selectors.declaration_selector
Responsibility: Scoped listing and detail reads of declarations.
Architecture position: Kernel > Selectors.  Read-only.

Invariants enforced:
    - The identity's agency scope is applied before any caller filter and
      cannot be overridden by it.
    - Sorting uses a closed set of named orders; an unknown sort key falls
      back to newest-first without error.
    - Page size is clamped to [1, max_limit].
"""

from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session, contains_eager

from caisse_kernel.domain.access import (
    Identity,
    effective_agency_filter,
    ensure_can_read,
    is_scoped,
)
from caisse_kernel.domain.dtos import (
    DeclarationRecord,
    DeclarationSummary,
    ListingFilters,
    Page,
)
from caisse_kernel.exceptions import NotFoundError
from caisse_kernel.logging_config import get_logger
from caisse_kernel.models.declaration import Declaration
from caisse_kernel.selectors.base import BaseSelector

logger = get_logger("selectors.declaration")

DEFAULT_SORT = "-created_at"
DEFAULT_LIMIT = 20
MAX_LIMIT = 100

SORT_ORDERS = {
    "created_at": (Declaration.created_at.asc(),),
    "-created_at": (Declaration.created_at.desc(),),
    "montant": (Declaration.amount_major.asc(),),
    "-montant": (Declaration.amount_major.desc(),),
    "niveau": (Declaration.level.asc(),),
    "-niveau": (Declaration.level.desc(),),
}


def clamp_limit(limit: int | None, default: int, maximum: int) -> int:
    """Page size within [1, maximum]; None means ``default``."""
    if limit is None:
        return min(default, maximum)
    return max(1, min(maximum, limit))


class DeclarationSelector(BaseSelector[Declaration]):
    """Listing and detail queries, always agency-scoped."""

    def __init__(
        self,
        session: Session,
        default_limit: int = DEFAULT_LIMIT,
        max_limit: int = MAX_LIMIT,
    ):
        super().__init__(session)
        self._default_limit = default_limit
        self._max_limit = max_limit

    def list(
        self,
        identity: Identity,
        filters: ListingFilters | None = None,
    ) -> Page[DeclarationSummary]:
        """One page of summaries plus the total count for the same filters."""
        filters = filters or ListingFilters()
        page = max(1, filters.page or 1)
        limit = clamp_limit(filters.limit, self._default_limit, self._max_limit)

        agency = effective_agency_filter(identity, filters.agency)
        if is_scoped(identity) and not agency:
            # A scoped identity without an assigned agency sees nothing.
            return Page(items=(), total=0, page=page, limit=limit)

        conditions = []
        if agency:
            conditions.append(Declaration.agency_code == agency)
        if filters.status is not None:
            conditions.append(Declaration.status == filters.status.value)
        if filters.level is not None:
            conditions.append(Declaration.level == filters.level)
        if filters.date_from is not None:
            conditions.append(Declaration.discrepancy_date >= filters.date_from)
        if filters.date_to is not None:
            conditions.append(Declaration.discrepancy_date <= filters.date_to)

        order_by = SORT_ORDERS.get(filters.sort or DEFAULT_SORT)
        if order_by is None:
            logger.debug("unknown_sort_fallback", extra={"sort": filters.sort})
            order_by = SORT_ORDERS[DEFAULT_SORT]

        total = self.session.execute(
            select(func.count(Declaration.id)).where(*conditions)
        ).scalar_one()

        rows = self.session.execute(
            select(Declaration)
            .join(Declaration.agency)
            .options(contains_eager(Declaration.agency))
            .where(*conditions)
            .order_by(*order_by, Declaration.id)
            .limit(limit)
            .offset((page - 1) * limit)
        ).unique().scalars().all()

        return Page(
            items=tuple(row.to_summary() for row in rows),
            total=total,
            page=page,
            limit=limit,
        )

    def get(self, identity: Identity, declaration_id: UUID) -> DeclarationRecord:
        """
        Full record after the read check.

        Raises:
            NotFoundError: Unknown id.
            AccessError: ACCESS_DENIED for another CAISSIER's declaration,
                SCOPE_VIOLATION for another agency.
        """
        declaration = self.session.execute(
            select(Declaration).where(Declaration.id == declaration_id)
        ).scalar_one_or_none()
        if declaration is None:
            raise NotFoundError("Declaration", str(declaration_id))

        ensure_can_read(identity, declaration)
        return declaration.to_dto()
