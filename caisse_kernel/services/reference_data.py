"""
Reference data -- agencies, regions, and the fixed enumerations.

``ReferenceDataCache`` is an explicitly constructed TTL cache shared by the
request handlers of one process.  It holds frozen ``AgencyInfo`` snapshots,
never ORM rows, so entries outlive the session that loaded them.  Expiry is
driven by the injected clock.  Every write through ``ReferenceDataService``
invalidates it.

``ReferenceDataService`` reads agencies through the cache and performs the
ADMIN upserts; each upsert is audited as REFERENTIEL_MODIFIE with no
declaration id.
"""

import threading
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from caisse_kernel.domain.access import Identity
from caisse_kernel.domain.clock import Clock, SystemClock
from caisse_kernel.domain.dtos import AgencyInfo
from caisse_kernel.domain.submission import AGENCY_CODE_RE
from caisse_kernel.exceptions import NotFoundError, ValidationError
from caisse_kernel.logging_config import get_logger
from caisse_kernel.models.audit_event import AuditAction
from caisse_kernel.models.reference import Agency, Region
from caisse_kernel.services.auditor_service import AuditorService
from caisse_kernel.services.base import BaseService

logger = get_logger("services.reference_data")

DEFAULT_TTL_SECONDS = 24 * 3600

CAUSES: tuple[str, ...] = (
    "Erreur de comptage",
    "Billet de valeur non détecté",
    "Faux billet",
    "Omission de saisie",
    "Double saisie",
    "Erreur de change devises",
    "Vol ou disparition",
    "Incident technique TPE",
    "Autre (préciser)",
)

CASH_REGISTER_TYPES: tuple[str, ...] = (
    "Caisse DT Principale",
    "Caisse Devises",
    "Caisse GAB/DAB",
    "Caisse Coffre",
    "Caisse Monnaie",
    "Autre",
)

ACTIVE_AGENCIES_KEY = "agencies:active"


class ReferenceDataCache:
    """Thread-safe TTL cache with explicit invalidation."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Clock | None = None,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._ttl = ttl_seconds
        self._clock = clock or SystemClock()
        self._entries: dict[str, tuple[float, Any]] = {}
        self._lock = threading.Lock()

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def get(self, key: str) -> Any | None:
        """Cached value, or None if absent or expired."""
        now = self._clock.monotonic()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if now >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any) -> None:
        expires_at = self._clock.monotonic() + self._ttl
        with self._lock:
            self._entries[key] = (expires_at, value)

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class ReferenceDataService(BaseService[Agency]):
    """Agency lookups through the cache, plus audited ADMIN writes."""

    def __init__(
        self,
        session: Session,
        cache: ReferenceDataCache,
        clock: Clock | None = None,
        auditor: AuditorService | None = None,
    ):
        super().__init__(session)
        self._cache = cache
        self._clock = clock or SystemClock()
        self._auditor = auditor or AuditorService(session, self._clock)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_active_agencies(self) -> tuple[AgencyInfo, ...]:
        """Active agencies ordered by code (cached)."""
        cached = self._cache.get(ACTIVE_AGENCIES_KEY)
        if cached is not None:
            return cached

        rows = self.session.execute(
            select(Agency).where(Agency.active.is_(True)).order_by(Agency.code)
        ).scalars().all()
        agencies = tuple(row.to_dto() for row in rows)
        self._cache.set(ACTIVE_AGENCIES_KEY, agencies)
        logger.debug("agency_cache_loaded", extra={"agency_count": len(agencies)})
        return agencies

    def get_active_agency(self, code: str) -> AgencyInfo | None:
        for agency in self.list_active_agencies():
            if agency.code == code:
                return agency
        return None

    def recipients_for(self, agency_code: str) -> tuple[str, ...]:
        """Mailboxes notified of a new declaration for ``agency_code``."""
        agency = self.get_active_agency(agency_code)
        return agency.recipients if agency is not None else ()

    @staticmethod
    def causes() -> tuple[str, ...]:
        return CAUSES

    @staticmethod
    def cash_register_types() -> tuple[str, ...]:
        return CASH_REGISTER_TYPES

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert_region(
        self,
        actor: Identity,
        name: str,
        cp_email: str | None = None,
        network_address: str | None = None,
    ) -> Region:
        """Create or update a region by name."""
        if not name or len(name) > 60:
            raise ValidationError([{"field": "region", "message": "must be 1 to 60 characters"}])

        region = self.session.execute(
            select(Region).where(Region.name == name)
        ).scalar_one_or_none()
        operation = "updated" if region is not None else "created"
        if region is None:
            region = Region(name=name, cp_email=cp_email)
            self.session.add(region)
        else:
            region.cp_email = cp_email
        self.session.flush()

        self._auditor.record(
            declaration_id=None,
            actor=actor,
            action=AuditAction.REFERENTIEL_MODIFIE,
            network_address=network_address,
            detail={"entity": "region", "operation": operation, "name": name, "cp_email": cp_email},
        )
        self._cache.clear()
        logger.info("region_upserted", extra={"region": name, "operation": operation})
        return region

    def upsert_agency(
        self,
        actor: Identity,
        code: str,
        name: str,
        region: str,
        director_email: str | None = None,
        active: bool = True,
        network_address: str | None = None,
    ) -> AgencyInfo:
        """
        Create or update an agency by code.

        Raises:
            ValidationError: Malformed code or name.
            NotFoundError: ``region`` does not exist.
        """
        errors = []
        if not isinstance(code, str) or not AGENCY_CODE_RE.match(code):
            errors.append({"field": "code", "message": "must be a 3-digit string"})
        if not name or len(name) > 100:
            errors.append({"field": "nom", "message": "must be 1 to 100 characters"})
        if not region or not isinstance(region, str):
            errors.append({"field": "region", "message": "is required"})
        if errors:
            raise ValidationError(errors)

        region_row = self.session.execute(
            select(Region).where(Region.name == region)
        ).scalar_one_or_none()
        if region_row is None:
            raise NotFoundError("Region", region)

        agency = self.session.execute(
            select(Agency).where(Agency.code == code)
        ).scalar_one_or_none()
        operation = "updated" if agency is not None else "created"
        if agency is None:
            agency = Agency(code=code)
            self.session.add(agency)
        agency.name = name
        agency.region = region_row
        agency.director_email = director_email
        agency.active = active
        self.session.flush()

        self._auditor.record(
            declaration_id=None,
            actor=actor,
            action=AuditAction.REFERENTIEL_MODIFIE,
            network_address=network_address,
            detail={
                "entity": "agency",
                "operation": operation,
                "code": code,
                "name": name,
                "region": region,
                "director_email": director_email,
                "active": active,
            },
        )
        self._cache.clear()

        logger.info("agency_upserted", extra={"agency_code": code, "operation": operation})
        return agency.to_dto()
