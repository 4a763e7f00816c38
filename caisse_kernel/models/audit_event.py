"""
Module: caisse_kernel.models.audit_event
Responsibility: ORM persistence for the append-only, hash-chained audit log.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Append-only: no UPDATE or DELETE (ORM listeners in db/immutability.py).
    - seq is unique and allocated from a locked counter row, so seq order is
      commit order.
    - hash = H(subject | action | payload_hash | prev_hash); validated by
      AuditorService.validate_chain().

Every committed declaration mutation has exactly one AuditEvent with the
matching prior/new status and actor.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, BigInteger, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from caisse_kernel.db.base import Base, UTCDateTime, UUIDString


class AuditAction(str, Enum):
    """Types of auditable actions."""

    CREATION = "CREATION"
    CHANGEMENT_STATUT = "CHANGEMENT_STATUT"
    MODIFICATION = "MODIFICATION"
    ARCHIVAGE_DOCUMENT = "ARCHIVAGE_DOCUMENT"
    REFERENTIEL_MODIFIE = "REFERENTIEL_MODIFIE"


class AuditEvent(Base):
    """
    Audit event with hash chain for tamper evidence.

    ``declaration_id`` is null for reference-data changes.
    """

    __tablename__ = "audit_events"
    __table_args__ = (
        Index("idx_audit_declaration_seq", "declaration_id", "seq"),
        Index("idx_audit_action", "action"),
        Index("idx_audit_actor", "actor_id"),
        Index("idx_audit_occurred", "occurred_at"),
    )

    seq: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)

    declaration_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        nullable=True,
    )

    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    actor_role: Mapped[str] = mapped_column(String(20), nullable=False)
    action: Mapped[str] = mapped_column(String(30), nullable=False)

    prior_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    new_status: Mapped[str | None] = mapped_column(String(20), nullable=True)

    network_address: Mapped[str | None] = mapped_column(String(64), nullable=True)

    detail: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    # Hash of the previous audit event (null for the first event)
    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    hash: Mapped[str] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return f"<AuditEvent #{self.seq} {self.action} on {self.declaration_id}>"

    @property
    def is_genesis(self) -> bool:
        return self.prev_hash is None

    def hashed_fields(self) -> dict[str, Any]:
        """The column values covered by ``payload_hash``."""
        return {
            "seq": self.seq,
            "declaration_id": str(self.declaration_id) if self.declaration_id else None,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "action": self.action,
            "prior_status": self.prior_status,
            "new_status": self.new_status,
            "network_address": self.network_address,
            "detail": self.detail or {},
            "occurred_at": self.occurred_at,
        }

    def to_dto(self, declaration_ref: str | None = None):
        """Convert ORM model to frozen domain DTO."""
        from caisse_kernel.domain.dtos import AuditEntry

        return AuditEntry(
            id=self.id,
            seq=self.seq,
            declaration_id=self.declaration_id,
            actor_id=self.actor_id,
            actor_role=self.actor_role,
            action=self.action,
            prior_status=self.prior_status,
            new_status=self.new_status,
            network_address=self.network_address,
            detail=dict(self.detail or {}),
            occurred_at=self.occurred_at,
            hash=self.hash,
            declaration_ref=declaration_ref,
        )
