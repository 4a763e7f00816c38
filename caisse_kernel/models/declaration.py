"""
Module: caisse_kernel.models.declaration
Responsibility: ORM persistence for declarations and their cause/measure tags.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ value types only.

Invariants enforced:
    - level in 1..4, amount_minor in 0..999, amount_major >= 0 (check
      constraints).
    - status changes only along DECLARATION_TRANSITIONS; submission-time
      fields are write-once; rows are never deleted (ORM listeners in
      db/immutability.py).
    - DeclarationCause / DeclarationMeasure rows are inserted with their
      declaration and never updated or deleted.

Write ownership:
    Only DeclarationLifecycleService writes to these tables.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    Integer,
    BigInteger,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from caisse_kernel.db.base import Base, TimestampedBase, UTCDateTime, UUIDString

if TYPE_CHECKING:
    from caisse_kernel.domain.dtos import DeclarationRecord, DeclarationSummary
    from caisse_kernel.models.reference import Agency


# Columns that may change after the INSERT.  Everything else is frozen at
# submission time.
MUTABLE_DECLARATION_FIELDS: frozenset[str] = frozenset({
    "status",
    "status_changed_at",
    "status_changed_by",
    "case_handled_by",
    "case_file_number",
    "case_comment",
    "document_path",
    "updated_at",
})


class Declaration(TimestampedBase):
    """
    A reported cash discrepancy (aggregate root).

    Guarantees:
        - ref is unique.
        - level == max(submitted level, recomputed level), fixed at creation.
    """

    __tablename__ = "declarations"
    __table_args__ = (
        CheckConstraint("level BETWEEN 1 AND 4", name="chk_declaration_level"),
        CheckConstraint("amount_major >= 0", name="chk_declaration_amount_major"),
        CheckConstraint(
            "amount_minor BETWEEN 0 AND 999", name="chk_declaration_amount_minor"
        ),
        CheckConstraint(
            "nature IN ('MANQUANT', 'EXCEDENT')", name="chk_declaration_nature"
        ),
        CheckConstraint(
            "status IN ('SOUMIS', 'EN_COURS', 'EN_ENQUETE', 'VALIDE', 'REJETE', 'CLOTURE')",
            name="chk_declaration_status",
        ),
        Index("idx_declaration_agency_status", "agency_code", "status"),
        Index("idx_declaration_created", "created_at"),
        Index("idx_declaration_submitted_by", "submitted_by"),
    )

    ref: Mapped[str] = mapped_column(String(60), nullable=False, unique=True)
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    nature: Mapped[str] = mapped_column(String(10), nullable=False)
    recurrence: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    recurrence_count: Mapped[int | None] = mapped_column(Integer, nullable=True)

    agency_code: Mapped[str] = mapped_column(
        String(3),
        ForeignKey("agencies.code"),
        nullable=False,
    )
    region: Mapped[str | None] = mapped_column(String(60), nullable=True)

    # Submitter, captured at creation
    submitted_by: Mapped[str] = mapped_column(String(64), nullable=False)
    submitted_by_role: Mapped[str] = mapped_column(String(20), nullable=False)
    submitted_from: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Cashier
    cashier_matricule: Mapped[str] = mapped_column(String(20), nullable=False)
    cashier_name: Mapped[str] = mapped_column(String(100), nullable=False)
    cashier_grade: Mapped[str | None] = mapped_column(String(40), nullable=True)
    cashier_function: Mapped[str] = mapped_column(String(40), nullable=False)
    cashier_function_other: Mapped[str | None] = mapped_column(String(60), nullable=True)

    # Discrepancy
    discrepancy_date: Mapped[date] = mapped_column(Date, nullable=False)
    discovered_time: Mapped[str] = mapped_column(String(5), nullable=False)
    closing_time: Mapped[str | None] = mapped_column(String(5), nullable=True)
    amount_major: Mapped[int] = mapped_column(BigInteger, nullable=False)
    amount_minor: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cash_register_type: Mapped[str] = mapped_column(String(50), nullable=False)
    cash_register_other: Mapped[str | None] = mapped_column(String(60), nullable=True)

    # Narrative
    cashier_statement: Mapped[str] = mapped_column(Text, nullable=False)
    supervisor_observation: Mapped[str] = mapped_column(Text, nullable=False)
    other_measures: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Lifecycle
    status_changed_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True
    )
    status_changed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Case processing by the central control unit
    case_handled_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    case_file_number: Mapped[str | None] = mapped_column(String(60), nullable=True)
    case_comment: Mapped[str | None] = mapped_column(Text, nullable=True)

    document_path: Mapped[str | None] = mapped_column(String(500), nullable=True)

    causes: Mapped[list[DeclarationCause]] = relationship(
        back_populates="declaration",
        lazy="selectin",
        order_by="DeclarationCause.position",
        cascade="save-update, merge",
    )
    measures: Mapped[list[DeclarationMeasure]] = relationship(
        back_populates="declaration",
        lazy="selectin",
        order_by="DeclarationMeasure.position",
        cascade="save-update, merge",
    )
    agency: Mapped[Agency] = relationship(lazy="joined")

    def __repr__(self) -> str:
        return f"<Declaration {self.ref} {self.status} N{self.level}>"

    def to_dto(self) -> DeclarationRecord:
        """Convert ORM model to frozen domain DTO."""
        from caisse_kernel.domain.dtos import DeclarationRecord
        from caisse_kernel.domain.lifecycle import DeclarationStatus

        return DeclarationRecord(
            id=self.id,
            ref=self.ref,
            status=DeclarationStatus(self.status),
            level=self.level,
            nature=self.nature,
            recurrence=self.recurrence,
            recurrence_count=self.recurrence_count,
            agency_code=self.agency_code,
            region=self.region,
            submitted_by=self.submitted_by,
            submitted_by_role=self.submitted_by_role,
            submitted_from=self.submitted_from,
            cashier_matricule=self.cashier_matricule,
            cashier_name=self.cashier_name,
            cashier_grade=self.cashier_grade,
            cashier_function=self.cashier_function,
            cashier_function_other=self.cashier_function_other,
            discrepancy_date=self.discrepancy_date,
            discovered_time=self.discovered_time,
            closing_time=self.closing_time,
            amount_major=self.amount_major,
            amount_minor=self.amount_minor,
            cash_register_type=self.cash_register_type,
            cash_register_other=self.cash_register_other,
            cashier_statement=self.cashier_statement,
            supervisor_observation=self.supervisor_observation,
            other_measures=self.other_measures,
            causes=tuple(c.cause for c in self.causes),
            measures=tuple(m.measure for m in self.measures),
            created_at=self.created_at,
            updated_at=self.updated_at,
            status_changed_at=self.status_changed_at,
            status_changed_by=self.status_changed_by,
            case_handled_by=self.case_handled_by,
            case_file_number=self.case_file_number,
            case_comment=self.case_comment,
            document_path=self.document_path,
            agency_name=self.agency.name if self.agency is not None else None,
        )

    def to_summary(self) -> DeclarationSummary:
        """Listing projection."""
        from caisse_kernel.domain.dtos import DeclarationSummary
        from caisse_kernel.domain.lifecycle import DeclarationStatus

        return DeclarationSummary(
            id=self.id,
            ref=self.ref,
            status=DeclarationStatus(self.status),
            level=self.level,
            created_at=self.created_at,
            amount_major=self.amount_major,
            amount_minor=self.amount_minor,
            nature=self.nature,
            agency_code=self.agency_code,
            agency_name=self.agency.name if self.agency is not None else "",
            cashier_matricule=self.cashier_matricule,
            cashier_name=self.cashier_name,
        )


class DeclarationCause(Base):
    """One discrepancy cause tag. Append-only."""

    __tablename__ = "declaration_causes"

    declaration_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("declarations.id"),
        nullable=False,
        index=True,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    cause: Mapped[str] = mapped_column(String(200), nullable=False)

    declaration: Mapped[Declaration] = relationship(back_populates="causes")


class DeclarationMeasure(Base):
    """One corrective-measure tag. Append-only."""

    __tablename__ = "declaration_measures"

    declaration_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("declarations.id"),
        nullable=False,
        index=True,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    measure: Mapped[str] = mapped_column(String(200), nullable=False)

    declaration: Mapped[Declaration] = relationship(back_populates="measures")
