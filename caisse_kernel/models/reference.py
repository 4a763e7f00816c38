"""
Module: caisse_kernel.models.reference
Responsibility: ORM persistence for reference data: regions and agencies.
Architecture position: Kernel > Models.  May import from db/base.py only.

Agencies are looked up by their 3-digit ``code`` (the business key used by
declarations and identities).  Only ``ReferenceDataService`` writes here.
"""

from uuid import UUID

from sqlalchemy import Boolean, CheckConstraint, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from caisse_kernel.db.base import Base, UUIDString


class Region(Base):
    """A regional directorate; its CP mailbox receives new declarations."""

    __tablename__ = "regions"

    name: Mapped[str] = mapped_column(String(60), nullable=False, unique=True)
    cp_email: Mapped[str | None] = mapped_column(String(120), nullable=True)

    agencies: Mapped[list["Agency"]] = relationship(
        back_populates="region",
    )

    def __repr__(self) -> str:
        return f"<Region {self.name}>"


class Agency(Base):
    """A bank branch."""

    __tablename__ = "agencies"
    __table_args__ = (
        CheckConstraint("length(code) = 3", name="chk_agency_code_length"),
    )

    code: Mapped[str] = mapped_column(String(3), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    region_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("regions.id"),
        nullable=False,
    )
    director_email: Mapped[str | None] = mapped_column(String(120), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    region: Mapped[Region] = relationship(
        back_populates="agencies",
        lazy="joined",
    )

    def __repr__(self) -> str:
        return f"<Agency {self.code} {self.name}>"

    def to_dto(self):
        """Convert ORM model to frozen domain DTO."""
        from caisse_kernel.domain.dtos import AgencyInfo

        return AgencyInfo(
            code=self.code,
            name=self.name,
            region_name=self.region.name,
            region_cp_email=self.region.cp_email,
            director_email=self.director_email,
            active=self.active,
        )
