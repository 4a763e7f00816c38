"""ORM models. Importing this package registers every table on Base.metadata."""

from caisse_kernel.models.audit_event import AuditAction, AuditEvent
from caisse_kernel.models.declaration import (
    MUTABLE_DECLARATION_FIELDS,
    Declaration,
    DeclarationCause,
    DeclarationMeasure,
)
from caisse_kernel.models.reference import Agency, Region
from caisse_kernel.models.sequence import SequenceCounter

__all__ = [
    "Agency",
    "AuditAction",
    "AuditEvent",
    "Declaration",
    "DeclarationCause",
    "DeclarationMeasure",
    "MUTABLE_DECLARATION_FIELDS",
    "Region",
    "SequenceCounter",
]
