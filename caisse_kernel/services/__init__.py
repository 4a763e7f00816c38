"""Services for the caisse kernel (write side)."""

from caisse_kernel.services.auditor_service import AuditorService
from caisse_kernel.services.lifecycle_service import DeclarationLifecycleService
from caisse_kernel.services.reference_data import (
    CASH_REGISTER_TYPES,
    CAUSES,
    ReferenceDataCache,
    ReferenceDataService,
)
from caisse_kernel.services.sequence_service import SequenceService

__all__ = [
    "AuditorService",
    "CASH_REGISTER_TYPES",
    "CAUSES",
    "DeclarationLifecycleService",
    "ReferenceDataCache",
    "ReferenceDataService",
    "SequenceService",
]
