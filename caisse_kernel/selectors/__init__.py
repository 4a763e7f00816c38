"""Selectors for the caisse kernel (read side)."""

from caisse_kernel.selectors.audit_selector import AuditSelector
from caisse_kernel.selectors.declaration_selector import DeclarationSelector

__all__ = [
    "AuditSelector",
    "DeclarationSelector",
]
