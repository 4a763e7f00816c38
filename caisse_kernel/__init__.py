"""
Caisse Kernel - declaration lifecycle engine.

Manages cash-discrepancy declarations raised by bank branches:
- Validated, atomic creation with server-side severity level
- Role and agency scoped access
- Status state machine with row-level locking
- Append-only, hash-chained audit trail
"""

__version__ = "0.1.0"
