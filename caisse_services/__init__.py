"""
Service layer above the kernel.

``DeclarationGateway`` exposes the use-cases with role checks, transactions
and response envelopes; ``side_effects`` and ``handlers`` run the post-commit
notification and archival jobs; ``identity`` maps bearer tokens and directory
groups to kernel identities.
"""

from caisse_services.bootstrap import build_gateway, init_database
from caisse_services.envelope import Envelope
from caisse_services.gateway import DeclarationGateway, wire_side_effects
from caisse_services.handlers import (
    DocumentArchiveHandler,
    DocumentRenderer,
    Notification,
    NotificationHandler,
    Notifier,
)
from caisse_services.identity import (
    TokenExpired,
    TokenRejected,
    TokenVerifier,
    authenticate,
    identity_from_claims,
    role_from_groups,
)
from caisse_services.side_effects import HandlerRegistry, JobOutcome, SideEffectDispatcher

__all__ = [
    "DeclarationGateway",
    "DocumentArchiveHandler",
    "DocumentRenderer",
    "Envelope",
    "HandlerRegistry",
    "JobOutcome",
    "Notification",
    "NotificationHandler",
    "Notifier",
    "SideEffectDispatcher",
    "TokenExpired",
    "TokenRejected",
    "TokenVerifier",
    "authenticate",
    "build_gateway",
    "identity_from_claims",
    "init_database",
    "role_from_groups",
    "wire_side_effects",
]
