"""
Identity mapping at the service boundary.

Token signature checks belong to the identity provider and arrive here as a
``TokenVerifier``: ``verify(token)`` returns the claims or raises
``TokenExpired`` / ``TokenRejected``.  This module turns the bearer header
into an ``Identity`` and maps directory groups to roles.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any, Protocol

from caisse_kernel.domain.access import Identity, Role
from caisse_kernel.exceptions import AuthenticationError
from caisse_kernel.logging_config import get_logger

logger = get_logger("services.identity")

BEARER_PREFIX = "Bearer "

# Checked in order; the first matching group wins.
GROUP_ROLES: tuple[tuple[str, Role], ...] = (
    ("GRP-CP-ADMIN", Role.ADMIN),
    ("GRP-CP-CENTRAL", Role.CP),
    ("GRP-CP-DIRECTEUR", Role.DIRECTEUR),
    ("GRP-CP-SUPERVISEUR", Role.SUPERVISEUR),
)


class TokenExpired(Exception):
    """The token was valid but is past its expiry."""


class TokenRejected(Exception):
    """Signature, format or audience check failed."""


class TokenVerifier(Protocol):
    def verify(self, token: str) -> Mapping[str, Any]: ...


def role_from_groups(groups: Iterable[str]) -> Role:
    """Directory groups (DN or CN strings) to the highest mapped role."""
    groups = [str(group).upper() for group in groups]
    for marker, role in GROUP_ROLES:
        if any(marker in group for group in groups):
            return role
    return Role.CAISSIER


def identity_from_claims(claims: Mapping[str, Any]) -> Identity:
    """
    Build an ``Identity`` from verified claims.

    ``sub`` is required; ``nom`` defaults to ``sub`` and ``role`` to CAISSIER.
    """
    subject = claims.get("sub")
    if not subject:
        raise AuthenticationError(AuthenticationError.TOKEN_INVALID, "Token has no subject.")
    return Identity(
        subject_id=str(subject),
        role=str(claims.get("role") or Role.CAISSIER.value),
        name=claims.get("nom") or str(subject),
        agency=claims.get("agence"),
        region=claims.get("region"),
        token_id=claims.get("jti"),
    )


def authenticate(header: str | None, verifier: TokenVerifier) -> Identity:
    """
    Resolve an ``Authorization`` header to an identity.

    Raises:
        AuthenticationError: TOKEN_MISSING, TOKEN_EXPIRED or TOKEN_INVALID.
    """
    if not header or not header.startswith(BEARER_PREFIX):
        raise AuthenticationError(
            AuthenticationError.TOKEN_MISSING, "Authentication token missing."
        )
    token = header[len(BEARER_PREFIX):].strip()
    if not token:
        raise AuthenticationError(
            AuthenticationError.TOKEN_MISSING, "Authentication token missing."
        )

    try:
        claims = verifier.verify(token)
    except TokenExpired as exc:
        raise AuthenticationError(
            AuthenticationError.TOKEN_EXPIRED, "Session expired. Please log in again."
        ) from exc
    except TokenRejected as exc:
        logger.warning("token_rejected", extra={"reason": str(exc)})
        raise AuthenticationError(
            AuthenticationError.TOKEN_INVALID, "Invalid token."
        ) from exc

    return identity_from_claims(claims)
