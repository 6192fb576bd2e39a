"""Resolve which provider, if any, the signed-in identity may edit."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional

import jwt
import structlog
from prometheus_client import Counter

from bedboard.errors import StoreUnavailable
from bedboard.models import Capability
from bedboard.security import hash_identifier
from bedboard.store import DirectoryStore

logger = structlog.get_logger(__name__)

CAPABILITY_RESOLUTIONS = Counter(
    "bedboard_capability_resolutions_total",
    "Capability lookups by outcome",
    ("result",),
)


class InvalidToken(Exception):
    """Raised when a bearer token cannot be decoded or verified."""


@dataclass(frozen=True)
class Identity:
    """The authenticated user as asserted by the session token."""

    subject: Optional[str] = None
    email: Optional[str] = None

    @classmethod
    def anonymous(cls) -> "Identity":
        return cls()

    @property
    def is_anonymous(self) -> bool:
        return not self.email

    @classmethod
    def from_claims(cls, claims: Mapping[str, Any]) -> "Identity":
        email = claims.get("email")
        subject = claims.get("sub")
        return cls(
            subject=str(subject) if subject else None,
            email=str(email).strip() if email else None,
        )


def identity_from_token(token: str, secret: str, *, algorithm: str = "HS256") -> Identity:
    """Decode a session token issued by the login service."""

    try:
        claims = jwt.decode(token, secret, algorithms=[algorithm])
    except jwt.PyJWTError as exc:
        raise InvalidToken(str(exc)) from exc
    return Identity.from_claims(claims)


class AuthorizationResolver:
    """Map an identity to a :class:`Capability` by looking up ``adminEmail``."""

    def __init__(self, store: DirectoryStore) -> None:
        self._store = store

    async def resolve(self, identity: Identity) -> Capability:
        """Return ``CanEdit`` for the first owned provider, otherwise none.

        Lookup failures fail closed: the viewer keeps browsing without edit
        rights and the cause is logged.
        """

        if identity.is_anonymous:
            CAPABILITY_RESOLUTIONS.labels(result="anonymous").inc()
            return Capability.none()
        email = identity.email or ""
        try:
            owned = await self._store.find_by_admin_email(email)
        except StoreUnavailable as exc:
            CAPABILITY_RESOLUTIONS.labels(result="error").inc()
            logger.warning(
                "capability_lookup_failed",
                identity=hash_identifier(email),
                error=exc.message,
            )
            return Capability.none()
        if not owned:
            CAPABILITY_RESOLUTIONS.labels(result="none").inc()
            return Capability.none()
        provider_id = owned[0].id
        CAPABILITY_RESOLUTIONS.labels(result="editor").inc()
        logger.info(
            "capability_resolved",
            identity=hash_identifier(email),
            provider_id=provider_id,
        )
        return Capability.can_edit(provider_id)


__all__ = [
    "AuthorizationResolver",
    "Identity",
    "InvalidToken",
    "identity_from_token",
    "CAPABILITY_RESOLUTIONS",
]
