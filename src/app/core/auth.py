"""
Authentication and Authorization Module

FastAPI dependencies that turn the caller's bearer token into an ``Actor``.

Session management belongs to the external identity provider. This module
only verifies the token signature and reads the ``sub`` and ``role`` claims;
invite management endpoints additionally require the ``admin`` role.
"""

import logging
from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.security import decode_token

logger = logging.getLogger(__name__)

# Roles allowed to issue, cancel, and inspect invites
INVITE_ADMIN_ROLES = frozenset({"admin"})

security = HTTPBearer(
    auto_error=True,
    description="JWT Bearer token issued by the identity provider",
)


@dataclass(frozen=True)
class Actor:
    """
    The caller of an invite operation.

    Attributes:
        id: Identifier from the token's ``sub`` claim
        role: Role claim (``admin``, ``teacher``, ``student``)
        ip: Client IP address, used for per-IP rate limiting
    """

    id: str
    role: str
    ip: str | None = None

    def __str__(self) -> str:
        return f"Actor(id={self.id}, role={self.role})"


def client_ip(request: Request) -> str:
    """Client address, preferring X-Forwarded-For when behind a proxy."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host or "unknown"
    return "unknown"


async def get_current_actor(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Actor:
    """
    Validate the bearer token and return the calling actor.

    Raises:
        HTTPException 401: If the token is invalid, expired, or missing claims
    """
    payload = decode_token(credentials.credentials)

    if payload is None:
        logger.warning("Invalid or expired JWT token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": "INVALID_CREDENTIALS",
                "message": "Invalid or expired authentication token.",
            },
            headers={"WWW-Authenticate": "Bearer"},
        )

    subject = payload.get("sub")
    role = payload.get("role")
    if not subject or not role:
        logger.warning("Token is missing 'sub' or 'role' claim")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": "INVALID_TOKEN_CLAIMS",
                "message": "Token contains invalid or missing claims.",
            },
            headers={"WWW-Authenticate": "Bearer"},
        )

    return Actor(id=str(subject), role=str(role), ip=client_ip(request))


async def require_invite_admin(actor: Actor = Depends(get_current_actor)) -> Actor:
    """
    Dependency for invite management endpoints.

    Raises:
        HTTPException 403: If the actor's role may not manage invites
    """
    if actor.role not in INVITE_ADMIN_ROLES:
        logger.warning(f"Access denied: {actor} may not manage invites")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "error": "ADMIN_ACCESS_REQUIRED",
                "message": "Administrator access is required to manage invites.",
            },
        )
    return actor


__all__ = [
    "Actor",
    "INVITE_ADMIN_ROLES",
    "client_ip",
    "get_current_actor",
    "require_invite_admin",
]
