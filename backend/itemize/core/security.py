"""Request authentication helpers.

Callers present a bearer JWT signed with ``SECRET_KEY``.  The token's
``sub`` claim identifies the actor and ``tenant_id`` the business the
actor is working in; every query downstream is scoped by that tenant.
Internal callers (the extraction worker, the scheduler driving the
reaper) authenticate with the shared ``INTERNAL_API_SECRET`` instead.
"""

from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from itemize.core.config import settings

auth_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AuthContext:
    tenant_id: int
    actor_id: str


def decode_access_token(token: str) -> AuthContext:
    """Decode a bearer token into an :class:`AuthContext`.

    Raises ``HTTPException(401)`` when the signature is invalid or the
    token lacks either claim.
    """
    try:
        claims = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc
    actor_id = claims.get("sub")
    tenant_id = claims.get("tenant_id")
    if not actor_id or tenant_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token missing tenant or subject")
    try:
        return AuthContext(tenant_id=int(tenant_id), actor_id=str(actor_id))
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid tenant claim") from exc


def create_access_token(tenant_id: int, actor_id: str) -> str:
    """Issue a token for ``actor_id`` in ``tenant_id`` (dev tooling, tests)."""
    return jwt.encode(
        {"sub": actor_id, "tenant_id": tenant_id},
        settings.SECRET_KEY,
        algorithm=settings.JWT_ALGORITHM,
    )


async def get_auth_context(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme),
) -> AuthContext:
    if settings.DEV_AUTH_BYPASS:
        return AuthContext(tenant_id=settings.DEV_TENANT_ID, actor_id=settings.DEV_ACTOR_ID)
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return decode_access_token(credentials.credentials)


async def verify_internal_secret(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme),
) -> None:
    """Require ``Authorization: Bearer <INTERNAL_API_SECRET>``."""
    expected = settings.INTERNAL_API_SECRET
    if not expected:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="INTERNAL_API_SECRET is not configured")
    supplied = credentials.credentials if credentials else ""
    if not hmac.compare_digest(supplied.encode(), expected.encode()):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
