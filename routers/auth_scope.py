"""Authentication and role dependencies for API user scoping."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from services.moderation import ROLE_ADMIN, STAFF_ROLES, require_role
from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None
    role: Optional[str] = None


def _context_from_token(token: str) -> AuthContext:
    try:
        payload = decode_session_token(token)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    return AuthContext(
        user_id=str(payload.get("sub", "")),
        email=str(payload.get("email", "")) or None,
    )


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve authenticated user from Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")
    return _context_from_token(credentials.credentials)


async def get_optional_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> Optional[AuthContext]:
    """Like ``get_auth_context`` but anonymous browsing is allowed."""
    if not credentials or credentials.scheme.lower() != "bearer":
        return None
    return _context_from_token(credentials.credentials)


def context_from_query_token(token: Optional[str]) -> Optional[AuthContext]:
    """Websocket variant: browsers cannot set headers on the upgrade request."""
    if not token:
        return None
    try:
        payload = decode_session_token(token)
    except ValueError:
        return None
    return AuthContext(user_id=str(payload.get("sub", "")), email=str(payload.get("email", "")) or None)


async def require_staff(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
) -> AuthContext:
    auth.role = await require_role(auth.user_id, db, STAFF_ROLES)
    return auth


async def require_admin(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
) -> AuthContext:
    auth.role = await require_role(auth.user_id, db, {ROLE_ADMIN})
    return auth
