"""
FastAPI dependencies for authentication and authorization.
"""
from datetime import datetime, timezone
from typing import Annotated
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from provider_admin.core.database.engine import get_db
from provider_admin.features.access.roles import RoleName
from provider_admin.features.access.scope import CallerContext
from provider_admin.features.users.models import User, Session
from provider_admin.features.users.auth import as_utc, verify_session_token


security = HTTPBearer(auto_error=False)

PASSWORD_CHANGE_REQUIRED = "Password change required. Set a new password via /auth/change-password."


async def get_current_session(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    db: Annotated[AsyncSession, Depends(get_db)]
) -> Session:
    """
    Resolve the bearer token to a live server-side session.

    Raises:
        HTTPException: 401 if the token is missing, invalid, expired or revoked
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = verify_session_token(credentials.credentials)

    result = await db.execute(select(Session).where(Session.id == payload["sid"]))
    session = result.scalar_one_or_none()

    if session is None or session.user_id != payload["sub"]:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Session has been revoked",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if as_utc(session.expiration_date) <= datetime.now(timezone.utc):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Session has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return session


async def get_current_user(
    session: Annotated[Session, Depends(get_current_session)],
    db: Annotated[AsyncSession, Depends(get_db)]
) -> User:
    """
    Get the current authenticated user.

    Usage:
        @router.get("/me")
        async def get_me(user: User = Depends(get_current_user)):
            return user
    """
    result = await db.execute(select(User).where(User.id == session.user_id))
    user = result.scalar_one_or_none()

    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )
    if not user.active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User account is deactivated",
        )
    return user


async def get_caller(
    user: Annotated[User, Depends(get_current_user)]
) -> CallerContext:
    """
    Wrap the current user into the explicit context passed to scope and rule checks.

    Users holding a temporary password only get the routes that take
    get_current_user directly (profile, logout, change-password).

    Raises:
        HTTPException: 403 while the user must change their password
    """
    if user.must_change_password:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=PASSWORD_CHANGE_REQUIRED,
        )
    return CallerContext.from_user(user)


def require_roles(*allowed: RoleName):
    """
    FastAPI dependency requiring the caller to hold at least one of the given roles.

    Usage:
        @router.get("/admin/customers")
        async def list_customers(
            caller: CallerContext = Depends(require_roles(RoleName.SYSTEM_ADMIN))
        ):
            ...

    Raises:
        HTTPException: 403 if the caller holds none of the roles
    """
    async def role_dependency(
        caller: Annotated[CallerContext, Depends(get_caller)]
    ) -> CallerContext:
        if not caller.roles.intersection(allowed):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient role",
            )
        return caller

    return role_dependency


def get_authorization_header(request) -> str:
    """
    Extract authorization header for rate limiting.
    Used with slowapi Limiter.
    """
    auth = request.headers.get("Authorization", "")
    return auth or "anonymous"
