"""
Authentication and profile routes.
"""
from datetime import datetime, timezone
from typing import Annotated
from fastapi import APIRouter, Depends, HTTPException, Request, status
from slowapi.util import get_remote_address
from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from provider_admin.core import config
from provider_admin.core.database.engine import get_db
from provider_admin.core.errors import FieldValidationError
from provider_admin.core.rate_limit import limiter
from provider_admin.features.customers.models import Customer, ProviderGroup
from provider_admin.features.providers.models import Provider, UserNpi
from provider_admin.features.users.auth import (
    as_utc,
    hash_password,
    issue_session_token,
    lockout_until,
    session_expiry,
    verify_password,
)
from provider_admin.features.users.dependencies import get_current_session, get_current_user
from provider_admin.features.users.models import Password, PasswordHistory, Session, User
from provider_admin.features.users.passwords import validate_password_complexity
from provider_admin.features.users.schemas import (
    AssignedNpi,
    ChangePasswordRequest,
    LoginRequest,
    LoginResponse,
    UserResponse,
)
from provider_admin.utils import get_logger


log = get_logger(__name__)

router = APIRouter(tags=["users"])


@router.post("/auth/login", response_model=LoginResponse)
@limiter.limit(config.LOGIN_RATE_LIMIT, key_func=get_remote_address)
async def login(
    request: Request,
    credentials: LoginRequest,
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """
    Exchange username (or email) and password for a bearer token.

    Every failure answers with the same 401 so the response does not reveal
    which usernames exist or which accounts are locked. Consecutive wrong
    passwords lock the account for a growing cooldown; a successful login
    clears the counter.
    """
    login_name = credentials.username.strip().lower()
    result = await db.execute(
        select(User).where(or_(User.username == login_name, User.email == login_name))
    )
    user = result.scalar_one_or_none()
    stored = await db.get(Password, user.id) if user else None
    now = datetime.now(timezone.utc)
    invalid = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid username or password",
    )

    if user is not None and user.locked_until is not None and as_utc(user.locked_until) > now:
        log.warning("Refused login for locked user %s from %s", user.id, get_remote_address(request))
        raise invalid

    if user is None or stored is None or not verify_password(credentials.password, stored.hash):
        log.info("Failed login for %r from %s", login_name, get_remote_address(request))
        if user is not None:
            user.failed_login_count += 1
            user.locked_until = lockout_until(user.failed_login_count, now)
            await db.commit()
            if user.locked_until is not None:
                log.warning(
                    "User %s locked until %s after %d failed logins",
                    user.id, user.locked_until.isoformat(), user.failed_login_count
                )
        raise invalid
    if not user.active:
        log.info("Refused login for deactivated user %s", user.id)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User account is deactivated",
        )

    session = Session(user_id=user.id, expiration_date=session_expiry(now))
    db.add(session)
    user.last_login_at = now
    user.failed_login_count = 0
    user.locked_until = None
    await db.commit()

    log.info("User %s logged in", user.id)
    return LoginResponse(
        access_token=issue_session_token(session.id, user.id, session.expiration_date),
        expires_at=session.expiration_date,
        must_change_password=user.must_change_password,
    )


@router.post("/auth/logout", status_code=status.HTTP_204_NO_CONTENT)
async def logout(
    session: Annotated[Session, Depends(get_current_session)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Revoke the session behind the presented token."""
    await db.execute(delete(Session).where(Session.id == session.id))
    await db.commit()
    log.info("User %s logged out", session.user_id)


@router.post("/auth/change-password", status_code=status.HTTP_204_NO_CONTENT)
async def change_password(
    body: ChangePasswordRequest,
    user: Annotated[User, Depends(get_current_user)],
    session: Annotated[Session, Depends(get_current_session)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """
    Replace the caller's password.

    The new password must pass the complexity policy and differ from the
    current one and the last PASSWORD_HISTORY_DEPTH ones. Other sessions of
    the caller are revoked; the current one stays valid.
    """
    stored = await db.get(Password, user.id)
    if stored is None or not verify_password(body.current_password, stored.hash):
        raise FieldValidationError({"current_password": "Current password is incorrect"})

    ok, errors = validate_password_complexity(body.password)
    if not ok:
        raise FieldValidationError({"password": "; ".join(errors)})

    history = (
        await db.execute(
            select(PasswordHistory)
            .where(PasswordHistory.user_id == user.id)
            .order_by(PasswordHistory.created_at.desc(), PasswordHistory.id.desc())
        )
    ).scalars().all()
    recent = [stored.hash] + [h.hash for h in history[:config.PASSWORD_HISTORY_DEPTH]]
    if any(verify_password(body.password, old_hash) for old_hash in recent):
        raise FieldValidationError(
            {"password": f"Password was used recently. Choose one not among your last {config.PASSWORD_HISTORY_DEPTH}."}
        )

    db.add(PasswordHistory(user_id=user.id, hash=stored.hash))
    # Keep only what the reuse check reads
    for stale in history[max(config.PASSWORD_HISTORY_DEPTH - 1, 0):]:
        await db.delete(stale)

    stored.hash = hash_password(body.password)
    user.must_change_password = False
    user.password_changed_at = datetime.now(timezone.utc)
    await db.execute(delete(Session).where(Session.user_id == user.id, Session.id != session.id))
    await db.commit()
    log.info("User %s changed their password", user.id)


@router.get("/users/me", response_model=UserResponse)
async def get_current_user_profile(
    user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Get current authenticated user's profile, roles and assigned NPIs."""
    customer = await db.get(Customer, user.customer_id) if user.customer_id else None
    group = await db.get(ProviderGroup, user.provider_group_id) if user.provider_group_id else None
    npis = (
        await db.execute(
            select(Provider)
            .join(UserNpi, UserNpi.provider_id == Provider.id)
            .where(UserNpi.user_id == user.id)
            .order_by(Provider.npi)
        )
    ).scalars().all()

    return UserResponse(
        id=user.id,
        email=user.email,
        username=user.username,
        name=user.name,
        active=user.active,
        must_change_password=user.must_change_password,
        roles=sorted(r.value for r in user.role_set),
        customer_id=user.customer_id,
        customer_name=customer.name if customer else None,
        provider_group_id=user.provider_group_id,
        provider_group_name=group.name if group else None,
        password_changed_at=user.password_changed_at,
        last_login_at=user.last_login_at,
        npis=[AssignedNpi.model_validate(p) for p in npis],
        created_at=user.created_at,
    )
