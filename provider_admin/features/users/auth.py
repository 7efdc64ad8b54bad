"""
Authentication utilities: bcrypt password hashing and signed session tokens.
"""
from datetime import datetime, timedelta, timezone
import bcrypt
import jwt
from fastapi import HTTPException, status

from provider_admin.core import config

TOKEN_ALGORITHM = "HS256"


def hash_password(password: str) -> str:
    """Return a bcrypt hash (cost 10) for the given password."""
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=10)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def session_expiry(now: datetime | None = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    return now + timedelta(seconds=config.SESSION_TTL_SECONDS)


def issue_session_token(session_id: str, user_id: str, expires_at: datetime) -> str:
    """
    Create a bearer token that points at a server-side session.

    The token only proves which session the caller holds; the session row
    is still looked up on every request so deleting it revokes the token.
    """
    payload = {"sid": session_id, "sub": user_id, "exp": expires_at}
    return jwt.encode(payload, config.SESSION_SECRET, algorithm=TOKEN_ALGORITHM)


def verify_session_token(token: str) -> dict:
    """
    Verify a session token and return its payload.

    Args:
        token: JWT token from Authorization header

    Returns:
        Decoded payload containing ``sid`` and ``sub``

    Raises:
        HTTPException: If token is invalid or expired
    """
    try:
        payload = jwt.decode(
            token,
            config.SESSION_SECRET,
            algorithms=[TOKEN_ALGORITHM],
            options={"require": ["sid", "sub", "exp"]},
        )
        return payload

    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: {str(e)}",
            headers={"WWW-Authenticate": "Bearer"},
        )


def lockout_until(failed_count: int, now: datetime | None = None) -> datetime | None:
    """
    When an account with ``failed_count`` consecutive failures unlocks.

    None below the threshold or when lockout is disabled. The cooldown
    doubles each time another full threshold of failures is reached.
    """
    if not config.LOCKOUT_ENABLED or failed_count < config.LOCKOUT_THRESHOLD:
        return None
    now = now or datetime.now(timezone.utc)
    rounds = failed_count // config.LOCKOUT_THRESHOLD
    cooldown = min(
        config.LOCKOUT_BASE_COOLDOWN_SECONDS * 2 ** (rounds - 1),
        config.LOCKOUT_MAX_COOLDOWN_SECONDS,
    )
    return now + timedelta(seconds=cooldown)
