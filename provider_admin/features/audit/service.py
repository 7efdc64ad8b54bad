"""
Best-effort audit writing.

Audit rows never decide the outcome of a request: a failed write is logged
and the request carries on.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional
from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from provider_admin.features.audit.models import AuditLog
from provider_admin.utils import get_logger


log = get_logger(__name__)


@dataclass(frozen=True)
class AuditActor:
    """Who is acting and from where; captured once per request."""
    user_id: Optional[str]
    roles_csv: str = ""
    route: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def from_request(cls, request: Request, user_id: Optional[str], roles: frozenset) -> "AuditActor":
        return cls(
            user_id=user_id,
            roles_csv=",".join(sorted(r.value for r in roles)),
            route=request.url.path,
            ip_address=request.client.host if request.client else None,
            user_agent=(request.headers.get("user-agent") or "")[:255] or None,
        )


async def write_audit(
    db: AsyncSession,
    actor: AuditActor,
    action: str,
    entity_type: str,
    *,
    success: bool = True,
    entity_id: Optional[str] = None,
    customer_id: Optional[str] = None,
    message: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> Optional[AuditLog]:
    """
    Append an audit row and commit it.

    Call only when the session holds no uncommitted primary changes, since
    the commit here would take them along.

    Returns:
        The stored AuditLog, or None if the write failed.
    """
    entry = AuditLog(
        user_id=actor.user_id,
        roles_csv=actor.roles_csv,
        customer_id=customer_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        success=success,
        message=message,
        details=details,
        route=actor.route,
        ip_address=actor.ip_address,
        user_agent=actor.user_agent,
    )
    try:
        db.add(entry)
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        log.exception("Audit write failed: action=%s entity=%s:%s", action, entity_type, entity_id)
        return None

    log.info(
        "Audit: user=%s action=%s entity=%s:%s customer=%s success=%s",
        actor.user_id, action, entity_type, entity_id, customer_id, success
    )
    return entry
