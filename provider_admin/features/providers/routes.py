"""
Provider (NPI) routes.

``/providers`` and ``/my-npis`` are read routes filtered by the caller's
scope. The administration pages post intents: system-admins manage any
customer's providers, customer-admins move their own providers between
provider groups.
"""
from typing import Annotated
from fastapi import APIRouter, Depends, Query, Request, Response
from pydantic import TypeAdapter
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from provider_admin.core.database.engine import get_db
from provider_admin.core.forms import parse_action, read_payload
from provider_admin.features.access.roles import RoleName
from provider_admin.features.access.scope import CallerContext, resolve_scope
from provider_admin.features.audit.service import AuditActor
from provider_admin.features.notifications.toast import Toast, pop_toast, redirect_with_toast
from provider_admin.features.providers.models import Provider, UserNpi
from provider_admin.features.providers.schemas import (
    CreateProvider,
    DeleteProvider,
    EditProvider,
    GroupOption,
    ProviderAction,
    ProviderResponse,
    ProvidersPage,
    SetProviderGroup,
    ToggleProviderActive,
)
from provider_admin.features.providers.service import ProviderManager
from provider_admin.features.users.dependencies import get_caller, require_roles
from provider_admin.utils import LIKE_ESCAPE, contains_pattern, get_logger


log = get_logger(__name__)

router = APIRouter(tags=["providers"])

action_adapter = TypeAdapter(ProviderAction)
group_move_adapter = TypeAdapter(SetProviderGroup)

require_system_admin = require_roles(RoleName.SYSTEM_ADMIN)
require_customer_admin = require_roles(RoleName.CUSTOMER_ADMIN)


@router.get("/providers", response_model=list[ProviderResponse])
async def list_providers(
    caller: Annotated[CallerContext, Depends(get_caller)],
    db: Annotated[AsyncSession, Depends(get_db)],
    search: str = Query(default="", max_length=100),
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
):
    """
    Providers visible to the caller.

    System-admins see every provider, customer-admins their customer's,
    provider-group-admins their group's and basic users the NPIs assigned
    to them. A caller whose scope cannot be resolved gets an empty list.
    """
    scope = resolve_scope(caller)
    if scope.is_empty:
        return []

    query = select(Provider).where(scope.providers_clause())
    search = search.strip()
    if search:
        pattern = contains_pattern(search)
        query = query.where(
            or_(Provider.npi.like(pattern, escape=LIKE_ESCAPE), func.lower(Provider.name).like(pattern, escape=LIKE_ESCAPE))
        )
    result = await db.execute(query.order_by(Provider.npi).offset(skip).limit(limit))
    return result.scalars().all()


@router.get("/my-npis", response_model=list[ProviderResponse])
async def list_my_npis(
    caller: Annotated[CallerContext, Depends(get_caller)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Providers explicitly assigned to the caller, whatever their role."""
    result = await db.execute(
        select(Provider)
        .join(UserNpi, UserNpi.provider_id == Provider.id)
        .where(UserNpi.user_id == caller.user_id)
        .order_by(Provider.npi)
    )
    return result.scalars().all()


# Administration
async def build_providers_page(manager: ProviderManager, search: str) -> ProvidersPage:
    customer = await manager.get_customer()
    return ProvidersPage(
        customer_id=customer.id,
        customer_name=customer.name,
        provider_groups=[GroupOption.model_validate(g) for g in await manager.list_groups()],
        providers=[ProviderResponse.model_validate(p) for p in await manager.list_providers(search)],
        search=search,
    )


async def dispatch(manager: ProviderManager, request: Request, page_url: str):
    action = parse_action(action_adapter, await read_payload(request))
    log.debug("Provider intent %s by %s", action.intent, manager.caller.user_id)

    toast: Toast
    if isinstance(action, CreateProvider):
        toast = await manager.handle_create(action)
    elif isinstance(action, EditProvider):
        toast = await manager.handle_update(action)
    elif isinstance(action, ToggleProviderActive):
        toast = await manager.handle_toggle_active(action)
    elif isinstance(action, SetProviderGroup):
        toast = await manager.handle_set_group(action)
    elif isinstance(action, DeleteProvider):
        toast = await manager.handle_delete(action)
    else:
        raise ValueError(f"Unhandled intent {action.intent!r}")
    return redirect_with_toast(page_url, toast)


@router.get("/customer/providers", response_model=ProvidersPage)
async def customer_providers_page(
    request: Request,
    response: Response,
    caller: Annotated[CallerContext, Depends(require_customer_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
    search: str = Query(default="", max_length=100),
):
    """The caller's customer's providers and the groups they can move into."""
    manager = ProviderManager.for_customer_admin(db, caller)
    page = await build_providers_page(manager, search.strip())
    page.toast = pop_toast(request, response)
    return page


@router.post("/customer/providers", response_model=None)
async def customer_providers_action(
    request: Request,
    caller: Annotated[CallerContext, Depends(require_customer_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Only ``update-group`` is accepted here."""
    manager = ProviderManager.for_customer_admin(
        db, caller, audit_actor=AuditActor.from_request(request, caller.user_id, caller.roles)
    )
    action = parse_action(group_move_adapter, await read_payload(request))
    toast = await manager.handle_set_group(action)
    return redirect_with_toast("/customer/providers", toast)


@router.get("/admin/customers/{customer_id}/providers", response_model=ProvidersPage)
async def admin_providers_page(
    customer_id: str,
    request: Request,
    response: Response,
    caller: Annotated[CallerContext, Depends(require_system_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
    search: str = Query(default="", max_length=100),
):
    manager = ProviderManager.for_system_admin(db, caller, customer_id)
    page = await build_providers_page(manager, search.strip())
    page.toast = pop_toast(request, response)
    return page


@router.post("/admin/customers/{customer_id}/providers", response_model=None)
async def admin_providers_action(
    customer_id: str,
    request: Request,
    caller: Annotated[CallerContext, Depends(require_system_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    manager = ProviderManager.for_system_admin(
        db,
        caller,
        customer_id,
        audit_actor=AuditActor.from_request(request, caller.user_id, caller.roles),
    )
    await manager.get_customer()
    return await dispatch(manager, request, f"/admin/customers/{customer_id}/providers")
