"""
Customer overview and administration for system administrators, and
provider group management for customer-admins and system-admins.
"""
from typing import Annotated
from fastapi import APIRouter, Depends, Query, Request, Response
from pydantic import TypeAdapter
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from provider_admin.core.database.engine import get_db
from provider_admin.core.forms import parse_action, read_payload
from provider_admin.features.access.roles import RoleName
from provider_admin.features.access.scope import CallerContext
from provider_admin.features.audit.service import AuditActor
from provider_admin.features.customers.models import Customer, ProviderGroup
from provider_admin.features.customers.schemas import (
    CreateCustomer,
    CreateProviderGroup,
    CustomerAction,
    CustomerResponse,
    DeleteProviderGroup,
    ProviderGroupAction,
    ProviderGroupsPage,
    UpdateProviderGroup,
)
from provider_admin.features.customers.service import ProviderGroupManager, create_customer, update_customer
from provider_admin.features.notifications.toast import Toast, pop_toast, redirect_with_toast
from provider_admin.features.providers.models import Provider
from provider_admin.features.users.dependencies import require_roles
from provider_admin.features.users.models import User
from provider_admin.utils import LIKE_ESCAPE, contains_pattern, get_logger


log = get_logger(__name__)

router = APIRouter(tags=["customers"])

customer_action_adapter = TypeAdapter(CustomerAction)
group_action_adapter = TypeAdapter(ProviderGroupAction)

require_system_admin = require_roles(RoleName.SYSTEM_ADMIN)
require_customer_admin = require_roles(RoleName.CUSTOMER_ADMIN)


def _count_by_customer(column):
    return select(column, func.count()).group_by(column)


@router.get("/admin/customers", response_model=list[CustomerResponse])
async def list_customers(
    _caller: Annotated[CallerContext, Depends(require_system_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
    search: str = Query(default="", max_length=100),
):
    """All customers with provider group, provider and user counts."""
    query = select(Customer).order_by(Customer.name)
    search = search.strip()
    if search:
        query = query.where(func.lower(Customer.name).like(contains_pattern(search), escape=LIKE_ESCAPE))
    customers = (await db.execute(query)).scalars().all()

    group_counts = dict((await db.execute(_count_by_customer(ProviderGroup.customer_id))).all())
    provider_counts = dict((await db.execute(_count_by_customer(Provider.customer_id))).all())
    user_counts = dict((await db.execute(_count_by_customer(User.customer_id))).all())

    return [
        CustomerResponse(
            id=c.id,
            name=c.name,
            description=c.description,
            base_npi=c.base_npi,
            provider_group_count=group_counts.get(c.id, 0),
            provider_count=provider_counts.get(c.id, 0),
            user_count=user_counts.get(c.id, 0),
            created_at=c.created_at,
        )
        for c in customers
    ]


@router.post("/admin/customers", response_model=None)
async def customers_action(
    request: Request,
    caller: Annotated[CallerContext, Depends(require_system_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Create a customer or update its name, description and base NPI."""
    action = parse_action(customer_action_adapter, await read_payload(request))
    actor = AuditActor.from_request(request, caller.user_id, caller.roles)
    if isinstance(action, CreateCustomer):
        toast = await create_customer(db, actor, action)
    else:
        toast = await update_customer(db, actor, action)
    return redirect_with_toast("/admin/customers", toast)


# Provider groups
async def build_groups_page(manager: ProviderGroupManager) -> ProviderGroupsPage:
    customer = await manager.get_customer()
    return ProviderGroupsPage(
        customer_id=customer.id,
        customer_name=customer.name,
        provider_groups=await manager.list_groups(),
    )


async def dispatch_group_action(manager: ProviderGroupManager, request: Request, page_url: str):
    action = parse_action(group_action_adapter, await read_payload(request))
    log.debug("Provider group intent %s by %s", action.intent, manager.caller.user_id)

    toast: Toast
    if isinstance(action, CreateProviderGroup):
        toast = await manager.handle_create(action)
    elif isinstance(action, UpdateProviderGroup):
        toast = await manager.handle_update(action)
    elif isinstance(action, DeleteProviderGroup):
        toast = await manager.handle_delete(action)
    else:
        raise ValueError(f"Unhandled intent {action.intent!r}")
    return redirect_with_toast(page_url, toast)


@router.get("/customer/provider-groups", response_model=ProviderGroupsPage)
async def customer_provider_groups_page(
    request: Request,
    response: Response,
    caller: Annotated[CallerContext, Depends(require_customer_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """The caller's customer's provider groups with user and provider counts."""
    manager = ProviderGroupManager.for_customer_admin(db, caller)
    page = await build_groups_page(manager)
    page.toast = pop_toast(request, response)
    return page


@router.post("/customer/provider-groups", response_model=None)
async def customer_provider_groups_action(
    request: Request,
    caller: Annotated[CallerContext, Depends(require_customer_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    manager = ProviderGroupManager.for_customer_admin(
        db, caller, audit_actor=AuditActor.from_request(request, caller.user_id, caller.roles)
    )
    return await dispatch_group_action(manager, request, "/customer/provider-groups")


@router.get("/admin/customers/{customer_id}/provider-groups", response_model=ProviderGroupsPage)
async def admin_provider_groups_page(
    customer_id: str,
    request: Request,
    response: Response,
    caller: Annotated[CallerContext, Depends(require_system_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    manager = ProviderGroupManager.for_system_admin(db, caller, customer_id)
    page = await build_groups_page(manager)
    page.toast = pop_toast(request, response)
    return page


@router.post("/admin/customers/{customer_id}/provider-groups", response_model=None)
async def admin_provider_groups_action(
    customer_id: str,
    request: Request,
    caller: Annotated[CallerContext, Depends(require_system_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    manager = ProviderGroupManager.for_system_admin(
        db,
        caller,
        customer_id,
        audit_actor=AuditActor.from_request(request, caller.user_id, caller.roles),
    )
    await manager.get_customer()
    return await dispatch_group_action(manager, request, f"/admin/customers/{customer_id}/provider-groups")
