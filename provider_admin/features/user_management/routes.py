"""
User management pages.

``/customer/users`` serves customer-admins and provider-group-admins;
``/admin/customers/{customer_id}/users`` serves system-admins and writes
an audit trail. Both accept the same intents.
"""
from typing import Annotated
from fastapi import APIRouter, Depends, Query, Request, Response
from pydantic import TypeAdapter
from sqlalchemy.ext.asyncio import AsyncSession

from provider_admin.core.database.engine import get_db
from provider_admin.core.forms import parse_action, read_payload
from provider_admin.features.access.roles import RoleName
from provider_admin.features.access.scope import CallerContext
from provider_admin.features.audit.service import AuditActor
from provider_admin.features.notifications.email import EmailSender, get_email_sender
from provider_admin.features.notifications.toast import pop_toast, redirect_with_toast
from provider_admin.features.user_management.schemas import (
    AssignNpis,
    AvailabilityResponse,
    CheckAvailability,
    CreateUser,
    CustomerSummary,
    DeleteUser,
    ManagedUser,
    ProviderGroupSummary,
    ProviderSummary,
    ResetPassword,
    SetActive,
    UpdateUser,
    UserAction,
    UsersPage,
)
from provider_admin.features.user_management.service import ActionOutcome, UserManager
from provider_admin.features.users.dependencies import require_roles
from provider_admin.utils import get_logger


log = get_logger(__name__)

router = APIRouter(tags=["user-management"])

action_adapter = TypeAdapter(UserAction)

require_customer_side_admin = require_roles(RoleName.CUSTOMER_ADMIN, RoleName.PROVIDER_GROUP_ADMIN)
require_system_admin = require_roles(RoleName.SYSTEM_ADMIN)


async def build_users_page(manager: UserManager, search: str) -> UsersPage:
    customer = await manager.get_customer()
    groups = await manager.list_provider_groups()
    providers = await manager.list_providers()
    users = await manager.list_users(search)
    assignments = await manager.assignments_for([u.id for u in users])

    group_names = {g.id: g.name for g in groups}
    managed = [
        ManagedUser(
            id=u.id,
            name=u.name,
            email=u.email,
            username=u.username,
            active=u.active,
            must_change_password=u.must_change_password,
            roles=sorted(r.value for r in u.role_set),
            provider_group_id=u.provider_group_id,
            provider_group_name=group_names.get(u.provider_group_id) if u.provider_group_id else None,
            npis=[ProviderSummary.model_validate(p) for p in assignments[u.id]],
            created_at=u.created_at,
        )
        for u in users
    ]
    group_summaries = [
        ProviderGroupSummary(
            id=g.id,
            name=g.name,
            user_count=sum(1 for u in users if u.provider_group_id == g.id),
            provider_count=sum(1 for p in providers if p.provider_group_id == g.id),
        )
        for g in groups
    ]
    return UsersPage(
        customer=CustomerSummary.model_validate(customer),
        provider_groups=group_summaries,
        providers=[ProviderSummary.model_validate(p) for p in providers],
        users=managed,
        search=search,
    )


async def dispatch(manager: UserManager, request: Request, page_url: str):
    """Validate the posted intent and run it."""
    action = parse_action(action_adapter, await read_payload(request))
    log.debug("User management intent %s by %s", action.intent, manager.caller.user_id)

    if isinstance(action, CheckAvailability):
        return AvailabilityResponse(exists=await manager.check_availability(action))

    outcome: ActionOutcome
    if isinstance(action, CreateUser):
        outcome = await manager.handle_create(action)
    elif isinstance(action, UpdateUser):
        outcome = await manager.handle_update(action)
    elif isinstance(action, DeleteUser):
        outcome = await manager.handle_delete(action)
    elif isinstance(action, AssignNpis):
        outcome = await manager.handle_assign_npis(action)
    elif isinstance(action, ResetPassword):
        outcome = await manager.handle_reset_password(action)
    elif isinstance(action, SetActive):
        outcome = await manager.handle_set_active(action)
    else:
        raise ValueError(f"Unhandled intent {action.intent!r}")
    return redirect_with_toast(page_url, outcome.toast)


# Customer-side administration
@router.get("/customer/users", response_model=UsersPage)
async def customer_users_page(
    request: Request,
    response: Response,
    caller: Annotated[CallerContext, Depends(require_customer_side_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
    email_sender: Annotated[EmailSender, Depends(get_email_sender)],
    search: str = Query(default="", max_length=100),
):
    """Users, provider groups and providers visible to the caller."""
    manager = UserManager.for_customer_route(db, caller, email_sender)
    page = await build_users_page(manager, search.strip())
    page.toast = pop_toast(request, response)
    return page


@router.post("/customer/users", response_model=None)
async def customer_users_action(
    request: Request,
    caller: Annotated[CallerContext, Depends(require_customer_side_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
    email_sender: Annotated[EmailSender, Depends(get_email_sender)],
):
    manager = UserManager.for_customer_route(db, caller, email_sender)
    return await dispatch(manager, request, "/customer/users")


# System administration of any customer
@router.get("/admin/customers/{customer_id}/users", response_model=UsersPage)
async def admin_customer_users_page(
    customer_id: str,
    request: Request,
    response: Response,
    caller: Annotated[CallerContext, Depends(require_system_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
    email_sender: Annotated[EmailSender, Depends(get_email_sender)],
    search: str = Query(default="", max_length=100),
):
    manager = UserManager.for_system_admin(db, caller, customer_id, email_sender)
    page = await build_users_page(manager, search.strip())
    page.toast = pop_toast(request, response)
    return page


@router.post("/admin/customers/{customer_id}/users", response_model=None)
async def admin_customer_users_action(
    customer_id: str,
    request: Request,
    caller: Annotated[CallerContext, Depends(require_system_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
    email_sender: Annotated[EmailSender, Depends(get_email_sender)],
):
    manager = UserManager.for_system_admin(
        db,
        caller,
        customer_id,
        email_sender,
        audit_actor=AuditActor.from_request(request, caller.user_id, caller.roles),
    )
    # 404 before any intent runs
    await manager.get_customer()
    return await dispatch(manager, request, f"/admin/customers/{customer_id}/users")
