"""
System-admin page for PCG provider sync and eMDR registration.

Every POST intent ends in a redirect back to the page with a toast. A PCG
failure is reported as an error toast; local writes made before the
failure are kept.
"""
from datetime import datetime, timezone
from typing import Annotated, Any, Optional
from fastapi import APIRouter, Depends, Request, Response
from pydantic import TypeAdapter
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from provider_admin.core.database.engine import get_db
from provider_admin.core.errors import RuleViolation, TargetNotFound
from provider_admin.core.forms import parse_action, read_payload
from provider_admin.features.access.roles import RoleName
from provider_admin.features.access.scope import CallerContext
from provider_admin.features.audit.service import AuditActor, write_audit
from provider_admin.features.customers.models import SYSTEM_CUSTOMER_NAME, Customer
from provider_admin.features.notifications.toast import Toast, pop_toast, redirect_with_toast
from provider_admin.features.pcg.client import PcgClient, PcgError, get_pcg_client
from provider_admin.features.pcg.schemas import (
    CustomerOption,
    EmdrAction,
    EmdrIntent,
    EmdrPage,
    FetchProviders,
    FetchRegistrations,
    ReassignProviderCustomer,
    RenameCustomer,
    UpdateProvider,
)
from provider_admin.features.pcg.sync import (
    compose_rows,
    fetch_registrations,
    refresh_list_snapshot,
    sync_providers,
    upsert_registration_status,
)
from provider_admin.features.providers.models import Provider, UserNpi
from provider_admin.features.users.dependencies import require_roles
from provider_admin.utils import get_logger


log = get_logger(__name__)

router = APIRouter(tags=["pcg"])

PAGE_URL = "/admin/providers-emdr"

intent_adapter = TypeAdapter(EmdrIntent)

require_system_admin = require_roles(RoleName.SYSTEM_ADMIN)

EMDR_AUDIT = {
    "emdr-register": ("ADMIN_EMDR_REGISTER", "eMDR registered"),
    "emdr-deregister": ("ADMIN_EMDR_DEREGISTER", "eMDR deregistered"),
    "emdr-electronic-only": ("ADMIN_EMDR_SET_ELECTRONIC_ONLY", "Electronic-only ADR set"),
}


def _success(title: str, description: str) -> Toast:
    return Toast(type="success", title=title, description=description)


def _failure(title: str, description: str) -> Toast:
    return Toast(type="error", title=title, description=description)


async def _provider_by_npi(db: AsyncSession, npi: str) -> Optional[Provider]:
    result = await db.execute(select(Provider).where(Provider.npi == npi))
    return result.scalar_one_or_none()


async def list_customer_options(db: AsyncSession) -> list[CustomerOption]:
    result = await db.execute(select(Customer.id, Customer.name).order_by(Customer.name))
    return [CustomerOption(id=cid, name=name) for cid, name in result.all()]


# ============================================================================
# Intent handlers
# ============================================================================

async def handle_fetch(db: AsyncSession, pcg: PcgClient, actor: AuditActor) -> Toast:
    try:
        result = await sync_providers(db, pcg)
    except PcgError as exc:
        await write_audit(
            db, actor, "ADMIN_FETCH_PCG_PROVIDERS", "PROVIDER",
            success=False, message="PCG provider list fetch failed", details={"error": exc.message},
        )
        return _failure("PCG fetch failed", exc.message)

    await write_audit(
        db, actor, "ADMIN_FETCH_PCG_PROVIDERS", "PROVIDER",
        success=not result.failed_batches,
        message="Fetched PCG provider list",
        details={
            "fetched": result.fetched,
            "updated": result.updated,
            "created": result.created,
            "failed_batches": result.failed_batches,
        },
    )
    description = f"{result.fetched} fetched, {result.updated} updated, {result.created} created."
    if result.failed_batches:
        return _failure("Providers partially synced", f"{description} Failed: {'; '.join(result.failed_batches)}")
    return _success("Providers synced", description)


async def handle_update_provider(
    db: AsyncSession, pcg: PcgClient, actor: AuditActor, action: UpdateProvider
) -> Toast:
    payload = action.to_pcg_payload()
    try:
        response = await pcg.update_provider(payload)
    except PcgError as exc:
        await write_audit(
            db, actor, "ADMIN_UPDATE_PROVIDER_DETAILS", "PROVIDER",
            success=False, message="PCG update provider failed", details={**payload, "error": exc.message},
        )
        return _failure("Provider update failed", exc.message)

    pcg_provider_id = response.get("provider_id")
    provider = await _provider_by_npi(db, action.provider_npi)
    if provider is not None:
        provider.name = action.provider_name
        provider.provider_street = action.provider_street
        provider.provider_street2 = action.provider_street2 or None
        provider.provider_city = action.provider_city
        provider.provider_state = action.provider_state
        provider.provider_zip = action.provider_zip
        if pcg_provider_id:
            provider.pcg_provider_id = str(pcg_provider_id)
        provider.pcg_update_response = response
        provider.pcg_update_at = datetime.now(timezone.utc)
        await db.commit()

    await write_audit(
        db, actor, "ADMIN_UPDATE_PROVIDER_DETAILS", "PROVIDER",
        entity_id=provider.id if provider else None,
        message=(
            "Provider details updated in PCG and local DB" if provider
            else "PCG provider updated (no local provider record)"
        ),
        details={**payload, "provider_id": pcg_provider_id},
    )
    await refresh_list_snapshot(db, pcg, action.provider_npi)
    return _success("Provider updated", f"NPI {action.provider_npi} was updated in PCG.")


async def handle_fetch_registrations(db: AsyncSession, pcg: PcgClient, actor: AuditActor) -> Toast:
    result = await fetch_registrations(db, pcg)
    await write_audit(
        db, actor, "ADMIN_FETCH_REGISTRATIONS", "PROVIDER",
        success=result.errors == 0,
        message="Fetched eMDR registration status",
        details={"candidates": result.candidates, "errors": result.errors},
    )
    description = f"{result.candidates} providers checked, {result.errors} failed."
    if result.errors:
        return _failure("Registrations partially fetched", description)
    return _success("Registrations fetched", description)


async def handle_emdr(db: AsyncSession, pcg: PcgClient, actor: AuditActor, action: EmdrAction) -> Toast:
    audit_action, done_message = EMDR_AUDIT[action.intent]
    provider = await _provider_by_npi(db, action.provider_npi) if action.provider_npi else None
    try:
        if action.intent == "emdr-register":
            response = await pcg.set_emdr_registration(action.provider_id, True)
        elif action.intent == "emdr-deregister":
            response = await pcg.set_emdr_registration(action.provider_id, False)
        else:
            response = await pcg.set_electronic_only(action.provider_id)
    except PcgError as exc:
        await write_audit(
            db, actor, audit_action, "PROVIDER",
            success=False, message="PCG eMDR action failed",
            details={"provider_id": action.provider_id, "provider_npi": action.provider_npi, "error": exc.message},
        )
        if action.provider_npi:
            await refresh_list_snapshot(db, pcg, action.provider_npi)
        return _failure("eMDR action failed", exc.message)

    provider_id = provider.id if provider is not None else None
    if provider is not None:
        provider.pcg_update_response = response
        provider.pcg_update_at = datetime.now(timezone.utc)
        if response.get("provider_id"):
            provider.pcg_provider_id = str(response["provider_id"])
        await db.commit()

        try:
            reg = await pcg.get_provider_registration(action.provider_id)
            await upsert_registration_status(db, provider_id, reg)
        except PcgError as exc:
            log.warning("Registration refresh after %s for NPI %s failed: %s", action.intent, action.provider_npi, exc)
        except SQLAlchemyError:
            await db.rollback()
            log.exception("Storing registration after %s for NPI %s failed", action.intent, action.provider_npi)

    await write_audit(
        db, actor, audit_action, "PROVIDER",
        entity_id=provider_id,
        message=done_message,
        details={"provider_id": action.provider_id, "provider_npi": action.provider_npi, "response": response},
    )
    if action.provider_npi:
        await refresh_list_snapshot(db, pcg, action.provider_npi)
    return _success(done_message, f"PCG provider {action.provider_id}")


async def handle_reassign(db: AsyncSession, actor: AuditActor, action: ReassignProviderCustomer) -> Toast:
    provider = await _provider_by_npi(db, action.provider_npi)
    if provider is None:
        raise TargetNotFound("Provider not found")
    customer = await db.get(Customer, action.customer_id)
    if customer is None:
        raise TargetNotFound("Customer not found")

    from_customer_id = provider.customer_id
    if from_customer_id != customer.id:
        assigned = await db.scalar(
            select(func.count()).select_from(UserNpi).where(UserNpi.provider_id == provider.id)
        )
        if assigned:
            raise RuleViolation(
                "Provider still assigned",
                f"NPI {action.provider_npi} is assigned to {assigned} user(s). Remove the assignments first.",
            )
        # The old customer's group does not exist under the new one
        provider.provider_group_id = None
    provider.customer_id = customer.id
    await db.commit()

    await write_audit(
        db, actor, "ADMIN_REASSIGN_PROVIDER_CUSTOMER", "PROVIDER",
        entity_id=provider.id,
        customer_id=customer.id,
        message="Provider reassigned to customer",
        details={
            "provider_npi": action.provider_npi,
            "from_customer_id": from_customer_id,
            "to_customer_id": customer.id,
            "to_customer_name": customer.name,
        },
    )
    return _success("Provider reassigned", f"NPI {action.provider_npi} now belongs to {customer.name}.")


async def handle_rename(db: AsyncSession, actor: AuditActor, action: RenameCustomer) -> Toast:
    customer = await db.get(Customer, action.customer_id)
    if customer is None:
        raise TargetNotFound("Customer not found")

    old_name = customer.name
    details: dict[str, Any] = {"from": old_name, "to": action.name}
    if old_name == SYSTEM_CUSTOMER_NAME and action.name != SYSTEM_CUSTOMER_NAME:
        await write_audit(
            db, actor, "ADMIN_RENAME_CUSTOMER", "CUSTOMER",
            entity_id=customer.id, success=False,
            message=f'Attempted to rename reserved "{SYSTEM_CUSTOMER_NAME}" customer',
            details=details,
        )
        raise RuleViolation(
            "Rename refused",
            f'The special "{SYSTEM_CUSTOMER_NAME}" customer is reserved and cannot be renamed.',
        )

    customer.name = action.name
    await db.commit()
    await write_audit(
        db, actor, "ADMIN_RENAME_CUSTOMER", "CUSTOMER",
        entity_id=customer.id, message="Customer renamed", details=details,
    )
    return _success("Customer renamed", f"{old_name} is now {action.name}.")


# ============================================================================
# Routes
# ============================================================================

@router.get(PAGE_URL, response_model=EmdrPage)
async def providers_emdr_page(
    request: Request,
    response: Response,
    _caller: Annotated[CallerContext, Depends(require_system_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Every provider with its PCG list snapshot and registration status."""
    rows = await compose_rows(db)
    return EmdrPage(
        rows=rows,
        customers=await list_customer_options(db),
        total=len(rows),
        toast=pop_toast(request, response),
    )


@router.post(PAGE_URL, response_model=None)
async def providers_emdr_action(
    request: Request,
    caller: Annotated[CallerContext, Depends(require_system_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
    pcg: Annotated[PcgClient, Depends(get_pcg_client)],
):
    action = parse_action(intent_adapter, await read_payload(request))
    actor = AuditActor.from_request(request, caller.user_id, caller.roles)
    log.info("eMDR page intent %s by %s", action.intent, caller.user_id)

    if isinstance(action, FetchProviders):
        toast = await handle_fetch(db, pcg, actor)
    elif isinstance(action, UpdateProvider):
        toast = await handle_update_provider(db, pcg, actor, action)
    elif isinstance(action, FetchRegistrations):
        toast = await handle_fetch_registrations(db, pcg, actor)
    elif isinstance(action, EmdrAction):
        toast = await handle_emdr(db, pcg, actor, action)
    elif isinstance(action, ReassignProviderCustomer):
        toast = await handle_reassign(db, actor, action)
    elif isinstance(action, RenameCustomer):
        toast = await handle_rename(db, actor, action)
    else:
        raise ValueError(f"Unhandled intent {action.intent!r}")
    return redirect_with_toast(PAGE_URL, toast)
