"""
Synchronise local providers with the PCG provider list and registration status.

- sync_providers: pull every page, update known NPIs in batches of 100 and
  create unknown ones in batches of 50 under the "System" customer. Each
  batch is its own transaction; a failed batch is rolled back and skipped,
  so earlier batches stay applied.
- fetch_registrations: fetch the registration status of every provider that
  has a PCG id and a complete address, one at a time in groups of 20. A
  failed lookup stores a FETCH_ERROR record instead of stopping the run.
"""
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, TypeVar
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from provider_admin.features.customers.models import SYSTEM_CUSTOMER_NAME, Customer, ProviderGroup
from provider_admin.features.pcg.client import PcgClient, PcgError
from provider_admin.features.pcg.schemas import EmdrRow
from provider_admin.features.providers.models import Provider, ProviderRegistrationStatus, UserNpi
from provider_admin.features.users.models import User
from provider_admin.utils import get_logger


log = get_logger(__name__)

UPDATE_BATCH_SIZE = 100
CREATE_BATCH_SIZE = 50
REGISTRATION_GROUP_SIZE = 20
FETCH_ERROR_CODE = "FETCH_ERROR"

T = TypeVar("T")

# PCG list field -> Provider column
REMOTE_FIELD_MAP = {
    "provider_name": "name",
    "provider_street": "provider_street",
    "provider_street2": "provider_street2",
    "provider_city": "provider_city",
    "provider_state": "provider_state",
    "provider_zip": "provider_zip",
    "provider_id": "pcg_provider_id",
}


@dataclass
class SyncResult:
    fetched: int = 0
    updated: int = 0
    created: int = 0
    failed_batches: list[str] = field(default_factory=list)


@dataclass
class RegistrationFetchResult:
    candidates: int = 0
    errors: int = 0


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def _csv(value: Any) -> Optional[str]:
    if isinstance(value, list):
        return ",".join(str(v) for v in value)
    return value if isinstance(value, str) else None


def build_update_from_remote(item: dict[str, Any]) -> dict[str, Any]:
    """
    Provider column values taken from a PCG list item.

    Only fields present in the item are returned, so a field PCG omits
    leaves the local value alone while an explicit null clears it.
    """
    values: dict[str, Any] = {}
    for remote_key, column in REMOTE_FIELD_MAP.items():
        if remote_key in item:
            values[column] = _text(item[remote_key])
    return values


async def get_system_customer_id(db: AsyncSession) -> str:
    """Id of the customer holding unclaimed PCG providers, created on first use."""
    result = await db.execute(select(Customer.id).where(Customer.name == SYSTEM_CUSTOMER_NAME).limit(1))
    customer_id = result.scalar_one_or_none()
    if customer_id:
        return customer_id
    customer = Customer(name=SYSTEM_CUSTOMER_NAME, description="Auto-created for unassigned providers from PCG list")
    db.add(customer)
    await db.commit()
    log.info("Created %r customer %s", SYSTEM_CUSTOMER_NAME, customer.id)
    return customer.id


async def sync_providers(db: AsyncSession, pcg: PcgClient) -> SyncResult:
    """
    Pull the full PCG provider list and merge it into the providers table.

    Raises:
        PcgError: the list could not be fetched; nothing was written
    """
    remote = await pcg.get_all_providers()

    # Last occurrence wins when PCG lists an NPI twice
    by_npi: dict[str, dict[str, Any]] = {}
    for item in remote:
        npi = _text(item.get("providerNPI"))
        if npi:
            by_npi[npi.strip()] = item

    result = SyncResult(fetched=len(by_npi))
    if not by_npi:
        return result

    system_customer_id = await get_system_customer_id(db)
    existing = set(
        (await db.execute(select(Provider.npi).where(Provider.npi.in_(list(by_npi))))).scalars().all()
    )
    updates = [(npi, item) for npi, item in by_npi.items() if npi in existing]
    creates = [(npi, item) for npi, item in by_npi.items() if npi not in existing]
    now = datetime.now(timezone.utc)

    for index, batch in enumerate(chunked(updates, UPDATE_BATCH_SIZE)):
        try:
            for npi, item in batch:
                await db.execute(
                    update(Provider)
                    .where(Provider.npi == npi)
                    .values(**build_update_from_remote(item), pcg_list_snapshot=item, pcg_list_at=now)
                )
            await db.commit()
            result.updated += len(batch)
        except SQLAlchemyError as exc:
            await db.rollback()
            log.exception("PCG sync update batch %d failed", index)
            result.failed_batches.append(f"update batch {index}: {exc.__class__.__name__}")

    for index, batch in enumerate(chunked(creates, CREATE_BATCH_SIZE)):
        try:
            for npi, item in batch:
                db.add(Provider(
                    npi=npi,
                    customer_id=system_customer_id,
                    name=_text(item.get("provider_name")),
                    provider_street=_text(item.get("provider_street")),
                    provider_street2=_text(item.get("provider_street2")),
                    provider_city=_text(item.get("provider_city")),
                    provider_state=_text(item.get("provider_state")),
                    provider_zip=_text(item.get("provider_zip")),
                    pcg_provider_id=_text(item.get("provider_id")),
                    pcg_list_snapshot=item,
                    pcg_list_at=now,
                ))
            await db.commit()
            result.created += len(batch)
        except SQLAlchemyError as exc:
            await db.rollback()
            log.exception("PCG sync create batch %d failed", index)
            result.failed_batches.append(f"create batch {index}: {exc.__class__.__name__}")

    log.info(
        "PCG sync: fetched=%d updated=%d created=%d failed_batches=%d",
        result.fetched, result.updated, result.created, len(result.failed_batches)
    )
    return result


async def refresh_list_snapshot(db: AsyncSession, pcg: PcgClient, npi: str) -> bool:
    """
    Re-read the provider list and store the row for ``npi``.

    Best effort: failures are logged and reported as False.
    """
    try:
        remote = await pcg.get_all_providers()
        match = next((item for item in remote if _text(item.get("providerNPI")) == npi), None)
        if match is None:
            return False
        await db.execute(
            update(Provider)
            .where(Provider.npi == npi)
            .values(pcg_list_snapshot=match, pcg_list_at=datetime.now(timezone.utc))
        )
        await db.commit()
        return True
    except (PcgError, SQLAlchemyError) as exc:
        await db.rollback()
        log.warning("Refreshing PCG list snapshot for NPI %s failed: %s", npi, exc)
        return False


def registration_values(reg: dict[str, Any]) -> dict[str, Any]:
    """ProviderRegistrationStatus column values from a PCG registration answer."""
    return {
        "fetched_at": datetime.now(timezone.utc),
        "provider_npi": _text(reg.get("providerNPI")) or "",
        "pcg_provider_id": _text(reg.get("provider_id")) or "",
        "reg_status": _text(reg.get("reg_status")),
        "stage": _text(reg.get("stage")),
        "submission_status": _text(reg.get("submission_status")),
        "status": _text(reg.get("status")),
        "call_error_code": _text(reg.get("call_error_code")),
        "call_error_description": _text(reg.get("call_error_description")),
        "provider_name": _text(reg.get("provider_name")),
        "provider_street": _text(reg.get("provider_street")),
        "provider_street2": _text(reg.get("provider_street2")),
        "provider_city": _text(reg.get("provider_city")),
        "provider_state": _text(reg.get("provider_state")),
        "provider_zip": _text(reg.get("provider_zip")),
        "transaction_id_list": _csv(reg.get("transaction_id_list")),
        "status_changes": reg.get("status_changes") or [],
        "errors": reg.get("errors") or [],
        "error_list": reg.get("errorList") or [],
    }


async def upsert_registration_status(db: AsyncSession, provider_id: str, reg: dict[str, Any]) -> None:
    """Insert or overwrite the registration snapshot of one provider and commit."""
    values = registration_values(reg)
    result = await db.execute(
        select(ProviderRegistrationStatus).where(ProviderRegistrationStatus.provider_id == provider_id)
    )
    status = result.scalar_one_or_none()
    if status is None:
        db.add(ProviderRegistrationStatus(provider_id=provider_id, **values))
    else:
        for key, value in values.items():
            setattr(status, key, value)
    await db.commit()


def fetch_error_record(npi: str, pcg_provider_id: Optional[str], error: Exception) -> dict[str, Any]:
    message = str(error) or "Failed to fetch registration"
    return {
        "providerNPI": npi,
        "provider_id": pcg_provider_id,
        "call_error_code": FETCH_ERROR_CODE,
        "call_error_description": message,
        "errorList": [message],
        "status_changes": [],
        "errors": [],
    }


async def registration_candidates(db: AsyncSession) -> list[tuple[str, str, str]]:
    """(id, npi, pcg id) of providers with a PCG id and a complete name and address."""
    result = await db.execute(
        select(Provider.id, Provider.npi, Provider.pcg_provider_id)
        .where(
            Provider.pcg_provider_id.is_not(None),
            Provider.pcg_provider_id != "",
            Provider.name.is_not(None),
            Provider.provider_street.is_not(None),
            Provider.provider_city.is_not(None),
            Provider.provider_state.is_not(None),
            Provider.provider_zip.is_not(None),
        )
        .order_by(Provider.npi)
    )
    return [tuple(row) for row in result.all()]


async def fetch_registrations(db: AsyncSession, pcg: PcgClient) -> RegistrationFetchResult:
    candidates = await registration_candidates(db)
    result = RegistrationFetchResult(candidates=len(candidates))

    for group in chunked(candidates, REGISTRATION_GROUP_SIZE):
        for provider_id, npi, pcg_provider_id in group:
            fetch_failed = False
            try:
                reg = await pcg.get_provider_registration(pcg_provider_id)
            except PcgError as exc:
                fetch_failed = True
                result.errors += 1
                log.warning("Registration fetch for NPI %s failed: %s", npi, exc)
                reg = fetch_error_record(npi, pcg_provider_id, exc)
            try:
                await upsert_registration_status(db, provider_id, reg)
            except SQLAlchemyError:
                await db.rollback()
                if not fetch_failed:
                    result.errors += 1
                log.exception("Storing registration status for NPI %s failed", npi)

    log.info("Fetched registrations: candidates=%d errors=%d", result.candidates, result.errors)
    return result


# ============================================================================
# Page rows
# ============================================================================

def _split_ids(value: Optional[str]) -> Optional[list[str]]:
    if not value:
        return None
    return [part for part in value.split(",") if part]


async def compose_rows(db: AsyncSession) -> list[EmdrRow]:
    """
    One row per provider, merging the stored registration status (preferred),
    the last PCG list snapshot and the provider's own columns.
    """
    providers = (
        await db.execute(
            select(Provider)
            .order_by(Provider.customer_id, Provider.npi)
            .execution_options(populate_existing=True)
        )
    ).scalars().all()
    customer_names = dict((await db.execute(select(Customer.id, Customer.name))).all())
    group_names = dict((await db.execute(select(ProviderGroup.id, ProviderGroup.name))).all())

    assigned: dict[str, list[tuple[str, str]]] = {}
    assignment_rows = await db.execute(
        select(UserNpi.provider_id, User.username, User.email).join(User, User.id == UserNpi.user_id)
    )
    for provider_id, username, email in assignment_rows.all():
        assigned.setdefault(provider_id, []).append((username, email))

    rows = []
    for p in providers:
        snap = p.pcg_list_snapshot or {}
        rs = p.registration_status
        users = assigned.get(p.id, [])
        rows.append(EmdrRow(
            id=p.id,
            npi=p.npi,
            provider_name=_text(snap.get("provider_name")) or p.name,
            pcg_provider_id=(rs.pcg_provider_id if rs else None) or _text(snap.get("provider_id")) or p.pcg_provider_id,
            customer_id=p.customer_id,
            customer_name=customer_names.get(p.customer_id),
            provider_group_name=group_names.get(p.provider_group_id) if p.provider_group_id else None,
            provider_street=_text(snap.get("provider_street")) or p.provider_street,
            provider_street2=_text(snap.get("provider_street2")) or p.provider_street2,
            provider_city=_text(snap.get("provider_city")) or p.provider_city,
            provider_state=_text(snap.get("provider_state")) or p.provider_state,
            provider_zip=_text(snap.get("provider_zip")) or p.provider_zip,
            registered_for_emdr=bool(snap.get("registered_for_emdr")),
            registered_for_emdr_electronic_only=bool(snap.get("registered_for_emdr_electronic_only")),
            last_submitted_transaction=_text(snap.get("last_submitted_transaction")),
            reg_status=(rs.reg_status if rs else None) or _text(snap.get("reg_status")),
            stage=(rs.stage if rs else None) or _text(snap.get("stage")),
            status=(rs.status if rs else None) or _text(snap.get("status")),
            submission_status=rs.submission_status if rs else None,
            call_error_code=rs.call_error_code if rs else None,
            transaction_id_list=_split_ids(rs.transaction_id_list if rs else None)
            or _split_ids(_csv(snap.get("transaction_id_list"))),
            status_changes=(rs.status_changes if rs else None) or snap.get("status_changes") or [],
            errors=(rs.errors if rs else None) or snap.get("errors") or [],
            error_list=(rs.error_list if rs else None) or snap.get("errorList") or [],
            registration_fetched_at=rs.fetched_at if rs else None,
            pcg_list_at=p.pcg_list_at,
            pcg_update_response=p.pcg_update_response,
            pcg_update_at=p.pcg_update_at,
            assigned_usernames=[u for u, _ in users if u],
            assigned_emails=[e for _, e in users if e],
        ))
    return rows
