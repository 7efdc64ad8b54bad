"""
Provider (NPI) administration for one customer.

System-admins manage every provider field through
``/admin/customers/{customer_id}/providers``; customer-admins may only move
their own customer's providers between provider groups
(``/customer/providers``).

Moving a provider between groups keeps the NPI assignment rule intact: a
provider that is assigned to users outside the new group cannot move until
those assignments are removed.
"""
from typing import Optional
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from provider_admin.core.errors import ActionForbidden, FieldValidationError, RuleViolation, TargetNotFound
from provider_admin.features.access.scope import CallerContext
from provider_admin.features.audit.service import AuditActor, write_audit
from provider_admin.features.customers.models import Customer, ProviderGroup
from provider_admin.features.notifications.toast import Toast
from provider_admin.features.providers.models import Provider, ProviderRegistrationStatus, UserNpi
from provider_admin.features.providers.schemas import (
    CreateProvider,
    DeleteProvider,
    EditProvider,
    SetProviderGroup,
    ToggleProviderActive,
)
from provider_admin.features.users.models import User
from provider_admin.utils import LIKE_ESCAPE, contains_pattern, get_logger


log = get_logger(__name__)

ADDRESS_FIELDS = ("provider_street", "provider_street2", "provider_city", "provider_state", "provider_zip")


def _plural(count: int, word: str) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


def _address(action) -> dict:
    values = {name: getattr(action, name) for name in ADDRESS_FIELDS}
    if values["provider_state"]:
        values["provider_state"] = values["provider_state"].upper()
    return values


class ProviderManager:
    """Provider intents for one customer on behalf of one caller."""

    def __init__(
        self,
        db: AsyncSession,
        caller: CallerContext,
        customer_id: str,
        audit_actor: Optional[AuditActor] = None,
    ):
        self.db = db
        self.caller = caller
        self.customer_id = customer_id
        self.audit_actor = audit_actor

    @classmethod
    def for_customer_admin(
        cls,
        db: AsyncSession,
        caller: CallerContext,
        audit_actor: Optional[AuditActor] = None,
    ) -> "ProviderManager":
        if not caller.is_customer_admin:
            raise ActionForbidden("Insufficient role")
        if not caller.customer_id:
            raise FieldValidationError({"customer": "User must be associated with a customer"})
        return cls(db, caller, caller.customer_id, audit_actor)

    @classmethod
    def for_system_admin(
        cls,
        db: AsyncSession,
        caller: CallerContext,
        customer_id: str,
        audit_actor: Optional[AuditActor] = None,
    ) -> "ProviderManager":
        if not caller.is_system_admin:
            raise ActionForbidden("Insufficient role")
        return cls(db, caller, customer_id, audit_actor)

    async def get_customer(self) -> Customer:
        customer = await self.db.get(Customer, self.customer_id)
        if customer is None:
            raise TargetNotFound("Customer not found")
        return customer

    async def _audit(
        self,
        action: str,
        *,
        success: bool = True,
        target_id: Optional[str] = None,
        message: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> None:
        if self.audit_actor is None:
            return
        await write_audit(
            self.db,
            self.audit_actor,
            action,
            "Provider",
            success=success,
            entity_id=target_id,
            customer_id=self.customer_id,
            message=message,
            details=details,
        )

    async def _refuse(self, exc: Exception, action: str, target_id: Optional[str] = None) -> Exception:
        await self._audit(action, success=False, target_id=target_id, message=str(exc))
        return exc

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def list_groups(self) -> list[ProviderGroup]:
        result = await self.db.execute(
            select(ProviderGroup).where(ProviderGroup.customer_id == self.customer_id).order_by(ProviderGroup.name)
        )
        return list(result.scalars().all())

    async def list_providers(self, search: str = "") -> list[Provider]:
        query = select(Provider).where(Provider.customer_id == self.customer_id)
        if search:
            pattern = contains_pattern(search)
            query = query.where(
                Provider.npi.like(pattern, escape=LIKE_ESCAPE)
                | func.lower(Provider.name).like(pattern, escape=LIKE_ESCAPE)
            )
        result = await self.db.execute(query.order_by(Provider.npi))
        return list(result.scalars().all())

    async def _load_provider(self, provider_id: str, action: str) -> Provider:
        result = await self.db.execute(
            select(Provider).where(Provider.id == provider_id, Provider.customer_id == self.customer_id)
        )
        provider = result.scalar_one_or_none()
        if provider is None:
            raise await self._refuse(TargetNotFound("Provider not found"), action, provider_id)
        return provider

    async def _check_group(self, group_id: Optional[str], action: str, target_id: Optional[str] = None) -> None:
        if group_id is None:
            return
        result = await self.db.execute(
            select(ProviderGroup.id).where(ProviderGroup.id == group_id, ProviderGroup.customer_id == self.customer_id)
        )
        if result.first() is None:
            raise await self._refuse(
                FieldValidationError({"providerGroupId": "Invalid provider group selected"}), action, target_id
            )

    async def _assigned_users_outside(self, provider_id: str, group_id: Optional[str]) -> int:
        result = await self.db.execute(
            select(func.count(UserNpi.id))
            .join(User, User.id == UserNpi.user_id)
            .where(UserNpi.provider_id == provider_id, User.provider_group_id.is_distinct_from(group_id))
        )
        return result.scalar_one()

    # ------------------------------------------------------------------
    # Intents
    # ------------------------------------------------------------------

    async def handle_create(self, action: CreateProvider) -> Toast:
        existing = (await self.db.execute(
            select(Provider.customer_id).where(Provider.npi == action.npi)
        )).scalar_one_or_none()
        if existing is not None:
            message = (
                "This NPI is already registered for this customer"
                if existing == self.customer_id
                else "This NPI is registered to another customer"
            )
            raise await self._refuse(FieldValidationError({"npi": message}), "PROVIDER_CREATE")
        await self._check_group(action.provider_group_id, "PROVIDER_CREATE")

        provider = Provider(
            npi=action.npi,
            name=action.name,
            customer_id=self.customer_id,
            provider_group_id=action.provider_group_id,
            active=True,
            **_address(action),
        )
        self.db.add(provider)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise FieldValidationError({"npi": "This NPI is already registered"})
        provider_id = provider.id
        log.info("Provider %s (%s) created in customer %s by %s", provider_id, action.npi, self.customer_id, self.caller.user_id)

        await self._audit(
            "PROVIDER_CREATE",
            target_id=provider_id,
            message=f"Provider created ({action.npi})",
            details={"npi": action.npi, "name": action.name, "providerGroupId": action.provider_group_id},
        )
        return Toast(
            type="success",
            title="Provider NPI created",
            description=f"NPI {action.npi} ({action.name}) has been added.",
        )

    async def handle_update(self, action: EditProvider) -> Toast:
        provider = await self._load_provider(action.provider_id, "PROVIDER_UPDATE")
        provider_id, npi = provider.id, provider.npi

        changed = []
        values = {"name": action.name, **_address(action)}
        for name, value in values.items():
            if getattr(provider, name) != value:
                setattr(provider, name, value)
                changed.append(name)
        await self.db.commit()

        await self._audit("PROVIDER_UPDATE", target_id=provider_id, details={"changed": changed})
        return Toast(
            type="success",
            title="Provider NPI updated",
            description=f"NPI {npi} ({action.name}) has been updated.",
        )

    async def handle_toggle_active(self, action: ToggleProviderActive) -> Toast:
        provider = await self._load_provider(action.provider_id, "PROVIDER_TOGGLE_ACTIVE")
        provider_id, npi = provider.id, provider.npi
        provider.active = action.active
        await self.db.commit()

        label = "Activated" if action.active else "Inactivated"
        await self._audit("PROVIDER_TOGGLE_ACTIVE", target_id=provider_id, message=label, details={"active": action.active})
        return Toast(
            type="success",
            title=label,
            description=f"NPI {npi} has been {label.lower()}.",
        )

    async def handle_set_group(self, action: SetProviderGroup) -> Toast:
        provider = await self._load_provider(action.provider_id, "PROVIDER_UPDATE")
        provider_id, npi = provider.id, provider.npi
        new_group_id = action.provider_group_id
        await self._check_group(new_group_id, "PROVIDER_UPDATE", provider_id)

        if provider.provider_group_id == new_group_id:
            return Toast(type="message", title="No changes", description="Provider group unchanged.")

        outside = await self._assigned_users_outside(provider_id, new_group_id)
        if outside:
            raise await self._refuse(
                RuleViolation(
                    "Group assignment blocked",
                    f"NPI {npi} is assigned to {_plural(outside, 'user')} outside the selected group. "
                    "Remove those assignments first.",
                ),
                "PROVIDER_UPDATE",
                provider_id,
            )

        previous = provider.provider_group_id
        provider.provider_group_id = new_group_id
        await self.db.commit()
        log.info("Provider %s moved from group %s to %s by %s", provider_id, previous, new_group_id, self.caller.user_id)

        await self._audit(
            "PROVIDER_UPDATE",
            target_id=provider_id,
            message="Provider group assigned" if new_group_id else "Provider group unassigned",
            details={"changed": ["provider_group_id"], "from": previous, "to": new_group_id},
        )
        return Toast(
            type="success",
            title="Group assigned" if new_group_id else "Group removed",
            description=f"NPI {npi} {'assigned to group' if new_group_id else 'unassigned from group'}.",
        )

    async def handle_delete(self, action: DeleteProvider) -> Toast:
        provider = await self._load_provider(action.provider_id, "PROVIDER_DELETE")
        provider_id, npi = provider.id, provider.npi

        assigned = (await self.db.execute(
            select(func.count(UserNpi.id)).where(UserNpi.provider_id == provider_id)
        )).scalar_one()
        if assigned:
            raise await self._refuse(
                RuleViolation(
                    "Delete blocked",
                    f"NPI {npi} cannot be deleted while it is assigned to {_plural(assigned, 'user')}.",
                ),
                "PROVIDER_DELETE",
                provider_id,
            )

        await self.db.execute(
            delete(ProviderRegistrationStatus).where(ProviderRegistrationStatus.provider_id == provider_id)
        )
        await self.db.execute(delete(Provider).where(Provider.id == provider_id))
        await self.db.commit()
        log.info("Provider %s (%s) deleted by %s", provider_id, npi, self.caller.user_id)

        await self._audit("PROVIDER_DELETE", target_id=provider_id, message=f"Provider deleted ({npi})")
        return Toast(type="success", title="Provider deleted", description=f"NPI {npi} has been deleted.")
