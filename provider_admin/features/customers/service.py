"""
Customer and provider group administration.

Provider groups are managed per customer, either by the customer's own
customer-admin (``/customer/provider-groups``) or by a system-admin
(``/admin/customers/{customer_id}/provider-groups``). Customers themselves
are created and renamed by system-admins only.

Like the user management intents, every ``handle_*`` method raises on the
first failed rule without writing anything, otherwise commits and returns
the toast to show.
"""
from typing import Optional
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from provider_admin.core.errors import ActionForbidden, FieldValidationError, RuleViolation, TargetNotFound
from provider_admin.features.access.scope import CallerContext
from provider_admin.features.audit.service import AuditActor, write_audit
from provider_admin.features.customers.models import Customer, ProviderGroup
from provider_admin.features.customers.schemas import (
    CreateCustomer,
    CreateProviderGroup,
    DeleteProviderGroup,
    ProviderGroupRow,
    UpdateCustomer,
    UpdateProviderGroup,
)
from provider_admin.features.notifications.toast import Toast
from provider_admin.features.providers.models import Provider
from provider_admin.features.users.models import User
from provider_admin.utils import get_logger


log = get_logger(__name__)

GROUP_NAME_TAKEN = "Provider group name already exists"
CUSTOMER_NAME_TAKEN = "Customer name already exists"


def _plural(count: int, word: str) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


class ProviderGroupManager:
    """
    Provider group intents for one customer on behalf of one caller.

    A group id that belongs to another customer is reported as not found.
    """

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
    ) -> "ProviderGroupManager":
        """
        Raises:
            ActionForbidden: the caller is not a customer-admin
            FieldValidationError: the caller has no customer
        """
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
    ) -> "ProviderGroupManager":
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
            "ProviderGroup",
            success=success,
            entity_id=target_id,
            customer_id=self.customer_id,
            message=message,
            details=details,
        )

    async def _refuse(self, exc: Exception, action: str, target_id: Optional[str] = None) -> Exception:
        await self._audit(action, success=False, target_id=target_id, message=str(exc))
        return exc

    async def _load_group(self, group_id: str) -> ProviderGroup:
        result = await self.db.execute(
            select(ProviderGroup).where(ProviderGroup.id == group_id, ProviderGroup.customer_id == self.customer_id)
        )
        group = result.scalar_one_or_none()
        if group is None:
            raise await self._refuse(
                TargetNotFound("Provider group not found"), "PROVIDER_GROUP_NOT_FOUND", group_id
            )
        return group

    async def _name_taken(self, name: str, exclude_id: Optional[str] = None) -> bool:
        query = select(ProviderGroup.id).where(
            ProviderGroup.customer_id == self.customer_id,
            func.lower(ProviderGroup.name) == name.lower(),
        )
        if exclude_id:
            query = query.where(ProviderGroup.id != exclude_id)
        return (await self.db.execute(query.limit(1))).first() is not None

    async def _count(self, column, group_id: str) -> int:
        result = await self.db.execute(select(func.count(column)).where(column == group_id))
        return result.scalar_one()

    async def list_groups(self) -> list[ProviderGroupRow]:
        groups = (await self.db.execute(
            select(ProviderGroup).where(ProviderGroup.customer_id == self.customer_id).order_by(ProviderGroup.name)
        )).scalars().all()

        def counts(column):
            return select(column, func.count()).where(column.is_not(None)).group_by(column)

        user_counts = dict((await self.db.execute(counts(User.provider_group_id))).all())
        provider_counts = dict((await self.db.execute(counts(Provider.provider_group_id))).all())
        return [
            ProviderGroupRow(
                id=g.id,
                name=g.name,
                description=g.description,
                user_count=user_counts.get(g.id, 0),
                provider_count=provider_counts.get(g.id, 0),
                created_at=g.created_at,
            )
            for g in groups
        ]

    async def handle_create(self, action: CreateProviderGroup) -> Toast:
        if await self._name_taken(action.name):
            raise await self._refuse(FieldValidationError({"name": GROUP_NAME_TAKEN}), "PROVIDER_GROUP_NAME_CONFLICT")

        group = ProviderGroup(customer_id=self.customer_id, name=action.name, description=action.description)
        self.db.add(group)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise FieldValidationError({"name": GROUP_NAME_TAKEN})
        log.info("Provider group %s created in customer %s by %s", group.id, self.customer_id, self.caller.user_id)

        await self._audit("PROVIDER_GROUP_CREATE", target_id=group.id, details={"name": action.name})
        return Toast(
            type="success",
            title="Provider group created",
            description=f"{action.name} has been created.",
        )

    async def handle_update(self, action: UpdateProviderGroup) -> Toast:
        group = await self._load_group(action.provider_group_id)
        if await self._name_taken(action.name, exclude_id=group.id):
            raise await self._refuse(
                FieldValidationError({"name": GROUP_NAME_TAKEN}), "PROVIDER_GROUP_NAME_CONFLICT", group.id
            )

        group_id = group.id
        previous = group.name
        group.name = action.name
        group.description = action.description
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise FieldValidationError({"name": GROUP_NAME_TAKEN})

        await self._audit(
            "PROVIDER_GROUP_UPDATE",
            target_id=group_id,
            details={"from": previous, "to": action.name},
        )
        return Toast(
            type="success",
            title="Provider group updated",
            description=f"{action.name} has been updated.",
        )

    async def handle_delete(self, action: DeleteProviderGroup) -> Toast:
        group = await self._load_group(action.provider_group_id)

        user_count = await self._count(User.provider_group_id, group.id)
        if user_count:
            raise await self._refuse(
                RuleViolation(
                    "Cannot delete provider group",
                    f"Cannot delete provider group with {_plural(user_count, 'assigned user')}. "
                    "Please reassign or remove users first.",
                ),
                "PROVIDER_GROUP_DELETE_BLOCKED",
                group.id,
            )
        provider_count = await self._count(Provider.provider_group_id, group.id)
        if provider_count:
            raise await self._refuse(
                RuleViolation(
                    "Cannot delete provider group",
                    f"Cannot delete provider group with {_plural(provider_count, 'provider')}. "
                    "Please remove providers first.",
                ),
                "PROVIDER_GROUP_DELETE_BLOCKED",
                group.id,
            )

        group_id, name = group.id, group.name
        await self.db.delete(group)
        await self.db.commit()
        log.info("Provider group %s deleted from customer %s by %s", group_id, self.customer_id, self.caller.user_id)

        await self._audit("PROVIDER_GROUP_DELETE", target_id=group_id, details={"name": name})
        return Toast(
            type="success",
            title="Provider group deleted",
            description=f"{name} has been deleted.",
        )


async def _customer_name_taken(db: AsyncSession, name: str, exclude_id: Optional[str] = None) -> bool:
    query = select(Customer.id).where(func.lower(Customer.name) == name.lower())
    if exclude_id:
        query = query.where(Customer.id != exclude_id)
    return (await db.execute(query.limit(1))).first() is not None


async def create_customer(db: AsyncSession, actor: AuditActor, action: CreateCustomer) -> Toast:
    """
    Create a customer. Its first customer-admin is added afterwards through
    the customer's user management page.

    Raises:
        FieldValidationError: the name is already used (case-insensitive)
    """
    if await _customer_name_taken(db, action.name):
        await write_audit(db, actor, "CUSTOMER_CREATE", "Customer", success=False, message=CUSTOMER_NAME_TAKEN)
        raise FieldValidationError({"name": CUSTOMER_NAME_TAKEN})

    customer = Customer(name=action.name, description=action.description, base_npi=action.base_npi)
    db.add(customer)
    await db.commit()
    log.info("Customer %s created by %s", customer.id, actor.user_id)

    await write_audit(
        db, actor, "CUSTOMER_CREATE", "Customer",
        entity_id=customer.id, customer_id=customer.id, details={"name": action.name},
    )
    return Toast(
        type="success",
        title="Customer created",
        description=f"{action.name} has been created. Add a customer admin from its users page.",
    )


async def update_customer(db: AsyncSession, actor: AuditActor, action: UpdateCustomer) -> Toast:
    """
    Raises:
        TargetNotFound: no such customer
        FieldValidationError: the new name belongs to another customer
    """
    customer = await db.get(Customer, action.customer_id)
    if customer is None:
        raise TargetNotFound("Customer not found")
    if await _customer_name_taken(db, action.name, exclude_id=customer.id):
        await write_audit(
            db, actor, "CUSTOMER_UPDATE", "Customer",
            success=False, entity_id=action.customer_id, customer_id=action.customer_id, message=CUSTOMER_NAME_TAKEN,
        )
        raise FieldValidationError({"name": CUSTOMER_NAME_TAKEN})

    customer_id = customer.id
    customer.name = action.name
    customer.description = action.description
    customer.base_npi = action.base_npi
    await db.commit()

    await write_audit(
        db, actor, "CUSTOMER_UPDATE", "Customer",
        entity_id=customer_id, customer_id=customer_id, details={"name": action.name},
    )
    return Toast(
        type="success",
        title="Customer updated",
        description=f"{action.name} has been updated.",
    )
