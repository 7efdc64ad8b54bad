"""
User and NPI assignment management for one customer.

A UserManager is built per request for one of two routes:

- CUSTOMER: a customer-admin or provider-group-admin managing their own
  customer (``/customer/users``)
- SYSTEM_ADMIN: a system-admin managing any customer
  (``/admin/customers/{customer_id}/users``)

Each ``handle_*`` method checks its rules in a fixed order, raises on the
first failure without touching the database, and otherwise commits and
returns the toast to show. Email and audit rows are written after the
commit and never undo it.
"""
from dataclasses import dataclass
import enum
from typing import Optional
from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from provider_admin.core.errors import ActionForbidden, FieldValidationError, RuleViolation, TargetNotFound
from provider_admin.features.access.roles import ASSIGNABLE_ROLES, RoleName
from provider_admin.features.access.scope import CallerContext, Scope
from provider_admin.features.audit.service import AuditActor, write_audit
from provider_admin.features.customers.models import Customer, ProviderGroup
from provider_admin.features.notifications.email import (
    EmailSender,
    PasswordResetEmail,
    RegistrationEmail,
    SideEffectResult,
    login_url,
    send_best_effort,
)
from provider_admin.features.notifications.toast import Toast
from provider_admin.features.providers.models import Provider, UserNpi
from provider_admin.features.user_management.schemas import (
    AssignNpis,
    CheckAvailability,
    CreateUser,
    DeleteUser,
    ResetPassword,
    SetActive,
    UpdateUser,
)
from provider_admin.features.users.auth import hash_password
from provider_admin.features.users.models import Password, PasswordHistory, Role, Session, User, UserImage, get_role
from provider_admin.features.users.passwords import generate_compliant_password, validate_password_complexity
from provider_admin.utils import LIKE_ESCAPE, contains_pattern, get_logger


log = get_logger(__name__)


class Variant(str, enum.Enum):
    CUSTOMER = "customer"
    SYSTEM_ADMIN = "system-admin"


@dataclass(frozen=True)
class ActionOutcome:
    """Result of a successful intent: the toast plus any side-effect outcome."""
    toast: Toast
    email: Optional[SideEffectResult] = None


def _plural(count: int, word: str) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


class UserManager:
    """
    Applies the user management intents for one customer on behalf of one caller.

    Targets are always looked up inside the customer; a user of another
    customer is reported as not found.
    """

    def __init__(
        self,
        db: AsyncSession,
        caller: CallerContext,
        customer_id: str,
        variant: Variant,
        email_sender: EmailSender,
        audit_actor: Optional[AuditActor] = None,
    ):
        self.db = db
        self.caller = caller
        self.customer_id = customer_id
        self.variant = variant
        self.email_sender = email_sender
        self.audit_actor = audit_actor
        self.scope = Scope.for_customer(customer_id)

    @classmethod
    def for_customer_route(
        cls,
        db: AsyncSession,
        caller: CallerContext,
        email_sender: EmailSender,
    ) -> "UserManager":
        """
        Manager for customer-admin and provider-group-admin callers.

        Raises:
            ActionForbidden: the caller is neither kind of admin
            FieldValidationError: the caller has no customer, or is a
                provider-group admin without a group
        """
        if not (caller.is_customer_admin or caller.is_provider_group_admin):
            raise ActionForbidden("Insufficient role")
        if not caller.customer_id:
            raise FieldValidationError({"customer": "User must be associated with a customer"})
        if caller.is_group_scoped_admin and not caller.provider_group_id:
            raise FieldValidationError(
                {"providerGroup": "Provider group admin must be assigned to a provider group"}
            )
        return cls(db, caller, caller.customer_id, Variant.CUSTOMER, email_sender)

    @classmethod
    def for_system_admin(
        cls,
        db: AsyncSession,
        caller: CallerContext,
        customer_id: str,
        email_sender: EmailSender,
        audit_actor: Optional[AuditActor] = None,
    ) -> "UserManager":
        if not caller.is_system_admin:
            raise ActionForbidden("Insufficient role")
        return cls(db, caller, customer_id, Variant.SYSTEM_ADMIN, email_sender, audit_actor)

    # ------------------------------------------------------------------
    # Caller helpers
    # ------------------------------------------------------------------

    @property
    def is_system_variant(self) -> bool:
        return self.variant == Variant.SYSTEM_ADMIN

    @property
    def caller_manages_customer_admins(self) -> bool:
        return self.is_system_variant or self.caller.is_customer_admin

    @property
    def caller_group_restricted(self) -> bool:
        """Provider-group admin confined to their own group."""
        return not self.is_system_variant and self.caller.is_group_scoped_admin

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
            "User",
            success=success,
            entity_id=target_id,
            customer_id=self.customer_id,
            message=message,
            details=details,
        )

    async def _refuse(self, exc: Exception, action: str, target_id: Optional[str] = None) -> Exception:
        """Record a refused attempt and hand back the error to raise."""
        await self._audit(action, success=False, target_id=target_id, message=str(exc))
        return exc

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def _load_target(self, user_id: str, not_found: str) -> User:
        result = await self.db.execute(
            select(User).where(User.id == user_id, self.scope.users_clause())
        )
        target = result.scalar_one_or_none()
        if target is None:
            raise TargetNotFound(not_found)
        return target

    async def _assignment_count(self, user_id: str) -> int:
        result = await self.db.execute(
            select(func.count()).select_from(UserNpi).where(UserNpi.user_id == user_id)
        )
        return result.scalar_one()

    async def _provider_group_in_customer(self, provider_group_id: str) -> Optional[ProviderGroup]:
        result = await self.db.execute(
            select(ProviderGroup).where(
                ProviderGroup.id == provider_group_id,
                ProviderGroup.customer_id == self.customer_id,
            )
        )
        return result.scalar_one_or_none()

    async def _email_taken(self, email: str) -> bool:
        result = await self.db.execute(select(User.id).where(User.email == email.lower()))
        return result.first() is not None

    async def _username_taken(self, username: str) -> bool:
        result = await self.db.execute(select(User.id).where(User.username == username.lower()))
        return result.first() is not None

    # ------------------------------------------------------------------
    # Intents
    # ------------------------------------------------------------------

    async def check_availability(self, action: CheckAvailability) -> bool:
        """True when a user with this email/username already exists (any customer)."""
        if action.field == "email":
            return await self._email_taken(action.value)
        return await self._username_taken(action.value)

    async def handle_create(self, action: CreateUser) -> ActionOutcome:
        role = RoleName(action.role)
        attempt = "USER_CREATE_ATTEMPT"

        if role == RoleName.CUSTOMER_ADMIN and not self.caller_manages_customer_admins:
            raise await self._refuse(
                ActionForbidden("Only customer administrators can create customer administrators."), attempt
            )

        if await self._email_taken(action.email):
            raise await self._refuse(FieldValidationError({"email": "Email already exists"}), attempt)
        if await self._username_taken(action.username):
            raise await self._refuse(FieldValidationError({"username": "Username already exists"}), attempt)

        provider_group_id = action.provider_group_id
        if role == RoleName.CUSTOMER_ADMIN:
            provider_group_id = None
        elif self.caller_group_restricted and provider_group_id != self.caller.provider_group_id:
            raise await self._refuse(
                FieldValidationError({"providerGroupId": "You can only create users in your assigned provider group"}),
                attempt,
            )

        provider_group = None
        if provider_group_id:
            provider_group = await self._provider_group_in_customer(provider_group_id)
            if provider_group is None:
                raise await self._refuse(
                    FieldValidationError({"providerGroupId": "Invalid provider group selected"}), attempt
                )

        customer = await self.get_customer()
        temporary_password = generate_compliant_password()
        new_user = User(
            name=action.name,
            email=action.email.lower(),
            username=action.username.lower(),
            customer_id=self.customer_id,
            provider_group_id=provider_group_id,
            active=action.active if self.is_system_variant else True,
            must_change_password=True,
            roles=[await get_role(self.db, role)],
        )
        self.db.add(new_user)
        try:
            await self.db.flush()
            self.db.add(Password(user_id=new_user.id, hash=hash_password(temporary_password)))
            await self.db.commit()
        except IntegrityError:
            # Lost a race with a concurrent create using the same email/username
            await self.db.rollback()
            raise FieldValidationError({"email": "Email or username already exists"})

        log.info("User %s created in customer %s by %s", new_user.id, self.customer_id, self.caller.user_id)

        sent = await send_best_effort(
            self.email_sender,
            RegistrationEmail(
                to=new_user.email,
                user_name=action.name,
                user_role=role.value,
                customer_name=customer.name,
                temp_password=temporary_password,
                login_url=login_url(),
                username=new_user.username,
                provider_group_name=provider_group.name if provider_group else None,
            ),
        )
        await self._audit(
            "USER_CREATE",
            target_id=new_user.id,
            message="User created",
            details={
                "email": new_user.email,
                "username": new_user.username,
                "role": role.value,
                "providerGroupId": provider_group_id,
                "active": new_user.active,
                "emailSent": sent.ok,
            },
        )

        if sent.ok:
            description = f"{action.name} has been created successfully and a welcome email has been sent."
        else:
            description = f"{action.name} has been created, but the welcome email could not be sent."
        return ActionOutcome(Toast(type="success", title="User created", description=description), sent)

    async def handle_update(self, action: UpdateUser) -> ActionOutcome:
        role = RoleName(action.role)
        attempt = "USER_UPDATE_ATTEMPT"

        try:
            target = await self._load_target(action.user_id, "User not found or not authorized to edit this user")
        except TargetNotFound as exc:
            raise await self._refuse(exc, attempt, action.user_id)

        if RoleName.SYSTEM_ADMIN in target.role_set:
            raise await self._refuse(
                RuleViolation("Not allowed", "System administrators cannot be edited here."), attempt, target.id
            )
        if RoleName.CUSTOMER_ADMIN in target.role_set and not self.caller_manages_customer_admins:
            raise ActionForbidden("Only customer administrators can edit customer administrators")
        if role == RoleName.CUSTOMER_ADMIN and not self.caller_manages_customer_admins:
            raise ActionForbidden("Only customer administrators can assign the customer-admin role")

        provider_group_id = action.provider_group_id
        if self.caller_group_restricted:
            if target.provider_group_id != self.caller.provider_group_id:
                raise ActionForbidden("You can only edit users in your assigned provider group")
            if provider_group_id and provider_group_id != self.caller.provider_group_id:
                raise FieldValidationError(
                    {"providerGroupId": "You can only assign users to your provider group"}
                )
            # Users of a restricted admin never leave the admin's group
            provider_group_id = self.caller.provider_group_id

        if role == RoleName.CUSTOMER_ADMIN:
            provider_group_id = None
        if provider_group_id and await self._provider_group_in_customer(provider_group_id) is None:
            raise await self._refuse(
                FieldValidationError({"providerGroupId": "Invalid provider group selected"}), attempt, target.id
            )

        if provider_group_id != target.provider_group_id:
            mismatched = await self.db.execute(
                select(func.count())
                .select_from(UserNpi)
                .join(Provider, Provider.id == UserNpi.provider_id)
                .where(
                    UserNpi.user_id == target.id,
                    Provider.provider_group_id.is_not(None)
                    if provider_group_id is None
                    else or_(Provider.provider_group_id.is_(None), Provider.provider_group_id != provider_group_id),
                )
            )
            if mismatched.scalar_one():
                raise await self._refuse(
                    RuleViolation(
                        "Unassign NPIs first",
                        f"{target.display_name} holds NPIs outside the new provider group. "
                        "Remove those assignments before moving the user.",
                    ),
                    attempt,
                    target.id,
                )

        deactivate = self.is_system_variant and action.active is False and target.active
        if deactivate:
            await self._guard_deactivation(target, attempt)

        before = {
            "name": target.name,
            "roles": sorted(r.value for r in target.role_set),
            "providerGroupId": target.provider_group_id,
            "active": target.active,
        }
        target.name = action.name
        target.provider_group_id = provider_group_id
        target.roles = [await get_role(self.db, role)]
        if self.is_system_variant and action.active is not None:
            target.active = action.active
        if deactivate:
            await self.db.execute(delete(Session).where(Session.user_id == target.id))
        await self.db.commit()

        log.info("User %s updated by %s", target.id, self.caller.user_id)
        await self._audit(
            "USER_UPDATE",
            target_id=target.id,
            message="User updated",
            details={
                "before": before,
                "after": {
                    "name": target.name,
                    "roles": [role.value],
                    "providerGroupId": provider_group_id,
                    "active": target.active,
                },
            },
        )
        return ActionOutcome(
            Toast(type="success", title="User updated", description=f"{action.name} has been updated successfully.")
        )

    async def handle_delete(self, action: DeleteUser) -> ActionOutcome:
        """
        Hard delete. Checked in order: scope, system-admin, self,
        confirmation (system-admin route), last customer-admin.
        """
        blocked = "USER_DELETE_BLOCKED"

        try:
            target = await self._load_target(action.user_id, "User not found or not authorized to delete this user")
        except TargetNotFound as exc:
            raise await self._refuse(exc, blocked, action.user_id)

        target_is_customer_admin = RoleName.CUSTOMER_ADMIN in target.role_set
        if self.caller_group_restricted:
            if target_is_customer_admin:
                raise ActionForbidden("Only customer administrators can delete customer administrators")
            if target.provider_group_id != self.caller.provider_group_id:
                raise ActionForbidden("You can only delete users in your assigned provider group")

        if RoleName.SYSTEM_ADMIN in target.role_set:
            raise await self._refuse(
                RuleViolation("Cannot delete user", "Cannot delete system administrators."), blocked, target.id
            )
        if target.id == self.caller.user_id:
            raise await self._refuse(
                RuleViolation("Cannot delete self", "You cannot delete your own account."), blocked, target.id
            )
        if self.is_system_variant and (action.confirm or "").lower() != target.username.lower():
            raise await self._refuse(
                RuleViolation("Confirmation mismatch", "Type the exact username to confirm deletion."),
                blocked,
                target.id,
            )
        if target_is_customer_admin:
            remaining = await self.db.execute(
                select(func.count())
                .select_from(User)
                .where(
                    User.customer_id == self.customer_id,
                    User.id != target.id,
                    User.roles.any(Role.name == RoleName.CUSTOMER_ADMIN.value),
                )
            )
            if remaining.scalar_one() == 0:
                raise await self._refuse(
                    RuleViolation(
                        "Cannot delete last admin", "Assign another customer-admin before deleting this one."
                    ),
                    blocked,
                    target.id,
                )

        target_id = target.id
        display_name = target.display_name
        try:
            if not self.is_system_variant:
                await self.db.execute(delete(UserNpi).where(UserNpi.user_id == target_id))
                await self.db.execute(delete(UserImage).where(UserImage.user_id == target_id))
            await self.db.execute(delete(Session).where(Session.user_id == target_id))
            await self.db.delete(target)
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            log.exception("Deleting user %s failed", target_id)
            raise

        log.info("User %s deleted by %s", target_id, self.caller.user_id)
        await self._audit("USER_DELETE", target_id=target_id, message="User deleted", details={"name": display_name})
        return ActionOutcome(
            Toast(type="success", title="User deleted", description=f"{display_name} has been permanently removed.")
        )

    async def handle_assign_npis(self, action: AssignNpis) -> ActionOutcome:
        """
        Replace the target's NPI assignments with ``provider_ids``.

        Every id must be a provider of this customer (and active, on the
        customer route) in the same provider group as the target. One bad id
        rejects the whole set.
        """
        attempt = "USER_ASSIGN_NPIS_ATTEMPT"
        stmt = select(User).where(User.id == action.user_id, self.scope.users_clause())
        if not self.is_system_variant:
            stmt = stmt.where(User.roles.any(Role.name == RoleName.BASIC_USER.value))
        target = (await self.db.execute(stmt)).scalar_one_or_none()
        if target is None:
            raise await self._refuse(
                TargetNotFound("User not found or not authorized to assign NPIs to this user"),
                attempt,
                action.user_id,
            )
        if RoleName.SYSTEM_ADMIN in target.role_set:
            raise await self._refuse(
                RuleViolation("Not allowed", "System administrators cannot be edited here."), attempt, target.id
            )
        if self.caller_group_restricted and target.provider_group_id != self.caller.provider_group_id:
            raise ActionForbidden("You can only assign NPIs to users in your assigned provider group")

        provider_ids = list(dict.fromkeys(action.provider_ids))
        providers: list[Provider] = []
        if provider_ids:
            query = select(Provider).where(Provider.id.in_(provider_ids), Provider.customer_id == self.customer_id)
            if not self.is_system_variant:
                query = query.where(Provider.active.is_(True))
            providers = list((await self.db.execute(query)).scalars().all())

        if len(providers) != len(provider_ids):
            raise await self._refuse(
                RuleViolation("Invalid NPIs", "Some selected NPIs are not active or do not belong to this customer."),
                attempt,
                target.id,
            )
        if target.provider_group_id is None:
            if any(p.provider_group_id for p in providers):
                raise await self._refuse(
                    RuleViolation(
                        "Grouped NPIs disallowed", "Cannot assign grouped NPIs to a user without a provider group."
                    ),
                    attempt,
                    target.id,
                )
        elif any(p.provider_group_id != target.provider_group_id for p in providers):
            raise await self._refuse(
                RuleViolation("Group mismatch", "All NPIs must belong to the user's provider group."),
                attempt,
                target.id,
            )

        await self.db.execute(delete(UserNpi).where(UserNpi.user_id == target.id))
        for provider_id in provider_ids:
            self.db.add(UserNpi(user_id=target.id, provider_id=provider_id))
        await self.db.commit()

        log.info("User %s now holds %d NPIs", target.id, len(provider_ids))
        await self._audit(
            "USER_ASSIGN_NPIS",
            target_id=target.id,
            message="NPI assignments replaced",
            details={"providerIdsCount": len(provider_ids)},
        )
        return ActionOutcome(
            Toast(
                type="success",
                title="NPIs assigned",
                description=f"{_plural(len(provider_ids), 'NPI')} assigned to {target.display_name}.",
            )
        )

    async def handle_reset_password(self, action: ResetPassword) -> ActionOutcome:
        attempt = "USER_RESET_PASSWORD_ATTEMPT"
        try:
            target = await self._load_target(action.user_id, "User not found")
        except TargetNotFound as exc:
            raise await self._refuse(exc, attempt, action.user_id)

        if RoleName.SYSTEM_ADMIN in target.role_set:
            raise await self._refuse(
                RuleViolation("Not allowed", "System administrators' passwords cannot be reset here."),
                attempt,
                target.id,
            )
        if RoleName.CUSTOMER_ADMIN in target.role_set and not self.caller_manages_customer_admins:
            raise RuleViolation(
                "Not allowed", "Only customer administrators can reset passwords for customer administrators."
            )
        if self.caller_group_restricted and target.provider_group_id != self.caller.provider_group_id:
            raise RuleViolation("Wrong scope", "You can only reset passwords for users in your provider group.")

        if action.mode == "manual":
            new_password = action.manual_password or ""
            ok, errors = validate_password_complexity(new_password)
            if not ok:
                raise FieldValidationError({"manualPassword": "; ".join(errors)})
        else:
            new_password = generate_compliant_password()

        existing = await self.db.get(Password, target.id)
        if existing is None:
            self.db.add(Password(user_id=target.id, hash=hash_password(new_password)))
        else:
            self.db.add(PasswordHistory(user_id=target.id, hash=existing.hash))
            existing.hash = hash_password(new_password)
        target.must_change_password = True
        target.failed_login_count = 0
        target.locked_until = None
        await self.db.execute(delete(Session).where(Session.user_id == target.id))
        await self.db.commit()

        log.info("Password reset (%s) for user %s by %s", action.mode, target.id, self.caller.user_id)
        customer = await self.get_customer()
        sent = await send_best_effort(
            self.email_sender,
            PasswordResetEmail(
                to=target.email,
                recipient_name=target.display_name,
                username=target.username,
                temp_password=new_password,
                login_url=login_url(),
                requested_by_name=self.caller.name,
                customer_name=customer.name,
            ),
        )
        await self._audit(
            "USER_RESET_PASSWORD",
            target_id=target.id,
            message="Password reset completed",
            details={"mode": action.mode, "emailSent": sent.ok},
        )

        kind = "temporary" if action.mode == "auto" else "manual"
        if sent.ok:
            description = f"A new {kind} password was emailed to {target.email}."
        else:
            description = f"The password was reset, but the email to {target.email} could not be sent."
        return ActionOutcome(Toast(type="success", title="Password reset", description=description), sent)

    async def _guard_deactivation(self, target: User, attempt: str) -> None:
        if target.id == self.caller.user_id:
            raise await self._refuse(
                RuleViolation("Not allowed", "You cannot change the active status of your own account."),
                attempt,
                target.id,
            )
        assigned = await self._assignment_count(target.id)
        if assigned:
            raise await self._refuse(
                RuleViolation(
                    "Unassign NPIs first",
                    f"{target.display_name} still has {_plural(assigned, 'assigned NPI')}. "
                    "Remove all assignments before deactivation.",
                ),
                attempt,
                target.id,
            )

    async def handle_set_active(self, action: SetActive) -> ActionOutcome:
        attempt = "USER_SET_ACTIVE_ATTEMPT"
        try:
            target = await self._load_target(action.user_id, "User not found")
        except TargetNotFound as exc:
            raise await self._refuse(exc, attempt, action.user_id)

        if RoleName.SYSTEM_ADMIN in target.role_set:
            raise await self._refuse(
                RuleViolation("Not allowed", "System administrators cannot be edited here."), attempt, target.id
            )
        if target.id == self.caller.user_id:
            raise await self._refuse(
                RuleViolation("Not allowed", "You cannot change the active status of your own account."),
                attempt,
                target.id,
            )
        if self.caller_group_restricted:
            if RoleName.CUSTOMER_ADMIN in target.role_set:
                raise RuleViolation(
                    "Not allowed", "Only customer administrators can change status of customer administrators."
                )
            if target.provider_group_id != self.caller.provider_group_id:
                raise RuleViolation("Wrong scope", "You can only change status for users in your provider group.")

        make_active = action.status == "active"
        if not make_active:
            await self._guard_deactivation(target, attempt)

        target.active = make_active
        if not make_active:
            await self.db.execute(delete(Session).where(Session.user_id == target.id))
        await self.db.commit()

        log.info("User %s set %s by %s", target.id, action.status, self.caller.user_id)
        await self._audit("USER_SET_ACTIVE", target_id=target.id, details={"status": action.status})
        if make_active:
            return ActionOutcome(
                Toast(type="success", title="User activated", description=f"{target.display_name} can log in again.")
            )
        return ActionOutcome(
            Toast(
                type="success",
                title="User deactivated",
                description=f"{target.display_name} has been signed out and can no longer log in.",
            )
        )

    # ------------------------------------------------------------------
    # Page data
    # ------------------------------------------------------------------

    def visible_users_clause(self):
        """Which users of the customer the caller's list shows."""
        if self.is_system_variant:
            return self.scope.users_clause()
        if self.caller_group_restricted:
            return and_(
                self.scope.users_clause(),
                User.provider_group_id == self.caller.provider_group_id,
                User.roles.any(Role.name.in_([RoleName.PROVIDER_GROUP_ADMIN.value, RoleName.BASIC_USER.value])),
            )
        return and_(
            self.scope.users_clause(),
            User.roles.any(Role.name.in_([r.value for r in ASSIGNABLE_ROLES])),
        )

    async def list_users(self, search: str = "") -> list[User]:
        query = select(User).where(self.visible_users_clause())
        if search:
            pattern = contains_pattern(search)
            query = query.where(
                or_(
                    func.lower(User.name).like(pattern, escape=LIKE_ESCAPE),
                    User.email.like(pattern, escape=LIKE_ESCAPE),
                    User.username.like(pattern, escape=LIKE_ESCAPE),
                )
            )
        result = await self.db.execute(query.order_by(User.name, User.username))
        return list(result.scalars().all())

    async def list_provider_groups(self) -> list[ProviderGroup]:
        query = select(ProviderGroup).where(ProviderGroup.customer_id == self.customer_id)
        if self.caller_group_restricted:
            query = query.where(ProviderGroup.id == self.caller.provider_group_id)
        result = await self.db.execute(query.order_by(ProviderGroup.name))
        return list(result.scalars().all())

    async def list_providers(self) -> list[Provider]:
        query = select(Provider).where(Provider.customer_id == self.customer_id)
        if self.caller_group_restricted:
            query = query.where(Provider.provider_group_id == self.caller.provider_group_id)
        result = await self.db.execute(query.order_by(Provider.npi))
        return list(result.scalars().all())

    async def assignments_for(self, user_ids: list[str]) -> dict[str, list[Provider]]:
        """Map user id to the providers assigned to that user."""
        assignments: dict[str, list[Provider]] = {uid: [] for uid in user_ids}
        if not user_ids:
            return assignments
        result = await self.db.execute(
            select(UserNpi.user_id, Provider)
            .join(Provider, Provider.id == UserNpi.provider_id)
            .where(UserNpi.user_id.in_(user_ids))
            .order_by(Provider.npi)
        )
        for user_id, provider in result.all():
            assignments[user_id].append(provider)
        return assignments
