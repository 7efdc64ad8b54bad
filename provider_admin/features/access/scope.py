"""
Caller context and row-level visibility scopes.

Every read and write in the user management and provider routes is
filtered through a Scope computed from the caller's roles and tenant
linkage. A scope that cannot be resolved narrows to no rows; it never
widens.
"""
from dataclasses import dataclass
import enum
from typing import Optional
from sqlalchemy import ColumnElement, false, select, true

from provider_admin.features.access.roles import (
    RoleName,
    is_basic_user,
    is_customer_admin,
    is_provider_group_admin,
    is_system_admin,
)
from provider_admin.features.providers.models import Provider, UserNpi
from provider_admin.features.users.models import User


@dataclass(frozen=True)
class CallerContext:
    """
    The authenticated caller, passed explicitly into every scope and rule check.
    """
    user_id: str
    customer_id: Optional[str]
    provider_group_id: Optional[str]
    roles: frozenset[RoleName]
    name: Optional[str] = None
    email: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "CallerContext":
        return cls(
            user_id=user.id,
            customer_id=user.customer_id,
            provider_group_id=user.provider_group_id,
            roles=user.role_set,
            name=user.name,
            email=user.email,
        )

    @property
    def is_system_admin(self) -> bool:
        return is_system_admin(self.roles)

    @property
    def is_customer_admin(self) -> bool:
        return is_customer_admin(self.roles)

    @property
    def is_provider_group_admin(self) -> bool:
        return is_provider_group_admin(self.roles)

    @property
    def is_group_scoped_admin(self) -> bool:
        """Provider-group admin without customer-wide rights."""
        return self.is_provider_group_admin and not self.is_customer_admin and not self.is_system_admin


class ScopeKind(str, enum.Enum):
    ALL = "all"
    CUSTOMER = "customer"
    PROVIDER_GROUP = "provider-group"
    ASSIGNED = "assigned"
    NONE = "none"


@dataclass(frozen=True)
class Scope:
    """
    Visibility filter for users and providers.

    Build with resolve_scope() or for_customer(); apply with
    users_clause() / providers_clause().
    """
    kind: ScopeKind
    customer_id: Optional[str] = None
    provider_group_id: Optional[str] = None
    user_id: Optional[str] = None

    @classmethod
    def nothing(cls) -> "Scope":
        return cls(kind=ScopeKind.NONE)

    @classmethod
    def for_customer(cls, customer_id: Optional[str]) -> "Scope":
        if not customer_id:
            return cls.nothing()
        return cls(kind=ScopeKind.CUSTOMER, customer_id=customer_id)

    @property
    def is_empty(self) -> bool:
        return self.kind == ScopeKind.NONE

    def users_clause(self) -> ColumnElement[bool]:
        if self.kind == ScopeKind.ALL:
            return true()
        if self.kind == ScopeKind.CUSTOMER:
            return User.customer_id == self.customer_id
        if self.kind == ScopeKind.PROVIDER_GROUP:
            return (User.customer_id == self.customer_id) & (User.provider_group_id == self.provider_group_id)
        if self.kind == ScopeKind.ASSIGNED:
            return User.id == self.user_id
        return false()

    def providers_clause(self) -> ColumnElement[bool]:
        if self.kind == ScopeKind.ALL:
            return true()
        if self.kind == ScopeKind.CUSTOMER:
            return Provider.customer_id == self.customer_id
        if self.kind == ScopeKind.PROVIDER_GROUP:
            return (Provider.customer_id == self.customer_id) & (Provider.provider_group_id == self.provider_group_id)
        if self.kind == ScopeKind.ASSIGNED:
            assigned = select(UserNpi.provider_id).where(UserNpi.user_id == self.user_id)
            return (Provider.customer_id == self.customer_id) & Provider.id.in_(assigned)
        return false()


def resolve_scope(caller: CallerContext) -> Scope:
    """
    Compute the widest scope the caller's roles allow.

    - system-admin: everything
    - customer-admin: the caller's customer
    - provider-group-admin: the caller's group; nothing if no group is set
    - basic-user: providers assigned to the caller and the caller's own user row
    - anything else, or a missing customer link: nothing
    """
    if caller.is_system_admin:
        return Scope(kind=ScopeKind.ALL)
    if not caller.customer_id:
        return Scope.nothing()
    if is_customer_admin(caller.roles):
        return Scope(kind=ScopeKind.CUSTOMER, customer_id=caller.customer_id)
    if is_provider_group_admin(caller.roles):
        if not caller.provider_group_id:
            return Scope.nothing()
        return Scope(
            kind=ScopeKind.PROVIDER_GROUP,
            customer_id=caller.customer_id,
            provider_group_id=caller.provider_group_id,
        )
    if is_basic_user(caller.roles):
        return Scope(kind=ScopeKind.ASSIGNED, customer_id=caller.customer_id, user_id=caller.user_id)
    return Scope.nothing()
