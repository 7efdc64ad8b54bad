"""
The closed set of role names and the predicates every route uses to test them.
"""
import enum
from collections.abc import Iterable


class RoleName(str, enum.Enum):
    """Role names stored in the ``roles`` table."""
    SYSTEM_ADMIN = "system-admin"
    CUSTOMER_ADMIN = "customer-admin"
    PROVIDER_GROUP_ADMIN = "provider-group-admin"
    BASIC_USER = "basic-user"


# Roles that can be granted through the user management routes
ASSIGNABLE_ROLES: tuple[RoleName, ...] = (
    RoleName.CUSTOMER_ADMIN,
    RoleName.PROVIDER_GROUP_ADMIN,
    RoleName.BASIC_USER,
)


def to_role_set(names: Iterable[str]) -> frozenset[RoleName]:
    """
    Convert stored role names into a frozen set of RoleName.

    Unknown names are dropped rather than raising, so a stray row in the
    roles table can never grant anything.
    """
    known = {r.value for r in RoleName}
    return frozenset(RoleName(n) for n in names if n in known)


def is_system_admin(roles: frozenset[RoleName]) -> bool:
    return RoleName.SYSTEM_ADMIN in roles


def is_customer_admin(roles: frozenset[RoleName]) -> bool:
    return RoleName.CUSTOMER_ADMIN in roles


def is_provider_group_admin(roles: frozenset[RoleName]) -> bool:
    return RoleName.PROVIDER_GROUP_ADMIN in roles


def is_basic_user(roles: frozenset[RoleName]) -> bool:
    return RoleName.BASIC_USER in roles
