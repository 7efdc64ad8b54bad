"""
Pydantic schemas for the user management pages.

Each POST carries an ``intent`` field selecting one of the action
models below. Field names accept both snake_case and the camelCase used by
the HTML forms (``userId``, ``providerGroupId``, ``providerIds``).
"""
from datetime import datetime
from typing import Annotated, Literal, Union
from pydantic import BaseModel, BeforeValidator, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

from provider_admin.features.notifications.toast import Toast


USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 32
USERNAME_PATTERN = r"^[A-Za-z0-9_]+$"

AssignableRole = Literal["customer-admin", "provider-group-admin", "basic-user"]


class ActionBase(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


def _strip(v):
    return v.strip() if isinstance(v, str) else v


def _blank_to_none(v):
    if isinstance(v, str) and not v.strip():
        return None
    return v


def _id_list(v):
    if isinstance(v, str):
        v = [v]
    return [pid.strip() for pid in (v or []) if isinstance(pid, str) and pid.strip()]


Text = Annotated[str, BeforeValidator(_strip)]
OptionalId = Annotated[str | None, BeforeValidator(_blank_to_none)]


class CreateUser(ActionBase):
    intent: Literal["create"]
    name: Text = Field(..., min_length=1, max_length=255)
    email: Annotated[EmailStr, BeforeValidator(_strip)]
    username: Text = Field(
        ..., min_length=USERNAME_MIN_LENGTH, max_length=USERNAME_MAX_LENGTH, pattern=USERNAME_PATTERN
    )
    role: AssignableRole
    provider_group_id: OptionalId = None
    active: bool = True


class UpdateUser(ActionBase):
    intent: Literal["update"]
    user_id: Text = Field(..., min_length=1)
    name: Text = Field(..., min_length=1, max_length=255)
    role: AssignableRole
    provider_group_id: OptionalId = None
    # Only honoured on the system-admin route
    active: bool | None = None


class DeleteUser(ActionBase):
    intent: Literal["delete"]
    user_id: Text = Field(..., min_length=1)
    # Required on the system-admin route: the target's username, typed by hand
    confirm: Annotated[str | None, BeforeValidator(_strip)] = None


class AssignNpis(ActionBase):
    intent: Literal["assign-npis"]
    user_id: Text = Field(..., min_length=1)
    provider_ids: Annotated[list[str], BeforeValidator(_id_list)] = Field(default_factory=list)


class ResetPassword(ActionBase):
    intent: Literal["reset-password"]
    user_id: Text = Field(..., min_length=1)
    mode: Literal["auto", "manual"]
    # Checked against the password policy as typed, surrounding spaces included
    manual_password: str | None = None


class SetActive(ActionBase):
    intent: Literal["set-active"]
    user_id: Text = Field(..., min_length=1)
    status: Literal["active", "inactive"]


class CheckAvailability(ActionBase):
    intent: Literal["check-availability"]
    field: Literal["email", "username"]
    value: Text = Field(..., min_length=1)


UserAction = Annotated[
    Union[CreateUser, UpdateUser, DeleteUser, AssignNpis, ResetPassword, SetActive, CheckAvailability],
    Field(discriminator="intent"),
]


class AvailabilityResponse(BaseModel):
    exists: bool


# ============================================================================
# Page payloads
# ============================================================================

class ProviderGroupSummary(BaseModel):
    id: str
    name: str
    user_count: int = 0
    provider_count: int = 0

    model_config = ConfigDict(from_attributes=True)


class ProviderSummary(BaseModel):
    id: str
    npi: str
    name: str | None = None
    active: bool
    provider_group_id: str | None = None

    model_config = ConfigDict(from_attributes=True)


class ManagedUser(BaseModel):
    id: str
    name: str | None = None
    email: str
    username: str
    active: bool
    must_change_password: bool
    roles: list[str]
    provider_group_id: str | None = None
    provider_group_name: str | None = None
    npis: list[ProviderSummary] = []
    created_at: datetime


class CustomerSummary(BaseModel):
    id: str
    name: str
    description: str | None = None

    model_config = ConfigDict(from_attributes=True)


class UsersPage(BaseModel):
    customer: CustomerSummary
    provider_groups: list[ProviderGroupSummary]
    providers: list[ProviderSummary]
    users: list[ManagedUser]
    search: str = ""
    toast: Toast | None = None
