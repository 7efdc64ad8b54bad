"""
Pydantic schemas for Provider API responses and provider administration.
"""
from datetime import datetime
from typing import Annotated, Literal, Union
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field
from pydantic.alias_generators import to_camel

from provider_admin.features.customers.schemas import NPI_PATTERN
from provider_admin.features.notifications.toast import Toast


class RegistrationStatusResponse(BaseModel):
    """Latest PCG eMDR registration snapshot for a provider."""
    fetched_at: datetime
    reg_status: str | None = None
    stage: str | None = None
    submission_status: str | None = None
    status: str | None = None
    call_error_code: str | None = None
    call_error_description: str | None = None
    transaction_id_list: str | None = None

    model_config = ConfigDict(from_attributes=True)


class ProviderResponse(BaseModel):
    """Schema for provider response."""
    id: str
    npi: str = Field(..., description="10-digit National Provider Identifier")
    name: str | None = None
    active: bool
    customer_id: str
    provider_group_id: str | None = None
    provider_street: str | None = None
    provider_street2: str | None = None
    provider_city: str | None = None
    provider_state: str | None = None
    provider_zip: str | None = None
    pcg_provider_id: str | None = None
    registration_status: RegistrationStatusResponse | None = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Provider administration intents
# ============================================================================

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
    return _strip(v)


Text = Annotated[str, BeforeValidator(_strip)]
OptionalText = Annotated[str | None, BeforeValidator(_blank_to_none)]


class ProviderAddress(ActionBase):
    provider_street: OptionalText = Field(default=None, max_length=255)
    provider_street2: OptionalText = Field(default=None, max_length=255)
    provider_city: OptionalText = Field(default=None, max_length=100)
    provider_state: OptionalText = Field(default=None, pattern=r"^[A-Za-z]{2}$")
    provider_zip: OptionalText = Field(default=None, pattern=r"^\d{5}(-?\d{4})?$")


class CreateProvider(ProviderAddress):
    intent: Literal["create"]
    npi: Text = Field(..., pattern=NPI_PATTERN)
    name: Text = Field(..., min_length=1, max_length=255)
    provider_group_id: OptionalText = None


class EditProvider(ProviderAddress):
    intent: Literal["update"]
    provider_id: Text = Field(..., min_length=1)
    name: Text = Field(..., min_length=1, max_length=255)


class ToggleProviderActive(ActionBase):
    intent: Literal["toggle-active"]
    provider_id: Text = Field(..., min_length=1)
    active: bool


class SetProviderGroup(ActionBase):
    intent: Literal["update-group"]
    provider_id: Text = Field(..., min_length=1)
    provider_group_id: OptionalText = None


class DeleteProvider(ActionBase):
    intent: Literal["delete"]
    provider_id: Text = Field(..., min_length=1)


ProviderAction = Annotated[
    Union[CreateProvider, EditProvider, ToggleProviderActive, SetProviderGroup, DeleteProvider],
    Field(discriminator="intent"),
]


class GroupOption(BaseModel):
    id: str
    name: str

    model_config = ConfigDict(from_attributes=True)


class ProvidersPage(BaseModel):
    """Provider administration page for one customer."""
    customer_id: str
    customer_name: str
    provider_groups: list[GroupOption]
    providers: list[ProviderResponse]
    search: str = ""
    toast: Toast | None = None
