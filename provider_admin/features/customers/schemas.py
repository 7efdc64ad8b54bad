"""
Pydantic schemas for customer listings, customer administration and
provider group management.
"""
from datetime import datetime
from typing import Annotated, Literal, Union
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field
from pydantic.alias_generators import to_camel

from provider_admin.features.notifications.toast import Toast


NPI_PATTERN = r"^\d{10}$"


class CustomerResponse(BaseModel):
    """Customer row with headcounts for the system-admin overview."""
    id: str
    name: str
    description: str | None = None
    base_npi: str | None = None
    provider_group_count: int = 0
    provider_count: int = 0
    user_count: int = 0
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Customer and provider group intents
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


Name = Annotated[str, BeforeValidator(_strip)]
OptionalText = Annotated[str | None, BeforeValidator(_blank_to_none)]


class CreateCustomer(ActionBase):
    intent: Literal["create"]
    name: Name = Field(..., min_length=1, max_length=200)
    description: OptionalText = Field(default=None, max_length=500)
    base_npi: OptionalText = Field(default=None, pattern=NPI_PATTERN)


class UpdateCustomer(ActionBase):
    intent: Literal["update"]
    customer_id: Name = Field(..., min_length=1)
    name: Name = Field(..., min_length=1, max_length=200)
    description: OptionalText = Field(default=None, max_length=500)
    base_npi: OptionalText = Field(default=None, pattern=NPI_PATTERN)


CustomerAction = Annotated[Union[CreateCustomer, UpdateCustomer], Field(discriminator="intent")]


class CreateProviderGroup(ActionBase):
    intent: Literal["create"]
    name: Name = Field(..., min_length=1, max_length=100)
    description: OptionalText = Field(default=None, max_length=500)


class UpdateProviderGroup(ActionBase):
    intent: Literal["update"]
    provider_group_id: Name = Field(..., min_length=1)
    name: Name = Field(..., min_length=1, max_length=100)
    description: OptionalText = Field(default=None, max_length=500)


class DeleteProviderGroup(ActionBase):
    intent: Literal["delete"]
    provider_group_id: Name = Field(..., min_length=1)


ProviderGroupAction = Annotated[
    Union[CreateProviderGroup, UpdateProviderGroup, DeleteProviderGroup],
    Field(discriminator="intent"),
]


class ProviderGroupRow(BaseModel):
    id: str
    name: str
    description: str | None = None
    user_count: int = 0
    provider_count: int = 0
    created_at: datetime


class ProviderGroupsPage(BaseModel):
    customer_id: str
    customer_name: str
    provider_groups: list[ProviderGroupRow]
    toast: Toast | None = None
