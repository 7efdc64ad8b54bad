"""
Pydantic schemas for the eMDR provider management page.
"""
from datetime import datetime
from typing import Annotated, Any, Literal, Union
from pydantic import BaseModel, BeforeValidator, Field

from provider_admin.features.notifications.toast import Toast


def _strip(v):
    return v.strip() if isinstance(v, str) else v


def _upper(v):
    return v.strip().upper() if isinstance(v, str) else v


Text = Annotated[str, BeforeValidator(_strip)]
Npi = Annotated[str, BeforeValidator(_strip), Field(pattern=r"^\d{10}$")]


class FetchProviders(BaseModel):
    intent: Literal["fetch"]


class UpdateProvider(BaseModel):
    """Name and mailing address pushed to PCG."""
    intent: Literal["update-provider"]
    provider_name: Text = Field(..., min_length=1, max_length=255)
    provider_npi: Npi
    provider_street: Text = Field(..., min_length=1, max_length=255)
    provider_street2: Text = Field(default="", max_length=255)
    provider_city: Text = Field(..., min_length=1, max_length=100)
    provider_state: Annotated[str, BeforeValidator(_upper)] = Field(..., pattern=r"^[A-Z]{2}$")
    provider_zip: Text = Field(..., pattern=r"^\d{5}(-?\d{4})?$")

    def to_pcg_payload(self) -> dict[str, str]:
        return self.model_dump(exclude={"intent"})


class FetchRegistrations(BaseModel):
    intent: Literal["fetch-registrations"]


class EmdrAction(BaseModel):
    intent: Literal["emdr-register", "emdr-deregister", "emdr-electronic-only"]
    # PCG's id for the provider, obtained from update-provider or the list sync
    provider_id: Text = Field(..., min_length=1)
    provider_npi: Text = ""


class ReassignProviderCustomer(BaseModel):
    intent: Literal["reassign-provider-customer"]
    provider_npi: Npi
    customer_id: Text = Field(..., min_length=1)


class RenameCustomer(BaseModel):
    intent: Literal["rename-customer"]
    customer_id: Text = Field(..., min_length=1)
    name: Text = Field(..., min_length=2, max_length=200)


EmdrIntent = Annotated[
    Union[
        FetchProviders,
        UpdateProvider,
        FetchRegistrations,
        EmdrAction,
        ReassignProviderCustomer,
        RenameCustomer,
    ],
    Field(discriminator="intent"),
]


class EmdrRow(BaseModel):
    """One provider with its PCG list and registration details merged."""
    id: str
    npi: str
    provider_name: str | None = None
    pcg_provider_id: str | None = None
    customer_id: str
    customer_name: str | None = None
    provider_group_name: str | None = None
    provider_street: str | None = None
    provider_street2: str | None = None
    provider_city: str | None = None
    provider_state: str | None = None
    provider_zip: str | None = None
    registered_for_emdr: bool = False
    registered_for_emdr_electronic_only: bool = False
    last_submitted_transaction: str | None = None
    reg_status: str | None = None
    stage: str | None = None
    status: str | None = None
    submission_status: str | None = None
    call_error_code: str | None = None
    transaction_id_list: list[str] | None = None
    status_changes: list[Any] = []
    errors: list[Any] = []
    error_list: list[Any] = []
    registration_fetched_at: datetime | None = None
    pcg_list_at: datetime | None = None
    pcg_update_response: dict[str, Any] | None = None
    pcg_update_at: datetime | None = None
    assigned_usernames: list[str] = []
    assigned_emails: list[str] = []


class CustomerOption(BaseModel):
    id: str
    name: str


class EmdrPage(BaseModel):
    rows: list[EmdrRow]
    customers: list[CustomerOption]
    total: int
    toast: Toast | None = None
