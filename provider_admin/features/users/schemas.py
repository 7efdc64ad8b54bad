"""
Pydantic schemas for authentication and the caller's own profile.
"""
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=255, description="Username or email")
    password: str = Field(..., min_length=1, max_length=255)


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
    must_change_password: bool


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class AssignedNpi(BaseModel):
    id: str
    npi: str
    name: str | None = None

    model_config = ConfigDict(from_attributes=True)


class UserResponse(BaseModel):
    """The signed-in user's profile."""
    id: str
    email: str
    username: str
    name: str | None = None
    active: bool
    must_change_password: bool
    roles: list[str]
    customer_id: str | None = None
    customer_name: str | None = None
    provider_group_id: str | None = None
    provider_group_name: str | None = None
    password_changed_at: datetime | None = None
    last_login_at: datetime | None = None
    npis: list[AssignedNpi] = []
    created_at: datetime
