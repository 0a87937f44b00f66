from datetime import datetime

from pydantic import BaseModel, EmailStr, Field, field_validator


class UserRead(BaseModel):
    id: int
    email: EmailStr
    is_active: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str = Field(min_length=8)

    @field_validator("new_password")
    @classmethod
    def password_max_bytes(cls, v: str) -> str:
        if len(v.encode("utf-8")) > 72:
            raise ValueError("Password must be 72 characters or fewer")
        return v


class ProviderKeysRead(BaseModel):
    """Which provider credentials are configured. Secrets are never returned."""

    has_hetzner_api_key: bool
    has_tailscale_api_key: bool
    hetzner_project_id: str | None
    tailscale_tailnet: str | None


class ProviderKeysUpdate(BaseModel):
    """Omitted fields are left unchanged; an empty string clears the field."""

    hetzner_api_key: str | None = Field(default=None, max_length=256)
    hetzner_project_id: str | None = Field(default=None, max_length=128)
    tailscale_api_key: str | None = Field(default=None, max_length=256)
    tailscale_tailnet: str | None = Field(default=None, max_length=128)
