"""Schemas related to user profiles."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, constr


class PublicUser(BaseModel):
    """Public-facing user information including presence."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    login: str
    display_name: str | None = None
    is_online: bool = False
    last_seen_at: datetime | None = None


class UserProfileUpdate(BaseModel):
    """Payload for updating the current user's profile."""

    display_name: constr(strip_whitespace=True, min_length=1, max_length=128) | None = Field(
        default=None,
        description="New display name to use. Pass null to reset to login.",
    )


class PasswordChange(BaseModel):
    """Payload for changing the current user's password."""

    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: constr(min_length=8, max_length=128) = Field(
        ..., description="Replacement password, hashed before storing"
    )
