"""Pydantic schemas for the identity API."""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, EmailStr, Field

from warden.auth.permissions import Permission, Role
from warden.db.models import SocialProvider


# ─── Auth ────────────────────────────────────────────────


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1, max_length=128)


class LoginRequest(BaseModel):
    email: str
    password: str


class ProviderLoginRequest(BaseModel):
    provider: SocialProvider
    access_token: str = Field(min_length=1)


class RefreshRequest(BaseModel):
    refresh_token: str


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_at: datetime
    user_id: uuid.UUID
    roles: list[Role]
    permissions: list[Permission]


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=128)
    new_password: str = Field(min_length=1, max_length=128)


class PasswordForgotRequest(BaseModel):
    email: str


class PasswordForgotResponse(BaseModel):
    """Same response whether or not the address is known."""

    accepted: bool = True


class PasswordResetRequest(BaseModel):
    token: str
    new_password: str = Field(min_length=1, max_length=128)


class MeResponse(BaseModel):
    id: uuid.UUID
    roles: list[Role]
    permissions: list[Permission]
    emails: list["EmailRead"]


# ─── Emails ──────────────────────────────────────────────


class EmailCreate(BaseModel):
    email: EmailStr


class EmailRead(BaseModel):
    id: uuid.UUID
    address: str
    verified: bool
    is_primary: bool
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class EmailVerifyRequest(BaseModel):
    token: str


# ─── Admin ───────────────────────────────────────────────


class PermissionGrant(BaseModel):
    permission: Permission


class RoleAssign(BaseModel):
    role: Role


class UserPermissionsRead(BaseModel):
    user_id: uuid.UUID
    roles: list[Role]
    direct: list[Permission]
    effective: list[Permission]


class UserSummary(BaseModel):
    id: uuid.UUID
    primary_email: Optional[str] = None
    created_at: datetime


class UserPage(BaseModel):
    """One page of users, newest first; pass next_cursor back to continue."""

    data: list[UserSummary]
    next_cursor: Optional[str] = None


MeResponse.model_rebuild()
