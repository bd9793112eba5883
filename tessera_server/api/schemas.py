# Copyright (C) 2024 Tessera Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Pydantic schemas for API request/response."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from tessera_server.models import Role


# Auth
class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1, max_length=200)


class AccountResponse(BaseModel):
    """Public account fields. The password hash is never serialized."""

    id: int
    email: str
    name: str | None = None
    role: Role
    is_active: bool
    created_at: datetime
    updated_at: datetime
    last_login_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class MeResponse(BaseModel):
    user: AccountResponse
    csrf_token: str


class ProfileUpdate(BaseModel):
    name: str | None = Field(default=None, max_length=255)


class PasswordChange(BaseModel):
    current_password: str = Field(min_length=1, max_length=200)
    new_password: str = Field(min_length=1, max_length=200)


class AccountUpdate(BaseModel):
    name: str | None = Field(default=None, max_length=255)
    role: Role | None = None
    is_active: bool | None = None


# Sessions
class SessionResponse(BaseModel):
    id: int
    account_id: int
    created_at: datetime
    expires_at: datetime
    user_agent: str | None = None
    ip_address: str | None = None
    is_current: bool = False

    model_config = ConfigDict(from_attributes=True)


class LogoutAllRequest(BaseModel):
    keep_current: bool = False


class LogoutAllResponse(BaseModel):
    success: bool = True
    sessions_revoked: int
    keep_current: bool


class ForceLogoutResponse(BaseModel):
    success: bool = True
    sessions_revoked: int
    target_user: dict[str, Any]


# Invitations
class InvitationCreate(BaseModel):
    email: EmailStr
    role: Role


class InvitationResponse(BaseModel):
    """Invitation without its token hash."""

    id: int
    email: str
    role: Role
    expires_at: datetime
    created_at: datetime
    invited_by_id: int | None = None
    accepted_at: datetime | None = None
    revoked: bool

    model_config = ConfigDict(from_attributes=True)


class InvitationCreated(BaseModel):
    invitation: InvitationResponse
    # Returned once so it can be passed on out-of-band if email delivery fails
    token: str
    email_sent: bool


class AcceptInvitationRequest(BaseModel):
    token: str = Field(min_length=1, max_length=256)
    email: EmailStr
    password: str = Field(min_length=1, max_length=200)
    name: str | None = Field(default=None, max_length=255)


# Audit
class AuditLogResponse(BaseModel):
    id: int
    user_id: int | None = None
    user_email: str
    user_name: str | None = None
    action: str
    resource_type: str
    resource_id: int | None = None
    resource_name: str | None = None
    changes: dict[str, Any] | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    status: str
    error_message: str | None = None
    created_at: datetime


class AuditLogPage(BaseModel):
    logs: list[AuditLogResponse]
    total: int
    page: int
    page_size: int
    total_pages: int


class CleanupResponse(BaseModel):
    success: bool = True
    sessions_deleted: int
    invitations_deleted: int
    timestamp: datetime
