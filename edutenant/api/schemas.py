from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from edutenant.logging import get_correlation_id
from edutenant.storage.models import Account, Invitation, InvitationStatus, Role, Tenant

MAX_EXTRA_FIELDS = 16
MAX_EXTRA_VALUE_LENGTH = 256


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width and bidi override characters."""
    zero_width = "​‌‍﻿"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "invalid_state",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error body with a stable machine-readable code."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_name(value: str) -> str:
    normalized = _normalize_unicode(value).strip()
    if not normalized:
        raise ValueError("name cannot be empty")
    return normalized


# requests
class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=128)
    tenant_id: Optional[str] = Field(default=None, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=256)


class LogoutRequest(RefreshRequest):
    pass


class ForgotPasswordRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., max_length=128)
    new_password: str = Field(..., max_length=128)


class InviteRequest(BaseModel):
    role: Role
    email: str
    name: str = Field(..., max_length=200)
    tenant_id: Optional[str] = Field(
        default=None, max_length=128, description="Target tenant; only honoured for ADMIN"
    )
    extra: Dict[str, Optional[str]] = Field(
        default_factory=dict,
        description="Role-specific profile fields, e.g. disciplina, formacao, registro, telefone",
    )

    @field_validator("email")
    @classmethod
    def _validate_invite_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("name")
    @classmethod
    def _validate_invite_name(cls, value: str) -> str:
        return _validate_name(value)

    @field_validator("extra")
    @classmethod
    def _validate_extra(cls, value: Dict[str, Optional[str]]) -> Dict[str, Optional[str]]:
        if len(value) > MAX_EXTRA_FIELDS:
            raise ValueError(f"at most {MAX_EXTRA_FIELDS} extra fields are allowed")
        for key, item in value.items():
            if item is not None and len(item) > MAX_EXTRA_VALUE_LENGTH:
                raise ValueError(f"extra field '{key}' is too long")
        return value


class AcceptInviteRequest(BaseModel):
    token: str = Field(..., max_length=128)
    password: str = Field(..., max_length=128)


class UpdateAccountRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=200)
    email: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _validate_update_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None


class AdminCreateAccountRequest(BaseModel):
    email: str
    name: str = Field(..., max_length=200)
    role: Role
    password: str = Field(..., max_length=128)
    tenant_id: Optional[str] = Field(default=None, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_admin_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("name")
    @classmethod
    def _validate_admin_name(cls, value: str) -> str:
        return _validate_name(value)


class TenantCreateRequest(BaseModel):
    name: str = Field(..., max_length=200)
    active: bool = True

    @field_validator("name")
    @classmethod
    def _validate_tenant_name(cls, value: str) -> str:
        return _validate_name(value)


# responses
class MessageResponse(BaseModel):
    message: str


class AccountResponse(BaseModel):
    id: str
    tenant_id: Optional[str]
    email: str
    name: str
    role: Role
    active: bool
    created_at: datetime
    deactivated_at: Optional[datetime] = None
    profile: Dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.id,
            tenant_id=account.tenant_id,
            email=account.email,
            name=account.name,
            role=account.role,
            active=account.is_active,
            created_at=account.created_at,
            deactivated_at=account.deactivated_at,
            profile=dict(account.profile),
        )


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    account: AccountResponse


class AccountListResponse(BaseModel):
    items: List[AccountResponse]
    total: int
    page: int
    limit: int


class InvitationResponse(BaseModel):
    id: str
    tenant_id: str
    email: str
    name: str
    role: Role
    status: InvitationStatus
    expires_at: datetime
    created_at: datetime
    created_by: Optional[str] = None
    accepted_at: Optional[datetime] = None

    @classmethod
    def from_invitation(cls, invitation: Invitation) -> "InvitationResponse":
        return cls(
            id=invitation.id,
            tenant_id=invitation.tenant_id,
            email=invitation.email,
            name=invitation.name,
            role=invitation.role,
            status=invitation.status,
            expires_at=invitation.expires_at,
            created_at=invitation.created_at,
            created_by=invitation.created_by,
            accepted_at=invitation.accepted_at,
        )


class InvitationListResponse(BaseModel):
    items: List[InvitationResponse]
    total: int
    page: int
    limit: int


class InvitePreviewResponse(BaseModel):
    email: str
    name: str
    role: Role
    tenant_id: str
    tenant_name: str


class TenantResponse(BaseModel):
    id: str
    name: str
    active: bool

    @classmethod
    def from_tenant(cls, tenant: Tenant) -> "TenantResponse":
        return cls(id=tenant.id, name=tenant.name, active=tenant.active)
