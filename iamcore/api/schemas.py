from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from iamcore.logging import get_correlation_id
from iamcore.storage.models import (
    AuditLog,
    Permission,
    Role,
    RoleScope,
    Tenant,
    TenantStatus,
    User,
    UserStatus,
)

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    "storage_error",
    "invalid_credentials",
    "user_inactive",
    "tenant_not_found",
    "tenant_inactive",
    "invalid_refresh_token",
    "invalid_token",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable machine-readable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format shared by every endpoint."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then apply NFKC."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


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


def _validate_password_strength(value: str) -> str:
    """Validate password meets minimum requirements."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


_PERMISSION_CODE = re.compile(r"^[a-z][a-z0-9_]*\.[a-z][a-z0-9_]*$")
_ROLE_NAME = re.compile(r"^[A-Z][A-Z0-9_]*$")


# auth


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=320)
    password: str = Field(..., min_length=1, max_length=1024)
    tenant_id: Optional[str] = Field(default=None, max_length=36)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        # Normalize only; a malformed address simply matches no account
        return _normalize_unicode(value.strip().lower())


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=255)


class LogoutRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=255)


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    expires_in: int


# tenants


class TenantCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    status: TenantStatus = TenantStatus.ACTIVE


class TenantResponse(BaseModel):
    id: str
    name: str
    status: TenantStatus
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, tenant: Tenant) -> "TenantResponse":
        return cls(
            id=tenant.id,
            name=tenant.name,
            status=tenant.status,
            created_at=tenant.created_at,
            updated_at=tenant.updated_at,
        )


# users


class UserCreateRequest(BaseModel):
    email: str
    password: str
    tenant_id: Optional[str] = Field(default=None, max_length=36)
    role_ids: List[str] = Field(default_factory=list, max_length=50)

    @field_validator("email")
    @classmethod
    def _validate_create_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class UserUpdateRequest(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None
    role_ids: Optional[List[str]] = Field(default=None, max_length=50)

    @field_validator("email")
    @classmethod
    def _validate_update_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: Optional[str]) -> Optional[str]:
        return _validate_password_strength(value) if value is not None else None


class UserResponse(BaseModel):
    id: str
    email: str
    tenant_id: Optional[str] = None
    status: UserStatus
    roles: List[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, user: User, roles: Optional[List[Role]] = None) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            tenant_id=user.tenant_id,
            status=user.status,
            roles=[r.name for r in roles or []],
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class UserListResponse(BaseModel):
    items: List[UserResponse]


class ProfileResponse(UserResponse):
    permissions: List[str] = Field(default_factory=list)
    is_super_admin: bool = False


class RevokedTokensResponse(BaseModel):
    user_id: str
    revoked_tokens: int


# roles and permissions


class RoleCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    scope: RoleScope = RoleScope.TENANT

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        normalized = value.strip().upper()
        if not _ROLE_NAME.match(normalized):
            raise ValueError("role name must be upper-case letters, digits and underscores")
        return normalized


class RoleResponse(BaseModel):
    id: str
    name: str
    scope: RoleScope

    @classmethod
    def from_model(cls, role: Role) -> "RoleResponse":
        return cls(id=role.id, name=role.name, scope=role.scope)


class PermissionCreateRequest(BaseModel):
    code: str = Field(..., min_length=3, max_length=100)
    description: str = Field(default="", max_length=1000)

    @field_validator("code")
    @classmethod
    def _validate_code(cls, value: str) -> str:
        normalized = value.strip().lower()
        if not _PERMISSION_CODE.match(normalized):
            raise ValueError("permission code must look like 'resource.action'")
        return normalized


class PermissionResponse(BaseModel):
    id: str
    code: str
    description: str = ""

    @classmethod
    def from_model(cls, permission: Permission) -> "PermissionResponse":
        return cls(id=permission.id, code=permission.code, description=permission.description)


# audit


class AuditLogResponse(BaseModel):
    id: str
    actor_id: str
    tenant_id: Optional[str] = None
    action: str
    target: str
    metadata: dict = Field(default_factory=dict)
    created_at: datetime

    @classmethod
    def from_model(cls, entry: AuditLog) -> "AuditLogResponse":
        return cls(
            id=entry.id,
            actor_id=entry.actor_id,
            tenant_id=entry.tenant_id,
            action=entry.action,
            target=entry.target,
            metadata=entry.metadata or {},
            created_at=entry.created_at,
        )


class AuditLogListResponse(BaseModel):
    items: List[AuditLogResponse]
    total: int
    limit: int
    offset: int
