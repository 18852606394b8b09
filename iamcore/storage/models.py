from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class UserStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"


class TenantStatus(str, Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    ARCHIVED = "ARCHIVED"


class RoleScope(str, Enum):
    SYSTEM = "SYSTEM"
    TENANT = "TENANT"


class AuditAction(str, Enum):
    USER_LOGIN = "USER_LOGIN"
    USER_LOGOUT = "USER_LOGOUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_CREATED = "USER_CREATED"
    USER_UPDATED = "USER_UPDATED"
    USER_DISABLED = "USER_DISABLED"
    USER_SESSIONS_REVOKED = "USER_SESSIONS_REVOKED"
    TENANT_CREATED = "TENANT_CREATED"
    TENANT_SUSPENDED = "TENANT_SUSPENDED"
    ROLE_CREATED = "ROLE_CREATED"
    PERMISSION_CREATED = "PERMISSION_CREATED"
    ROLE_PERMISSION_ASSIGNED = "ROLE_PERMISSION_ASSIGNED"
    ROLE_PERMISSION_REMOVED = "ROLE_PERMISSION_REMOVED"


@dataclass
class Tenant:
    id: str
    name: str
    status: TenantStatus = TenantStatus.ACTIVE
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == TenantStatus.ACTIVE


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    # None only for the tenant-independent system actor
    tenant_id: Optional[str] = None
    status: UserStatus = UserStatus.ACTIVE
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE


@dataclass
class Role:
    id: str
    name: str
    scope: RoleScope = RoleScope.TENANT
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Permission:
    id: str
    code: str
    description: str = ""
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class RefreshToken:
    token: str
    user_id: str
    tenant_id: Optional[str]
    expires_at: datetime
    revoked_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_usable(self, now: datetime) -> bool:
        return self.revoked_at is None and now < self.expires_at


@dataclass
class AuditLog:
    id: str
    actor_id: str
    action: str
    target: str
    tenant_id: Optional[str] = None
    metadata: Dict | None = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class AccessTokenClaims:
    """Claims embedded in a signed access token.

    Field names and JSON types are shared with every service that accepts
    these tokens. ``tenant_id`` is the empty string for system-scope actors.
    """

    sub: str
    tenant_id: str
    role: str
    permissions: Tuple[str, ...]
    is_super_admin: bool
    iat: int
    exp: int
    iss: str

    def to_payload(self) -> dict:
        return {
            "sub": self.sub,
            "tenant_id": self.tenant_id,
            "role": self.role,
            "permissions": list(self.permissions),
            "is_super_admin": self.is_super_admin,
            "iat": self.iat,
            "exp": self.exp,
            "iss": self.iss,
        }
