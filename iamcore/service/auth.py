from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterator, List, Optional, Protocol, Sequence

from iamcore.config import Settings
from iamcore.logging import get_logger
from iamcore.service.audit import AuditRecorder
from iamcore.service.errors import (
    ConflictError,
    Forbidden,
    InvalidCredentials,
    InvalidRefreshToken,
    NotFoundError,
    StorageError,
    TenantInactive,
    TenantNotFound,
    UserInactive,
)
from iamcore.service.passwords import PasswordHasher
from iamcore.service.permissions import PermissionResolver
from iamcore.service.refresh import RefreshTokenManager
from iamcore.service.tokens import TokenIssuer
from iamcore.storage.errors import ConstraintViolation, StoreError
from iamcore.storage.models import (
    AuditAction,
    Permission,
    RefreshToken,
    Role,
    Tenant,
    User,
    utcnow,
)

logger = get_logger(__name__)


class AuthStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str, tenant_id: Optional[str]) -> Optional[User]: ...

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    def get_user_roles(self, user_id: str) -> List[Role]: ...

    def get_role_permissions(self, role_id: str) -> List[Permission]: ...

    def deactivate_user(self, user_id: str, now: datetime) -> Optional[int]: ...

    def save_refresh_token(self, token: RefreshToken) -> RefreshToken: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def revoke_refresh_token(self, token: str, now: datetime) -> bool: ...

    def revoke_user_refresh_tokens(self, user_id: str, now: datetime) -> int: ...

    def rotate_refresh_token(
        self, old_token: str, successor: RefreshToken, now: datetime
    ) -> bool: ...


@contextmanager
def store_errors(operation: str) -> Iterator[None]:
    """Translate store failures into service errors for one operation."""
    try:
        yield
    except ConstraintViolation as exc:
        raise ConflictError(exc.message, detail=exc.detail) from exc
    except StoreError as exc:
        logger.error("storage_operation_failed", operation=operation, error=exc.message)
        raise StorageError(detail={"operation": operation}) from exc


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int

    def to_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_in": self.expires_in,
        }


class AuthService:
    """Login, refresh, logout and forced sign-out over the credential store."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
        passwords: Optional[PasswordHasher] = None,
        issuer: Optional[TokenIssuer] = None,
        refresh_tokens: Optional[RefreshTokenManager] = None,
        resolver: Optional[PermissionResolver] = None,
        audit: Optional[AuditRecorder] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock
        self.passwords = passwords or PasswordHasher()
        self.issuer = issuer or TokenIssuer(settings, clock=clock)
        self.refresh_tokens = refresh_tokens or RefreshTokenManager(
            store, settings, clock=clock
        )
        self.resolver = resolver or PermissionResolver(store)
        self.audit = audit or AuditRecorder(store, clock=clock)
        self.logger = logger

    def _is_super_admin(self, roles: Sequence[Role]) -> bool:
        return self.issuer.is_super_admin(roles)

    async def login(
        self, email: str, password: str, tenant_id: Optional[str] = None
    ) -> TokenPair:
        tenant_key = tenant_id or None
        with store_errors("login"):
            user = self.store.get_user_by_email(email, tenant_key)
            # Unknown user, wrong password and wrong tenant are indistinguishable
            if user is None or not self.passwords.verify(user.password_hash, password):
                self.logger.info("login_rejected", reason="invalid_credentials", tenant_id=tenant_key)
                raise InvalidCredentials()
            if not user.is_active:
                self.logger.info("login_rejected", reason="user_inactive", user_id=user.id)
                raise UserInactive()
            tenant = self._require_active_tenant(user)
            roles, permissions = self.resolver.resolve_for_user(user.id)
            if user.tenant_id is None and not self._is_super_admin(roles):
                # Tenant-less accounts only make sense for the system super-admin
                self.logger.warning("login_rejected", reason="system_user_without_role", user_id=user.id)
                raise TenantNotFound()

        access_token = self.issuer.issue(user, tenant, roles, permissions)
        refresh = self.refresh_tokens.issue(user.id, user.tenant_id)

        self.audit.record(
            AuditAction.USER_LOGIN,
            actor_id=user.id,
            target=user.id,
            tenant_id=user.tenant_id,
        )
        self.logger.info("login_succeeded", user_id=user.id, tenant_id=user.tenant_id)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh.token,
            expires_in=self.settings.access_token_ttl_seconds,
        )

    def _require_active_tenant(self, user: User) -> Optional[Tenant]:
        if user.tenant_id is None:
            return None
        tenant = self.store.get_tenant(user.tenant_id)
        if tenant is None:
            self.logger.warning("login_rejected", reason="tenant_not_found", user_id=user.id)
            raise TenantNotFound()
        if not tenant.is_active:
            self.logger.info("login_rejected", reason="tenant_inactive", tenant_id=tenant.id)
            raise TenantInactive()
        return tenant

    async def refresh(self, refresh_token: str) -> TokenPair:
        try:
            record = self.refresh_tokens.validate(refresh_token)
        except InvalidRefreshToken as exc:
            self.logger.info("refresh_rejected", reason=type(exc).__name__)
            raise

        with store_errors("refresh"):
            user = self.store.get_user(record.user_id)
            if user is None or not user.is_active or user.tenant_id != record.tenant_id:
                self.logger.info("refresh_rejected", reason="user_unavailable", user_id=record.user_id)
                raise InvalidRefreshToken()
            tenant = None
            if user.tenant_id is not None:
                tenant = self.store.get_tenant(user.tenant_id)
                if tenant is None or not tenant.is_active:
                    self.logger.info("refresh_rejected", reason="tenant_unavailable", tenant_id=user.tenant_id)
                    raise InvalidRefreshToken()
            # Re-resolve so the new token carries current privileges
            roles, permissions = self.resolver.resolve_for_user(user.id)
            if user.tenant_id is None and not self._is_super_admin(roles):
                raise InvalidRefreshToken()

        try:
            successor = self.refresh_tokens.rotate(record.token, user.id, user.tenant_id)
        except InvalidRefreshToken:
            self.logger.info("refresh_rejected", reason="rotation_lost", user_id=user.id)
            raise
        access_token = self.issuer.issue(user, tenant, roles, permissions)

        self.audit.record(
            AuditAction.TOKEN_REFRESHED,
            actor_id=user.id,
            target=user.id,
            tenant_id=user.tenant_id,
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=successor.token,
            expires_in=self.settings.access_token_ttl_seconds,
        )

    async def logout(
        self, actor_id: str, refresh_token: str, *, tenant_id: Optional[str] = None
    ) -> bool:
        """Revoke the caller's refresh token. Unknown or spent tokens are not an error.

        Access tokens already issued stay valid until they expire.
        """
        record = self.refresh_tokens.get(refresh_token) if refresh_token else None
        if record is not None and record.user_id != actor_id:
            self.logger.warning("logout_rejected", reason="token_owner_mismatch", user_id=actor_id)
            raise Forbidden("cannot revoke another user's session")
        revoked = self.refresh_tokens.revoke(refresh_token) if record else False
        self.audit.record(
            AuditAction.USER_LOGOUT,
            actor_id=actor_id,
            target=actor_id,
            tenant_id=tenant_id,
            metadata={"revoked": revoked},
        )
        self.logger.info("logout_completed", user_id=actor_id, revoked=revoked)
        return revoked

    async def disable_user(
        self, user_id: str, actor_id: str, *, tenant_id: Optional[str] = None
    ) -> int:
        """Set the user INACTIVE and revoke all their refresh tokens atomically."""
        with store_errors("disable_user"):
            revoked = self.store.deactivate_user(user_id, self._clock())
        if revoked is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        self.audit.record(
            AuditAction.USER_DISABLED,
            actor_id=actor_id,
            target=user_id,
            tenant_id=tenant_id,
            metadata={"revoked_count": revoked},
        )
        self.logger.info("user_disabled", user_id=user_id, actor_id=actor_id, revoked=revoked)
        return revoked

    async def revoke_sessions(
        self, user_id: str, actor_id: str, *, tenant_id: Optional[str] = None
    ) -> int:
        """Revoke every refresh token of a user without changing their status."""
        with store_errors("revoke_sessions"):
            user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        revoked = self.refresh_tokens.revoke_all(user_id)
        self.audit.record(
            AuditAction.USER_SESSIONS_REVOKED,
            actor_id=actor_id,
            target=user_id,
            tenant_id=tenant_id,
            metadata={"revoked_count": revoked},
        )
        return revoked
