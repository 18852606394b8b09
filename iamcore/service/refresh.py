from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from iamcore.config import Settings
from iamcore.logging import get_logger
from iamcore.service.errors import (
    RefreshTokenExpired,
    RefreshTokenNotFound,
    RefreshTokenRevoked,
    StorageError,
)
from iamcore.storage.errors import StoreError
from iamcore.storage.models import RefreshToken, utcnow

logger = get_logger(__name__)

# 32 random bytes -> 64 hex chars, 256 bits of entropy
TOKEN_BYTES = 32


class RefreshTokenStore(Protocol):
    def save_refresh_token(self, token: RefreshToken) -> RefreshToken: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def revoke_refresh_token(self, token: str, now: datetime) -> bool: ...

    def revoke_user_refresh_tokens(self, user_id: str, now: datetime) -> int: ...

    def rotate_refresh_token(
        self, old_token: str, successor: RefreshToken, now: datetime
    ) -> bool: ...


class RefreshTokenManager:
    """Opaque, store-backed renewal credentials.

    A token is honored only while it exists, has no ``revoked_at`` and
    ``now < expires_at``. Rotation is a single store operation so a token is
    consumed at most once and never left without a successor.
    """

    def __init__(
        self,
        store: RefreshTokenStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.ttl = timedelta(seconds=settings.refresh_token_ttl_seconds)
        self._clock = clock

    def generate(self) -> str:
        return secrets.token_hex(TOKEN_BYTES)

    def new_token(self, user_id: str, tenant_id: Optional[str]) -> RefreshToken:
        now = self._clock()
        return RefreshToken(
            token=self.generate(),
            user_id=user_id,
            tenant_id=tenant_id,
            expires_at=now + self.ttl,
            created_at=now,
        )

    def save(
        self,
        token: str,
        user_id: str,
        tenant_id: Optional[str],
        expires_at: datetime,
    ) -> RefreshToken:
        record = RefreshToken(
            token=token,
            user_id=user_id,
            tenant_id=tenant_id,
            expires_at=expires_at,
            created_at=self._clock(),
        )
        try:
            return self.store.save_refresh_token(record)
        except StoreError as exc:
            logger.error("refresh_token_save_failed", user_id=user_id, error=exc.message)
            raise StorageError(detail={"operation": "save_refresh_token"}) from exc

    def issue(self, user_id: str, tenant_id: Optional[str]) -> RefreshToken:
        record = self.new_token(user_id, tenant_id)
        return self.save(record.token, user_id, tenant_id, record.expires_at)

    def get(self, token: str) -> Optional[RefreshToken]:
        try:
            return self.store.get_refresh_token(token)
        except StoreError as exc:
            raise StorageError(detail={"operation": "get_refresh_token"}) from exc

    def validate(self, token: str) -> RefreshToken:
        record = self.get(token) if token else None
        if record is None:
            raise RefreshTokenNotFound()
        if record.revoked_at is not None:
            raise RefreshTokenRevoked()
        if self._clock() >= record.expires_at:
            raise RefreshTokenExpired()
        return record

    def revoke(self, token: str) -> bool:
        """Revoke one token. Revoking an unknown or already revoked token is a no-op."""
        try:
            return self.store.revoke_refresh_token(token, self._clock())
        except StoreError as exc:
            raise StorageError(detail={"operation": "revoke_refresh_token"}) from exc

    def revoke_all(self, user_id: str) -> int:
        try:
            revoked = self.store.revoke_user_refresh_tokens(user_id, self._clock())
        except StoreError as exc:
            raise StorageError(detail={"operation": "revoke_user_refresh_tokens"}) from exc
        logger.info("refresh_tokens_revoked", user_id=user_id, count=revoked)
        return revoked

    def rotate(
        self, old_token: str, user_id: str, tenant_id: Optional[str]
    ) -> RefreshToken:
        successor = self.new_token(user_id, tenant_id)
        try:
            rotated = self.store.rotate_refresh_token(
                old_token, successor, self._clock()
            )
        except StoreError as exc:
            logger.error("refresh_token_rotate_failed", user_id=user_id, error=exc.message)
            raise StorageError(detail={"operation": "rotate_refresh_token"}) from exc
        if not rotated:
            # Another caller consumed the token first, or it lapsed meanwhile
            raise RefreshTokenRevoked()
        return successor
