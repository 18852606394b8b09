from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from iamcore.config import Settings, get_settings, reset_settings_cache
from iamcore.logging import get_logger
from iamcore.service.admin import AdminService
from iamcore.service.audit import AuditRecorder
from iamcore.service.auth import AuthService
from iamcore.service.gate import AuthorizationGate
from iamcore.service.passwords import PasswordHasher
from iamcore.service.permissions import PermissionResolver
from iamcore.service.refresh import RefreshTokenManager
from iamcore.service.tokens import TokenIssuer
from iamcore.storage.memory import MemoryStore
from iamcore.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a DSN with '***' for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store: Union[MemoryStore, PostgresStore]
        if self.settings.use_memory_store:
            self.store = MemoryStore()
        else:
            logger.info(
                "postgres_store_connecting",
                database_url=_mask_url_password(self.settings.database_url),
            )
            self.store = PostgresStore(
                self.settings.database_url,
                timeout_seconds=self.settings.store_timeout_seconds,
                min_size=self.settings.db_pool_min_size,
                max_size=self.settings.db_pool_max_size,
            )

        self.passwords = PasswordHasher()
        self.issuer = TokenIssuer(self.settings)
        self.refresh_tokens = RefreshTokenManager(self.store, self.settings)
        self.resolver = PermissionResolver(self.store)
        self.audit = AuditRecorder(self.store)
        self.auth = AuthService(
            self.store,
            self.settings,
            passwords=self.passwords,
            issuer=self.issuer,
            refresh_tokens=self.refresh_tokens,
            resolver=self.resolver,
            audit=self.audit,
        )
        self.admin = AdminService(self.store, self.auth)
        self.gate = AuthorizationGate(self.issuer)
        logger.info("runtime_init_complete")

    def close(self) -> None:
        self.store.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime
    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        runtime = Runtime()
        return runtime
