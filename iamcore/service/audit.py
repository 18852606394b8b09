from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from iamcore.logging import get_logger
from iamcore.storage.errors import StoreError
from iamcore.storage.models import AuditAction, AuditLog, new_id, utcnow

logger = get_logger(__name__)

_SENSITIVE_KEY_PATTERNS = ("password", "token", "secret", "authorization")
_REDACTED_VALUE = "[REDACTED]"


class AuditStore(Protocol):
    def append_audit_log(self, entry: AuditLog) -> AuditLog: ...

    def list_audit_logs(
        self, tenant_id: Optional[str] = None, limit: int = 50, offset: int = 0
    ) -> Tuple[List[AuditLog], int]: ...


def sanitize_metadata(value: Any) -> Any:
    """Recursively replace credential-like values so they never reach the audit table."""
    if isinstance(value, dict):
        cleaned: Dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if any(pattern in key.lower() for pattern in _SENSITIVE_KEY_PATTERNS):
                cleaned[key] = _REDACTED_VALUE
            else:
                cleaned[key] = sanitize_metadata(raw_value)
        return cleaned
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


class AuditRecorder:
    """Best-effort append of audit entries.

    Called after the business mutation has been applied. A failed write is
    logged and dropped; it never reaches the caller of the business operation.
    """

    def __init__(
        self, store: AuditStore, *, clock: Callable[[], datetime] = utcnow
    ) -> None:
        self.store = store
        self._clock = clock

    def record(
        self,
        action: AuditAction | str,
        *,
        actor_id: str,
        target: str,
        tenant_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditLog]:
        action_code = action.value if isinstance(action, AuditAction) else str(action)
        entry = AuditLog(
            id=new_id(),
            actor_id=actor_id,
            action=action_code,
            target=target,
            tenant_id=tenant_id or None,
            metadata=sanitize_metadata(metadata or {}),
            created_at=self._clock(),
        )
        try:
            return self.store.append_audit_log(entry)
        except (StoreError, ValueError, TypeError) as exc:
            logger.warning(
                "audit_write_failed",
                action=action_code,
                actor_id=actor_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return None

    def list_entries(
        self, tenant_id: Optional[str] = None, limit: int = 50, offset: int = 0
    ) -> Tuple[List[AuditLog], int]:
        return self.store.list_audit_logs(tenant_id=tenant_id, limit=limit, offset=offset)
