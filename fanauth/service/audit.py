from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from fanauth.logging import get_logger
from fanauth.storage.interfaces import AuditStore
from fanauth.storage.models import AuditAction, AuditEntry, utcnow

logger = get_logger(__name__)

AUDIT_SOURCE = "auth_service"


class AuditLogger:
    """Append-only recorder for security events.

    Writes are best effort: a failing store is logged and never turns into an
    auth failure for the caller.
    """

    def __init__(
        self,
        store: AuditStore,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self._clock = clock or utcnow

    async def log(
        self,
        action: AuditAction,
        *,
        ip_address: Optional[str],
        user_id: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditEntry]:
        now = self._clock()
        entry = AuditEntry.new(
            action,
            ip_address=ip_address,
            user_id=user_id,
            user_agent=user_agent,
            metadata={
                **(metadata or {}),
                "timestamp": now.isoformat(),
                "source": AUDIT_SOURCE,
            },
            created_at=now,
        )
        logger.info(
            "audit_event",
            action=entry.action.value,
            severity=entry.severity,
            user_id=user_id,
            ip_address=ip_address,
        )
        try:
            self.store.insert_audit_entry(entry)
        except Exception as exc:
            logger.error(
                "audit_write_failed",
                action=entry.action.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
        return entry

    async def count_recent(
        self,
        action: AuditAction,
        window: timedelta,
        *,
        email: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> int:
        since = self._clock() - window
        try:
            return self.store.count_recent_entries(
                action, since, email=email, ip_address=ip_address
            )
        except Exception as exc:
            logger.error(
                "audit_count_failed",
                action=action.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return 0


__all__ = ["AuditLogger", "AUDIT_SOURCE"]
