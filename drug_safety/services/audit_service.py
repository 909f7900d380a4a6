"""
Audit Service: compliance trail for drug safety checks and overrides.

Every event is written to the audit store and mirrored as a JSON line on the
``audit.drug_safety`` logger. Audit writes never raise into the caller.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from ..config import Settings
from ..models.checks import AuditAction, AuditEvent
from .stores import AuditStore

logger = logging.getLogger(__name__)


class AuditService:
    """
    Writes audit events for checks, lookups, allergy changes and overrides.

    Failures are logged locally and swallowed so the clinical action that
    triggered the event still completes.
    """

    def __init__(self, store: AuditStore, settings: Settings, log_level: int = logging.INFO):
        self._store = store
        self._retention = timedelta(days=settings.audit_retention_days)
        self._logger = logging.getLogger("audit.drug_safety")
        self._log_level = log_level

        # Ensure audit logger is configured
        if not self._logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter(
                '%(asctime)s AUDIT %(message)s'
            ))
            self._logger.addHandler(handler)
            self._logger.setLevel(log_level)

    def log(self, event: AuditEvent) -> Optional[AuditEvent]:
        """Persist an audit event. Returns the stored event, or None on failure."""
        if event.retention_until is None:
            event = event.model_copy(update={"retention_until": event.timestamp + self._retention})
        try:
            stored = self._store.append(event)
        except Exception:
            logger.exception(
                "audit.write_failed action=%s resource=%s/%s",
                event.action,
                event.resource_type,
                event.resource_id,
            )
            return None
        self._logger.log(self._log_level, stored.model_dump_json())
        return stored

    def log_action(
        self,
        *,
        action: AuditAction,
        resource_type: str,
        resource_id: str,
        user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        success: bool = True,
        error_message: Optional[str] = None,
    ) -> Optional[AuditEvent]:
        return self.log(
            AuditEvent(
                user_id=user_id,
                action=action,
                resource_type=resource_type,
                resource_id=resource_id,
                metadata=metadata or {},
                success=success,
                error_message=error_message[:500] if error_message else None,
            )
        )

    def logs_for_user(self, user_id: str, *, limit: int = 50, offset: int = 0) -> List[AuditEvent]:
        return self._store.list(user_id=user_id, limit=limit, offset=offset)

    def logs_for_resource(
        self,
        resource_type: str,
        resource_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> List[AuditEvent]:
        return self._store.list(
            resource_type=resource_type,
            resource_id=resource_id,
            limit=limit,
            offset=offset,
        )

    def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        """Drop events past their retention date. Housekeeping only."""
        try:
            removed = self._store.delete_expired(now or datetime.utcnow())
        except Exception:
            logger.exception("audit.cleanup_failed")
            return 0
        if removed:
            logger.info("audit.cleanup removed=%d", removed)
        return removed
