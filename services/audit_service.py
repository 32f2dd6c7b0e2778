"""
Audit log writer for linking decisions.

Append-only and best effort: a failed audit write is logged and counted,
never raised, so it cannot block or roll back the decision it records.
"""

import threading
from typing import Optional
from datetime import datetime, timezone
import structlog

from config import get_supabase_client
from models.audit import AuditEntry, AuditOperation

logger = structlog.get_logger(__name__)


class AuditService:
    """Writes AuditEntry rows to shipment_link_audit."""

    def __init__(self):
        self.db = get_supabase_client()
        self.table = "shipment_link_audit"
        self._failures = 0
        self._failures_lock = threading.Lock()

    @property
    def failure_count(self) -> int:
        """Audit writes that failed since startup."""
        with self._failures_lock:
            return self._failures

    def record(self, entry: AuditEntry) -> bool:
        """
        Append one audit entry.

        Returns:
            True if written, False if the write failed
        """
        if entry.recorded_at is None:
            entry = entry.model_copy(update={"recorded_at": datetime.now(timezone.utc)})

        try:
            self.db.table(self.table).insert(entry.to_row()).execute()
            return True

        except Exception as e:
            with self._failures_lock:
                self._failures += 1
                failures = self._failures
            logger.warning(
                "audit_write_failed",
                operation=entry.operation.value,
                message_id=entry.message_id,
                shipment_id=entry.shipment_id,
                error=str(e),
                failure_count=failures
            )
            return False

    def find_by_shipment_id(
        self,
        shipment_id: str,
        operation: Optional[AuditOperation] = None
    ) -> list[dict]:
        """Raw audit rows for a shipment, oldest first. Empty on failure."""
        try:
            query = self.db.table(self.table).select("*").eq("shipment_id", shipment_id)
            if operation:
                query = query.eq("operation", operation.value)
            result = query.order("recorded_at").execute()
            return result.data or []

        except Exception as e:
            logger.warning("audit_read_failed", shipment_id=shipment_id, error=str(e))
            return []


# Singleton instance
_audit_service: Optional[AuditService] = None


def get_audit_service() -> AuditService:
    """Get or create AuditService instance."""
    global _audit_service
    if _audit_service is None:
        _audit_service = AuditService()
    return _audit_service
