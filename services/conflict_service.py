"""
Conflict store: linking conflicts queued for operator review.
"""

from typing import Optional
from datetime import datetime, timezone
import structlog

from config import get_supabase_client
from models.conflict import ConflictRecord
from exceptions import DatabaseError

logger = structlog.get_logger(__name__)


class ConflictService:
    """Persists ConflictRecords and lists unresolved ones."""

    def __init__(self):
        self.db = get_supabase_client()
        self.table = "shipment_link_conflicts"

    def record(self, conflict: ConflictRecord) -> tuple[ConflictRecord, bool]:
        """
        Persist a conflict.

        The same conflict for a message is recorded once; a repeated run
        refreshes detected_at instead of adding a row.

        Returns:
            (conflict, created) where created is False on a refresh

        Raises:
            DatabaseError: If the write fails
        """
        detected_at = conflict.detected_at or datetime.now(timezone.utc)
        conflict = conflict.model_copy(update={"detected_at": detected_at})

        row = conflict.to_row()
        row["detected_at"] = detected_at.isoformat()

        try:
            existing = (
                self.db.table(self.table)
                .select("id")
                .eq("message_id", conflict.message_id)
                .eq("conflict_type", conflict.type.value)
                .eq("status", "open")
                .limit(1)
                .execute()
            )

            created = not existing.data
            if not created:
                (
                    self.db.table(self.table)
                    .update(row)
                    .eq("id", existing.data[0]["id"])
                    .execute()
                )
            else:
                self.db.table(self.table).insert(row).execute()

        except Exception as e:
            logger.error(
                "record_conflict_failed",
                message_id=conflict.message_id,
                conflict_type=conflict.type.value,
                error=str(e)
            )
            raise DatabaseError("insert", str(e))

        logger.warning(
            "linking_conflict_recorded",
            message_id=conflict.message_id,
            conflict_type=conflict.type.value,
            shipment_ids=conflict.shipment_ids,
            chosen_shipment_id=conflict.chosen_shipment_id,
            created=created
        )
        return conflict, created

    def list_open(self, limit: int = 100) -> list[dict]:
        """Unresolved conflicts, newest first."""
        try:
            result = (
                self.db.table(self.table)
                .select("*")
                .eq("status", "open")
                .order("detected_at", desc=True)
                .limit(limit)
                .execute()
            )
            return result.data or []

        except Exception as e:
            logger.error("list_conflicts_failed", error=str(e))
            raise DatabaseError("select", str(e))


# Singleton instance
_conflict_service: Optional[ConflictService] = None


def get_conflict_service() -> ConflictService:
    """Get or create ConflictService instance."""
    global _conflict_service
    if _conflict_service is None:
        _conflict_service = ConflictService()
    return _conflict_service
