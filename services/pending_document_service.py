"""
Pending document service for the orphan queue.

Documents whose identifiers matched no shipment wait here. Backfill
resolves them once the shipment they name appears.
"""

from typing import Optional
from datetime import datetime, timezone
import structlog

from config import get_supabase_client
from models.identifiers import IdentifierType
from models.pending_document import (
    PendingDocumentCreate,
    PendingDocumentResponse,
    PendingStatus,
)
from exceptions import NotFoundError, DatabaseError

logger = structlog.get_logger(__name__)


class PendingDocumentService:
    """
    Service for orphan documents.

    Handles:
    - Queueing an orphan per identifier
    - Finding pending orphans by identifier
    - Marking orphans linked once resolved
    """

    def __init__(self):
        self.db = get_supabase_client()
        self.table = "pending_documents"

    def create(self, data: PendingDocumentCreate) -> PendingDocumentResponse:
        """
        Queue an orphan unless the same (message, identifier) is already pending.

        Returns:
            The pending record (existing or new)
        """
        try:
            existing = (
                self.db.table(self.table)
                .select("*")
                .eq("message_id", data.message_id)
                .eq("identifier_type", data.identifier_type.value)
                .eq("identifier_value", data.identifier_value)
                .eq("status", PendingStatus.PENDING.value)
                .limit(1)
                .execute()
            )
            if existing.data:
                return self._row_to_response(existing.data[0])

            result = self.db.table(self.table).insert(data.to_row()).execute()

        except Exception as e:
            logger.error(
                "create_pending_document_failed",
                message_id=data.message_id,
                error=str(e)
            )
            raise DatabaseError("insert", str(e))

        logger.info(
            "pending_document_created",
            message_id=data.message_id,
            identifier_type=data.identifier_type.value,
            identifier_value=data.identifier_value
        )
        return self._row_to_response(result.data[0])

    def find_pending_by_identifier(
        self,
        identifier_type: IdentifierType,
        identifier_value: str
    ) -> list[PendingDocumentResponse]:
        """
        Pending orphans waiting on one identifier.

        Args:
            identifier_type: booking_number, bl_number or container_number
            identifier_value: Normalized value

        Returns:
            Pending records, oldest first
        """
        try:
            result = (
                self.db.table(self.table)
                .select("*")
                .eq("status", PendingStatus.PENDING.value)
                .eq("identifier_type", identifier_type.value)
                .eq("identifier_value", identifier_value)
                .order("created_at")
                .execute()
            )
            return [self._row_to_response(row) for row in result.data or []]

        except Exception as e:
            logger.error(
                "find_pending_documents_failed",
                identifier_type=identifier_type.value,
                identifier_value=identifier_value,
                error=str(e)
            )
            raise DatabaseError("select", str(e))

    def mark_linked(self, pending_id: str, shipment_id: str) -> PendingDocumentResponse:
        """
        Resolve an orphan against a shipment.

        Raises:
            NotFoundError: If the pending record doesn't exist
        """
        update_data = {
            "status": PendingStatus.LINKED.value,
            "linked_shipment_id": shipment_id,
            "linked_at": datetime.now(timezone.utc).isoformat(),
        }

        try:
            result = (
                self.db.table(self.table)
                .update(update_data)
                .eq("id", pending_id)
                .execute()
            )
        except Exception as e:
            logger.error("mark_pending_linked_failed", pending_id=pending_id, error=str(e))
            raise DatabaseError("update", str(e))

        if not result.data:
            raise NotFoundError("Pending document", pending_id)

        logger.info(
            "pending_document_linked",
            pending_id=pending_id,
            shipment_id=shipment_id
        )
        return self._row_to_response(result.data[0])

    def _row_to_response(self, row: dict) -> PendingDocumentResponse:
        """Convert database row to PendingDocumentResponse."""
        return PendingDocumentResponse(
            id=row["id"],
            message_id=row["message_id"],
            attachment_id=row.get("attachment_id"),
            document_type=row.get("document_type"),
            identifier_type=row["identifier_type"],
            identifier_value=row["identifier_value"],
            email_subject=row.get("email_subject"),
            email_from=row.get("email_from"),
            status=row.get("status") or PendingStatus.PENDING,
            linked_shipment_id=row.get("linked_shipment_id"),
            linked_at=row.get("linked_at"),
            created_at=row.get("created_at"),
        )


# Singleton instance
_pending_document_service: Optional[PendingDocumentService] = None


def get_pending_document_service() -> PendingDocumentService:
    """Get or create PendingDocumentService instance."""
    global _pending_document_service
    if _pending_document_service is None:
        _pending_document_service = PendingDocumentService()
    return _pending_document_service
