"""
Message metadata provider.

Reads sender, thread and classification data for ingested emails. Thread
membership, the reply flag and document classification are produced
upstream and are read-only here.
"""

from typing import Optional
import structlog

from config import get_supabase_client
from models.message import MessageMetadata, SenderCategory
from exceptions import DatabaseError, MessageNotFoundError

logger = structlog.get_logger(__name__)

_METADATA_COLUMNS = (
    "id, sender_email, true_sender_email, thread_id, is_response, received_at, "
    "subject, document_type, message_type, sender_category"
)


class MessageService:
    """Email metadata lookups."""

    def __init__(self):
        self.db = get_supabase_client()
        self.table = "raw_emails"

    def get_metadata(self, message_id: str) -> MessageMetadata:
        """
        Get metadata for one message.

        Raises:
            MessageNotFoundError: If the message doesn't exist
        """
        message = self.find_metadata(message_id)
        if message is None:
            raise MessageNotFoundError(message_id)
        return message

    def find_metadata(self, message_id: str) -> Optional[MessageMetadata]:
        try:
            result = (
                self.db.table(self.table)
                .select(_METADATA_COLUMNS)
                .eq("id", message_id)
                .limit(1)
                .execute()
            )
        except Exception as e:
            logger.error("get_message_failed", message_id=message_id, error=str(e))
            raise DatabaseError("select", str(e))

        if not result.data:
            return None
        return self._row_to_metadata(result.data[0])

    def get_many(self, message_ids: list[str]) -> dict[str, MessageMetadata]:
        """Metadata for several messages, keyed by id. Missing ids are omitted."""
        if not message_ids:
            return {}

        try:
            result = (
                self.db.table(self.table)
                .select(_METADATA_COLUMNS)
                .in_("id", message_ids)
                .execute()
            )
        except Exception as e:
            logger.error("get_messages_failed", count=len(message_ids), error=str(e))
            raise DatabaseError("select", str(e))

        messages = [self._row_to_metadata(row) for row in result.data or []]
        return {m.id: m for m in messages}

    def get_thread_messages(self, thread_id: str) -> list[MessageMetadata]:
        """All messages of a thread, oldest first."""
        try:
            result = (
                self.db.table(self.table)
                .select(_METADATA_COLUMNS)
                .eq("thread_id", thread_id)
                .order("received_at")
                .execute()
            )
        except Exception as e:
            logger.error("get_thread_messages_failed", thread_id=thread_id, error=str(e))
            raise DatabaseError("select", str(e))

        return [self._row_to_metadata(row) for row in result.data or []]

    def _row_to_metadata(self, row: dict) -> MessageMetadata:
        """Convert database row to MessageMetadata."""
        category = None
        if row.get("sender_category"):
            try:
                category = SenderCategory(row["sender_category"])
            except ValueError:
                category = SenderCategory.UNKNOWN

        return MessageMetadata(
            id=row["id"],
            sender_email=row.get("sender_email"),
            true_sender_email=row.get("true_sender_email"),
            thread_id=row.get("thread_id"),
            is_reply=bool(row.get("is_response")),
            received_at=row.get("received_at"),
            subject=row.get("subject"),
            document_type=row.get("document_type"),
            message_type=row.get("message_type"),
            sender_category=category,
        )


# Singleton instance
_message_service: Optional[MessageService] = None


def get_message_service() -> MessageService:
    """Get or create MessageService instance."""
    global _message_service
    if _message_service is None:
        _message_service = MessageService()
    return _message_service
