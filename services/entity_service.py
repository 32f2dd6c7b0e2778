"""
Entity store: read access to upstream extraction records.

Extractions are written by the extractor and never modified here.
"""

from typing import Optional
import structlog

from config import get_supabase_client
from models.entity import EntityRecord, EntityType
from models.identifiers import IdentifierSource, IdentifierType
from exceptions import DatabaseError

logger = structlog.get_logger(__name__)

# Entity types that can link a message to a shipment
IDENTIFIER_ENTITY_TYPES = [
    IdentifierType.BOOKING_NUMBER.value,
    IdentifierType.BL_NUMBER.value,
    IdentifierType.CONTAINER_NUMBER.value,
]


class EntityService:
    """
    Entity extraction queries.

    Rows with an unknown entity_type are skipped rather than rejected;
    the extractor emits types this engine does not use.
    """

    def __init__(self):
        self.db = get_supabase_client()
        self.table = "entity_extractions"

    def find_by_message_id(self, message_id: str) -> list[EntityRecord]:
        """
        Get all entity records for a message and its attachments.

        Args:
            message_id: raw_emails id

        Returns:
            List of EntityRecord (may be empty)
        """
        logger.debug("getting_entities_for_message", message_id=message_id)

        try:
            result = (
                self.db.table(self.table)
                .select("*")
                .eq("message_id", message_id)
                .execute()
            )
            return self._rows_to_records(result.data)

        except Exception as e:
            logger.error("get_entities_failed", message_id=message_id, error=str(e))
            raise DatabaseError("select", str(e))

    def find_by_message_ids(self, message_ids: list[str]) -> list[EntityRecord]:
        """Entity records for several messages in one query."""
        if not message_ids:
            return []

        try:
            result = (
                self.db.table(self.table)
                .select("*")
                .in_("message_id", message_ids)
                .execute()
            )
            return self._rows_to_records(result.data)

        except Exception as e:
            logger.error("get_entities_batch_failed", count=len(message_ids), error=str(e))
            raise DatabaseError("select", str(e))

    def find_by_type_and_value(
        self,
        identifier_type: IdentifierType,
        value: str
    ) -> list[EntityRecord]:
        """
        Find records whose normalized (or raw) value matches.

        Args:
            identifier_type: Identifier kind to search
            value: Normalized identifier value

        Returns:
            Matching records across all messages
        """
        logger.debug(
            "finding_entities_by_value",
            identifier_type=identifier_type.value,
            value=value
        )

        try:
            normalized = (
                self.db.table(self.table)
                .select("*")
                .eq("entity_type", identifier_type.value)
                .eq("entity_normalized", value)
                .execute()
            )
            raw = (
                self.db.table(self.table)
                .select("*")
                .eq("entity_type", identifier_type.value)
                .eq("entity_value", value)
                .execute()
            )

            seen = set()
            rows = []
            for row in (normalized.data or []) + (raw.data or []):
                key = row.get("id") or (row["message_id"], row.get("entity_value"))
                if key in seen:
                    continue
                seen.add(key)
                rows.append(row)

            return self._rows_to_records(rows)

        except Exception as e:
            logger.error(
                "find_entities_by_value_failed",
                identifier_type=identifier_type.value,
                value=value,
                error=str(e)
            )
            raise DatabaseError("select", str(e))

    def find_message_ids_with_identifiers(
        self,
        limit: int = 50,
        offset: int = 0
    ) -> tuple[list[str], int]:
        """
        Page through messages that carry at least one linking identifier.

        Pages are taken over entity rows ordered by message_id, so the
        same message can span two pages; ids are de-duplicated per page.

        Returns:
            (distinct message ids, number of entity rows scanned).
            Zero rows scanned means the end was reached.
        """
        try:
            result = (
                self.db.table(self.table)
                .select("message_id")
                .in_("entity_type", IDENTIFIER_ENTITY_TYPES)
                .order("message_id")
                .range(offset, offset + limit - 1)
                .execute()
            )

            rows = result.data or []
            message_ids = []
            for row in rows:
                if row["message_id"] not in message_ids:
                    message_ids.append(row["message_id"])

            return message_ids, len(rows)

        except Exception as e:
            logger.error("page_identifier_messages_failed", offset=offset, error=str(e))
            raise DatabaseError("select", str(e))

    def _rows_to_records(self, rows: Optional[list[dict]]) -> list[EntityRecord]:
        records = []
        for row in rows or []:
            entity_type = EntityType.parse(row.get("entity_type"))
            if entity_type is None or not row.get("entity_value"):
                continue
            records.append(self._row_to_record(row, entity_type))
        return records

    def _row_to_record(self, row: dict, entity_type: EntityType) -> EntityRecord:
        """Convert database row to EntityRecord."""
        source = (
            IdentifierSource.DOCUMENT
            if row.get("source_type") == "document" or row.get("attachment_id")
            else IdentifierSource.EMAIL
        )
        return EntityRecord(
            id=row.get("id"),
            message_id=row["message_id"],
            entity_type=entity_type,
            value=str(row["entity_value"]),
            normalized_value=row.get("entity_normalized"),
            confidence=max(0.0, min(100.0, float(row.get("confidence_score") or 0))),
            source=source,
            attachment_id=row.get("attachment_id"),
            created_at=row.get("created_at"),
        )


# Singleton instance
_entity_service: Optional[EntityService] = None


def get_entity_service() -> EntityService:
    """Get or create EntityService instance."""
    global _entity_service
    if _entity_service is None:
        _entity_service = EntityService()
    return _entity_service
