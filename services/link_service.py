"""
Link store: message-to-shipment links and reviewable suggestions.

Both tables carry a unique (message_id, shipment_id) constraint. Writes
check for an existing row first, insert otherwise, and if the insert
loses a race against a concurrent writer they retry as an update.
"""

from typing import Optional
from datetime import datetime, timezone
import structlog

from config import get_supabase_client
from models.link import LinkCreate, LinkResponse, LinkSource, SuggestionCreate, SuggestionResponse
from exceptions import DatabaseError, LinkNotFoundError, LinkRaceError

logger = structlog.get_logger(__name__)

UNIQUE_VIOLATION = "23505"

# Columns refreshed when an existing link is written again
_REFRESHABLE_LINK_FIELDS = (
    "identifier_type",
    "identifier_value",
    "confidence_score",
    "email_authority",
    "document_type",
    "authority_message_id",
    "thread_id",
    "is_reply",
)


def is_unique_violation(error: Exception) -> bool:
    """True if a Postgres/PostgREST error is a duplicate key violation."""
    code = getattr(error, "code", None)
    if code == UNIQUE_VIOLATION:
        return True
    text = str(error).lower()
    return UNIQUE_VIOLATION in text or "duplicate key" in text


class LinkService:
    """
    Link and suggestion persistence.

    Handles:
    - Idempotent link upsert with race retry
    - Link lookups by message, shipment, pair
    - Reply-link paging for cross-link repair
    - Suggestion upsert and review (confirm/reject)
    """

    def __init__(self):
        self.db = get_supabase_client()
        self.table = "shipment_links"
        self.suggestions_table = "shipment_link_candidates"

    # ===================
    # LINK READS
    # ===================

    def find_by_message_id(self, message_id: str) -> list[LinkResponse]:
        """All links for a message (normally zero or one)."""
        try:
            result = (
                self.db.table(self.table)
                .select("*")
                .eq("message_id", message_id)
                .execute()
            )
            return [self._row_to_link(row) for row in result.data or []]

        except Exception as e:
            logger.error("get_links_for_message_failed", message_id=message_id, error=str(e))
            raise DatabaseError("select", str(e))

    def find_by_shipment_id(self, shipment_id: str) -> list[LinkResponse]:
        """All links pointing at a shipment."""
        try:
            result = (
                self.db.table(self.table)
                .select("*")
                .eq("shipment_id", shipment_id)
                .execute()
            )
            return [self._row_to_link(row) for row in result.data or []]

        except Exception as e:
            logger.error("get_links_for_shipment_failed", shipment_id=shipment_id, error=str(e))
            raise DatabaseError("select", str(e))

    def find_link(self, message_id: str, shipment_id: str) -> Optional[LinkResponse]:
        """The link for a (message, shipment) pair, if any."""
        try:
            result = (
                self.db.table(self.table)
                .select("*")
                .eq("message_id", message_id)
                .eq("shipment_id", shipment_id)
                .limit(1)
                .execute()
            )
            if not result.data:
                return None
            return self._row_to_link(result.data[0])

        except Exception as e:
            logger.error(
                "get_link_failed",
                message_id=message_id,
                shipment_id=shipment_id,
                error=str(e)
            )
            raise DatabaseError("select", str(e))

    def is_linked(self, message_id: str) -> bool:
        return bool(self.find_by_message_id(message_id))

    def linked_message_ids(self, message_ids: list[str]) -> set[str]:
        """Subset of message_ids that already have a link."""
        if not message_ids:
            return set()

        try:
            result = (
                self.db.table(self.table)
                .select("message_id")
                .in_("message_id", message_ids)
                .execute()
            )
            return {row["message_id"] for row in result.data or []}

        except Exception as e:
            logger.error("get_linked_message_ids_failed", count=len(message_ids), error=str(e))
            raise DatabaseError("select", str(e))

    def get_reply_links_page(self, limit: int = 100, offset: int = 0) -> list[LinkResponse]:
        """
        Page through links of reply messages, oldest first.

        Only replies can be cross-linked: an original message is its
        thread's authority candidate.
        """
        try:
            result = (
                self.db.table(self.table)
                .select("*")
                .eq("is_reply", True)
                .order("created_at")
                .order("id")
                .range(offset, offset + limit - 1)
                .execute()
            )
            return [self._row_to_link(row) for row in result.data or []]

        except Exception as e:
            logger.error("get_reply_links_failed", offset=offset, error=str(e))
            raise DatabaseError("select", str(e))

    # ===================
    # LINK WRITES
    # ===================

    def upsert(self, link: LinkCreate) -> tuple[LinkResponse, bool]:
        """
        Create or refresh the link for (message, shipment).

        Args:
            link: Link to write

        Returns:
            (stored link, True if a new row was inserted)
        """
        existing = self.find_link(link.message_id, link.shipment_id)
        if existing:
            return self._refresh(existing, link), False

        try:
            return self._insert(link), True
        except LinkRaceError:
            logger.info(
                "link_insert_race_retrying",
                message_id=link.message_id,
                shipment_id=link.shipment_id
            )
            existing = self.find_link(link.message_id, link.shipment_id)
            if existing is None:
                raise DatabaseError(
                    "insert",
                    "duplicate key reported but no existing link found",
                    {"message_id": link.message_id, "shipment_id": link.shipment_id}
                )
            return self._refresh(existing, link), False

    def delete(self, link_id: str) -> bool:
        """
        Delete a link. Only used by explicit repair.

        Raises:
            LinkNotFoundError: If no row was deleted
        """
        try:
            result = self.db.table(self.table).delete().eq("id", link_id).execute()
        except Exception as e:
            logger.error("delete_link_failed", link_id=link_id, error=str(e))
            raise DatabaseError("delete", str(e))

        if not result.data:
            raise LinkNotFoundError(link_id)

        logger.info("link_deleted", link_id=link_id)
        return True

    def _insert(self, link: LinkCreate) -> LinkResponse:
        row = link.to_row()
        row["linked_at"] = datetime.now(timezone.utc).isoformat()

        try:
            result = self.db.table(self.table).insert(row).execute()
        except Exception as e:
            if is_unique_violation(e):
                raise LinkRaceError(self.table, {"message_id": link.message_id, "shipment_id": link.shipment_id})
            logger.error(
                "insert_link_failed",
                message_id=link.message_id,
                shipment_id=link.shipment_id,
                error=str(e)
            )
            raise DatabaseError("insert", str(e))

        logger.info(
            "link_created",
            message_id=link.message_id,
            shipment_id=link.shipment_id,
            identifier_type=link.identifier_type.value,
            confidence=link.confidence_score,
            source=link.source.value
        )
        return self._row_to_link(result.data[0])

    def _refresh(self, existing: LinkResponse, link: LinkCreate) -> LinkResponse:
        """Bring an existing link up to date; no write if nothing changed."""
        # Manual links are operator decisions; automated passes leave them alone
        if existing.source == LinkSource.MANUAL and link.source != LinkSource.MANUAL:
            return existing

        new_row = link.to_row()
        old_row = existing.to_row()
        changes = {
            field: new_row[field]
            for field in _REFRESHABLE_LINK_FIELDS
            if new_row[field] != old_row[field]
        }
        if not changes:
            return existing

        try:
            result = (
                self.db.table(self.table)
                .update(changes)
                .eq("id", existing.id)
                .execute()
            )
        except Exception as e:
            logger.error("update_link_failed", link_id=existing.id, error=str(e))
            raise DatabaseError("update", str(e))

        logger.info("link_refreshed", link_id=existing.id, fields=list(changes.keys()))
        return self._row_to_link(result.data[0]) if result.data else existing

    # ===================
    # SUGGESTIONS
    # ===================

    def find_suggestions(self, message_id: str, pending_only: bool = False) -> list[SuggestionResponse]:
        """Suggestions recorded for a message."""
        try:
            query = (
                self.db.table(self.suggestions_table)
                .select("*")
                .eq("message_id", message_id)
            )
            if pending_only:
                query = query.eq("is_confirmed", False).eq("is_rejected", False)
            result = query.execute()
            return [self._row_to_suggestion(row) for row in result.data or []]

        except Exception as e:
            logger.error("get_suggestions_failed", message_id=message_id, error=str(e))
            raise DatabaseError("select", str(e))

    def get_suggestion(self, suggestion_id: str) -> SuggestionResponse:
        """
        Raises:
            LinkNotFoundError: If the suggestion doesn't exist
        """
        try:
            result = (
                self.db.table(self.suggestions_table)
                .select("*")
                .eq("id", suggestion_id)
                .limit(1)
                .execute()
            )
        except Exception as e:
            logger.error("get_suggestion_failed", suggestion_id=suggestion_id, error=str(e))
            raise DatabaseError("select", str(e))

        if not result.data:
            raise LinkNotFoundError(suggestion_id, resource="Suggestion")
        return self._row_to_suggestion(result.data[0])

    def upsert_suggestion(self, suggestion: SuggestionCreate) -> tuple[SuggestionResponse, bool]:
        """
        Create or refresh the pending suggestion for (message, shipment).

        Reviewed suggestions (confirmed or rejected) are never reopened.

        Returns:
            (stored suggestion, True if a new row was inserted)
        """
        existing = self._find_suggestion(suggestion.message_id, suggestion.shipment_id)
        if existing:
            return self._refresh_suggestion(existing, suggestion), False

        try:
            row = {**suggestion.to_row(), "is_confirmed": False, "is_rejected": False}
            result = self.db.table(self.suggestions_table).insert(row).execute()
        except Exception as e:
            if not is_unique_violation(e):
                logger.error(
                    "insert_suggestion_failed",
                    message_id=suggestion.message_id,
                    shipment_id=suggestion.shipment_id,
                    error=str(e)
                )
                raise DatabaseError("insert", str(e))

            logger.info(
                "suggestion_insert_race_retrying",
                message_id=suggestion.message_id,
                shipment_id=suggestion.shipment_id
            )
            existing = self._find_suggestion(suggestion.message_id, suggestion.shipment_id)
            if existing is None:
                raise DatabaseError("insert", str(e))
            return self._refresh_suggestion(existing, suggestion), False

        logger.info(
            "suggestion_created",
            message_id=suggestion.message_id,
            shipment_id=suggestion.shipment_id,
            confidence=suggestion.confidence_score
        )
        return self._row_to_suggestion(result.data[0]), True

    def confirm_suggestion(self, suggestion_id: str) -> SuggestionResponse:
        return self._review(suggestion_id, confirmed=True)

    def reject_suggestion(self, suggestion_id: str) -> SuggestionResponse:
        return self._review(suggestion_id, confirmed=False)

    def _review(self, suggestion_id: str, confirmed: bool) -> SuggestionResponse:
        suggestion = self.get_suggestion(suggestion_id)
        if not suggestion.is_pending:
            return suggestion

        update_data = {
            "is_confirmed": confirmed,
            "is_rejected": not confirmed,
            "reviewed_at": datetime.now(timezone.utc).isoformat(),
        }

        try:
            result = (
                self.db.table(self.suggestions_table)
                .update(update_data)
                .eq("id", suggestion_id)
                .execute()
            )
        except Exception as e:
            logger.error("review_suggestion_failed", suggestion_id=suggestion_id, error=str(e))
            raise DatabaseError("update", str(e))

        logger.info(
            "suggestion_reviewed",
            suggestion_id=suggestion_id,
            confirmed=confirmed
        )
        return self._row_to_suggestion(result.data[0])

    def _find_suggestion(self, message_id: str, shipment_id: str) -> Optional[SuggestionResponse]:
        try:
            result = (
                self.db.table(self.suggestions_table)
                .select("*")
                .eq("message_id", message_id)
                .eq("shipment_id", shipment_id)
                .limit(1)
                .execute()
            )
        except Exception as e:
            logger.error("get_suggestion_pair_failed", message_id=message_id, error=str(e))
            raise DatabaseError("select", str(e))

        if not result.data:
            return None
        return self._row_to_suggestion(result.data[0])

    def _refresh_suggestion(
        self,
        existing: SuggestionResponse,
        suggestion: SuggestionCreate
    ) -> SuggestionResponse:
        if not existing.is_pending:
            return existing

        new_row = suggestion.to_row()
        old_row = existing.to_row()
        changes = {k: v for k, v in new_row.items() if old_row.get(k) != v}
        if not changes:
            return existing

        try:
            result = (
                self.db.table(self.suggestions_table)
                .update(changes)
                .eq("id", existing.id)
                .execute()
            )
        except Exception as e:
            logger.error("update_suggestion_failed", suggestion_id=existing.id, error=str(e))
            raise DatabaseError("update", str(e))

        return self._row_to_suggestion(result.data[0]) if result.data else existing

    # ===================
    # HELPERS
    # ===================

    def _row_to_link(self, row: dict) -> LinkResponse:
        """Convert database row to LinkResponse."""
        return LinkResponse(
            id=row["id"],
            message_id=row["message_id"],
            shipment_id=row["shipment_id"],
            attachment_id=row.get("attachment_id"),
            identifier_type=row["identifier_type"],
            identifier_value=row["identifier_value"],
            confidence_score=row.get("confidence_score") or 0,
            email_authority=row.get("email_authority") or "third_party",
            source=row.get("source") or "realtime",
            document_type=row.get("document_type"),
            authority_message_id=row.get("authority_message_id"),
            thread_id=row.get("thread_id"),
            is_reply=bool(row.get("is_reply")),
            linked_at=row.get("linked_at"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def _row_to_suggestion(self, row: dict) -> SuggestionResponse:
        """Convert database row to SuggestionResponse."""
        return SuggestionResponse(
            id=row["id"],
            message_id=row["message_id"],
            shipment_id=row["shipment_id"],
            identifier_type=row["identifier_type"],
            identifier_value=row["identifier_value"],
            confidence_score=row.get("confidence_score") or 0,
            match_reasoning=row.get("match_reasoning") or "",
            is_confirmed=bool(row.get("is_confirmed")),
            is_rejected=bool(row.get("is_rejected")),
            reviewed_at=row.get("reviewed_at"),
            created_at=row.get("created_at"),
        )


# Singleton instance
_link_service: Optional[LinkService] = None


def get_link_service() -> LinkService:
    """Get or create LinkService instance."""
    global _link_service
    if _link_service is None:
        _link_service = LinkService()
    return _link_service
