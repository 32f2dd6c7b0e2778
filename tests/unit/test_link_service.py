"""
Unit tests for the link store.

Run: pytest tests/unit/test_link_service.py -v
"""

import pytest

from models.identifiers import IdentifierType
from models.link import LinkCreate, LinkSource, SuggestionCreate
from models.message import EmailAuthority
from services.link_service import LinkService, is_unique_violation
from exceptions import DatabaseError, LinkNotFoundError
from tests.factories import LinkFactory


class PostgresError(Exception):
    def __init__(self, message, code=None):
        super().__init__(message)
        self.code = code


def _link(**overrides) -> LinkCreate:
    data = {
        "message_id": "m1",
        "shipment_id": "ship-1",
        "identifier_type": IdentifierType.BOOKING_NUMBER,
        "identifier_value": "BK123",
        "confidence_score": 92,
        "email_authority": EmailAuthority.THIRD_PARTY,
    }
    data.update(overrides)
    return LinkCreate(**data)


def _suggestion(**overrides) -> SuggestionCreate:
    data = {
        "message_id": "m1",
        "shipment_id": "ship-1",
        "identifier_type": IdentifierType.CONTAINER_NUMBER,
        "identifier_value": "MSCU1234567",
        "confidence_score": 69,
        "match_reasoning": "container base 75",
    }
    data.update(overrides)
    return SuggestionCreate(**data)


@pytest.fixture
def link_service(mock_db):
    return LinkService()


class TestIsUniqueViolation:

    def test_by_code(self):
        assert is_unique_violation(PostgresError("whatever", code="23505"))

    def test_by_message(self):
        assert is_unique_violation(Exception('duplicate key value violates unique constraint "x"'))

    def test_other_errors(self):
        assert not is_unique_violation(PostgresError("connection reset", code="08006"))


class TestLinkUpsert:

    def test_first_write_inserts(self, link_service, mock_supabase):
        link, created = link_service.upsert(_link())

        assert created is True
        assert link.linked_at is not None
        assert len(mock_supabase.rows("shipment_links")) == 1

    def test_second_write_is_idempotent(self, link_service, mock_supabase):
        """Writing the same link twice leaves one row and makes no update."""
        # Arrange
        first, _ = link_service.upsert(_link())
        mock_supabase.calls.clear()

        # Act
        second, created = link_service.upsert(_link())

        # Assert
        assert created is False
        assert second.id == first.id
        assert len(mock_supabase.rows("shipment_links")) == 1
        assert ("shipment_links", "update") not in mock_supabase.calls

    def test_changed_fields_are_refreshed(self, link_service, mock_supabase):
        link_service.upsert(_link(confidence_score=86))

        link, created = link_service.upsert(_link(confidence_score=95))

        assert created is False
        assert link.confidence_score == 95
        assert mock_supabase.rows("shipment_links")[0]["confidence_score"] == 95

    def test_manual_link_is_not_refreshed_by_automation(self, link_service, mock_supabase):
        link_service.upsert(_link(source=LinkSource.MANUAL, confidence_score=70))

        link, _ = link_service.upsert(_link(source=LinkSource.BACKFILL, confidence_score=99))

        assert link.source == LinkSource.MANUAL
        assert mock_supabase.rows("shipment_links")[0]["confidence_score"] == 70

    def test_lost_insert_race_retries_as_update(self, link_service, mock_supabase):
        """A concurrent writer inserts first; the loser refreshes the winner's row."""
        # Arrange
        mock_supabase.before_insert(
            "shipment_links",
            lambda row: mock_supabase.add_rows("shipment_links", [
                LinkFactory.create("m1", "ship-1", id="winner", confidence_score=88)
            ])
        )

        # Act
        link, created = link_service.upsert(_link(confidence_score=92))

        # Assert
        rows = mock_supabase.rows("shipment_links")
        assert created is False
        assert link.id == "winner"
        assert len(rows) == 1
        assert rows[0]["confidence_score"] == 92

    def test_other_insert_errors_raise(self, link_service, mock_supabase):
        mock_supabase.fail_on("shipment_links", "insert")

        with pytest.raises(DatabaseError):
            link_service.upsert(_link())

    def test_read_failure_raises(self, link_service, mock_supabase):
        mock_supabase.fail_on("shipment_links", "select")

        with pytest.raises(DatabaseError):
            link_service.find_by_message_id("m1")


class TestLinkReads:

    @pytest.fixture
    def links(self, mock_supabase):
        mock_supabase.set_table_data("shipment_links", [
            LinkFactory.create("m1", "ship-1", id="l1"),
            LinkFactory.create("m2", "ship-1", id="l2", is_reply=True, created_at="2024-12-01T00:00:01+00:00"),
            LinkFactory.create("m3", "ship-2", id="l3", is_reply=True, created_at="2024-12-01T00:00:02+00:00"),
        ])
        return mock_supabase

    def test_linked_message_ids(self, link_service, links):
        assert link_service.linked_message_ids(["m1", "m3", "m9"]) == {"m1", "m3"}
        assert link_service.linked_message_ids([]) == set()

    def test_find_by_shipment(self, link_service, links):
        assert {l.id for l in link_service.find_by_shipment_id("ship-1")} == {"l1", "l2"}

    def test_reply_links_page_only_returns_replies_in_order(self, link_service, links):
        assert [l.id for l in link_service.get_reply_links_page(limit=10)] == ["l2", "l3"]
        assert [l.id for l in link_service.get_reply_links_page(limit=1, offset=1)] == ["l3"]

    def test_delete(self, link_service, links):
        link_service.delete("l1")

        assert [r["id"] for r in links.rows("shipment_links")] == ["l2", "l3"]
        with pytest.raises(LinkNotFoundError):
            link_service.delete("l1")


class TestSuggestions:

    def test_upsert_suggestion_once(self, link_service, mock_supabase):
        _, created = link_service.upsert_suggestion(_suggestion())
        _, created_again = link_service.upsert_suggestion(_suggestion())

        assert created is True
        assert created_again is False
        assert len(mock_supabase.rows("shipment_link_candidates")) == 1

    def test_reviewed_suggestion_is_not_reopened(self, link_service, mock_supabase):
        # Arrange
        suggestion, _ = link_service.upsert_suggestion(_suggestion())
        link_service.reject_suggestion(suggestion.id)

        # Act
        again, created = link_service.upsert_suggestion(_suggestion(confidence_score=75))

        # Assert
        assert created is False
        assert again.is_rejected
        assert again.confidence_score == 69

    def test_confirm_and_reject(self, link_service):
        a, _ = link_service.upsert_suggestion(_suggestion())
        b, _ = link_service.upsert_suggestion(_suggestion(shipment_id="ship-2"))

        confirmed = link_service.confirm_suggestion(a.id)
        rejected = link_service.reject_suggestion(b.id)

        assert confirmed.is_confirmed and not confirmed.is_pending
        assert rejected.is_rejected and rejected.reviewed_at is not None
        assert link_service.find_suggestions("m1", pending_only=True) == []

    def test_review_is_final(self, link_service):
        suggestion, _ = link_service.upsert_suggestion(_suggestion())
        link_service.reject_suggestion(suggestion.id)

        assert link_service.confirm_suggestion(suggestion.id).is_rejected

    def test_missing_suggestion(self, link_service):
        with pytest.raises(LinkNotFoundError):
            link_service.get_suggestion("nope")
