"""
API tests for the linking routes.

Run: pytest tests/unit/test_linking_routes.py -v
"""

import pytest

from tests.factories import (
    EntityFactory,
    LinkFactory,
    MessageFactory,
    ShipmentFactory,
)


@pytest.fixture
def mailbox(mock_supabase):
    """One auto-linkable message, one needing review, one thread."""
    mock_supabase.set_table_data("shipments", [
        ShipmentFactory.create(id="ship-1", booking_number="BK123"),
        ShipmentFactory.create(id="ship-2", container_numbers=["MSCU1234567"]),
    ])
    mock_supabase.set_table_data("raw_emails", [
        MessageFactory.create(
            id="m1",
            sender_email="booking@maersk.com",
            document_type="booking_confirmation",
            thread_id="t-1",
            received_at="2025-03-02T10:00:00+00:00",
        ),
        MessageFactory.create(
            id="m2",
            sender_email="ops@randomforwarder.com",
            received_at="2025-03-21T10:00:00+00:00",
        ),
    ])
    mock_supabase.set_table_data("entity_extractions", [
        EntityFactory.create("m1", "booking_number", "BK123"),
        EntityFactory.create("m2", "container_number", "MSCU1234567"),
    ])
    return mock_supabase


class TestProcessMessage:

    def test_links_message(self, test_client_with_mock_db, mailbox):
        response = test_client_with_mock_db.post("/api/linking/messages/m1")

        assert response.status_code == 200
        body = response.json()
        assert body["outcome"] == "auto_linked"
        assert body["shipment_id"] == "ship-1"
        assert body["confidence"]["decision"] == "auto_link"

    def test_orphan_is_not_an_error(self, test_client_with_mock_db, mock_supabase):
        mock_supabase.set_table_data("raw_emails", [MessageFactory.create(id="m9")])

        response = test_client_with_mock_db.post("/api/linking/messages/m9")

        assert response.status_code == 200
        assert response.json()["outcome"] == "orphan"

    def test_unknown_message_is_404(self, test_client_with_mock_db, mailbox):
        response = test_client_with_mock_db.post("/api/linking/messages/nope")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "MESSAGE_NOT_FOUND"

    def test_store_failure_is_500(self, test_client_with_mock_db, mailbox):
        mailbox.fail_on("shipments", "select")

        response = test_client_with_mock_db.post("/api/linking/messages/m1")

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "DATABASE_ERROR"
        assert mailbox.rows("shipment_links") == []


class TestBatchEndpoints:

    def test_process_unlinked_without_body(self, test_client_with_mock_db, mailbox):
        response = test_client_with_mock_db.post("/api/linking/process-unlinked")

        assert response.status_code == 200
        body = response.json()
        assert body["processed"] == 2
        assert body["linked"] == 1
        assert body["suggested"] == 1
        assert body["cancelled"] is False

    def test_process_unlinked_respects_max_items(self, test_client_with_mock_db, mailbox):
        response = test_client_with_mock_db.post(
            "/api/linking/process-unlinked",
            json={"max_items": 1, "concurrency": 1},
        )

        assert response.status_code == 200
        assert response.json()["processed"] == 1

    def test_backfill_all(self, test_client_with_mock_db, mailbox):
        response = test_client_with_mock_db.post("/api/linking/backfill-all", json={"concurrency": 1})

        assert response.status_code == 200
        assert response.json()["processed"] == 2

    def test_repair_defaults_to_dry_run(self, test_client_with_mock_db, mock_supabase):
        """Without an explicit dry_run=false nothing is moved."""
        # Arrange
        mock_supabase.set_table_data("shipments", [
            ShipmentFactory.create(id="ship-bl", bl_number="HLCU999"),
            ShipmentFactory.create(id="ship-bk", booking_number="BK777"),
        ])
        mock_supabase.set_table_data("raw_emails", [
            MessageFactory.create(id="o1", thread_id="t-1", received_at="2025-03-01T10:00:00+00:00"),
            MessageFactory.create(id="r1", thread_id="t-1", is_response=True, received_at="2025-03-02T10:00:00+00:00"),
        ])
        mock_supabase.set_table_data("entity_extractions", [
            EntityFactory.create("o1", "bl_number", "HLCU999"),
            EntityFactory.create("r1", "booking_number", "BK777"),
        ])
        mock_supabase.set_table_data("shipment_links", [
            LinkFactory.create("r1", "ship-bk", identifier_value="BK777", thread_id="t-1", is_reply=True),
        ])

        # Act
        response = test_client_with_mock_db.post("/api/linking/repair-cross-links")

        # Assert
        body = response.json()
        assert response.status_code == 200
        assert body["dry_run"] is True
        assert body["conflicts"] == 1
        assert body["cross_links"][0]["correct_shipment_id"] == "ship-bl"
        assert mock_supabase.rows("shipment_links")[0]["shipment_id"] == "ship-bk"

        # Explicit apply
        response = test_client_with_mock_db.post("/api/linking/repair-cross-links", json={"dry_run": False})
        assert response.json()["linked"] == 1
        assert mock_supabase.rows("shipment_links")[0]["shipment_id"] == "ship-bl"


class TestShipmentEndpoints:

    def test_backfill_shipment(self, test_client_with_mock_db, mailbox):
        response = test_client_with_mock_db.post("/api/linking/shipments/ship-1/backfill")

        assert response.status_code == 200
        assert response.json()["messages_linked"] == 1

    def test_backfill_unknown_shipment(self, test_client_with_mock_db, mailbox):
        response = test_client_with_mock_db.post("/api/linking/shipments/nope/backfill")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "SHIPMENT_NOT_FOUND"

    def test_preview_unlinked(self, test_client_with_mock_db, mailbox):
        response = test_client_with_mock_db.get("/api/linking/shipments/ship-2/unlinked")

        assert response.status_code == 200
        assert [m["message_id"] for m in response.json()] == ["m2"]
        assert mailbox.rows("shipment_links") == []

    def test_resync(self, test_client_with_mock_db, mailbox):
        test_client_with_mock_db.post("/api/linking/messages/m1")

        response = test_client_with_mock_db.post("/api/linking/shipments/ship-1/resync")

        assert response.status_code == 200
        assert response.json()["shipment_id"] == "ship-1"


class TestThreadEndpoints:

    def test_thread_authority(self, test_client_with_mock_db, mailbox):
        response = test_client_with_mock_db.get("/api/linking/threads/t-1/authority")

        assert response.status_code == 200
        body = response.json()
        assert body["message_count"] == 1
        assert body["authority"]["authority_message_id"] == "m1"
        assert body["authority"]["identifier_value"] == "BK123"

    def test_unknown_thread_is_404(self, test_client_with_mock_db, mailbox):
        response = test_client_with_mock_db.get("/api/linking/threads/nope/authority")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "THREAD_NOT_FOUND"

    def test_invalidate(self, test_client_with_mock_db, mailbox):
        test_client_with_mock_db.get("/api/linking/threads/t-1/authority")

        first = test_client_with_mock_db.delete("/api/linking/threads/t-1/authority")
        second = test_client_with_mock_db.delete("/api/linking/threads/t-1/authority")

        assert first.json() == {"thread_id": "t-1", "invalidated": True}
        assert second.json()["invalidated"] is False


class TestSuggestionEndpoints:

    def _suggest(self, client, mock_supabase) -> str:
        client.post("/api/linking/messages/m2")
        return mock_supabase.rows("shipment_link_candidates")[0]["id"]

    def test_confirm(self, test_client_with_mock_db, mailbox):
        suggestion_id = self._suggest(test_client_with_mock_db, mailbox)

        response = test_client_with_mock_db.post(f"/api/linking/suggestions/{suggestion_id}/confirm")

        assert response.status_code == 200
        assert response.json()["source"] == "manual"
        assert response.json()["shipment_id"] == "ship-2"

    def test_reject_then_confirm_is_409(self, test_client_with_mock_db, mailbox):
        suggestion_id = self._suggest(test_client_with_mock_db, mailbox)

        rejected = test_client_with_mock_db.post(f"/api/linking/suggestions/{suggestion_id}/reject")
        confirmed = test_client_with_mock_db.post(f"/api/linking/suggestions/{suggestion_id}/confirm")

        assert rejected.json()["is_rejected"] is True
        assert confirmed.status_code == 409
        assert confirmed.json()["error"]["code"] == "SUGGESTION_REJECTED"

    def test_unknown_suggestion_is_404(self, test_client_with_mock_db, mailbox):
        response = test_client_with_mock_db.post("/api/linking/suggestions/nope/reject")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "SUGGESTION_NOT_FOUND"


class TestConflictEndpoints:

    def test_lists_open_conflicts(self, test_client_with_mock_db, mock_supabase):
        mock_supabase.set_table_data("shipments", [
            ShipmentFactory.create(id="ship-a", booking_number="BKA"),
            ShipmentFactory.create(id="ship-b", container_numbers=["MSCU1234567"]),
        ])
        mock_supabase.set_table_data("raw_emails", [MessageFactory.create(id="m4")])
        mock_supabase.set_table_data("entity_extractions", [
            EntityFactory.create("m4", "booking_number", "BKA"),
            EntityFactory.create("m4", "container_number", "MSCU1234567"),
        ])
        test_client_with_mock_db.post("/api/linking/messages/m4")

        response = test_client_with_mock_db.get("/api/linking/conflicts")

        assert response.status_code == 200
        conflicts = response.json()
        assert len(conflicts) == 1
        assert conflicts[0]["shipment_ids"] == ["ship-a", "ship-b"]
