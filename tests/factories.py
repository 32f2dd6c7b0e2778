"""
Test data factories.

Uses factory pattern to generate consistent test rows matching the
database schema of each table.
"""

from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4


def _iso(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


class _Counter:
    _counter = 0

    @classmethod
    def _next_counter(cls) -> int:
        cls._counter += 1
        return cls._counter


class EntityFactory(_Counter):
    """
    Factory for entity_extractions rows.

    Usage:
        EntityFactory.create("msg-1", "booking_number", "BK123")
        EntityFactory.create("msg-1", "container_number", "MSCU1234567", source_type="document")
    """

    @classmethod
    def create(
        cls,
        message_id: str,
        entity_type: str,
        entity_value: str,
        confidence_score: float = 90,
        source_type: str = "email",
        entity_normalized: Optional[str] = None,
        attachment_id: Optional[str] = None,
        id: Optional[str] = None,
    ) -> dict:
        cls._next_counter()
        return {
            "id": id or str(uuid4()),
            "message_id": message_id,
            "entity_type": entity_type,
            "entity_value": entity_value,
            "entity_normalized": entity_normalized,
            "confidence_score": confidence_score,
            "source_type": source_type,
            "attachment_id": attachment_id,
            "created_at": "2025-01-01T00:00:00+00:00",
        }


class MessageFactory(_Counter):
    """
    Factory for raw_emails rows.

    Usage:
        MessageFactory.create(id="msg-1", sender_email="booking@maersk.com")
        MessageFactory.create(id="msg-2", thread_id="t-1", is_response=True)
    """

    @classmethod
    def create(
        cls,
        id: Optional[str] = None,
        sender_email: str = "ops@forwarder-partner.com",
        true_sender_email: Optional[str] = None,
        thread_id: Optional[str] = None,
        is_response: bool = False,
        received_at=None,
        subject: Optional[str] = None,
        document_type: Optional[str] = None,
        message_type: Optional[str] = None,
        sender_category: Optional[str] = None,
    ) -> dict:
        counter = cls._next_counter()
        return {
            "id": id or f"msg-{counter}",
            "sender_email": sender_email,
            "true_sender_email": true_sender_email,
            "thread_id": thread_id,
            "is_response": is_response,
            "received_at": _iso(received_at) or "2025-03-01T10:00:00+00:00",
            "subject": subject or f"Shipment update {counter}",
            "document_type": document_type,
            "message_type": message_type,
            "sender_category": sender_category,
        }


class ShipmentFactory(_Counter):
    """
    Factory for shipments rows.

    Usage:
        ShipmentFactory.create(id="ship-1", booking_number="BK123")
        ShipmentFactory.create(container_numbers=["MSCU1234567"], status="booked")
    """

    @classmethod
    def create(
        cls,
        id: Optional[str] = None,
        booking_number: Optional[str] = None,
        bl_number: Optional[str] = None,
        container_numbers: Optional[list] = None,
        status: str = "draft",
        created_at=None,
        **fields,
    ) -> dict:
        counter = cls._next_counter()
        row = {
            "id": id or f"ship-{counter}",
            "booking_number": booking_number,
            "bl_number": bl_number,
            "container_numbers": container_numbers or [],
            "status": status,
            "created_at": _iso(created_at) or "2025-03-01T09:00:00+00:00",
            "updated_at": None,
        }
        row.update(fields)
        return row


class LinkFactory(_Counter):
    """Factory for shipment_links rows."""

    @classmethod
    def create(
        cls,
        message_id: str,
        shipment_id: str,
        identifier_type: str = "booking_number",
        identifier_value: str = "BK123",
        confidence_score: int = 95,
        source: str = "realtime",
        thread_id: Optional[str] = None,
        is_reply: bool = False,
        id: Optional[str] = None,
        created_at: Optional[str] = None,
    ) -> dict:
        counter = cls._next_counter()
        created = created_at or datetime(2024, 12, 1, 0, 0, counter % 60, tzinfo=timezone.utc).isoformat()
        return {
            "id": id or f"link-{counter}",
            "message_id": message_id,
            "shipment_id": shipment_id,
            "attachment_id": None,
            "identifier_type": identifier_type,
            "identifier_value": identifier_value,
            "confidence_score": confidence_score,
            "email_authority": "third_party",
            "source": source,
            "document_type": None,
            "authority_message_id": None,
            "thread_id": thread_id,
            "is_reply": is_reply,
            "linked_at": created,
            "created_at": created,
            "updated_at": None,
        }


class PendingDocumentFactory(_Counter):
    """Factory for pending_documents rows."""

    @classmethod
    def create(
        cls,
        message_id: str,
        identifier_type: str = "booking_number",
        identifier_value: str = "BK123",
        document_type: Optional[str] = "booking_confirmation",
        status: str = "pending",
        id: Optional[str] = None,
    ) -> dict:
        counter = cls._next_counter()
        return {
            "id": id or f"pending-{counter}",
            "message_id": message_id,
            "attachment_id": None,
            "document_type": document_type,
            "identifier_type": identifier_type,
            "identifier_value": identifier_value,
            "email_subject": None,
            "email_from": None,
            "status": status,
            "linked_shipment_id": None,
            "linked_at": None,
            "created_at": "2025-01-01T00:00:00+00:00",
        }
