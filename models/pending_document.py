"""
Orphan document models.

Messages whose identifiers matched no shipment are parked here. When a
shipment later appears, backfill resolves them against it.
"""

from typing import Optional
from datetime import datetime
from enum import Enum

from models.base import BaseSchema
from models.identifiers import IdentifierType


class PendingStatus(str, Enum):
    """Status of an orphan document."""
    PENDING = "pending"
    LINKED = "linked"
    EXPIRED = "expired"


class PendingDocumentCreate(BaseSchema):
    """
    Orphan record written when a message matched nothing.

    One record per identifier, so a later lookup by any of them finds it.
    """
    message_id: str
    attachment_id: Optional[str] = None
    document_type: Optional[str] = None
    identifier_type: IdentifierType
    identifier_value: str
    email_subject: Optional[str] = None
    email_from: Optional[str] = None

    def to_row(self) -> dict:
        return {
            "message_id": self.message_id,
            "attachment_id": self.attachment_id,
            "document_type": self.document_type,
            "identifier_type": self.identifier_type.value,
            "identifier_value": self.identifier_value,
            "email_subject": self.email_subject,
            "email_from": self.email_from,
            "status": PendingStatus.PENDING.value,
        }


class PendingDocumentResponse(PendingDocumentCreate):
    """Stored orphan record."""
    id: str
    status: PendingStatus = PendingStatus.PENDING
    linked_shipment_id: Optional[str] = None
    linked_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
