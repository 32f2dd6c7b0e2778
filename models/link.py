"""
Message-to-shipment links and reviewable link suggestions.

At most one link exists per (message, shipment) pair. A message has at
most one confirmed link but may collect several pending suggestions.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import Field

from models.base import BaseSchema
from models.identifiers import IdentifierType
from models.message import EmailAuthority


class LinkSource(str, Enum):
    """Which process created a link."""
    REALTIME = "realtime"
    BACKFILL = "backfill"
    MANUAL = "manual"
    MIGRATION = "migration"


class LinkCreate(BaseSchema):
    """Link to insert or refresh."""
    message_id: str
    shipment_id: str
    attachment_id: Optional[str] = None
    identifier_type: IdentifierType
    identifier_value: str
    confidence_score: int = Field(..., ge=0, le=100)
    email_authority: EmailAuthority = EmailAuthority.THIRD_PARTY
    source: LinkSource = LinkSource.REALTIME
    document_type: Optional[str] = None
    authority_message_id: Optional[str] = None
    thread_id: Optional[str] = None
    is_reply: bool = False

    def to_row(self) -> dict:
        return {
            "message_id": self.message_id,
            "shipment_id": self.shipment_id,
            "attachment_id": self.attachment_id,
            "identifier_type": self.identifier_type.value,
            "identifier_value": self.identifier_value,
            "confidence_score": self.confidence_score,
            "email_authority": self.email_authority.value,
            "source": self.source.value,
            "document_type": self.document_type,
            "authority_message_id": self.authority_message_id,
            "thread_id": self.thread_id,
            "is_reply": self.is_reply,
        }


class LinkResponse(LinkCreate):
    """Stored link."""
    id: str
    linked_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SuggestionCreate(BaseSchema):
    """Reviewable link suggestion in the mid-confidence band."""
    message_id: str
    shipment_id: str
    identifier_type: IdentifierType
    identifier_value: str
    confidence_score: int = Field(..., ge=0, le=100)
    match_reasoning: str = ""

    def to_row(self) -> dict:
        return {
            "message_id": self.message_id,
            "shipment_id": self.shipment_id,
            "identifier_type": self.identifier_type.value,
            "identifier_value": self.identifier_value,
            "confidence_score": self.confidence_score,
            "match_reasoning": self.match_reasoning,
        }


class SuggestionResponse(SuggestionCreate):
    """Stored suggestion with review flags."""
    id: str
    is_confirmed: bool = False
    is_rejected: bool = False
    reviewed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return not self.is_confirmed and not self.is_rejected
