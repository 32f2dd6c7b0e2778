"""
Append-only audit entries for linking decisions.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import Field

from models.base import BaseSchema
from models.identifiers import IdentifierType
from models.link import LinkSource
from models.message import EmailAuthority


class AuditOperation(str, Enum):
    """Linking operations recorded in the audit log."""
    LINK = "link"
    SUGGEST = "suggest"
    LINK_ORPHAN = "link_orphan"
    UNLINK = "unlink"
    RELINK = "relink"
    CONFLICT = "conflict"
    REPAIR_CROSS_LINK = "repair_cross_link"


class AuditEntry(BaseSchema):
    """One immutable audit record."""
    message_id: Optional[str] = None
    shipment_id: Optional[str] = None
    operation: AuditOperation
    source: Optional[LinkSource] = None
    identifier_type: Optional[IdentifierType] = None
    identifier_value: Optional[str] = None
    confidence_score: Optional[int] = None
    confidence_breakdown: dict = Field(default_factory=dict)
    email_authority: Optional[EmailAuthority] = None
    notes: Optional[str] = None
    recorded_at: Optional[datetime] = None

    def to_row(self) -> dict:
        return {
            "message_id": self.message_id,
            "shipment_id": self.shipment_id,
            "operation": self.operation.value,
            "link_source": self.source.value if self.source else None,
            "identifier_type": self.identifier_type.value if self.identifier_type else None,
            "identifier_value": self.identifier_value,
            "confidence_score": self.confidence_score,
            "confidence_breakdown": self.confidence_breakdown,
            "email_authority": self.email_authority.value if self.email_authority else None,
            "notes": self.notes,
            "recorded_at": (self.recorded_at.isoformat() if self.recorded_at else None),
        }
