"""
Linking conflicts.

A conflict is always recorded. It never causes shipment data to be
merged or overwritten.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import Field

from models.base import BaseSchema
from models.identifiers import IdentifierType


class ConflictType(str, Enum):
    """Kinds of linking conflicts."""
    MULTIPLE_SHIPMENTS = "multiple_shipments"
    ALREADY_LINKED = "already_linked"
    LOW_CONFIDENCE = "low_confidence"


class ConflictPolicy(str, Enum):
    """
    What to link when a message matches several shipments.

    FIRST_MATCH: shipment discovered first (booking lookups run first)
    HIGHEST_PRIORITY: shipment matched by the strongest identifier
    SKIP: record the conflict and link nothing
    """
    FIRST_MATCH = "first_match"
    HIGHEST_PRIORITY = "highest_priority"
    SKIP = "skip"


class ConflictRecord(BaseSchema):
    """One detected conflict, queued for operator review."""
    type: ConflictType
    message_id: str
    shipment_ids: list[str]
    identifier_type: Optional[IdentifierType] = None
    identifier_value: Optional[str] = None
    matched_by: dict[str, list[str]] = Field(
        default_factory=dict,
        description="Shipment id -> identifier labels that matched it"
    )
    policy: Optional[ConflictPolicy] = None
    chosen_shipment_id: Optional[str] = None
    detected_at: Optional[datetime] = None

    def to_row(self) -> dict:
        return {
            "conflict_type": self.type.value,
            "message_id": self.message_id,
            "shipment_ids": self.shipment_ids,
            "identifier_type": self.identifier_type.value if self.identifier_type else None,
            "identifier_value": self.identifier_value,
            "matched_by": self.matched_by,
            "policy": self.policy.value if self.policy else None,
            "chosen_shipment_id": self.chosen_shipment_id,
            "status": "open",
        }
