"""
Confidence scoring inputs and results.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import Field

from models.base import BaseSchema
from models.identifiers import IdentifierType
from models.message import EmailAuthority, SenderCategory


class LinkDecision(str, Enum):
    """Band a confidence score falls into."""
    AUTO_LINK = "auto_link"
    SUGGEST = "suggest"
    REJECT = "reject"


class ConfidenceInput(BaseSchema):
    """Everything the scorer looks at for one (message, identifier) pair."""
    identifier_type: IdentifierType
    email_authority: EmailAuthority = EmailAuthority.THIRD_PARTY
    document_type: Optional[str] = None
    message_type: Optional[str] = None
    sender_category: Optional[SenderCategory] = None
    message_date: Optional[datetime] = None
    shipment_created_at: Optional[datetime] = None


class ConfidenceBreakdown(BaseSchema):
    """Per-component contributions. `total` is the clamped sum."""
    identifier_score: int = 0
    authority_modifier: int = 0
    document_type_modifier: int = 0
    time_proximity_modifier: int = 0
    message_type_modifier: int = 0
    sender_category_modifier: int = 0
    raw_total: int = 0
    total: int = 0


class ConfidenceResult(BaseSchema):
    """Final score, its band, and a human-readable explanation."""
    score: int = Field(..., ge=0, le=100)
    decision: LinkDecision
    breakdown: ConfidenceBreakdown
    reasoning: str = ""

    @property
    def should_auto_link(self) -> bool:
        return self.decision == LinkDecision.AUTO_LINK

    @property
    def should_suggest(self) -> bool:
        return self.decision == LinkDecision.SUGGEST
