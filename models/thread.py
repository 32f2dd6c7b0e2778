"""
Thread authority models.

The authority is the single message in a conversation thread whose
identifier names the thread's shipment. Replies inherit it instead of
matching on whatever they quote.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import Field

from models.base import BaseSchema
from models.identifiers import IdentifierSet, IdentifierSource, IdentifierType


class IdentifierOrigin(str, Enum):
    """Where the identifiers used for a message came from."""
    THREAD_AUTHORITY = "thread_authority"
    DIRECT_EXTRACTION = "direct_extraction"
    NONE = "no_identifier"


class ThreadAuthority(BaseSchema):
    """Cached authority for one thread."""
    thread_id: str
    authority_message_id: str
    identifier_type: IdentifierType
    identifier_value: str
    confidence_score: float = 0
    shipment_id: Optional[str] = None
    received_at: Optional[datetime] = None
    subject: Optional[str] = None
    computed_at: Optional[datetime] = None


class ThreadIdentifier(BaseSchema):
    """One distinct identifier seen anywhere in a thread."""
    message_id: str
    identifier_type: IdentifierType
    identifier_value: str
    confidence_score: float = 0
    is_from_authority: bool = False
    source: IdentifierSource = IdentifierSource.EMAIL


class ThreadSummary(BaseSchema):
    """Overview of a thread: message counts, authority, all identifiers."""
    thread_id: str
    message_count: int
    original_message_count: int
    reply_message_count: int
    authority: Optional[ThreadAuthority] = None
    identifiers: list[ThreadIdentifier] = Field(default_factory=list)
    first_message_at: Optional[datetime] = None
    last_message_at: Optional[datetime] = None


class ResolvedIdentifiers(BaseSchema):
    """Identifiers chosen for matching one message."""
    message_id: str
    identifiers: IdentifierSet = Field(default_factory=IdentifierSet)
    origin: IdentifierOrigin = IdentifierOrigin.NONE
    authority: Optional[ThreadAuthority] = None

    @property
    def authority_message_id(self) -> Optional[str]:
        return self.authority.authority_message_id if self.authority else None
