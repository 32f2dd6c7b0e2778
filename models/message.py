"""
Message metadata supplied by the ingestion side.

Thread membership, reply flag and classification tags are produced
upstream; the linking engine treats them as read-only inputs.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from models.base import BaseSchema


class EmailAuthority(str, Enum):
    """How much a sender can be trusted to name the right shipment."""
    DIRECT_CARRIER = "direct_carrier"
    FORWARDED_CARRIER = "forwarded_carrier"
    INTERNAL = "internal"
    THIRD_PARTY = "third_party"


class SenderCategory(str, Enum):
    """Stakeholder category of a sender address."""
    CARRIER = "carrier"
    CUSTOMS_BROKER = "customs_broker"
    SHIPPER = "shipper"
    CONSIGNEE = "consignee"
    TRUCKER = "trucker"
    WAREHOUSE = "warehouse"
    PARTNER = "partner"
    PLATFORM = "platform"
    INTERNAL = "internal"
    UNKNOWN = "unknown"


class MessageMetadata(BaseSchema):
    """Everything the linker needs to know about one email."""
    id: str
    sender_email: Optional[str] = None
    true_sender_email: Optional[str] = None
    thread_id: Optional[str] = None
    is_reply: bool = False
    received_at: Optional[datetime] = None
    subject: Optional[str] = None
    document_type: Optional[str] = None
    message_type: Optional[str] = None
    sender_category: Optional[SenderCategory] = None

    @property
    def effective_sender(self) -> Optional[str]:
        """Original sender before forwarding, when known."""
        return self.true_sender_email or self.sender_email

    @property
    def in_thread(self) -> bool:
        return bool(self.thread_id)
