"""
Entity extraction records produced by the upstream extractor.

Records are immutable once written; this service only reads them.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import Field

from models.base import BaseSchema
from models.identifiers import IdentifierSource, IdentifierType


class EntityType(str, Enum):
    """Entity types the linking engine understands."""
    # Identifiers
    BOOKING_NUMBER = "booking_number"
    BL_NUMBER = "bl_number"
    CONTAINER_NUMBER = "container_number"
    REFERENCE_NUMBER = "reference_number"

    # Vessel
    VESSEL_NAME = "vessel_name"
    VOYAGE_NUMBER = "voyage_number"

    # Ports and places
    PORT_OF_LOADING = "port_of_loading"
    PORT_OF_LOADING_CODE = "port_of_loading_code"
    PORT_OF_DISCHARGE = "port_of_discharge"
    PORT_OF_DISCHARGE_CODE = "port_of_discharge_code"
    PLACE_OF_RECEIPT = "place_of_receipt"
    PLACE_OF_DELIVERY = "place_of_delivery"

    # Dates
    ETD = "etd"
    ETA = "eta"
    ATD = "atd"
    ATA = "ata"
    ESTIMATED_DEPARTURE_DATE = "estimated_departure_date"
    ESTIMATED_ARRIVAL_DATE = "estimated_arrival_date"
    SI_CUTOFF = "si_cutoff"
    VGM_CUTOFF = "vgm_cutoff"
    CARGO_CUTOFF = "cargo_cutoff"
    GATE_CUTOFF = "gate_cutoff"

    # Cargo and commercial
    COMMODITY = "commodity"
    COMMODITY_DESCRIPTION = "commodity_description"
    INCOTERMS = "incoterms"
    FREIGHT_TERMS = "freight_terms"

    @classmethod
    def parse(cls, raw: Optional[str]) -> Optional["EntityType"]:
        """Map a stored entity_type string to the enum, None if unknown."""
        if not raw:
            return None
        try:
            return cls(raw.strip().lower())
        except ValueError:
            return None

    @property
    def identifier_type(self) -> Optional[IdentifierType]:
        """Identifier type for identifier entities, None otherwise."""
        try:
            return IdentifierType(self.value)
        except ValueError:
            return None


class EntityRecord(BaseSchema):
    """One extracted entity for a message or one of its attachments."""
    id: Optional[str] = None
    message_id: str
    entity_type: EntityType
    value: str
    normalized_value: Optional[str] = None
    confidence: float = Field(default=0, ge=0, le=100)
    source: IdentifierSource = IdentifierSource.EMAIL
    attachment_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def effective_value(self) -> str:
        return self.normalized_value or self.value
