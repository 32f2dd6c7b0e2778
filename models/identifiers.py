"""
Shipment identifier types and the typed identifier set built per message.
"""

from datetime import date
from enum import Enum
from typing import Iterator, Optional

from pydantic import Field

from models.base import BaseSchema


class IdentifierType(str, Enum):
    """Kinds of shipment identifiers, in decreasing uniqueness."""
    BOOKING_NUMBER = "booking_number"
    BL_NUMBER = "bl_number"
    CONTAINER_NUMBER = "container_number"
    REFERENCE_NUMBER = "reference_number"
    MANUAL = "manual"


class IdentifierSource(str, Enum):
    """Where an identifier was extracted from."""
    EMAIL = "email"
    DOCUMENT = "document"


class Identifier(BaseSchema):
    """A single normalized identifier extracted from a message."""
    type: IdentifierType
    value: str = Field(..., min_length=1)
    confidence: float = Field(default=0, ge=0, le=100)
    source: IdentifierSource = IdentifierSource.EMAIL
    message_id: Optional[str] = None

    @property
    def key(self) -> tuple[IdentifierType, str]:
        return (self.type, self.value)

    def label(self) -> str:
        """Short form used in reasoning text, e.g. 'booking:BK123'."""
        short = {
            IdentifierType.BOOKING_NUMBER: "booking",
            IdentifierType.BL_NUMBER: "bl",
            IdentifierType.CONTAINER_NUMBER: "container",
            IdentifierType.REFERENCE_NUMBER: "reference",
            IdentifierType.MANUAL: "manual",
        }[self.type]
        return f"{short}:{self.value}"


# Field on IdentifierSet holding each identifier type
_SET_FIELDS = {
    IdentifierType.BOOKING_NUMBER: "booking_numbers",
    IdentifierType.BL_NUMBER: "bl_numbers",
    IdentifierType.CONTAINER_NUMBER: "container_numbers",
    IdentifierType.REFERENCE_NUMBER: "reference_numbers",
}


class IdentifierSet(BaseSchema):
    """
    Identifiers grouped by type.

    Each list keeps first-seen order and holds a value at most once; a
    repeated value keeps the highest extraction confidence.
    """
    booking_numbers: list[Identifier] = Field(default_factory=list)
    bl_numbers: list[Identifier] = Field(default_factory=list)
    container_numbers: list[Identifier] = Field(default_factory=list)
    reference_numbers: list[Identifier] = Field(default_factory=list)

    def add(self, identifier: Identifier) -> None:
        bucket = getattr(self, _SET_FIELDS[identifier.type])
        for i, existing in enumerate(bucket):
            if existing.value == identifier.value:
                if identifier.confidence > existing.confidence:
                    bucket[i] = identifier
                return
        bucket.append(identifier)

    def of_type(self, identifier_type: IdentifierType) -> list[Identifier]:
        if identifier_type not in _SET_FIELDS:
            return []
        return list(getattr(self, _SET_FIELDS[identifier_type]))

    def values(self, identifier_type: IdentifierType) -> list[str]:
        return [i.value for i in self.of_type(identifier_type)]

    def __iter__(self) -> Iterator[Identifier]:
        # Priority order: booking, BL, container, reference
        for field_name in _SET_FIELDS.values():
            yield from getattr(self, field_name)

    def is_empty(self) -> bool:
        return not any(True for _ in self)

    def has_linking_identifiers(self) -> bool:
        """Booking, BL or container present. References alone never link."""
        return bool(self.booking_numbers or self.bl_numbers or self.container_numbers)

    def describe(self) -> str:
        parts = []
        if self.booking_numbers:
            parts.append(f"booking: {self.booking_numbers[0].value}")
        if self.bl_numbers:
            parts.append(f"BL: {self.bl_numbers[0].value}")
        if self.container_numbers:
            parts.append(f"container: {self.container_numbers[0].value}")
        if self.reference_numbers:
            parts.append(f"reference: {self.reference_numbers[0].value}")
        return ", ".join(parts) or "none"

    @classmethod
    def single(cls, identifier: Identifier) -> "IdentifierSet":
        result = cls()
        result.add(identifier)
        return result


class AncillaryFields(BaseSchema):
    """
    Non-identifier shipment fields carried by a message.

    Used to fill empty shipment fields after a link is made.
    """
    vessel_name: Optional[str] = None
    voyage_number: Optional[str] = None
    port_of_loading: Optional[str] = None
    port_of_loading_code: Optional[str] = None
    port_of_discharge: Optional[str] = None
    port_of_discharge_code: Optional[str] = None
    place_of_receipt: Optional[str] = None
    place_of_delivery: Optional[str] = None
    etd: Optional[date] = None
    eta: Optional[date] = None
    atd: Optional[date] = None
    ata: Optional[date] = None
    si_cutoff: Optional[date] = None
    vgm_cutoff: Optional[date] = None
    cargo_cutoff: Optional[date] = None
    gate_cutoff: Optional[date] = None
    commodity_description: Optional[str] = None
    incoterms: Optional[str] = None
    freight_terms: Optional[str] = None

    def populated(self) -> dict:
        """Fields that carry a value, keyed by shipment column name."""
        return self.model_dump(exclude_none=True)


class ExtractedIdentifiers(BaseSchema):
    """Everything the extractor produced for one message."""
    message_id: str
    identifiers: IdentifierSet = Field(default_factory=IdentifierSet)
    ancillary: AncillaryFields = Field(default_factory=AncillaryFields)
