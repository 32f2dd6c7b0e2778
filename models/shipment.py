"""
Shipment schemas for validation and serialization.

The linking engine reads shipments and fills their empty fields; it never
creates them. Shipments are created by the carrier confirmation flow.
"""

from pydantic import Field, field_validator
from typing import Optional
from enum import Enum
from datetime import date, datetime
from decimal import Decimal

from models.base import BaseSchema, TimestampMixin
from models.identifiers import Identifier, IdentifierSet, IdentifierType


class ShipmentStatus(str, Enum):
    """Shipment lifecycle status."""
    DRAFT = "draft"
    BOOKED = "booked"
    IN_TRANSIT = "in_transit"
    ARRIVED = "arrived"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


# Status order for upgrade checks (lower = earlier in flow)
STATUS_ORDER = {
    ShipmentStatus.DRAFT: 0,
    ShipmentStatus.BOOKED: 1,
    ShipmentStatus.IN_TRANSIT: 2,
    ShipmentStatus.ARRIVED: 3,
    ShipmentStatus.DELIVERED: 4,
}


def is_status_upgrade(current: Optional[ShipmentStatus], new: ShipmentStatus) -> bool:
    """
    Check if moving to `new` advances the shipment.

    Rules:
    - Only strictly later statuses count (no downgrades, no no-ops)
    - CANCELLED is terminal and is never set by linking
    """
    if new == ShipmentStatus.CANCELLED:
        return False
    if current == ShipmentStatus.CANCELLED:
        return False

    current_order = STATUS_ORDER[current or ShipmentStatus.DRAFT]
    return STATUS_ORDER[new] > current_order


# Fields linking may fill when empty. Never overwritten once set.
PROPAGATED_FIELDS = (
    "bl_number",
    "vessel_name",
    "voyage_number",
    "port_of_loading",
    "port_of_loading_code",
    "port_of_discharge",
    "port_of_discharge_code",
    "place_of_receipt",
    "place_of_delivery",
    "etd",
    "eta",
    "atd",
    "ata",
    "si_cutoff",
    "vgm_cutoff",
    "cargo_cutoff",
    "gate_cutoff",
    "commodity_description",
    "incoterms",
    "freight_terms",
)


class ShipmentResponse(BaseSchema, TimestampMixin):
    """
    Shipment as stored.

    Holds at most one authoritative booking and BL number and a set of
    container numbers.
    """

    id: str = Field(..., description="Shipment UUID")
    status: ShipmentStatus = Field(default=ShipmentStatus.DRAFT, description="Current status")

    # Reference numbers
    booking_number: Optional[str] = Field(None, description="Carrier booking reference")
    bl_number: Optional[str] = Field(None, description="Bill of lading number")
    container_numbers: list[str] = Field(default_factory=list, description="Container numbers")

    # Vessel info
    vessel_name: Optional[str] = None
    voyage_number: Optional[str] = None

    # Ports and places
    port_of_loading: Optional[str] = None
    port_of_loading_code: Optional[str] = None
    port_of_discharge: Optional[str] = None
    port_of_discharge_code: Optional[str] = None
    place_of_receipt: Optional[str] = None
    place_of_delivery: Optional[str] = None

    # Dates
    etd: Optional[date] = None
    eta: Optional[date] = None
    atd: Optional[date] = None
    ata: Optional[date] = None
    si_cutoff: Optional[date] = None
    vgm_cutoff: Optional[date] = None
    cargo_cutoff: Optional[date] = None
    gate_cutoff: Optional[date] = None

    # Cargo and commercial
    commodity_description: Optional[str] = None
    total_weight: Optional[Decimal] = None
    incoterms: Optional[str] = None
    freight_terms: Optional[str] = None

    @field_validator("booking_number", "bl_number")
    @classmethod
    def normalize_reference(cls, v: Optional[str]) -> Optional[str]:
        """Normalize reference numbers to uppercase."""
        if v is None:
            return v
        return v.upper().strip() or None

    @field_validator("container_numbers", mode="before")
    @classmethod
    def normalize_containers(cls, v) -> list[str]:
        if not v:
            return []
        seen = []
        for c in v:
            if not c:
                continue
            c = str(c).upper().replace(" ", "").strip()
            if c not in seen:
                seen.append(c)
        return seen

    def identifier_set(self) -> IdentifierSet:
        """The shipment's own identifiers, for reverse matching."""
        result = IdentifierSet()
        if self.booking_number:
            result.add(Identifier(type=IdentifierType.BOOKING_NUMBER, value=self.booking_number, confidence=100))
        if self.bl_number:
            result.add(Identifier(type=IdentifierType.BL_NUMBER, value=self.bl_number, confidence=100))
        for container in self.container_numbers:
            result.add(Identifier(type=IdentifierType.CONTAINER_NUMBER, value=container, confidence=100))
        return result

    def is_empty_field(self, field_name: str) -> bool:
        value = getattr(self, field_name, None)
        return value is None or value == ""


class ShipmentFieldUpdate(BaseSchema):
    """Partial update produced by linking: filled fields plus optional status."""
    shipment_id: str
    fields: dict = Field(default_factory=dict)
    status: Optional[ShipmentStatus] = None
    previous_status: Optional[ShipmentStatus] = None

    @property
    def is_empty(self) -> bool:
        return not self.fields and self.status is None
