"""
Identifier extraction and normalization.

Turns a message's raw entity records into a typed IdentifierSet plus the
ancillary shipment fields (vessel, ports, dates) carried alongside.
"""

from typing import Optional
import structlog

from models.entity import EntityRecord, EntityType
from models.identifiers import (
    AncillaryFields,
    ExtractedIdentifiers,
    Identifier,
    IdentifierSet,
    IdentifierType,
)
from services.entity_service import EntityService, get_entity_service
from utils.text_utils import normalize_container_number, normalize_identifier, parse_loose_date

logger = structlog.get_logger(__name__)

# Entity types mapped onto AncillaryFields (several aliases share a field)
ANCILLARY_FIELD_MAP = {
    EntityType.VESSEL_NAME: "vessel_name",
    EntityType.VOYAGE_NUMBER: "voyage_number",
    EntityType.PORT_OF_LOADING: "port_of_loading",
    EntityType.PORT_OF_LOADING_CODE: "port_of_loading_code",
    EntityType.PORT_OF_DISCHARGE: "port_of_discharge",
    EntityType.PORT_OF_DISCHARGE_CODE: "port_of_discharge_code",
    EntityType.PLACE_OF_RECEIPT: "place_of_receipt",
    EntityType.PLACE_OF_DELIVERY: "place_of_delivery",
    EntityType.ETD: "etd",
    EntityType.ESTIMATED_DEPARTURE_DATE: "etd",
    EntityType.ETA: "eta",
    EntityType.ESTIMATED_ARRIVAL_DATE: "eta",
    EntityType.ATD: "atd",
    EntityType.ATA: "ata",
    EntityType.SI_CUTOFF: "si_cutoff",
    EntityType.VGM_CUTOFF: "vgm_cutoff",
    EntityType.CARGO_CUTOFF: "cargo_cutoff",
    EntityType.GATE_CUTOFF: "gate_cutoff",
    EntityType.COMMODITY: "commodity_description",
    EntityType.COMMODITY_DESCRIPTION: "commodity_description",
    EntityType.INCOTERMS: "incoterms",
    EntityType.FREIGHT_TERMS: "freight_terms",
}

DATE_FIELDS = {
    "etd", "eta", "atd", "ata",
    "si_cutoff", "vgm_cutoff", "cargo_cutoff", "gate_cutoff",
}


def normalize_value(identifier_type: IdentifierType, value: Optional[str]) -> Optional[str]:
    """Normalize one identifier value; None if empty or invalid."""
    if identifier_type == IdentifierType.CONTAINER_NUMBER:
        return normalize_container_number(value)
    return normalize_identifier(value)


def to_identifier(record: EntityRecord) -> Optional[Identifier]:
    """
    Convert an entity record to an Identifier.

    Returns None for non-identifier entities and for values that fail
    normalization (e.g. a malformed container number).
    """
    identifier_type = record.entity_type.identifier_type
    if identifier_type is None or identifier_type == IdentifierType.MANUAL:
        return None

    value = normalize_value(identifier_type, record.normalized_value)
    if value is None:
        value = normalize_value(identifier_type, record.value)
    if value is None:
        return None

    return Identifier(
        type=identifier_type,
        value=value,
        confidence=record.confidence,
        source=record.source,
        message_id=record.message_id,
    )


def build_identifier_set(records: list[EntityRecord]) -> IdentifierSet:
    """Group records into a de-duplicated IdentifierSet."""
    identifiers = IdentifierSet()
    for record in records:
        identifier = to_identifier(record)
        if identifier is not None:
            identifiers.add(identifier)
    return identifiers


def build_ancillary_fields(records: list[EntityRecord]) -> AncillaryFields:
    """
    Collect non-identifier fields.

    When a field appears more than once the highest-confidence value
    wins. Unparseable dates are dropped.
    """
    best: dict[str, tuple[float, object]] = {}

    for record in records:
        field_name = ANCILLARY_FIELD_MAP.get(record.entity_type)
        if field_name is None:
            continue

        raw = record.effective_value.strip()
        if not raw:
            continue

        value = parse_loose_date(raw) if field_name in DATE_FIELDS else raw
        if value is None:
            continue

        current = best.get(field_name)
        if current is None or record.confidence > current[0]:
            best[field_name] = (record.confidence, value)

    return AncillaryFields(**{name: value for name, (_, value) in best.items()})


class IdentifierService:
    """Builds ExtractedIdentifiers for messages from the entity store."""

    def __init__(self, entity_service: EntityService):
        self.entity_service = entity_service

    def extract(self, message_id: str) -> ExtractedIdentifiers:
        """
        Build identifiers and ancillary fields for a message.

        Args:
            message_id: raw_emails id

        Returns:
            ExtractedIdentifiers (identifier set may be empty)
        """
        records = self.entity_service.find_by_message_id(message_id)
        return self.from_records(message_id, records)

    def extract_many(self, message_ids: list[str]) -> dict[str, ExtractedIdentifiers]:
        """Extraction for several messages with one store query."""
        records = self.entity_service.find_by_message_ids(message_ids)

        grouped: dict[str, list[EntityRecord]] = {message_id: [] for message_id in message_ids}
        for record in records:
            grouped.setdefault(record.message_id, []).append(record)

        return {
            message_id: self.from_records(message_id, message_records)
            for message_id, message_records in grouped.items()
        }

    def from_records(self, message_id: str, records: list[EntityRecord]) -> ExtractedIdentifiers:
        extracted = ExtractedIdentifiers(
            message_id=message_id,
            identifiers=build_identifier_set(records),
            ancillary=build_ancillary_fields(records),
        )

        logger.debug(
            "identifiers_extracted",
            message_id=message_id,
            entity_count=len(records),
            identifiers=extracted.identifiers.describe()
        )
        return extracted


# Singleton instance
_identifier_service: Optional[IdentifierService] = None


def get_identifier_service() -> IdentifierService:
    """Get or create IdentifierService instance."""
    global _identifier_service
    if _identifier_service is None:
        _identifier_service = IdentifierService(get_entity_service())
    return _identifier_service
