"""
Unit tests for identifier extraction.

Run: pytest tests/unit/test_identifier_service.py -v
"""

from datetime import date

import pytest

from models.identifiers import Identifier, IdentifierSet, IdentifierSource, IdentifierType
from services.entity_service import EntityService
from services.identifier_service import IdentifierService
from tests.factories import EntityFactory


@pytest.fixture
def identifier_service(mock_db):
    return IdentifierService(EntityService())


class TestIdentifierSet:
    """De-duplication and priority order."""

    def test_repeated_value_keeps_highest_confidence(self):
        identifiers = IdentifierSet()
        identifiers.add(Identifier(type=IdentifierType.BOOKING_NUMBER, value="BK1", confidence=60))
        identifiers.add(Identifier(type=IdentifierType.BOOKING_NUMBER, value="BK1", confidence=90))
        identifiers.add(Identifier(type=IdentifierType.BOOKING_NUMBER, value="BK1", confidence=70))

        assert len(identifiers.booking_numbers) == 1
        assert identifiers.booking_numbers[0].confidence == 90

    def test_iteration_is_in_priority_order(self):
        identifiers = IdentifierSet()
        identifiers.add(Identifier(type=IdentifierType.CONTAINER_NUMBER, value="MSCU1234567"))
        identifiers.add(Identifier(type=IdentifierType.REFERENCE_NUMBER, value="PO-1"))
        identifiers.add(Identifier(type=IdentifierType.BOOKING_NUMBER, value="BK1"))

        assert [i.type for i in identifiers] == [
            IdentifierType.BOOKING_NUMBER,
            IdentifierType.CONTAINER_NUMBER,
            IdentifierType.REFERENCE_NUMBER,
        ]

    def test_reference_only_set_cannot_link(self):
        identifiers = IdentifierSet.single(
            Identifier(type=IdentifierType.REFERENCE_NUMBER, value="PO-1")
        )

        assert not identifiers.is_empty()
        assert not identifiers.has_linking_identifiers()


class TestIdentifierExtraction:
    """Entity rows -> ExtractedIdentifiers."""

    def test_extract_normalizes_and_groups(self, identifier_service, mock_supabase):
        # Arrange
        mock_supabase.set_table_data("entity_extractions", [
            EntityFactory.create("m1", "booking_number", " bk 123 "),
            EntityFactory.create("m1", "container_number", "mscu 123456-7", source_type="document"),
            EntityFactory.create("m1", "bl_number", "hlcu999", entity_normalized="HLCU999"),
            EntityFactory.create("m2", "booking_number", "OTHER"),
        ])

        # Act
        extracted = identifier_service.extract("m1")

        # Assert
        identifiers = extracted.identifiers
        assert identifiers.values(IdentifierType.BOOKING_NUMBER) == ["BK123"]
        assert identifiers.values(IdentifierType.BL_NUMBER) == ["HLCU999"]
        assert identifiers.values(IdentifierType.CONTAINER_NUMBER) == ["MSCU1234567"]
        assert identifiers.container_numbers[0].source == IdentifierSource.DOCUMENT

    def test_invalid_container_is_dropped(self, identifier_service, mock_supabase):
        mock_supabase.set_table_data("entity_extractions", [
            EntityFactory.create("m1", "container_number", "MSCU12"),
        ])

        assert identifier_service.extract("m1").identifiers.is_empty()

    def test_unknown_entity_types_are_ignored(self, identifier_service, mock_supabase):
        mock_supabase.set_table_data("entity_extractions", [
            EntityFactory.create("m1", "shipper_name", "ACME"),
            EntityFactory.create("m1", "booking_number", "BK1"),
        ])

        extracted = identifier_service.extract("m1")

        assert extracted.identifiers.values(IdentifierType.BOOKING_NUMBER) == ["BK1"]

    def test_ancillary_fields_pick_highest_confidence(self, identifier_service, mock_supabase):
        # Arrange
        mock_supabase.set_table_data("entity_extractions", [
            EntityFactory.create("m1", "vessel_name", "EVER GIVEN", confidence_score=60),
            EntityFactory.create("m1", "vessel_name", "MAERSK ESSEN", confidence_score=95),
            EntityFactory.create("m1", "estimated_departure_date", "15-Jan-2025"),
            EntityFactory.create("m1", "eta", "sometime next month"),
        ])

        # Act
        ancillary = identifier_service.extract("m1").ancillary

        # Assert
        assert ancillary.vessel_name == "MAERSK ESSEN"
        assert ancillary.etd == date(2025, 1, 15)
        assert ancillary.eta is None

    def test_extract_many_includes_messages_without_entities(self, identifier_service, mock_supabase):
        mock_supabase.set_table_data("entity_extractions", [
            EntityFactory.create("m1", "booking_number", "BK1"),
        ])

        extracted = identifier_service.extract_many(["m1", "m2"])

        assert set(extracted) == {"m1", "m2"}
        assert extracted["m2"].identifiers.is_empty()
