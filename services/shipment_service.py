"""
Shipment store: lookups by identifier and non-destructive updates.

Shipments are created by the carrier confirmation flow. This service
reads them and writes the fields linking fills in; it never creates them.
"""

from typing import Optional
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
import structlog

from config import get_supabase_client
from models.linking import Lookup
from models.shipment import ShipmentResponse
from exceptions import ShipmentNotFoundError, DatabaseError
from utils.text_utils import normalize_container_number, normalize_identifier

logger = structlog.get_logger(__name__)


class ShipmentService:
    """
    Shipment queries used by the linking engine.

    Handles:
    - Lookup by id, booking number, BL number, container number
    - Partial updates (filled fields and status)
    - Paging for backfill
    """

    def __init__(self):
        self.db = get_supabase_client()
        self.table = "shipments"

    # ===================
    # READ OPERATIONS
    # ===================

    def get_by_id(self, shipment_id: str) -> ShipmentResponse:
        """
        Get a single shipment by ID.

        Args:
            shipment_id: Shipment UUID

        Returns:
            ShipmentResponse

        Raises:
            ShipmentNotFoundError: If shipment doesn't exist
        """
        lookup = self.find_by_id(shipment_id)
        if lookup.failed:
            raise DatabaseError("select", lookup.error)
        if not lookup.found:
            raise ShipmentNotFoundError(shipment_id)
        return lookup.value

    def find_by_id(self, shipment_id: str) -> Lookup[ShipmentResponse]:
        """Get a shipment by ID without raising."""
        logger.debug("getting_shipment", shipment_id=shipment_id)

        try:
            result = (
                self.db.table(self.table)
                .select("*")
                .eq("id", shipment_id)
                .limit(1)
                .execute()
            )

            if not result.data:
                return Lookup.miss()

            return Lookup.hit(self._row_to_response(result.data[0]))

        except Exception as e:
            logger.error("get_shipment_failed", shipment_id=shipment_id, error=str(e))
            return Lookup.failure(str(e))

    def find_by_booking_number(self, booking_number: str) -> Optional[ShipmentResponse]:
        """
        Get a shipment by booking number.

        Args:
            booking_number: Carrier booking reference

        Returns:
            ShipmentResponse or None if not found
        """
        normalized = normalize_identifier(booking_number)
        if not normalized:
            return None

        logger.debug("getting_shipment_by_booking", booking_number=normalized)

        try:
            result = (
                self.db.table(self.table)
                .select("*")
                .eq("booking_number", normalized)
                .limit(1)
                .execute()
            )

            if not result.data:
                return None

            return self._row_to_response(result.data[0])

        except Exception as e:
            logger.error("get_shipment_by_booking_failed", booking_number=normalized, error=str(e))
            raise DatabaseError("select", str(e))

    def find_by_bl_number(self, bl_number: str) -> Optional[ShipmentResponse]:
        """
        Get a shipment by bill of lading number.

        Returns:
            ShipmentResponse or None if not found
        """
        normalized = normalize_identifier(bl_number)
        if not normalized:
            return None

        logger.debug("getting_shipment_by_bl", bl_number=normalized)

        try:
            result = (
                self.db.table(self.table)
                .select("*")
                .eq("bl_number", normalized)
                .limit(1)
                .execute()
            )

            if not result.data:
                return None

            return self._row_to_response(result.data[0])

        except Exception as e:
            logger.error("get_shipment_by_bl_failed", bl_number=normalized, error=str(e))
            raise DatabaseError("select", str(e))

    def find_by_container_number(self, container_number: str) -> Optional[ShipmentResponse]:
        """
        Get the shipment carrying a container.

        Containers are reused once emptied, so several shipments can list
        the same number over time. The most recently created one wins.

        Args:
            container_number: e.g. 'MSCU1234567'

        Returns:
            ShipmentResponse or None if no matching shipment found
        """
        normalized = normalize_container_number(container_number)
        if not normalized:
            return None

        logger.debug("getting_shipment_by_container", container_number=normalized)

        try:
            result = (
                self.db.table(self.table)
                .select("*")
                .contains("container_numbers", [normalized])
                .order("created_at", desc=True)
                .limit(1)
                .execute()
            )

            if not result.data:
                logger.debug("no_shipment_found_by_container", container_number=normalized)
                return None

            return self._row_to_response(result.data[0])

        except Exception as e:
            logger.error("get_shipment_by_container_failed", container_number=normalized, error=str(e))
            raise DatabaseError("select", str(e))

    def get_page(self, limit: int = 50, offset: int = 0) -> tuple[list[ShipmentResponse], int]:
        """
        Page through shipments that carry at least one identifier.

        Returns:
            (shipments with identifiers, number of rows scanned).
            Zero rows scanned means the end was reached.
        """
        try:
            result = (
                self.db.table(self.table)
                .select("*")
                .order("created_at")
                .range(offset, offset + limit - 1)
                .execute()
            )

            rows = result.data or []
            shipments = [
                self._row_to_response(row) for row in rows
                if row.get("booking_number") or row.get("bl_number") or row.get("container_numbers")
            ]
            return shipments, len(rows)

        except Exception as e:
            logger.error("get_shipments_page_failed", offset=offset, error=str(e))
            raise DatabaseError("select", str(e))

    # ===================
    # WRITE OPERATIONS
    # ===================

    def update(self, shipment_id: str, fields: dict) -> ShipmentResponse:
        """
        Write a partial update.

        The caller decides which fields may be written; this method
        only serializes and persists them.

        Args:
            shipment_id: Shipment UUID
            fields: Column name -> new value

        Returns:
            Updated ShipmentResponse

        Raises:
            ShipmentNotFoundError: If shipment doesn't exist
        """
        if not fields:
            return self.get_by_id(shipment_id)

        update_data = {key: _serialize(value) for key, value in fields.items()}

        try:
            result = (
                self.db.table(self.table)
                .update(update_data)
                .eq("id", shipment_id)
                .execute()
            )

            if not result.data:
                raise ShipmentNotFoundError(shipment_id)

            logger.info(
                "shipment_updated",
                shipment_id=shipment_id,
                fields=list(update_data.keys())
            )

            return self._row_to_response(result.data[0])

        except ShipmentNotFoundError:
            raise
        except Exception as e:
            logger.error("update_shipment_failed", shipment_id=shipment_id, error=str(e))
            raise DatabaseError("update", str(e))

    # ===================
    # HELPERS
    # ===================

    def _row_to_response(self, row: dict) -> ShipmentResponse:
        """Convert database row to ShipmentResponse."""
        return ShipmentResponse(
            id=row["id"],
            status=row.get("status") or "draft",
            booking_number=row.get("booking_number"),
            bl_number=row.get("bl_number"),
            container_numbers=row.get("container_numbers") or [],
            vessel_name=row.get("vessel_name"),
            voyage_number=row.get("voyage_number"),
            port_of_loading=row.get("port_of_loading"),
            port_of_loading_code=row.get("port_of_loading_code"),
            port_of_discharge=row.get("port_of_discharge"),
            port_of_discharge_code=row.get("port_of_discharge_code"),
            place_of_receipt=row.get("place_of_receipt"),
            place_of_delivery=row.get("place_of_delivery"),
            etd=row.get("etd"),
            eta=row.get("eta"),
            atd=row.get("atd"),
            ata=row.get("ata"),
            si_cutoff=row.get("si_cutoff"),
            vgm_cutoff=row.get("vgm_cutoff"),
            cargo_cutoff=row.get("cargo_cutoff"),
            gate_cutoff=row.get("gate_cutoff"),
            commodity_description=row.get("commodity_description"),
            total_weight=Decimal(str(row["total_weight"])) if row.get("total_weight") else None,
            incoterms=row.get("incoterms"),
            freight_terms=row.get("freight_terms"),
            created_at=row["created_at"],
            updated_at=row.get("updated_at"),
        )


def _serialize(value):
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    return value


# Singleton instance
_shipment_service: Optional[ShipmentService] = None


def get_shipment_service() -> ShipmentService:
    """Get or create ShipmentService instance."""
    global _shipment_service
    if _shipment_service is None:
        _shipment_service = ShipmentService()
    return _shipment_service
