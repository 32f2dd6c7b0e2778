"""
Shipment matching and conflict resolution.

Every identifier of a message is looked up, not just the first that
hits: a message naming two shipments must be seen as a conflict, never
silently attached to whichever lookup ran first.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional
import structlog

from config.linking import IDENTIFIER_PRIORITY
from models.conflict import ConflictPolicy, ConflictRecord, ConflictType
from models.identifiers import Identifier, IdentifierSet, IdentifierType
from models.linking import Lookup
from models.shipment import ShipmentResponse
from services.shipment_service import ShipmentService, get_shipment_service
from exceptions import AppError

logger = structlog.get_logger(__name__)


def _identifier_rank(identifier: Identifier) -> tuple:
    return (-IDENTIFIER_PRIORITY.get(identifier.type, 0), -identifier.confidence, identifier.value)


@dataclass
class MatchResult:
    """
    Shipments found for an identifier set.

    `matches` keeps discovery order: booking lookups run first, then BL,
    then containers.
    """
    matches: dict[str, list[Identifier]] = field(default_factory=dict)
    shipments: dict[str, ShipmentResponse] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    @property
    def shipment_ids(self) -> list[str]:
        return list(self.matches.keys())

    @property
    def failed(self) -> bool:
        return bool(self.errors)

    def add(self, shipment: ShipmentResponse, identifier: Identifier) -> None:
        self.shipments.setdefault(shipment.id, shipment)
        matched = self.matches.setdefault(shipment.id, [])
        if identifier.key not in {i.key for i in matched}:
            matched.append(identifier)

    def primary_identifier(self, shipment_id: str) -> Identifier:
        """Strongest identifier that matched a shipment."""
        return min(self.matches[shipment_id], key=_identifier_rank)


class ShipmentMatcher:
    """Looks up candidate shipments for every identifier in a set."""

    def __init__(self, shipment_service: ShipmentService):
        self.shipment_service = shipment_service
        self._lookups: dict[IdentifierType, Callable[[str], Optional[ShipmentResponse]]] = {
            IdentifierType.BOOKING_NUMBER: shipment_service.find_by_booking_number,
            IdentifierType.BL_NUMBER: shipment_service.find_by_bl_number,
            IdentifierType.CONTAINER_NUMBER: shipment_service.find_by_container_number,
        }

    def lookup(self, identifier: Identifier) -> Lookup[ShipmentResponse]:
        """Look up one identifier. Store failures come back as Lookup.failure."""
        finder = self._lookups.get(identifier.type)
        if finder is None:
            return Lookup.miss()

        try:
            shipment = finder(identifier.value)
        except AppError as e:
            return Lookup.failure(e.message)

        return Lookup.hit(shipment) if shipment else Lookup.miss()

    def match(self, identifiers: IdentifierSet) -> MatchResult:
        """
        Find every shipment any identifier points to.

        Reference numbers are not looked up; they are too ambiguous to
        link on.

        Returns:
            MatchResult mapping shipment id -> identifiers that matched it
        """
        result = MatchResult()

        for identifier in identifiers:
            lookup = self.lookup(identifier)
            if lookup.failed:
                result.errors.append(f"{identifier.label()}: {lookup.error}")
                continue
            if lookup.found:
                result.add(lookup.value, identifier)

        logger.debug(
            "shipment_match_completed",
            identifiers=identifiers.describe(),
            shipment_ids=result.shipment_ids,
            errors=len(result.errors)
        )
        return result


class ResolutionStatus(str, Enum):
    ORPHAN = "orphan"
    MATCHED = "matched"
    CONFLICT = "conflict"


@dataclass
class Resolution:
    """A match collapsed to zero or one shipment, plus any conflict found."""
    status: ResolutionStatus
    shipment: Optional[ShipmentResponse] = None
    identifier: Optional[Identifier] = None
    conflict: Optional[ConflictRecord] = None

    @property
    def should_link(self) -> bool:
        return self.shipment is not None


class ConflictResolver:
    """
    Collapses a MatchResult according to the configured conflict policy.

    Multiple shipments always produce a ConflictRecord, whatever the
    policy decides to link.
    """

    def __init__(self, policy: ConflictPolicy = ConflictPolicy.FIRST_MATCH):
        self.policy = policy

    def resolve(self, message_id: str, match: MatchResult) -> Resolution:
        shipment_ids = match.shipment_ids

        if not shipment_ids:
            return Resolution(status=ResolutionStatus.ORPHAN)

        if len(shipment_ids) == 1:
            shipment_id = shipment_ids[0]
            return Resolution(
                status=ResolutionStatus.MATCHED,
                shipment=match.shipments[shipment_id],
                identifier=match.primary_identifier(shipment_id),
            )

        chosen_id = self.choose(match)
        reference_id = chosen_id or shipment_ids[0]
        reference_identifier = match.primary_identifier(reference_id)

        conflict = ConflictRecord(
            type=ConflictType.MULTIPLE_SHIPMENTS,
            message_id=message_id,
            shipment_ids=shipment_ids,
            identifier_type=reference_identifier.type,
            identifier_value=reference_identifier.value,
            matched_by={
                sid: [i.label() for i in identifiers]
                for sid, identifiers in match.matches.items()
            },
            policy=self.policy,
            chosen_shipment_id=chosen_id,
        )

        logger.warning(
            "multiple_shipments_matched",
            message_id=message_id,
            shipment_ids=shipment_ids,
            policy=self.policy.value,
            chosen_shipment_id=chosen_id
        )

        return Resolution(
            status=ResolutionStatus.CONFLICT,
            shipment=match.shipments[chosen_id] if chosen_id else None,
            identifier=match.primary_identifier(chosen_id) if chosen_id else None,
            conflict=conflict,
        )

    def choose(self, match: MatchResult) -> Optional[str]:
        """Shipment the policy links to when several matched, None to skip."""
        shipment_ids = match.shipment_ids

        if self.policy == ConflictPolicy.SKIP:
            return None

        if self.policy == ConflictPolicy.HIGHEST_PRIORITY:
            def strength(position_and_id):
                position, sid = position_and_id
                best = match.primary_identifier(sid)
                return (
                    -IDENTIFIER_PRIORITY.get(best.type, 0),
                    -len(match.matches[sid]),
                    position,
                )
            _, chosen = min(enumerate(shipment_ids), key=strength)
            return chosen

        return shipment_ids[0]


# Singleton instance
_shipment_matcher: Optional[ShipmentMatcher] = None


def get_shipment_matcher() -> ShipmentMatcher:
    """Get or create ShipmentMatcher instance."""
    global _shipment_matcher
    if _shipment_matcher is None:
        _shipment_matcher = ShipmentMatcher(get_shipment_service())
    return _shipment_matcher
