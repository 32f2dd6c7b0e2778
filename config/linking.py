"""
Linking configuration: scoring tables and decision thresholds.

Module-level constants hold the scoring tables. Thresholds and the
conflict policy come from settings so they can be tuned per deployment.
"""

import re
from dataclasses import dataclass, field

from config.settings import get_settings
from exceptions import InvalidThresholdsError
from models.conflict import ConflictPolicy
from models.identifiers import IdentifierType
from models.message import EmailAuthority, SenderCategory

# =============================================================================
# BASE SCORES
# =============================================================================
# Reflects how unique each identifier is. Booking numbers are issued once per
# shipment; container numbers get reused after the box is emptied.

BASE_SCORES = {
    IdentifierType.BOOKING_NUMBER: 95,
    IdentifierType.BL_NUMBER: 90,
    IdentifierType.CONTAINER_NUMBER: 75,
    IdentifierType.REFERENCE_NUMBER: 50,
    IdentifierType.MANUAL: 100,
}

# Thread authority and matcher priority (higher wins)
IDENTIFIER_PRIORITY = {
    IdentifierType.BOOKING_NUMBER: 100,
    IdentifierType.BL_NUMBER: 90,
    IdentifierType.CONTAINER_NUMBER: 80,
    IdentifierType.REFERENCE_NUMBER: 50,
}


# =============================================================================
# MODIFIERS
# =============================================================================

AUTHORITY_MODIFIERS = {
    EmailAuthority.DIRECT_CARRIER: 5,
    EmailAuthority.FORWARDED_CARRIER: 2,
    EmailAuthority.INTERNAL: 0,
    EmailAuthority.THIRD_PARTY: -5,
}

HIGH_VALUE_DOCUMENT_TYPES = frozenset({
    "booking_confirmation",
    "booking_amendment",
    "bill_of_lading",
    "arrival_notice",
    "shipping_instruction",
    "departure_notice",
})
DOCUMENT_TYPE_BONUS = 5

# Time decay: nothing inside the grace window, then a per-week penalty down to the floor.
TIME_DECAY_GRACE_DAYS = 7
TIME_DECAY_PER_WEEK = 3
TIME_DECAY_FLOOR = -12

MESSAGE_TYPE_MODIFIERS = {
    "departure_update": 5,
    "arrival_update": 5,
    "transit_update": 4,
    "gate_in_update": 4,
    "stuffing_update": 3,
    "handover_update": 3,
    "pre_alert": 3,
    "clearance_complete": 3,
    "delivery_complete": 3,
    "amendment_request": 2,
    "document_share": 1,
    "query": -2,
    "reminder": -2,
    "quote_request": -5,
    "quote_response": -5,
    "general_correspondence": -5,
}

SENDER_CATEGORY_MODIFIERS = {
    SenderCategory.CARRIER: 5,
    SenderCategory.CUSTOMS_BROKER: 3,
    SenderCategory.PARTNER: 2,
    SenderCategory.INTERNAL: 0,
    SenderCategory.SHIPPER: 0,
    SenderCategory.CONSIGNEE: 0,
    SenderCategory.TRUCKER: 0,
    SenderCategory.WAREHOUSE: 0,
    SenderCategory.PLATFORM: 0,
    SenderCategory.UNKNOWN: -3,
}


# =============================================================================
# SENDER CLASSIFICATION
# =============================================================================

# Domain fragments of ocean carriers that send booking/BL traffic directly
DIRECT_CARRIER_DOMAINS = (
    "maersk", "hlag", "hapag", "cma-cgm", "cmacgm", "msc.com",
    "coscon", "cosco", "oocl", "one-line", "evergreen", "yangming",
    "hmm21", "zim.com", "paborlines", "namsung", "sinokor",
    "heung-a", "kmtc", "wanhai", "tslines", "sitc",
)

# Order matters: first matching category wins
SENDER_CATEGORY_PATTERNS = [
    (SenderCategory.CARRIER, [
        re.compile(r"maersk", re.I),
        re.compile(r"hapag|hlag", re.I),
        re.compile(r"cma.?cgm", re.I),
        re.compile(r"cosco|coscon", re.I),
        re.compile(r"one-line|ocean.?network", re.I),
        re.compile(r"evergreen", re.I),
        re.compile(r"@msc\.|mediterranean.?shipping", re.I),
        re.compile(r"yang.?ming", re.I),
        re.compile(r"@zim\.", re.I),
        re.compile(r"oocl", re.I),
    ]),
    (SenderCategory.CUSTOMS_BROKER, [
        re.compile(r"customs|broker|\bcha\b|clearing", re.I),
    ]),
    (SenderCategory.TRUCKER, [
        re.compile(r"truck|transport|drayage|haul", re.I),
    ]),
    (SenderCategory.WAREHOUSE, [
        re.compile(r"warehouse|\bcfs\b|logistics-park", re.I),
    ]),
    (SenderCategory.PLATFORM, [
        re.compile(r"odex|inttra|cargowise|portcast", re.I),
    ]),
    (SenderCategory.PARTNER, [
        re.compile(r"forward|freight|logistics", re.I),
    ]),
]


# =============================================================================
# RUNTIME CONFIG
# =============================================================================

@dataclass(frozen=True)
class LinkingConfig:
    """Thresholds and policies applied by the linking engine."""
    auto_link_threshold: int = 85
    suggestion_threshold: int = 60
    backfill_orphan_confidence: int = 90
    conflict_policy: ConflictPolicy = ConflictPolicy.FIRST_MATCH
    internal_domains: tuple[str, ...] = field(default_factory=lambda: ("intoglo.com",))

    def __post_init__(self):
        if not 0 <= self.suggestion_threshold < self.auto_link_threshold <= 100:
            raise InvalidThresholdsError(
                self.auto_link_threshold,
                self.suggestion_threshold
            )


def get_linking_config() -> LinkingConfig:
    """Build linking config from application settings."""
    settings = get_settings()
    return LinkingConfig(
        auto_link_threshold=settings.auto_link_threshold,
        suggestion_threshold=settings.suggestion_threshold,
        backfill_orphan_confidence=settings.backfill_orphan_confidence,
        conflict_policy=ConflictPolicy(settings.conflict_policy),
        internal_domains=tuple(settings.internal_domain_list),
    )
