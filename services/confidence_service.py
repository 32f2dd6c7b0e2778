"""
Link confidence scoring.

Pure functions: no I/O. The score is an additive sum of independent
components, clamped to [0, 100], then banded by the configured
thresholds into auto-link, suggest or reject.
"""

from datetime import datetime, timezone
from typing import Iterable, Optional

from config.linking import (
    AUTHORITY_MODIFIERS,
    BASE_SCORES,
    DIRECT_CARRIER_DOMAINS,
    DOCUMENT_TYPE_BONUS,
    HIGH_VALUE_DOCUMENT_TYPES,
    MESSAGE_TYPE_MODIFIERS,
    SENDER_CATEGORY_MODIFIERS,
    SENDER_CATEGORY_PATTERNS,
    TIME_DECAY_FLOOR,
    TIME_DECAY_GRACE_DAYS,
    TIME_DECAY_PER_WEEK,
    LinkingConfig,
)
from models.confidence import ConfidenceBreakdown, ConfidenceInput, ConfidenceResult, LinkDecision
from models.message import EmailAuthority, SenderCategory
from utils.text_utils import email_domain


# =============================================================================
# CLASSIFICATION HELPERS
# =============================================================================

def is_carrier_domain(domain: Optional[str]) -> bool:
    if not domain:
        return False
    return any(fragment in domain for fragment in DIRECT_CARRIER_DOMAINS)


def is_internal_domain(domain: Optional[str], internal_domains: Iterable[str]) -> bool:
    if not domain:
        return False
    return any(domain == d or domain.endswith("." + d) for d in internal_domains)


def classify_authority(
    sender_email: Optional[str],
    true_sender_email: Optional[str] = None,
    internal_domains: Iterable[str] = ("intoglo.com",),
) -> EmailAuthority:
    """
    Classify how far a sender can be trusted to name the right shipment.

    - Carrier address sending directly: DIRECT_CARRIER
    - Carrier content relayed by someone else: FORWARDED_CARRIER
    - Our own domains: INTERNAL
    - Everyone else: THIRD_PARTY
    """
    sender_domain = email_domain(sender_email)
    true_domain = email_domain(true_sender_email)
    internal_domains = tuple(internal_domains)

    if is_carrier_domain(true_domain) and true_domain != sender_domain:
        return EmailAuthority.FORWARDED_CARRIER
    if is_carrier_domain(sender_domain):
        return EmailAuthority.DIRECT_CARRIER
    if is_internal_domain(sender_domain, internal_domains):
        return EmailAuthority.INTERNAL
    return EmailAuthority.THIRD_PARTY


def classify_sender_category(
    address: Optional[str],
    internal_domains: Iterable[str] = ("intoglo.com",),
) -> SenderCategory:
    """Stakeholder category of an address from domain patterns."""
    domain = email_domain(address)
    if not domain:
        return SenderCategory.UNKNOWN
    if is_internal_domain(domain, internal_domains):
        return SenderCategory.INTERNAL

    for category, patterns in SENDER_CATEGORY_PATTERNS:
        if any(p.search(address) for p in patterns):
            return category
    return SenderCategory.UNKNOWN


def time_proximity_days(a: Optional[datetime], b: Optional[datetime]) -> Optional[int]:
    """Absolute whole days between two timestamps; None if either is missing."""
    if a is None or b is None:
        return None
    if a.tzinfo is None:
        a = a.replace(tzinfo=timezone.utc)
    if b.tzinfo is None:
        b = b.replace(tzinfo=timezone.utc)
    return abs(a - b).days


# =============================================================================
# COMPONENTS
# =============================================================================

def time_decay(days: Optional[int]) -> int:
    """
    Penalty for distance between message and shipment creation.

    0 within the grace window, then -3 per further full week, floored.
    """
    if days is None or days <= TIME_DECAY_GRACE_DAYS:
        return 0
    weeks = (days - TIME_DECAY_GRACE_DAYS) // 7
    return max(TIME_DECAY_FLOOR, -TIME_DECAY_PER_WEEK * weeks)


def document_type_bonus(document_type: Optional[str]) -> int:
    if document_type and document_type.lower() in HIGH_VALUE_DOCUMENT_TYPES:
        return DOCUMENT_TYPE_BONUS
    return 0


def decide(score: int, config: LinkingConfig) -> LinkDecision:
    if score >= config.auto_link_threshold:
        return LinkDecision.AUTO_LINK
    if score >= config.suggestion_threshold:
        return LinkDecision.SUGGEST
    return LinkDecision.REJECT


def calculate(data: ConfidenceInput, config: Optional[LinkingConfig] = None) -> ConfidenceResult:
    """
    Score one (message, identifier) match.

    Args:
        data: Match attributes
        config: Thresholds; defaults to the built-in 85/60 bands

    Returns:
        ConfidenceResult with clamped score, decision band and breakdown
    """
    config = config or LinkingConfig()

    days = time_proximity_days(data.message_date, data.shipment_created_at)

    breakdown = ConfidenceBreakdown(
        identifier_score=BASE_SCORES[data.identifier_type],
        authority_modifier=AUTHORITY_MODIFIERS[data.email_authority],
        document_type_modifier=document_type_bonus(data.document_type),
        time_proximity_modifier=time_decay(days),
        message_type_modifier=MESSAGE_TYPE_MODIFIERS.get(data.message_type or "", 0),
        sender_category_modifier=(
            SENDER_CATEGORY_MODIFIERS.get(data.sender_category, 0)
            if data.sender_category else 0
        ),
    )
    breakdown.raw_total = (
        breakdown.identifier_score
        + breakdown.authority_modifier
        + breakdown.document_type_modifier
        + breakdown.time_proximity_modifier
        + breakdown.message_type_modifier
        + breakdown.sender_category_modifier
    )
    breakdown.total = max(0, min(100, round(breakdown.raw_total)))

    decision = decide(breakdown.total, config)

    return ConfidenceResult(
        score=breakdown.total,
        decision=decision,
        breakdown=breakdown,
        reasoning=_reasoning(data, breakdown, days, decision),
    )


def _reasoning(
    data: ConfidenceInput,
    breakdown: ConfidenceBreakdown,
    days: Optional[int],
    decision: LinkDecision,
) -> str:
    parts = [f"{data.identifier_type.value} base {breakdown.identifier_score}"]
    parts.append(f"{data.email_authority.value} {breakdown.authority_modifier:+d}")
    if breakdown.document_type_modifier:
        parts.append(f"{data.document_type} {breakdown.document_type_modifier:+d}")
    if days is not None:
        parts.append(f"{days}d apart {breakdown.time_proximity_modifier:+d}")
    if breakdown.message_type_modifier:
        parts.append(f"{data.message_type} {breakdown.message_type_modifier:+d}")
    if breakdown.sender_category_modifier:
        parts.append(f"{data.sender_category.value} {breakdown.sender_category_modifier:+d}")
    return f"{', '.join(parts)} = {breakdown.total} ({decision.value})"
