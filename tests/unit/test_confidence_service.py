"""
Unit tests for confidence scoring.

Run: pytest tests/unit/test_confidence_service.py -v
"""

from datetime import datetime, timedelta, timezone

import pytest

from config.linking import LinkingConfig
from exceptions import InvalidThresholdsError
from models.confidence import ConfidenceInput, LinkDecision
from models.identifiers import IdentifierType
from models.message import EmailAuthority, SenderCategory
from services import confidence_service
from services.confidence_service import (
    calculate,
    classify_authority,
    classify_sender_category,
    time_decay,
)

CREATED = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


def _input(**overrides) -> ConfidenceInput:
    data = {
        "identifier_type": IdentifierType.BOOKING_NUMBER,
        "email_authority": EmailAuthority.INTERNAL,
        "message_date": CREATED,
        "shipment_created_at": CREATED,
    }
    data.update(overrides)
    return ConfidenceInput(**data)


# ===================
# CLASSIFICATION
# ===================

class TestClassifyAuthority:

    def test_carrier_sending_directly(self):
        assert classify_authority("booking@maersk.com") == EmailAuthority.DIRECT_CARRIER

    def test_carrier_content_relayed(self):
        authority = classify_authority(
            "ops@intoglo.com",
            true_sender_email="noreply@hlag.com",
        )
        assert authority == EmailAuthority.FORWARDED_CARRIER

    def test_internal_domain_and_subdomain(self):
        assert classify_authority("ops@intoglo.com") == EmailAuthority.INTERNAL
        assert classify_authority("ops@mail.intoglo.com") == EmailAuthority.INTERNAL

    def test_everyone_else(self):
        assert classify_authority("ops@randomforwarder.com") == EmailAuthority.THIRD_PARTY
        assert classify_authority(None) == EmailAuthority.THIRD_PARTY


class TestClassifySenderCategory:

    @pytest.mark.parametrize("address,expected", [
        ("booking@maersk.com", SenderCategory.CARRIER),
        ("docs@acme-customs.com", SenderCategory.CUSTOMS_BROKER),
        ("dispatch@fasttrucking.com", SenderCategory.TRUCKER),
        ("ops@randomforwarder.com", SenderCategory.PARTNER),
        ("ops@intoglo.com", SenderCategory.INTERNAL),
        ("someone@gmail.com", SenderCategory.UNKNOWN),
        (None, SenderCategory.UNKNOWN),
    ])
    def test_categories(self, address, expected):
        assert classify_sender_category(address) == expected


# ===================
# COMPONENTS
# ===================

class TestTimeDecay:

    @pytest.mark.parametrize("days,expected", [
        (None, 0),
        (0, 0),
        (7, 0),
        (13, 0),
        (14, -3),
        (20, -3),
        (21, -6),
        (35, -12),
        (365, -12),
    ])
    def test_decay(self, days, expected):
        assert time_decay(days) == expected


# ===================
# SCORING
# ===================

class TestCalculate:

    def test_booking_from_carrier_auto_links(self):
        """Carrier booking confirmation one day after creation clears 85."""
        # Arrange
        data = _input(
            email_authority=EmailAuthority.DIRECT_CARRIER,
            document_type="booking_confirmation",
            sender_category=SenderCategory.CARRIER,
            message_date=CREATED + timedelta(days=1),
        )

        # Act
        result = calculate(data)

        # Assert
        assert result.score >= 85
        assert result.decision == LinkDecision.AUTO_LINK
        assert result.should_auto_link

    def test_container_from_unknown_forwarder_is_suggested(self):
        """Container match from a third party 20 days later lands in the review band."""
        # Arrange
        data = _input(
            identifier_type=IdentifierType.CONTAINER_NUMBER,
            email_authority=EmailAuthority.THIRD_PARTY,
            sender_category=classify_sender_category("ops@randomforwarder.com"),
            message_date=CREATED + timedelta(days=20),
        )

        # Act
        result = calculate(data)

        # Assert
        assert result.score == 75 - 5 - 3 + 2
        assert 60 <= result.score < 85
        assert result.decision == LinkDecision.SUGGEST

    def test_score_is_clamped(self):
        high = calculate(_input(
            identifier_type=IdentifierType.MANUAL,
            email_authority=EmailAuthority.DIRECT_CARRIER,
            document_type="bill_of_lading",
            message_type="departure_update",
            sender_category=SenderCategory.CARRIER,
        ))
        low = calculate(_input(
            identifier_type=IdentifierType.REFERENCE_NUMBER,
            email_authority=EmailAuthority.THIRD_PARTY,
            message_type="quote_request",
            sender_category=SenderCategory.UNKNOWN,
            message_date=CREATED + timedelta(days=400),
        ))

        assert high.score == 100
        assert high.breakdown.raw_total > 100
        assert 0 <= low.score < 60
        assert low.decision == LinkDecision.REJECT

    def test_missing_dates_apply_no_decay(self):
        result = calculate(_input(message_date=None))

        assert result.breakdown.time_proximity_modifier == 0
        assert result.score == 95

    def test_naive_timestamps_are_treated_as_utc(self):
        result = calculate(_input(
            message_date=datetime(2025, 4, 1),
            shipment_created_at=CREATED,
        ))

        assert result.breakdown.time_proximity_modifier < 0

    def test_reasoning_names_components(self):
        result = calculate(_input(document_type="arrival_notice"))

        assert "booking_number base 95" in result.reasoning
        assert "arrival_notice +5" in result.reasoning
        assert result.reasoning.endswith("(auto_link)")

    def test_custom_thresholds(self):
        config = LinkingConfig(auto_link_threshold=99, suggestion_threshold=90)

        result = calculate(_input(), config)

        assert result.score == 95
        assert result.decision == LinkDecision.SUGGEST


class TestScoreMonotonicity:
    """Stronger evidence never lowers the score."""

    AUTHORITY_ORDER = [
        EmailAuthority.THIRD_PARTY,
        EmailAuthority.INTERNAL,
        EmailAuthority.FORWARDED_CARRIER,
        EmailAuthority.DIRECT_CARRIER,
    ]

    @pytest.mark.parametrize("identifier_type", [
        IdentifierType.BOOKING_NUMBER,
        IdentifierType.BL_NUMBER,
        IdentifierType.CONTAINER_NUMBER,
        IdentifierType.REFERENCE_NUMBER,
    ])
    def test_more_trusted_sender_never_scores_lower(self, identifier_type):
        scores = [
            calculate(_input(identifier_type=identifier_type, email_authority=a)).score
            for a in self.AUTHORITY_ORDER
        ]
        assert scores == sorted(scores)

    def test_more_unique_identifier_never_scores_lower(self):
        order = [
            IdentifierType.REFERENCE_NUMBER,
            IdentifierType.CONTAINER_NUMBER,
            IdentifierType.BL_NUMBER,
            IdentifierType.BOOKING_NUMBER,
        ]
        scores = [
            calculate(_input(identifier_type=t, email_authority=EmailAuthority.THIRD_PARTY)).score
            for t in order
        ]
        assert scores == sorted(scores)

    def test_older_message_never_scores_higher(self):
        scores = [
            calculate(_input(message_date=CREATED + timedelta(days=d))).score
            for d in range(0, 120, 3)
        ]
        assert scores == sorted(scores, reverse=True)


class TestLinkingConfig:

    def test_thresholds_must_be_ordered(self):
        with pytest.raises(InvalidThresholdsError):
            LinkingConfig(auto_link_threshold=60, suggestion_threshold=60)

    def test_decide_bands(self):
        config = LinkingConfig()

        assert confidence_service.decide(85, config) == LinkDecision.AUTO_LINK
        assert confidence_service.decide(84, config) == LinkDecision.SUGGEST
        assert confidence_service.decide(60, config) == LinkDecision.SUGGEST
        assert confidence_service.decide(59, config) == LinkDecision.REJECT
