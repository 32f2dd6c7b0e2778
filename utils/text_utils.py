"""
Text utilities for shipment identifiers, sender addresses and dates.

Extracted values arrive with inconsistent case, spacing and punctuation
("mscu 123456-7", " bk123 "). Everything that compares identifiers goes
through these helpers.
"""

import re
from datetime import date, datetime
from typing import Optional

CONTAINER_PATTERN = re.compile(r"^[A-Z]{4}\d{7}$")

_WHITESPACE = re.compile(r"\s+")

# Tried in order; first successful parse wins
_DATE_FORMATS = (
    "%Y-%m-%d",
    "%d-%b-%Y",
    "%d/%m/%Y",
    "%Y/%m/%d",
    "%b %d, %Y",
    "%d %b %Y",
)


def normalize_identifier(value: Optional[str]) -> Optional[str]:
    """
    Normalize a booking, BL or reference number.

    - " bk 123 " → "BK123"
    - "hlcu999" → "HLCU999"

    Returns:
        Uppercase string without whitespace, or None if empty
    """
    if not value:
        return None

    cleaned = _WHITESPACE.sub("", value).upper()
    return cleaned or None


def normalize_container_number(value: Optional[str]) -> Optional[str]:
    """
    Normalize a container number and validate its shape.

    Containers are 4 letters followed by 7 digits:
    - "mscu 123456-7" → "MSCU1234567"
    - "MSCU.1234567" → "MSCU1234567"
    - "MSCU123" → None (invalid)
    """
    cleaned = normalize_identifier(value)
    if not cleaned:
        return None

    cleaned = cleaned.replace("-", "").replace(".", "")
    if not CONTAINER_PATTERN.match(cleaned):
        return None
    return cleaned


def parse_loose_date(value) -> Optional[date]:
    """
    Parse a date from the formats extractors commonly emit.

    Accepts date/datetime objects, ISO strings (with or without time),
    "15-Jan-2025", "15/01/2025", "2025/01/15", "Jan 15, 2025".

    Returns:
        date, or None if the value cannot be parsed
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    text = str(value).strip()
    if not text:
        return None

    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        pass

    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue

    return None


def email_domain(address: Optional[str]) -> Optional[str]:
    """
    Lowercase domain of an email address.

    - "Ops <ops@Maersk.com>" → "maersk.com"
    - "not-an-address" → None
    """
    if not address or "@" not in address:
        return None

    domain = address.rsplit("@", 1)[1].strip().strip(">").strip()
    return domain.lower() or None
