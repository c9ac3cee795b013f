"""Card number and expiry validation.

Pure functions, no I/O. Brand detection is for display only and must never
influence an authorization decision.
"""

import enum
import re
from datetime import date
from typing import Optional, Union

from .exceptions import CardValidationError

MIN_PAN_LENGTH = 13
MAX_PAN_LENGTH = 19

_WHITESPACE = re.compile(r"\s")


class CardBrand(str, enum.Enum):
    """Card brands recognised from the PAN prefix."""
    VISA = "visa"
    MASTERCARD = "mastercard"
    AMEX = "amex"
    DISCOVER = "discover"
    UNKNOWN = "unknown"


_BRAND_PATTERNS = [
    (re.compile(r"^4"), CardBrand.VISA),
    (re.compile(r"^5[1-5]"), CardBrand.MASTERCARD),
    (re.compile(r"^3[47]"), CardBrand.AMEX),
    (re.compile(r"^6(?:011|5)"), CardBrand.DISCOVER),
]


def normalize_card_number(card_number: str) -> str:
    """Remove all whitespace from a card number."""
    return _WHITESPACE.sub("", card_number or "")


def validate_card_number(card_number: str) -> bool:
    """Validate a card number with the Luhn checksum.

    Args:
        card_number: PAN, optionally grouped with spaces.

    Returns:
        True if the number is 13-19 digits long and passes Luhn.
    """
    digits = normalize_card_number(card_number)
    if not digits.isdigit() or not digits.isascii():
        return False
    if len(digits) < MIN_PAN_LENGTH or len(digits) > MAX_PAN_LENGTH:
        return False

    total = 0
    for position, char in enumerate(reversed(digits)):
        digit = int(char)
        if position % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit

    return total % 10 == 0


def expand_expiry_year(year: Union[str, int]) -> int:
    """Expand a two-digit year to ``2000 + year``; four-digit years pass through."""
    value = int(year)
    return 2000 + value if value < 100 else value


def validate_expiry_date(
    month: Union[str, int],
    year: Union[str, int],
    today: Optional[date] = None,
) -> bool:
    """Check that a card expiry is well formed and not in the past.

    A card is valid through the last day of its expiry month, so a card
    expiring this month is still accepted.
    """
    try:
        exp_month = int(month)
        exp_year = expand_expiry_year(year)
    except (TypeError, ValueError):
        return False

    if exp_month < 1 or exp_month > 12:
        return False

    today = today or date.today()
    if exp_year < today.year:
        return False
    if exp_year == today.year and exp_month < today.month:
        return False
    return True


def detect_card_brand(card_number: str) -> CardBrand:
    """Classify a card by its PAN prefix."""
    number = normalize_card_number(card_number)
    for pattern, brand in _BRAND_PATTERNS:
        if pattern.match(number):
            return brand
    return CardBrand.UNKNOWN


def format_card_number(card_number: str) -> str:
    """Group a card number in blocks of four digits."""
    cleaned = normalize_card_number(card_number)
    return " ".join(cleaned[i:i + 4] for i in range(0, len(cleaned), 4))


def mask_card_number(card_number: str) -> str:
    """Return a log-safe rendering that keeps only the last four digits."""
    cleaned = normalize_card_number(card_number)
    if len(cleaned) <= 4:
        return "****"
    return f"****{cleaned[-4:]}"


def validate_card(card, today: Optional[date] = None) -> None:
    """Validate a CardData instance before it is sent anywhere.

    Raises:
        CardValidationError: If the number or the expiry date is invalid.
    """
    if not validate_card_number(card.pan.get_secret_value()):
        raise CardValidationError("Invalid card number")
    if not validate_expiry_date(card.expiry_month, card.expiry_year, today=today):
        raise CardValidationError("Card has expired or invalid expiry date")
