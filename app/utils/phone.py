"""
Phone number normalization for imported contact lists.

Numbers coming out of CRM exports and ad platforms arrive in every shape
("p:+33612345678", "06 12 34 56 78", "0033 6 12 34 56 78"). They are reduced
to digits with an optional leading ``+`` and French national numbers are
rewritten to E.164.
"""

import re
from typing import Any, Optional

MIN_PHONE_DIGITS = 8
MAX_PHONE_DIGITS = 15

_EXPORT_PREFIX = re.compile(r"^[pt]:", re.IGNORECASE)


def normalize_phone(value: Any, *, country_code: str = "33") -> Optional[str]:
    """
    Normalize a phone number.

    Args:
        value: Raw phone value from the file
        country_code: Country code applied to national numbers with a trunk ``0``

    Returns:
        Normalized number (e.g. "+33612345678") or None when nothing usable remains

    Examples:
        >>> normalize_phone("06 12 34 56 78")
        '+33612345678'
        >>> normalize_phone("p:33612345678")
        '+33612345678'
    """
    if value is None:
        return None

    text = str(value).strip()
    if not text:
        return None

    text = _EXPORT_PREFIX.sub("", text, count=1)

    # Keep a single leading "+", drop every other non-digit
    has_plus = text.lstrip().startswith("+")
    digits = re.sub(r"\D", "", text)
    if not digits:
        return None

    if has_plus:
        return f"+{digits}"

    if digits.startswith("00") and len(digits) > 4:
        return f"+{digits[2:]}"

    if digits.startswith("0") and len(digits) == 10:
        return f"+{country_code}{digits[1:]}"

    if digits.startswith(country_code) and len(digits) == 9 + len(country_code):
        return f"+{digits}"

    return digits


def phone_length_is_plausible(phone: Optional[str]) -> bool:
    """Return True when a normalized number has a believable digit count."""
    if not phone:
        return False
    digit_count = len(re.sub(r"\D", "", phone))
    return MIN_PHONE_DIGITS <= digit_count <= MAX_PHONE_DIGITS
