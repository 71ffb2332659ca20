"""Phone number normalisation to E.164.

Numbers arrive from contact records in whatever shape the operator
typed them ("0412 345 678", "(04) 1234-5678", "+61412345678"). The
gateway wants E.164, so local numbers are prefixed with the calling
code of the recipient's country (falling back to the tenant default).
"""

import re
from typing import Optional


class PhoneFormatError(ValueError):
    """Raised when a number cannot be turned into E.164."""

    pass


# Country names as they appear on platform contact records
COUNTRY_ISO_CODES = {
    "australia": "AU",
    "united states": "US",
    "united kingdom": "GB",
    "new zealand": "NZ",
    "canada": "CA",
    "singapore": "SG",
    "malaysia": "MY",
    "philippines": "PH",
    "india": "IN",
    "hong kong": "HK",
    "thailand": "TH",
    "indonesia": "ID",
    "vietnam": "VN",
}

CALLING_CODES = {
    "AU": "61",
    "US": "1",
    "GB": "44",
    "NZ": "64",
    "CA": "1",
    "SG": "65",
    "MY": "60",
    "PH": "63",
    "IN": "91",
    "HK": "852",
    "TH": "66",
    "ID": "62",
    "VN": "84",
}

# North American numbers keep their leading digit
NO_TRUNK_PREFIX = {"US", "CA"}

MIN_DIGITS = 8
MAX_DIGITS = 15

_SEPARATORS = re.compile(r"[\s\-\(\)\.]")
_NON_DIGITS = re.compile(r"\D")


def country_to_iso(country: Optional[str]) -> Optional[str]:
    """Map a country name or ISO code to a supported ISO code."""
    if not country:
        return None
    value = country.strip()
    if value.upper() in CALLING_CODES:
        return value.upper()
    return COUNTRY_ISO_CODES.get(value.lower())


def format_phone_number(number: Optional[str], country: Optional[str] = "Australia") -> str:
    """Normalise a phone number to E.164 (e.g. "+61412345678").

    Args:
        number: Raw number from the contact record.
        country: Country name or ISO code used for local numbers.

    Returns:
        The number in E.164 form.

    Raises:
        PhoneFormatError: If the number is empty, malformed, or local
            to an unsupported country.
    """
    if number is None or not str(number).strip():
        raise PhoneFormatError("Phone number is required")

    raw = str(number).strip()
    clean = _SEPARATORS.sub("", raw)

    if clean.startswith("+"):
        digits = _NON_DIGITS.sub("", clean)
    elif clean.startswith("00"):
        digits = _NON_DIGITS.sub("", clean[2:])
    else:
        iso = country_to_iso(country)
        if iso is None:
            raise PhoneFormatError(
                f"Invalid phone number: {raw}. Unsupported country '{country}'"
            )
        calling_code = CALLING_CODES[iso]
        digits = _NON_DIGITS.sub("", clean)

        if digits.startswith("0") and iso not in NO_TRUNK_PREFIX:
            digits = digits[1:]
        elif digits.startswith(calling_code) and len(digits) >= 11:
            # Already carries the country code, just without the plus
            digits = digits[len(calling_code):]

        digits = calling_code + digits

    if not MIN_DIGITS <= len(digits) <= MAX_DIGITS:
        raise PhoneFormatError(f"Invalid phone number: {raw}")

    return f"+{digits}"
