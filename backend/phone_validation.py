import re
from typing import Optional, Tuple

import phonenumbers
from phonenumbers import NumberParseException, PhoneNumberFormat

TEN_DIGITS = re.compile(r"^\d{10}$")
MOBILE_LEADING_DIGITS = "6789"

FAKE_PATTERNS = (
    re.compile(r"^(\d)\1{9}$"),
    re.compile(r"^0123456789$"),
    re.compile(r"^1234567890$"),
    re.compile(r"^9876543210$"),
    re.compile(r"^(\d)(\d)(\d)(\d)(\d)\5{5}$"),
)


def digits_only(raw) -> str:
    return re.sub(r"\D", "", str(raw or ""))


def is_fake_number(phone10: str) -> bool:
    digits = digits_only(phone10)
    if len(digits) != 10:
        return True
    return any(pattern.match(digits) for pattern in FAKE_PATTERNS)


def validate_phone_india(raw) -> Tuple[bool, Optional[str]]:
    """Accept a 10-digit Indian mobile, given without the country code."""
    if not raw or not isinstance(raw, str):
        return False, "Invalid phone number"
    digits = digits_only(raw)
    if not TEN_DIGITS.match(digits) or is_fake_number(digits):
        return False, "Invalid phone number"
    if digits[0] not in MOBILE_LEADING_DIGITS:
        return False, "Invalid phone number"

    try:
        parsed = phonenumbers.parse(f"+91{digits}", "IN")
    except NumberParseException:
        return False, "Invalid phone number"
    if not phonenumbers.is_possible_number(parsed) or not phonenumbers.is_valid_number(parsed):
        return False, "Invalid phone number"
    return True, None


def to_phone10(raw) -> Optional[str]:
    if not raw or not isinstance(raw, str):
        return None
    digits = digits_only(raw)
    return digits if len(digits) == 10 else None


def standardize_phone_number(raw) -> str:
    if not raw:
        return ""
    raw = str(raw)
    digits = digits_only(raw)
    if len(digits) == 12 and digits.startswith("91"):
        candidate = f"+{digits}"
    elif len(digits) == 10:
        candidate = f"+91{digits}"
    elif 11 <= len(digits) <= 15 or not raw.startswith("+"):
        candidate = f"+{digits}"
    else:
        candidate = raw

    try:
        parsed = phonenumbers.parse(candidate, None)
    except NumberParseException:
        return candidate
    return phonenumbers.format_number(parsed, PhoneNumberFormat.E164)
