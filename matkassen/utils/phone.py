"""
Phone number validation and formatting utilities.
"""
import re
from typing import Any, Tuple, Dict, Optional
import logging

import phonenumbers
from phonenumbers import NumberParseException, PhoneNumberFormat

logger = logging.getLogger("matkassen.phone")

E164_PATTERN = re.compile(r"^\+[1-9]\d{1,14}$")

# International (+46 70...), Swedish mobile (070-123 45 67), then any long digit run
_PHONE_REDACTION_PATTERNS = [
    re.compile(r"\+\d{1,3}[-.\s]?\d{6,14}"),
    re.compile(r"\b07\d[-.\s]?\d{3}[-.\s]?\d{2}[-.\s]?\d{2}\b"),
    re.compile(r"\b\d{7,15}\b"),
]
REDACTED = "[PHONE REDACTED]"


class PhoneValidationError(Exception):
    """Exception raised for phone validation errors."""

    def __init__(self, message: str, details: Optional[Dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


def cleanup_phone_number(raw: str) -> str:
    """
    Clean up a raw phone number string before validation/parsing.

    - Removes common formatting characters: spaces, dashes, dots, parentheses.
    - Normalizes a leading 00 international prefix to '+'.
    - Strips out any characters except digits and leading '+'.
    - Converts full-width digits to ASCII.

    Args:
        raw (str): The raw phone number input.

    Returns:
        str: The cleaned phone number.
    """
    if not isinstance(raw, str):
        return ""

    raw = raw.translate(str.maketrans('０１２３４５６７８９', '0123456789'))
    raw = re.sub(r'^\s*00[\s\-\.]*', '+', raw)
    raw = re.sub(r'[\s\-\.\(\)]', '', raw)

    if raw.startswith('+'):
        return '+' + re.sub(r'[^\d]', '', raw[1:])
    return re.sub(r'[^\d]', '', raw)


def validate_phone(number: str, default_region: str = "SE") -> Tuple[bool, str, Optional[str], Optional[Dict[str, Any]]]:
    """
    Validate and format a phone number using the phonenumbers library.

    Numbers without a country prefix are parsed in ``default_region``. A
    number that already starts with the region's country code but lacks
    the '+' (e.g. ``46701234567``) is treated as international.

    Args:
        number: Phone number to validate
        default_region: Region for national-format numbers (e.g., "SE")

    Returns:
        Tuple[bool, str, str, dict]: (is_valid, formatted_number, error_message, metadata)
    """
    cleaned = cleanup_phone_number(number)
    if not cleaned:
        return False, number, "Phone number is empty", None

    country_code = str(phonenumbers.country_code_for_region(default_region))
    if not cleaned.startswith(('+', '0')) and cleaned.startswith(country_code) and len(cleaned) > 9:
        cleaned = '+' + cleaned

    try:
        parsed = phonenumbers.parse(cleaned, None if cleaned.startswith('+') else default_region)
    except NumberParseException as e:
        return False, number, f"Parse error: {str(e)}", None

    if not phonenumbers.is_valid_number(parsed):
        return False, number, "Invalid phone number", None

    formatted = phonenumbers.format_number(parsed, PhoneNumberFormat.E164)
    metadata = {
        "country": phonenumbers.region_code_for_number(parsed),
        "is_mobile": phonenumbers.number_type(parsed) == phonenumbers.PhoneNumberType.MOBILE,
        "country_code": parsed.country_code,
    }
    return True, formatted, None, metadata


def normalize_phone_to_e164(number: str, default_region: str = "SE") -> str:
    """
    Format a phone number in E.164 format.

    Args:
        number: Phone number to format
        default_region: Region for national-format numbers

    Returns:
        str: E.164 formatted phone number

    Raises:
        PhoneValidationError: If the phone number is invalid
    """
    is_valid, formatted, error, _ = validate_phone(number, default_region)
    if not is_valid:
        raise PhoneValidationError(error or "Invalid phone number", {"number": number})
    return formatted


def is_valid_e164(number: str) -> bool:
    """Check strict E.164 shape without consulting numbering plans."""
    return bool(E164_PATTERN.match(number or ""))


def redact_phone_numbers(text: Optional[str]) -> Optional[str]:
    """
    Replace anything that looks like a phone number with a placeholder.

    Provider error messages can echo the recipient number; they are shown
    to staff, so they go through here first.
    """
    if not text:
        return text
    for pattern in _PHONE_REDACTION_PATTERNS:
        text = pattern.sub(REDACTED, text)
    return text
