"""
Phone number normalization.

Every phone comparison in the service (seat lookups, binding checks, rate
limit keys) goes through normalize_phone so that equivalent inputs produce
the exact same E.164 string.
"""

import logging
import re
from dataclasses import dataclass

from seatline.errors import InvalidPhoneNumber

logger = logging.getLogger(__name__)

MIN_DIGITS = 10
MAX_DIGITS = 15

_CHANNEL_PREFIX_RE = re.compile(r"^\s*(whatsapp|sms|tel)\s*:", re.IGNORECASE)
_TRUNK_HINT_RE = re.compile(r"\(\s*0\s*\)")
_NON_DIGIT_RE = re.compile(r"\D")


@dataclass(frozen=True)
class NormalizedPhone:
    """Canonical phone number plus the raw input it came from."""

    e164: str
    original_input: str

    @property
    def whatsapp_address(self) -> str:
        return f"whatsapp:{self.e164}"


def normalize_phone(
    raw: str,
    default_country_code: str = "1",
    national_country_code: str = "44",
) -> NormalizedPhone:
    """
    Convert free-form phone input into an E.164 identifier.

    Args:
        raw: Input such as "whatsapp:+44 7700 900123", "07700 900123" or "(646) 801-4054"
        default_country_code: Country code assumed for bare 10-digit numbers
        national_country_code: Country code used when a national trunk "0" is dropped

    Returns:
        NormalizedPhone with the canonical e164 value

    Raises:
        InvalidPhoneNumber: Empty input or digit count outside 10-15
    """
    original_input = (raw or "").strip()
    if not original_input:
        raise InvalidPhoneNumber(original_input, "Phone number is required")

    cleaned = _CHANNEL_PREFIX_RE.sub("", original_input)
    cleaned = _TRUNK_HINT_RE.sub("", cleaned).strip()

    has_plus = cleaned.startswith("+")
    digits = _NON_DIGIT_RE.sub("", cleaned)

    # 00 is the international dialling prefix, equivalent to a leading +
    if not has_plus and digits.startswith("00"):
        digits = digits[2:]
        has_plus = True

    if not MIN_DIGITS <= len(digits) <= MAX_DIGITS:
        raise InvalidPhoneNumber(
            original_input,
            f"expected {MIN_DIGITS}-{MAX_DIGITS} digits, got {len(digits)}",
        )

    if has_plus:
        e164 = f"+{digits}"
    elif len(digits) == 10:
        e164 = f"+{default_country_code}{digits}"
    elif len(digits) == 11 and digits.startswith(default_country_code):
        e164 = f"+{digits}"
    elif len(digits) == 11 and digits.startswith("0"):
        e164 = f"+{national_country_code}{digits[1:]}"
    else:
        e164 = f"+{digits}"

    logger.debug(f"Normalized phone {mask_phone(original_input)} -> {mask_phone(e164)}")
    return NormalizedPhone(e164=e164, original_input=original_input)


def mask_phone(value: str) -> str:
    """Hide all but the last four digits of a phone number for log output."""
    if not value:
        return ""
    digits_seen = 0
    masked = []
    for char in reversed(value):
        if char.isdigit():
            digits_seen += 1
            masked.append(char if digits_seen <= 4 else "*")
        else:
            masked.append(char)
    return "".join(reversed(masked))
