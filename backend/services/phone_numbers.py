# services/phone_numbers.py
# ============================================================================
# E.164 phone normalisation for SMS recipients
# ============================================================================

import re
from typing import Optional

E164_PATTERN = re.compile(r"^\+[1-9]\d{1,14}$")
_PUNCTUATION = re.compile(r"[\s\-\(\)\.]")


def is_valid_e164(phone: Optional[str]) -> bool:
    return bool(phone) and E164_PATTERN.match(phone) is not None


def normalize_phone(raw: Optional[str], default_country_code: str = "+91") -> Optional[str]:
    """
    Normalise a free-form phone number to E.164, or None if it cannot be.

    A 10-digit number without a prefix gets the default country code; 11 to
    15 unprefixed digits are taken to already include one.
    """
    if not raw:
        return None

    cleaned = _PUNCTUATION.sub("", raw)
    if not cleaned.startswith("+") and cleaned.isdigit():
        if len(cleaned) == 10:
            cleaned = f"{default_country_code}{cleaned}"
        elif 11 <= len(cleaned) <= 15:
            cleaned = f"+{cleaned}"

    return cleaned if is_valid_e164(cleaned) else None
