"""
Phone number normalization - E.164 format using the phonenumbers library.
Subscribers are mostly Argentine, so national numbers default to region AR.
"""
import logging
import re
from typing import Optional

import phonenumbers

logger = logging.getLogger(__name__)

DEFAULT_REGION = "AR"

_NON_DIAL_CHARS = re.compile(r"[^\d+]")


def normalize_phone(phone: Optional[str], default_region: str = DEFAULT_REGION) -> Optional[str]:
    """
    Normalize a phone number to E.164.

    - "+54 370 987-6543" -> "+543709876543"
    - "3709876543"       -> "+543709876543"

    Numbers phonenumbers rejects are reduced to digits (and a leading +) so
    they still work as a matching key. Returns None for blanks.
    """
    if phone is None:
        return None
    cleaned = str(phone).strip()
    if not cleaned:
        return None

    try:
        parsed = phonenumbers.parse(cleaned, default_region)
        if phonenumbers.is_valid_number(parsed) or phonenumbers.is_possible_number(parsed):
            return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)
    except phonenumbers.NumberParseException:
        pass

    digits = _NON_DIAL_CHARS.sub("", cleaned)
    if not digits.strip("+"):
        return None
    return "+" + digits.lstrip("+") if digits.startswith("+") else digits
