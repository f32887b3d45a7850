"""
Phone number normalization - E.164 format using the phonenumbers library.

Contacts are searched by phone in both CRMs, so "8 (999) 000-00-00" and
"+7 999 000 00 00" must collapse to one key. Numbers without a country
code are parsed in the configured default region (RU).
"""
import logging
from typing import Any, Optional

import phonenumbers

logger = logging.getLogger(__name__)

DEFAULT_REGION = "RU"


def normalize_phone_e164(phone: Any, default_region: str = DEFAULT_REGION) -> Optional[str]:
    """
    Normalize a phone number to E.164 format.

    Handles:
    - 8 (999) 000-00-00 -> +79990000000
    - +7 999 000-00-00  -> +79990000000
    - +1 (512) 555-1234 -> +15125551234

    Returns None if the number cannot be parsed or is not even possible.
    """
    if phone is None:
        return None
    cleaned = str(phone).strip()
    if not cleaned:
        return None
    try:
        parsed = phonenumbers.parse(cleaned, default_region)
    except phonenumbers.NumberParseException:
        return None
    if not phonenumbers.is_valid_number(parsed) and not phonenumbers.is_possible_number(parsed):
        return None
    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)


def normalize_phone(phone: Any, default_region: str = DEFAULT_REGION) -> Any:
    """E.164 when parseable, otherwise the original value so nothing is lost."""
    normalized = normalize_phone_e164(phone, default_region)
    if normalized is None:
        logger.debug("Phone %r left as is: not a parseable number", phone)
        return phone
    return normalized
