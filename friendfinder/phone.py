import logging

import phonenumbers

from friendfinder.models import NormalizedContact, PhoneNormalizationResult, RawContact

log = logging.getLogger(__name__)

DEFAULT_REGION = "US"
UNKNOWN_CONTACT_NAME = "Unknown Contact"


def _parse_valid(number: str, region: str = None):
    try:
        parsed = phonenumbers.parse(number, region)
    except phonenumbers.NumberParseException as e:
        log.debug(f"Could not parse phone number '{number}' (region {region}): {e}")
        return None
    if not phonenumbers.is_valid_number(parsed):
        return None
    return parsed


def normalize_phone_number(phone: str, default_region: str = DEFAULT_REGION) -> PhoneNormalizationResult:
    """
    Normalize a phone number to E.164.

    The number is tried against ``default_region`` first, then as an
    international number carrying its own country code.
    """
    if not phone or phone.strip() == "":
        return PhoneNormalizationResult(original=phone, error="Empty phone number")

    clean = phone.strip()
    try:
        parsed = _parse_valid(clean, default_region) or _parse_valid(clean)
        if parsed is None:
            return PhoneNormalizationResult(original=phone, error="Invalid phone number format")
        return PhoneNormalizationResult(
            original=phone,
            normalized=phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164),
            is_valid=True,
            country=phonenumbers.region_code_for_number(parsed),
        )
    except Exception as e:
        log.warning(f"Unexpected error normalizing phone number '{phone}': {e}")
        return PhoneNormalizationResult(original=phone, error=str(e) or "Phone number parsing error")


def normalize_contact(contact: RawContact, default_region: str = DEFAULT_REGION) -> NormalizedContact:
    original = []
    normalized = []

    for number in contact.phone_numbers:
        if not number:
            continue
        original.append(number)
        result = normalize_phone_number(number, default_region)
        # first occurrence wins
        if result.is_valid and result.normalized not in normalized:
            normalized.append(result.normalized)

    return NormalizedContact(
        id=contact.id or "",
        name=contact.name or UNKNOWN_CONTACT_NAME,
        original_phone_numbers=original,
        normalized_phone_numbers=normalized,
        has_valid_phone_numbers=len(normalized) > 0,
    )
