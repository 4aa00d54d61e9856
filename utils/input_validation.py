"""
Input validation for phone numbers typed in chat or sent by WhatsApp.
Numbers are parsed with the phonenumbers library, Nigeria as the default region.
"""

import logging
from typing import Optional

import phonenumbers
from phonenumbers import NumberParseException, PhoneNumberFormat, PhoneNumberType

from utils.exception_handler import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_REGION = "NG"

MOBILE_TYPES = (PhoneNumberType.MOBILE, PhoneNumberType.FIXED_LINE_OR_MOBILE)


class InputValidator:
    """Phone number checks shared by onboarding and purchases"""

    @classmethod
    def parse_phone(cls, phone: Optional[str], message: str) -> phonenumbers.PhoneNumber:
        """Parse and validate; raises ValidationError(field="phone") with `message`"""
        raw = (phone or "").strip()
        if not raw:
            raise ValidationError(message, field="phone")

        # WhatsApp ids carry the country code without the plus sign
        if raw[0].isdigit() and not raw.startswith("0"):
            raw = f"+{raw}"

        try:
            parsed = phonenumbers.parse(raw, DEFAULT_REGION)
        except NumberParseException as e:
            logger.debug(f"📵 PHONE_UNPARSEABLE: {e}")
            raise ValidationError(message, field="phone")

        if not phonenumbers.is_possible_number(parsed) or not phonenumbers.is_valid_number(parsed):
            raise ValidationError(message, field="phone")
        return parsed

    @classmethod
    def validate_phone(cls, phone: Optional[str]) -> str:
        """Any valid number in E.164: 08012345678 / 2348012345678 -> +2348012345678"""
        parsed = cls.parse_phone(phone, "Enter a valid phone number, e.g. 08012345678 or +2348012345678.")
        return phonenumbers.format_number(parsed, PhoneNumberFormat.E164)

    @classmethod
    def validate_nigerian_mobile(cls, phone: Optional[str]) -> str:
        """Nigerian mobile number in local 11-digit form: +2348031234567 -> 08031234567"""
        message = "Enter a valid 11-digit Nigerian phone number, e.g. 08012345678."
        parsed = cls.parse_phone(phone, message)
        if (
            phonenumbers.region_code_for_number(parsed) != DEFAULT_REGION
            or phonenumbers.number_type(parsed) not in MOBILE_TYPES
        ):
            raise ValidationError(message, field="phone")
        return f"0{parsed.national_number}"
