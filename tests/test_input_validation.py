"""
Input Validation Tests
Phone numbers from chat and from WhatsApp sender ids
"""

import pytest

from services.onboarding_service import normalize_phone_number
from utils.exception_handler import ValidationError
from utils.input_validation import InputValidator


class TestPhoneNormalisation:
    """E.164 for every valid number"""

    @pytest.mark.parametrize("raw,expected", [
        ("08012345678", "+2348012345678"),
        ("2348012345678", "+2348012345678"),
        ("+234 801 234 5678", "+2348012345678"),
        ("447400123456", "+447400123456"),
    ])
    def test_valid_numbers(self, raw, expected):
        assert normalize_phone_number(raw) == expected

    @pytest.mark.parametrize("raw", ["", None, "hello", "0801", "+", "080123456789012"])
    def test_invalid_numbers_rejected(self, raw):
        with pytest.raises(ValidationError) as exc_info:
            normalize_phone_number(raw)
        assert exc_info.value.field == "phone"


class TestNigerianMobile:
    """Local 11-digit form for top-ups"""

    def test_local_form(self):
        assert InputValidator.validate_nigerian_mobile("+234 903 111 2222") == "09031112222"

    def test_foreign_number_rejected(self):
        with pytest.raises(ValidationError):
            InputValidator.validate_nigerian_mobile("+447400123456")
