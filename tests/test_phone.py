"""
Tests for phone number normalization.
"""

import pytest

from seatline.errors import InvalidPhoneNumber
from seatline.phone import mask_phone, normalize_phone


class TestNormalizePhone:
    """Canonical E.164 output for the input shapes the provider and users send."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("whatsapp:+447700900123", "+447700900123"),
            ("WhatsApp:+44 7700 900123", "+447700900123"),
            ("+44 (0) 7700 900123", "+447700900123"),
            ("07700 900123", "+447700900123"),
            ("(646) 801-4054", "+16468014054"),
            ("16468014054", "+16468014054"),
            ("0044 7700 900123", "+447700900123"),
            ("tel:+1-646-801-4054", "+16468014054"),
            ("919876543210", "+919876543210"),
        ],
    )
    def test_normalizes(self, raw, expected):
        assert normalize_phone(raw).e164 == expected

    def test_keeps_original_input(self):
        result = normalize_phone("  whatsapp:+447700900123 ")
        assert result.original_input == "whatsapp:+447700900123"
        assert result.whatsapp_address == "whatsapp:+447700900123"

    def test_idempotent(self):
        for raw in ("07700 900123", "(646) 801-4054", "whatsapp:+919876543210", "0044 7700 900123"):
            first = normalize_phone(raw).e164
            assert normalize_phone(first).e164 == first

    def test_equivalent_inputs_match(self):
        forms = ["whatsapp:+447700900123", "+44 7700 900123", "07700900123", "+44 (0)7700 900123"]
        assert len({normalize_phone(f).e164 for f in forms}) == 1

    def test_custom_country_codes(self):
        assert normalize_phone("6468014054", default_country_code="44").e164 == "+446468014054"
        assert normalize_phone("06468014054", national_country_code="33").e164 == "+336468014054"

    @pytest.mark.parametrize("raw", ["", "   ", "12345", "+1234", "1234567890123456", "whatsapp:"])
    def test_rejects_invalid(self, raw):
        with pytest.raises(InvalidPhoneNumber):
            normalize_phone(raw)

    def test_error_carries_input(self):
        with pytest.raises(InvalidPhoneNumber) as exc_info:
            normalize_phone("12345")
        assert exc_info.value.original_input == "12345"
        assert "10-15" in exc_info.value.reason


class TestMaskPhone:
    def test_masks_all_but_last_four(self):
        assert mask_phone("+447700900123") == "+********0123"

    def test_empty(self):
        assert mask_phone("") == ""
