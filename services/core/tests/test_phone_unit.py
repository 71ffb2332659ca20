"""Unit tests for phone number normalisation."""

import pytest

from smsbridge_core.domain.services.phone import (
    PhoneFormatError,
    country_to_iso,
    format_phone_number,
)


class TestFormatPhoneNumber:
    """Tests for format_phone_number."""

    @pytest.mark.parametrize(
        "raw",
        [
            "0412 345 678",
            "0412-345-678",
            "(04) 1234 5678",
            "+61 412 345 678",
            "0061412345678",
            "61412345678",
        ],
    )
    def test_australian_variants_normalise(self, raw):
        """Test that common Australian spellings all map to one E.164 number."""
        assert format_phone_number(raw, "Australia") == "+61412345678"

    def test_default_country_is_australia(self):
        """Test that local numbers default to the Australian calling code."""
        assert format_phone_number("0412345678") == "+61412345678"

    def test_iso_code_accepted_as_country(self):
        """Test that an ISO code works in place of a country name."""
        assert format_phone_number("021 123 4567", "NZ") == "+64211234567"

    def test_north_american_numbers_keep_leading_digit(self):
        """Test that US numbers are not stripped of a trunk prefix."""
        assert format_phone_number("(212) 555-1234", "United States") == "+12125551234"

    def test_country_name_case_insensitive(self):
        """Test that country names are matched case-insensitively."""
        assert format_phone_number("07700 900123", "united KINGDOM") == "+447700900123"

    def test_international_number_ignores_country(self):
        """Test that a number with a plus ignores the supplied country."""
        assert format_phone_number("+44 7700 900123", "Australia") == "+447700900123"

    @pytest.mark.parametrize("raw", [None, "", "   "])
    def test_empty_number_rejected(self, raw):
        """Test that missing numbers raise PhoneFormatError."""
        with pytest.raises(PhoneFormatError):
            format_phone_number(raw)

    def test_too_short_rejected(self):
        """Test that numbers under eight digits are rejected."""
        with pytest.raises(PhoneFormatError):
            format_phone_number("+61123")

    def test_too_long_rejected(self):
        """Test that numbers over fifteen digits are rejected."""
        with pytest.raises(PhoneFormatError):
            format_phone_number("+6141234567812345")

    def test_unsupported_country_rejected(self):
        """Test that a local number for an unknown country is rejected."""
        with pytest.raises(PhoneFormatError, match="Unsupported country"):
            format_phone_number("0412345678", "Atlantis")

    def test_error_is_value_error(self):
        """Test that PhoneFormatError can be caught as ValueError."""
        assert issubclass(PhoneFormatError, ValueError)


class TestCountryToIso:
    """Tests for country_to_iso."""

    def test_known_names(self):
        assert country_to_iso("Australia") == "AU"
        assert country_to_iso(" new zealand ") == "NZ"

    def test_iso_passthrough(self):
        assert country_to_iso("gb") == "GB"

    def test_unknown(self):
        assert country_to_iso("Atlantis") is None
        assert country_to_iso(None) is None
