"""
Tests for Value Validators
==========================

Version: 0.1.0
"""

from decimal import Decimal

import pytest

from services.regulatory_truth.models import ValueType
from services.regulatory_truth.validators import (
    to_decimal,
    validate_extraction,
    validate_value,
    values_agree,
)


class TestToDecimal:
    """Tests for to_decimal."""

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("25", Decimal("25")),
            ("25%", Decimal("25")),
            ("40.000,00", Decimal("40000.00")),
            ("40,000.50", Decimal("40000.50")),
            ("12,5", Decimal("12.5")),
            ("1 000", Decimal("1000")),
        ],
    )
    def test_parses_local_formats(self, raw: str, expected: Decimal) -> None:
        assert to_decimal(raw) == expected

    @pytest.mark.parametrize("raw", ["abc", "", "NaN", "Infinity"])
    def test_non_numbers(self, raw: str) -> None:
        assert to_decimal(raw) is None


class TestValuesAgree:
    """Tests for values_agree."""

    def test_numeric_equality(self) -> None:
        assert values_agree("25", "25,00")
        assert values_agree("40000", "40.000,00 EUR")
        assert not values_agree("25", "13")

    def test_text_equality_ignores_case(self) -> None:
        assert values_agree("PDV-O", "pdv-o")
        assert not values_agree("PDV-O", "PDV-S")


class TestValidateValue:
    """Tests for validate_value."""

    def test_pdv_percentage_ceiling(self) -> None:
        assert validate_value("pdv", ValueType.PERCENTAGE, "25").valid
        result = validate_value("pdv", ValueType.PERCENTAGE, "35")
        assert not result.valid
        assert "above maximum" in result.errors[0]

    def test_default_percentage_ceiling(self) -> None:
        assert validate_value("rokovi", ValueType.PERCENTAGE, "80").valid
        assert not validate_value("rokovi", ValueType.PERCENTAGE, "120").valid

    def test_negative_amount(self) -> None:
        assert not validate_value("pausalni", ValueType.CURRENCY, "-5").valid

    def test_non_numeric_percentage(self) -> None:
        result = validate_value("pdv", ValueType.PERCENTAGE, "dvadeset pet")

        assert not result.valid
        assert "must be numeric" in result.errors[0]

    def test_fractional_count(self) -> None:
        assert not validate_value("obrasci", ValueType.COUNT, "2.5").valid

    def test_interest_rate_ceiling(self) -> None:
        assert validate_value("interest_rates", ValueType.INTEREST_RATE, "4.5").valid
        assert not validate_value("interest_rates", ValueType.INTEREST_RATE, "25").valid

    def test_exchange_rate_must_be_positive(self) -> None:
        assert validate_value("exchange_rates", ValueType.EXCHANGE_RATE, "7.5345").valid
        assert not validate_value("exchange_rates", ValueType.EXCHANGE_RATE, "0").valid

    def test_dates(self) -> None:
        assert validate_value("rokovi", ValueType.DATE, "2025-01-31").valid
        assert not validate_value("rokovi", ValueType.DATE, "2025-02-30").valid
        assert not validate_value("rokovi", ValueType.DATE, "1970-01-01").valid
        assert not validate_value("rokovi", ValueType.DATE, "31.01.2025").valid

    def test_free_form_deadline_accepted(self) -> None:
        assert validate_value("rokovi", ValueType.DEADLINE, "do 20. u mjesecu").valid

    def test_text_not_range_checked(self) -> None:
        assert validate_value("obrasci", ValueType.TEXT, "anything").valid


class TestValidateExtraction:
    """Tests for validate_extraction."""

    def test_valid_candidate(self) -> None:
        result = validate_extraction("pdv", ValueType.PERCENTAGE, "25", "stopa PDV-a iznosi 25%", 0.95)

        assert result.valid
        assert result.warnings == []

    def test_unknown_domain(self) -> None:
        result = validate_extraction("carina", ValueType.PERCENTAGE, "10", "carina iznosi 10%", 0.9)

        assert not result.valid
        assert "Unknown domain: carina" in result.errors

    def test_short_quote(self) -> None:
        assert not validate_extraction("pdv", ValueType.PERCENTAGE, "25", "25%", 0.9).valid

    def test_confidence_bounds(self) -> None:
        assert not validate_extraction("pdv", ValueType.PERCENTAGE, "25", "iznosi 25%", 1.5).valid

    def test_low_confidence_warns(self) -> None:
        result = validate_extraction("pdv", ValueType.PERCENTAGE, "25", "iznosi 25%", 0.5)

        assert result.valid
        assert result.warnings

    def test_collects_value_errors(self) -> None:
        result = validate_extraction("pdv", ValueType.PERCENTAGE, "99", "iznosi 99%", 0.9)

        assert not result.valid
        assert len(result.errors) == 1
