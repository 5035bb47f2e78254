"""
Value Validators
================

Deterministic range and format checks for extracted values, applied by
the Extractor before a candidate becomes a source pointer.

Version: 0.1.0
"""

import re
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation

from services.regulatory_truth.models import ValueType
from services.regulatory_truth.provenance import canonical_value, normalize_for_match


KNOWN_DOMAINS = frozenset(
    {
        "pausalni",
        "pdv",
        "porez_dohodak",
        "doprinosi",
        "fiskalizacija",
        "rokovi",
        "obrasci",
        "interest_rates",
        "exchange_rates",
    }
)


@dataclass(frozen=True)
class DomainRanges:
    percentage_max: Decimal = Decimal(100)
    currency_max: Decimal = Decimal(100_000_000_000)
    interest_rate_max: Decimal = Decimal(20)
    exchange_rate_min: Decimal = Decimal("0.0001")
    exchange_rate_max: Decimal = Decimal(10_000)


DOMAIN_RANGES: dict[str, DomainRanges] = {
    "pdv": DomainRanges(percentage_max=Decimal(30)),
    "doprinosi": DomainRanges(percentage_max=Decimal(50)),
    "porez_dohodak": DomainRanges(percentage_max=Decimal(60)),
    "pausalni": DomainRanges(currency_max=Decimal(1_000_000)),
    "interest_rates": DomainRanges(percentage_max=Decimal(20)),
}

MIN_QUOTE_LENGTH = 5
LOW_CONFIDENCE = 0.7

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


@dataclass
class ValidationResult:
    valid: bool = True
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def fail(self, message: str) -> None:
        self.valid = False
        self.errors.append(message)


def to_decimal(value: str) -> Decimal | None:
    """Parse a canonical or locally formatted number (``40.000,00``)."""
    cleaned = canonical_value(value).replace(" ", "").replace("\u00a0", "")
    if "," in cleaned and "." in cleaned:
        # Whichever separator comes last is the decimal mark
        if cleaned.rfind(",") > cleaned.rfind("."):
            cleaned = cleaned.replace(".", "").replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    elif "," in cleaned:
        cleaned = cleaned.replace(",", ".")
    try:
        number = Decimal(cleaned)
    except InvalidOperation:
        return None
    return number if number.is_finite() else None


def values_agree(left: str, right: str) -> bool:
    """Numeric equality when both parse as numbers, else case-insensitive text equality."""
    a, b = canonical_value(left), canonical_value(right)
    da, db = to_decimal(a), to_decimal(b)
    if da is not None and db is not None:
        return da == db
    return normalize_for_match(a).lower() == normalize_for_match(b).lower()


def _check_range(result: ValidationResult, label: str, number: Decimal, low: Decimal, high: Decimal) -> None:
    if number < low:
        result.fail(f"{label} {number} below minimum {low}")
    elif number > high:
        result.fail(f"{label} {number} above maximum {high}")


def validate_value(domain: str, value_type: ValueType, value: str) -> ValidationResult:
    """Range and format checks for one value given its domain."""
    result = ValidationResult()
    ranges = DOMAIN_RANGES.get(domain, DomainRanges())

    if value_type in (ValueType.DATE, ValueType.DEADLINE) and _ISO_DATE.match(value.strip()):
        try:
            parsed = date.fromisoformat(value.strip())
        except ValueError:
            result.fail(f"Invalid date: {value}")
            return result
        if not 1990 <= parsed.year <= 2050:
            result.fail(f"Date {value} outside 1990-2050")
        return result
    if value_type == ValueType.DATE:
        result.fail("Date must be ISO format YYYY-MM-DD")
        return result

    numeric_types = {
        ValueType.PERCENTAGE,
        ValueType.CURRENCY,
        ValueType.COUNT,
        ValueType.THRESHOLD,
        ValueType.INTEREST_RATE,
        ValueType.EXCHANGE_RATE,
    }
    if value_type not in numeric_types:
        return result

    number = to_decimal(value)
    if number is None:
        result.fail(f"{value_type.value} value must be numeric, got {value!r}")
        return result

    if value_type == ValueType.PERCENTAGE:
        _check_range(result, "Percentage", number, Decimal(0), ranges.percentage_max)
    elif value_type in (ValueType.CURRENCY, ValueType.THRESHOLD):
        _check_range(result, "Amount", number, Decimal(0), ranges.currency_max)
    elif value_type == ValueType.COUNT:
        _check_range(result, "Count", number, Decimal(0), Decimal(1_000_000_000))
        if number != number.to_integral_value():
            result.fail(f"Count {number} is not a whole number")
    elif value_type == ValueType.INTEREST_RATE:
        _check_range(result, "Interest rate", number, Decimal(0), ranges.interest_rate_max)
    elif value_type == ValueType.EXCHANGE_RATE:
        if number <= 0:
            result.fail("Exchange rate must be positive")
        else:
            _check_range(
                result, "Exchange rate", number, ranges.exchange_rate_min, ranges.exchange_rate_max
            )
    return result


def validate_extraction(
    domain: str,
    value_type: ValueType,
    value: str,
    exact_quote: str,
    confidence: float,
) -> ValidationResult:
    """All deterministic checks for one extraction candidate."""
    result = ValidationResult()
    if domain not in KNOWN_DOMAINS:
        result.fail(f"Unknown domain: {domain}")

    value_result = validate_value(domain, value_type, value)
    result.errors.extend(value_result.errors)
    result.valid = result.valid and value_result.valid

    if not exact_quote or len(exact_quote.strip()) < MIN_QUOTE_LENGTH:
        result.fail(f"Exact quote must be at least {MIN_QUOTE_LENGTH} characters")
    if not 0.0 <= confidence <= 1.0:
        result.fail(f"Confidence {confidence} must be between 0 and 1")
    elif confidence < LOW_CONFIDENCE:
        result.warnings.append(f"Low confidence extraction: {confidence}")
    return result
