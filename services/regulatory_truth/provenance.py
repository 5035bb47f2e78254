"""
Quote Provenance
================

Locating extracted quotes in evidence and checking that values are
stated in their quotes rather than inferred.

``normalize_for_match`` is the only text normalization used for quote
matching anywhere in the pipeline. It applies, in order:

1. Unicode NFKC (per base character plus its combining marks)
2. NBSP to space
3. soft hyphen removal
4. typographic double quotes to ``"``
5. typographic apostrophes to ``'``
6. whitespace runs collapsed to one space
7. leading and trailing whitespace trimmed

There is no fuzzy matching: a quote is found exactly, found after
normalization, or not found.

Version: 0.1.0
"""

import json
import re
import unicodedata
from dataclasses import dataclass, field
from datetime import date

from services.regulatory_truth.models import (
    Evidence,
    MatchType,
    RiskTier,
    SourcePointer,
    ValueType,
)


QUOTE_CHARS = "“”„‟«»‹›❝❞❮❯＂"
APOSTROPHE_CHARS = "‘’‚‛′＇"

_TRANSLATION = str.maketrans(
    {
        **{ch: '"' for ch in QUOTE_CHARS},
        **{ch: "'" for ch in APOSTROPHE_CHARS},
        "\u00a0": " ",
        "\u00ad": None,
    }
)

# Values of these types are not literal tokens of the source text
UNQUOTABLE_VALUE_TYPES = frozenset({ValueType.TEXT, ValueType.BOOLEAN})

CROATIAN_MONTHS = (
    "siječnja",
    "veljače",
    "ožujka",
    "travnja",
    "svibnja",
    "lipnja",
    "srpnja",
    "kolovoza",
    "rujna",
    "listopada",
    "studenoga",
    "prosinca",
)


def _segments(text: str) -> list[tuple[int, int]]:
    """Split into (start, end) spans of a base character plus combining marks."""
    spans: list[tuple[int, int]] = []
    for i, ch in enumerate(text):
        if spans and unicodedata.combining(ch):
            spans[-1] = (spans[-1][0], i + 1)
        else:
            spans.append((i, i + 1))
    return spans


def _normalize_with_map(text: str) -> tuple[str, list[tuple[int, int]]]:
    """Normalize ``text`` and map each output char to its source span."""
    out: list[str] = []
    origin: list[tuple[int, int]] = []
    for start, end in _segments(text):
        piece = unicodedata.normalize("NFKC", text[start:end]).translate(_TRANSLATION)
        for ch in piece:
            if ch.isspace():
                if not out or out[-1] == " ":
                    continue
                ch = " "
            out.append(ch)
            origin.append((start, end))
    if out and out[-1] == " ":
        out.pop()
        origin.pop()
    return "".join(out), origin


def normalize_for_match(text: str) -> str:
    """Apply the documented quote normalization."""
    if not text:
        return ""
    return _normalize_with_map(text)[0]


@dataclass(frozen=True)
class QuoteMatch:
    """Where a quote was found in evidence content."""

    found: bool
    match_type: MatchType | None = None
    start: int | None = None
    end: int | None = None


NOT_FOUND = QuoteMatch(found=False)


def find_quote(content: str, quote: str) -> QuoteMatch:
    """
    Locate ``quote`` in ``content``: exact first, then normalized.

    Offsets always refer to the original, unnormalized content.
    """
    if not content or not quote or not quote.strip():
        return NOT_FOUND

    index = content.find(quote)
    if index != -1:
        return QuoteMatch(True, MatchType.EXACT, index, index + len(quote))

    normalized_quote = normalize_for_match(quote)
    normalized_content, origin = _normalize_with_map(content)
    index = normalized_content.find(normalized_quote)
    if index == -1 or not normalized_quote:
        return NOT_FOUND

    start = origin[index][0]
    end = origin[index + len(normalized_quote) - 1][1]
    return QuoteMatch(True, MatchType.NORMALIZED, start, end)


def match_allowed_for_tier(match: QuoteMatch, tier: RiskTier) -> bool:
    """T0/T1 rules need verbatim quotes; T2/T3 accept normalized matches."""
    if not match.found:
        return False
    if tier.requires_human_approval:
        return match.match_type == MatchType.EXACT
    return True


# =============================================================================
# No-inference
# =============================================================================

_NUMBER = re.compile(r"^([-\u2212])?(\d+)(?:[.,](\d+))?$")

# A hyphen after whitespace, an opening bracket or at the start is a minus sign
_UNSIGNED = r"(?<![\d\u2212])(?<![\s(]-)(?<!^-)"
_SIGNED = r"(?<![\w\u2212-])[-\u2212]\s?"
_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_JSON_PAIR = re.compile(r'^"[^"]+"\s*:\s*(.+?),?$')


def _number_pattern(value: str) -> re.Pattern[str] | None:
    match = _NUMBER.match(value)
    if match is None:
        return None
    sign, integer, fraction = match.group(1), match.group(2), (match.group(3) or "").rstrip("0")

    if len(integer) >= 4:
        # 40000 also matches 40.000 / 40,000 / 40 000
        integer_re = r"[.,\s]?".join(integer)
    else:
        integer_re = integer

    if fraction:
        fraction_re = rf"[.,]{fraction}0{{0,2}}"
    else:
        fraction_re = r"(?:[.,]0{1,2})?"

    prefix = _SIGNED if sign else _UNSIGNED
    return re.compile(rf"{prefix}{integer_re}{fraction_re}(?![.,]?\d)")


def _date_patterns(iso: str) -> list[str]:
    parsed = date.fromisoformat(iso)
    d, m, y = parsed.day, parsed.month, parsed.year
    return [
        iso,
        f"{d}. {CROATIAN_MONTHS[m - 1]} {y}",
        f"{d}.{m:02d}.{y}",
        f"{d}.{m}.{y}",
        f"{d:02d}.{m:02d}.{y}",
        f"{d}. {m}. {y}",
        f"{d}/{m:02d}/{y}",
    ]


_UNIT_SUFFIX = re.compile(r"(?<=\d)\s*(?:%|EUR|€|kn|HRK)$", re.IGNORECASE)


def canonical_value(value: str) -> str:
    """Strip a unit a model may echo back after a number (``25%`` -> ``25``)."""
    return _UNIT_SUFFIX.sub("", value.strip())


def value_in_quote(value: str, quote: str, value_type: ValueType | None = None) -> bool:
    """
    True when ``value`` is literally stated in ``quote``.

    Number formats are matched loosely (``25`` matches ``25%`` and
    ``25,00``; ``40000`` matches ``40.000,00``) and ISO dates match the
    common Croatian written forms. Text and boolean values are not
    literal tokens and always pass.
    """
    if value_type in UNQUOTABLE_VALUE_TYPES:
        return True

    target = canonical_value(str(value))
    if not target:
        return False
    normalized_quote = normalize_for_match(quote)

    pair = _JSON_PAIR.match(normalized_quote)
    if pair is not None:
        raw = pair.group(1).strip()
        try:
            parsed = str(json.loads(raw))
        except json.JSONDecodeError:
            parsed = raw
        strip = re.compile(r"[.,\s]")
        if parsed == target or strip.sub("", parsed) == strip.sub("", target):
            return True

    if _ISO_DATE.match(target):
        try:
            patterns = _date_patterns(target)
        except ValueError:
            return False
        lowered = normalized_quote.lower()
        return any(pattern.lower() in lowered for pattern in patterns)

    number = _number_pattern(target)
    if number is not None:
        return number.search(normalized_quote) is not None

    return normalize_for_match(target).lower() in normalized_quote.lower()


# =============================================================================
# Pointer checks
# =============================================================================


@dataclass
class PointerCheck:
    """Result of checking one source pointer against its evidence."""

    pointer_id: str
    grounded: bool
    match: QuoteMatch = NOT_FOUND
    reasons: list[str] = field(default_factory=list)


def check_pointer(
    pointer: SourcePointer,
    evidence: Evidence,
    tier: RiskTier | None = None,
    value: str | None = None,
) -> PointerCheck:
    """
    Check quote presence, tier match policy and no-inference for a pointer.

    Args:
        pointer: pointer to check
        evidence: the pointer's evidence record
        tier: when given, T0/T1 require an exact quote match
        value: value to look for (defaults to the pointer's extracted value)
    """
    reasons: list[str] = []
    match = find_quote(evidence.raw_content, pointer.exact_quote)
    if not match.found:
        reasons.append("quote_not_in_evidence")
    elif tier is not None and not match_allowed_for_tier(match, tier):
        reasons.append(f"{tier.value}_requires_exact_quote")

    expected = value if value is not None else pointer.extracted_value
    if not value_in_quote(expected, pointer.exact_quote, pointer.value_type):
        reasons.append("value_not_in_quote")

    return PointerCheck(pointer_id=pointer.id, grounded=not reasons, match=match, reasons=reasons)
