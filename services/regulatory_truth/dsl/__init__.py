"""
AppliesWhen predicate language.

Usage:
    from services.regulatory_truth.dsl import evaluate, parse_predicate

    predicate = parse_predicate({"op": "cmp", "field": "entity.vat_status", "cmp": "==", "value": "IN_VAT"})
    evaluate(predicate, {"entity": {"vat_status": "IN_VAT"}})
"""

from services.regulatory_truth.dsl.applies_when import (
    OPERATORS,
    Predicate,
    all_of,
    always,
    any_of,
    evaluate,
    field_between,
    field_compare,
    field_equals,
    field_exists,
    field_in,
    in_effect,
    is_valid,
    may_overlap,
    negate,
    never,
    parse_predicate,
    to_dict,
)


__all__ = [
    "OPERATORS",
    "Predicate",
    "parse_predicate",
    "evaluate",
    "may_overlap",
    "to_dict",
    "is_valid",
    "always",
    "never",
    "all_of",
    "any_of",
    "negate",
    "field_equals",
    "field_compare",
    "field_in",
    "field_exists",
    "field_between",
    "in_effect",
]
