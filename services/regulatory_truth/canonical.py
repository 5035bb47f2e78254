"""
Release Canonicalization
========================

The single implementation of rule-set canonicalization and release
hashing, shared by publishing and verification.

Canonical form:

- only content fields of each rule (status, timestamps, review notes and
  other bookkeeping are excluded, so later deprecation does not change a
  published release's hash)
- rules sorted by concept slug, then id
- nested mapping keys sorted recursively
- dates as ``YYYY-MM-DD``
- source pointer ids sorted
- compact JSON, UTF-8, no ASCII escaping

Version: 0.1.0
"""

import json
from collections.abc import Iterable
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from services.regulatory_truth.evidence import hash_content
from services.regulatory_truth.models import RegulatoryRule


CANONICAL_FIELDS = (
    "id",
    "concept_slug",
    "title",
    "applies_when",
    "value",
    "value_type",
    "authority_level",
    "risk_tier",
    "effective_from",
    "effective_until",
    "source_pointer_ids",
    "approved_by",
)


def canonicalize_value(value: Any) -> Any:
    """Recursively normalize a value into a JSON-stable form."""
    if isinstance(value, dict):
        return {str(k): canonicalize_value(value[k]) for k in sorted(value, key=str)}
    if isinstance(value, list | tuple):
        return [canonicalize_value(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value.normalize())
    return value


def canonicalize_rule(rule: RegulatoryRule) -> dict[str, Any]:
    data = {name: getattr(rule, name) for name in CANONICAL_FIELDS}
    data["source_pointer_ids"] = sorted(rule.source_pointer_ids)
    return canonicalize_value(data)


def canonicalize_rules(rules: Iterable[RegulatoryRule]) -> list[dict[str, Any]]:
    """Canonical list, independent of input order."""
    ordered = sorted(rules, key=lambda r: (r.concept_slug, r.id))
    return [canonicalize_rule(rule) for rule in ordered]


def canonical_json(rules: Iterable[RegulatoryRule]) -> str:
    return json.dumps(
        canonicalize_rules(rules),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )


def compute_release_hash(rules: Iterable[RegulatoryRule]) -> str:
    """SHA-256 over the canonical JSON of ``rules``."""
    return hash_content(canonical_json(rules))
