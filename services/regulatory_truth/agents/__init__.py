"""
Pipeline stage agents.
"""

from services.regulatory_truth.agents.arbiter import Arbiter
from services.regulatory_truth.agents.composer import (
    Composer,
    CompositionReport,
    RuleDraft,
    RuleDrafter,
    cluster_pointers,
    risk_tier_for,
)
from services.regulatory_truth.agents.extractor import ExtractionCandidate, ExtractionResult, Extractor
from services.regulatory_truth.agents.releaser import (
    ReleasePlan,
    Releaser,
    ReleaseSuggestion,
    ReleaseSummarizer,
    bump_version,
    release_type_for,
)
from services.regulatory_truth.agents.reviewer import ReviewOutcome, Reviewer


__all__ = [
    "Extractor",
    "ExtractionCandidate",
    "ExtractionResult",
    "Composer",
    "CompositionReport",
    "RuleDraft",
    "RuleDrafter",
    "cluster_pointers",
    "risk_tier_for",
    "Reviewer",
    "ReviewOutcome",
    "Arbiter",
    "Releaser",
    "ReleasePlan",
    "ReleaseSuggestion",
    "ReleaseSummarizer",
    "release_type_for",
    "bump_version",
]
