"""
Pipeline Errors
===============

Typed exception hierarchy for the regulatory truth pipeline.

Every error carries a machine-readable ``code`` and the structured data
needed to act on it, so callers catch by type and never parse messages:

    RegulatoryTruthError
    +-- NotFound
    +-- EvidenceError
    |   +-- DuplicateEvidence
    |   +-- EvidenceIntegrityError
    |   +-- ImmutableEvidenceError
    +-- FetchError
    +-- InvalidPredicate
    +-- ProvenanceError
    |   +-- MissingProvenance
    |   +-- InferenceViolation
    +-- LifecycleError
    |   +-- InvalidTransition
    |   +-- ApprovalRequired
    +-- ConflictError
    |   +-- ConflictNotOpen
    +-- ReleaseError
    |   +-- EmptyRelease
    |   +-- ReleaseIntegrityError
    +-- ClaimError
    +-- StageTimeout

Version: 0.1.0
"""

from typing import Any


class RegulatoryTruthError(Exception):
    """Base class for all pipeline errors."""

    code: str = "REGULATORY_TRUTH_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        """Structured payload for API responses and logs."""
        return {"code": self.code, "message": self.message}


class NotFound(RegulatoryTruthError):
    """Referenced record does not exist."""

    code = "NOT_FOUND"

    def __init__(self, kind: str, record_id: str) -> None:
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} not found: {record_id}")


# =============================================================================
# Evidence
# =============================================================================


class EvidenceError(RegulatoryTruthError):
    """Base class for evidence store errors."""

    code = "EVIDENCE_ERROR"


class DuplicateEvidence(EvidenceError):
    """The (url, content_hash) pair is already stored.

    Carries the existing record so callers can link to it instead.
    """

    code = "DUPLICATE_EVIDENCE"

    def __init__(self, existing: Any) -> None:
        self.existing = existing
        super().__init__(
            f"Evidence already stored for {existing.url} ({existing.content_hash[:12]})"
        )


class EvidenceIntegrityError(EvidenceError):
    """Stored content no longer hashes to the stored content hash."""

    code = "EVIDENCE_INTEGRITY_VIOLATION"

    def __init__(self, evidence_id: str, expected_hash: str, actual_hash: str) -> None:
        self.evidence_id = evidence_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Evidence {evidence_id} hash mismatch: stored {expected_hash}, computed {actual_hash}"
        )


class ImmutableEvidenceError(EvidenceError):
    """Attempt to change content fields of stored evidence."""

    code = "EVIDENCE_IMMUTABLE"

    def __init__(self, evidence_id: str, fields: list[str]) -> None:
        self.evidence_id = evidence_id
        self.fields = fields
        super().__init__(f"Evidence {evidence_id} content is immutable: {', '.join(fields)}")


# =============================================================================
# Discovery
# =============================================================================


class FetchError(RegulatoryTruthError):
    """A listing or document could not be retrieved."""

    code = "FETCH_ERROR"

    def __init__(self, url: str, reason: str, status_code: int | None = None) -> None:
        self.url = url
        self.reason = reason
        self.status_code = status_code
        super().__init__(f"Fetch failed for {url}: {reason}")


# =============================================================================
# Predicates
# =============================================================================


class InvalidPredicate(RegulatoryTruthError):
    """AppliesWhen tree has an unknown operator or malformed shape."""

    code = "INVALID_PREDICATE"

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None) -> None:
        self.errors = errors or []
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "errors": self.errors}


# =============================================================================
# Provenance
# =============================================================================


class ProvenanceError(RegulatoryTruthError):
    """Base class for provenance violations."""

    code = "PROVENANCE_ERROR"


class MissingProvenance(ProvenanceError):
    """A rule would be created without any backing source pointer."""

    code = "MISSING_PROVENANCE"

    def __init__(self, concept_slug: str | None = None) -> None:
        self.concept_slug = concept_slug
        target = f" for concept {concept_slug}" if concept_slug else ""
        super().__init__(f"Rule{target} has no source pointers")


class InferenceViolation(ProvenanceError):
    """An extracted value does not appear in its supporting quote."""

    code = "INFERENCE_VIOLATION"

    def __init__(self, pointer_ids: list[str], value: str) -> None:
        self.pointer_ids = pointer_ids
        self.value = value
        super().__init__(
            f"Value {value!r} is not grounded in quotes of pointers {', '.join(pointer_ids)}"
        )


# =============================================================================
# Lifecycle
# =============================================================================


class LifecycleError(RegulatoryTruthError):
    """Base class for rule status errors."""

    code = "LIFECYCLE_ERROR"


class InvalidTransition(LifecycleError):
    """Requested status change is not an edge of the lifecycle."""

    code = "INVALID_TRANSITION"

    def __init__(self, rule_id: str, from_status: str, to_status: str) -> None:
        self.rule_id = rule_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Rule {rule_id}: {from_status} -> {to_status} is not allowed")


class ApprovalRequired(LifecycleError):
    """T0/T1 rule moved to APPROVED/PUBLISHED without a human approver."""

    code = "APPROVAL_REQUIRED"

    def __init__(self, rule_id: str, risk_tier: str, reason: str = "") -> None:
        self.rule_id = rule_id
        self.risk_tier = risk_tier
        self.reason = reason
        detail = f": {reason}" if reason else ""
        super().__init__(f"Rule {rule_id} ({risk_tier}) requires human approval{detail}")


# =============================================================================
# Conflicts
# =============================================================================


class ConflictError(RegulatoryTruthError):
    """Base class for conflict handling errors."""

    code = "CONFLICT_ERROR"


class ConflictNotOpen(ConflictError):
    """Conflict is already resolved."""

    code = "CONFLICT_NOT_OPEN"

    def __init__(self, conflict_id: str, status: str) -> None:
        self.conflict_id = conflict_id
        self.status = status
        super().__init__(f"Conflict {conflict_id} is {status}")


# =============================================================================
# Releases
# =============================================================================


class ReleaseError(RegulatoryTruthError):
    """Base class for release errors."""

    code = "RELEASE_ERROR"


class EmptyRelease(ReleaseError):
    """Nothing eligible to publish."""

    code = "EMPTY_RELEASE"

    def __init__(self) -> None:
        super().__init__("No approved rules are eligible for release")


class ReleaseIntegrityError(ReleaseError):
    """Recomputed release hash differs from the stored one."""

    code = "RELEASE_INTEGRITY_VIOLATION"

    def __init__(self, release_id: str, expected_hash: str, actual_hash: str) -> None:
        self.release_id = release_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Release {release_id} hash mismatch: stored {expected_hash}, computed {actual_hash}"
        )


# =============================================================================
# Workers
# =============================================================================


class ClaimError(RegulatoryTruthError):
    """Unit of work could not be claimed or is held by another worker."""

    code = "CLAIM_ERROR"

    def __init__(self, kind: str, record_id: str, owner: str | None = None) -> None:
        self.kind = kind
        self.record_id = record_id
        self.owner = owner
        held = f" (held by {owner})" if owner else ""
        super().__init__(f"Cannot claim {kind} {record_id}{held}")


class StageTimeout(RegulatoryTruthError):
    """A stage exceeded its run-level timeout and aborted."""

    code = "STAGE_TIMEOUT"

    def __init__(self, stage: str, subject_id: str, timeout_seconds: float) -> None:
        self.stage = stage
        self.subject_id = subject_id
        self.timeout_seconds = timeout_seconds
        super().__init__(f"{stage} run for {subject_id} exceeded {timeout_seconds}s")
