"""
Evidence Store
==============

Append-only capture of raw fetched content.

The content hash is computed exactly once, over the exact string that
is about to be persisted, by ``hash_content``. Stored content is never
re-serialized, repaired or updated; only non-content metadata can be
attached after the fact.

Version: 0.1.0
"""

import hashlib
from datetime import date
from typing import Any

from services.regulatory_truth.errors import EvidenceIntegrityError, ImmutableEvidenceError
from services.regulatory_truth.models import AuthorityLevel, ContentClass, Evidence
from services.regulatory_truth.store.base import CONTENT_EVIDENCE_FIELDS, PipelineStore
from shared.logging import get_logger


logger = get_logger(__name__)


def hash_content(raw: str | bytes) -> str:
    """SHA-256 hex digest of the UTF-8 bytes of ``raw`` (bytes hashed as-is)."""
    data = raw if isinstance(raw, bytes) else raw.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def classify_content(content_type: str, raw: str = "") -> ContentClass:
    """Derive the content class from a declared content type."""
    ctype = content_type.lower().split(";")[0].strip()
    if ctype in ("text/html", "application/xhtml+xml"):
        return ContentClass.HTML
    if ctype.endswith("/xml") or ctype.endswith("+xml"):
        return ContentClass.XML
    if ctype.endswith("/json") or ctype.endswith("+json"):
        return ContentClass.JSON
    if ctype == "application/pdf":
        return ContentClass.PDF_TEXT
    # Servers often mislabel HTML as text/plain
    if raw.lstrip()[:15].lower().startswith(("<!doctype html", "<html")):
        return ContentClass.HTML
    return ContentClass.TEXT


class EvidenceStore:
    """
    Facade over ``PipelineStore`` enforcing evidence immutability.

    No operation changes ``raw_content`` or ``content_hash``.
    """

    def __init__(self, store: PipelineStore) -> None:
        self._store = store

    async def put(
        self,
        url: str,
        raw_content: str,
        content_type: str,
        *,
        published_at: date | None = None,
        endpoint_id: str | None = None,
        authority_hint: AuthorityLevel | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Evidence:
        """
        Store raw content verbatim with its hash.

        Raises:
            DuplicateEvidence: ``(url, content_hash)`` already stored;
                ``exc.existing`` is the stored record
        """
        evidence = Evidence(
            url=url,
            raw_content=raw_content,
            content_hash=hash_content(raw_content),
            content_type=content_type,
            content_class=classify_content(content_type, raw_content),
            published_at=published_at,
            endpoint_id=endpoint_id,
            authority_hint=authority_hint,
            metadata=metadata or {},
        )
        stored = await self._store.insert_evidence(evidence)
        logger.info(
            "evidence_stored",
            evidence_id=stored.id,
            url=url,
            content_hash=stored.content_hash,
            content_class=stored.content_class.value,
            size=len(raw_content),
        )
        return stored

    async def get(self, evidence_id: str) -> Evidence:
        return await self._store.get_evidence(evidence_id)

    async def verify(self, evidence_id: str) -> Evidence:
        """
        Recompute the hash of stored content.

        Raises:
            EvidenceIntegrityError: content no longer matches its hash; the
                record is left untouched for investigation
        """
        evidence = await self._store.get_evidence(evidence_id)
        actual = hash_content(evidence.raw_content)
        if actual != evidence.content_hash:
            logger.error(
                "evidence_integrity_violation",
                evidence_id=evidence_id,
                url=evidence.url,
                expected_hash=evidence.content_hash,
                actual_hash=actual,
                alert=True,
            )
            raise EvidenceIntegrityError(evidence_id, evidence.content_hash, actual)
        return evidence

    async def attach_metadata(self, evidence_id: str, **meta: Any) -> Evidence:
        """Merge non-content metadata (derived artifact ids and the like)."""
        forbidden = sorted(CONTENT_EVIDENCE_FIELDS.intersection(meta))
        if forbidden:
            raise ImmutableEvidenceError(evidence_id, forbidden)
        evidence = await self._store.get_evidence(evidence_id)
        merged = {**evidence.metadata, **meta}
        return await self._store.update_evidence(evidence_id, metadata=merged)
