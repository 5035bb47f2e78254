"""
PostgreSQL Store
================

``PipelineStore`` on PostgreSQL via SQLAlchemy 2.0 async + asyncpg.

Each table keeps the columns needed for filtering, uniqueness and
locking, plus the full record as JSONB. Evidence content is kept in
its own TEXT column and never round-trips through JSON, so the stored
string is byte-for-byte what was hashed.

Version: 0.1.0
"""

from collections.abc import Callable, Iterable
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Any, TypeVar

from pydantic import BaseModel
from sqlalchemy import (
    Boolean,
    DateTime,
    Select,
    String,
    Text,
    UniqueConstraint,
    delete,
    select,
    update,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column

from services.regulatory_truth.errors import (
    ClaimError,
    DuplicateEvidence,
    ImmutableEvidenceError,
    NotFound,
)
from services.regulatory_truth.models import (
    AgentRun,
    Concept,
    ConflictStatus,
    DiscoveredItem,
    DiscoveredItemStatus,
    DiscoveryEndpoint,
    Evidence,
    ExtractionStatus,
    RegulatoryConflict,
    RegulatoryRule,
    RuleRelease,
    RuleStatus,
    RunStatus,
    SourcePointer,
    Stage,
    WorkClaim,
    utcnow,
)
from services.regulatory_truth.store.base import MUTABLE_EVIDENCE_FIELDS, PipelineStore
from shared.database.postgres import Base, postgres_session
from shared.logging import get_logger


logger = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


# =============================================================================
# Tables
# =============================================================================


class EndpointRow(Base):
    __tablename__ = "rt_discovery_endpoints"

    id: Mapped[str] = mapped_column(String(40), primary_key=True)
    url: Mapped[str] = mapped_column(Text, unique=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    data: Mapped[dict] = mapped_column(JSONB)


class DiscoveredItemRow(Base):
    __tablename__ = "rt_discovered_items"
    __table_args__ = (UniqueConstraint("endpoint_id", "url", name="uq_item_endpoint_url"),)

    id: Mapped[str] = mapped_column(String(40), primary_key=True)
    endpoint_id: Mapped[str] = mapped_column(String(40), index=True)
    url: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), index=True)
    data: Mapped[dict] = mapped_column(JSONB)


class EvidenceRow(Base):
    __tablename__ = "rt_evidence"
    __table_args__ = (UniqueConstraint("url", "content_hash", name="uq_evidence_url_hash"),)

    id: Mapped[str] = mapped_column(String(40), primary_key=True)
    url: Mapped[str] = mapped_column(Text)
    content_hash: Mapped[str] = mapped_column(String(64), index=True)
    raw_content: Mapped[str] = mapped_column(Text)
    extraction_status: Mapped[str] = mapped_column(String(20), index=True)
    fetched_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    data: Mapped[dict] = mapped_column(JSONB)


class SourcePointerRow(Base):
    __tablename__ = "rt_source_pointers"

    id: Mapped[str] = mapped_column(String(40), primary_key=True)
    evidence_id: Mapped[str] = mapped_column(String(40), index=True)
    rule_id: Mapped[str | None] = mapped_column(String(40), nullable=True, index=True)
    data: Mapped[dict] = mapped_column(JSONB)


class ConceptRow(Base):
    __tablename__ = "rt_concepts"

    slug: Mapped[str] = mapped_column(String(200), primary_key=True)
    data: Mapped[dict] = mapped_column(JSONB)


class RuleRow(Base):
    __tablename__ = "rt_rules"

    id: Mapped[str] = mapped_column(String(40), primary_key=True)
    concept_slug: Mapped[str] = mapped_column(String(200), index=True)
    status: Mapped[str] = mapped_column(String(20), index=True)
    release_id: Mapped[str | None] = mapped_column(String(40), nullable=True)
    data: Mapped[dict] = mapped_column(JSONB)


class ConflictRow(Base):
    __tablename__ = "rt_conflicts"

    id: Mapped[str] = mapped_column(String(40), primary_key=True)
    status: Mapped[str] = mapped_column(String(20), index=True)
    data: Mapped[dict] = mapped_column(JSONB)


class ReleaseRow(Base):
    __tablename__ = "rt_releases"

    id: Mapped[str] = mapped_column(String(40), primary_key=True)
    version: Mapped[str] = mapped_column(String(40), unique=True)
    published_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    data: Mapped[dict] = mapped_column(JSONB)


class AgentRunRow(Base):
    __tablename__ = "rt_agent_runs"

    id: Mapped[str] = mapped_column(String(40), primary_key=True)
    stage: Mapped[str] = mapped_column(String(20), index=True)
    status: Mapped[str] = mapped_column(String(20), index=True)
    subject_id: Mapped[str] = mapped_column(String(40), index=True)
    data: Mapped[dict] = mapped_column(JSONB)


class WorkClaimRow(Base):
    __tablename__ = "rt_work_claims"

    kind: Mapped[str] = mapped_column(String(20), primary_key=True)
    subject_id: Mapped[str] = mapped_column(String(40), primary_key=True)
    owner: Mapped[str] = mapped_column(String(100))
    claimed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)


# =============================================================================
# Helpers
# =============================================================================


def _dump(record: BaseModel, exclude: set[str] | None = None) -> dict[str, Any]:
    return record.model_dump(mode="json", exclude=exclude)


def _load(model: type[M], data: dict[str, Any]) -> M:
    return model.model_validate(data)


def _evidence_from_row(row: EvidenceRow) -> Evidence:
    return Evidence.model_validate(
        {
            **row.data,
            "id": row.id,
            "url": row.url,
            "content_hash": row.content_hash,
            "raw_content": row.raw_content,
            "extraction_status": row.extraction_status,
        }
    )


def pending_evidence_claim_statement(limit: int) -> Select[tuple[EvidenceRow]]:
    """Lock up to ``limit`` pending evidence rows, skipping rows other workers hold."""
    return (
        select(EvidenceRow)
        .where(EvidenceRow.extraction_status == ExtractionStatus.PENDING.value)
        .order_by(EvidenceRow.fetched_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
    )


def approved_unpublished_statement() -> Select[tuple[RuleRow]]:
    return (
        select(RuleRow)
        .where(RuleRow.status == RuleStatus.APPROVED.value, RuleRow.release_id.is_(None))
        .order_by(RuleRow.concept_slug, RuleRow.id)
    )


class PostgresStore(PipelineStore):
    """PostgreSQL implementation of ``PipelineStore``."""

    def __init__(self, session_factory: SessionFactory = postgres_session) -> None:
        self._session = session_factory

    # =========================================================================
    # Discovery
    # =========================================================================

    async def upsert_endpoint(self, endpoint: DiscoveryEndpoint) -> DiscoveryEndpoint:
        async with self._session() as session:
            row = (
                await session.execute(select(EndpointRow).where(EndpointRow.url == endpoint.url))
            ).scalar_one_or_none()
            if row is None:
                session.add(
                    EndpointRow(
                        id=endpoint.id,
                        url=endpoint.url,
                        is_active=endpoint.is_active,
                        data=_dump(endpoint),
                    )
                )
                return endpoint
            existing = _load(DiscoveryEndpoint, row.data)
            merged = endpoint.model_copy(
                update={
                    "id": existing.id,
                    "is_active": existing.is_active,
                    "consecutive_errors": existing.consecutive_errors,
                    "last_checked_at": existing.last_checked_at,
                    "next_check_at": existing.next_check_at,
                    "last_error": existing.last_error,
                }
            )
            row.data = _dump(merged)
            return merged

    async def get_endpoint(self, endpoint_id: str) -> DiscoveryEndpoint:
        async with self._session() as session:
            row = await session.get(EndpointRow, endpoint_id)
            if row is None:
                raise NotFound("DiscoveryEndpoint", endpoint_id)
            return _load(DiscoveryEndpoint, row.data)

    async def list_endpoints(self, active_only: bool = False) -> list[DiscoveryEndpoint]:
        stmt = select(EndpointRow)
        if active_only:
            stmt = stmt.where(EndpointRow.is_active.is_(True))
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_load(DiscoveryEndpoint, row.data) for row in rows]

    async def save_endpoint(self, endpoint: DiscoveryEndpoint) -> None:
        async with self._session() as session:
            result = await session.execute(
                update(EndpointRow)
                .where(EndpointRow.id == endpoint.id)
                .values(is_active=endpoint.is_active, data=_dump(endpoint))
            )
            if result.rowcount == 0:
                raise NotFound("DiscoveryEndpoint", endpoint.id)

    async def add_item_if_new(self, item: DiscoveredItem) -> bool:
        stmt = (
            pg_insert(DiscoveredItemRow)
            .values(
                id=item.id,
                endpoint_id=item.endpoint_id,
                url=item.url,
                status=item.status.value,
                data=_dump(item),
            )
            .on_conflict_do_nothing(constraint="uq_item_endpoint_url")
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            return result.rowcount == 1

    async def list_items(
        self,
        endpoint_id: str | None = None,
        status: DiscoveredItemStatus | None = None,
    ) -> list[DiscoveredItem]:
        stmt = select(DiscoveredItemRow)
        if endpoint_id is not None:
            stmt = stmt.where(DiscoveredItemRow.endpoint_id == endpoint_id)
        if status is not None:
            stmt = stmt.where(DiscoveredItemRow.status == status.value)
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_load(DiscoveredItem, row.data) for row in rows]

    async def save_item(self, item: DiscoveredItem) -> None:
        async with self._session() as session:
            await session.execute(
                update(DiscoveredItemRow)
                .where(DiscoveredItemRow.id == item.id)
                .values(status=item.status.value, data=_dump(item))
            )

    # =========================================================================
    # Evidence
    # =========================================================================

    async def insert_evidence(self, evidence: Evidence) -> Evidence:
        row = EvidenceRow(
            id=evidence.id,
            url=evidence.url,
            content_hash=evidence.content_hash,
            raw_content=evidence.raw_content,
            extraction_status=evidence.extraction_status.value,
            fetched_at=evidence.fetched_at,
            data=_dump(evidence, exclude={"raw_content"}),
        )
        try:
            async with self._session() as session:
                session.add(row)
                await session.flush()
        except IntegrityError:
            existing = await self.find_evidence(evidence.url, evidence.content_hash)
            if existing is None:
                raise
            raise DuplicateEvidence(existing) from None
        return evidence

    async def get_evidence(self, evidence_id: str) -> Evidence:
        async with self._session() as session:
            row = await session.get(EvidenceRow, evidence_id)
            if row is None:
                raise NotFound("Evidence", evidence_id)
            return _evidence_from_row(row)

    async def find_evidence(self, url: str, content_hash: str) -> Evidence | None:
        async with self._session() as session:
            row = (
                await session.execute(
                    select(EvidenceRow).where(
                        EvidenceRow.url == url, EvidenceRow.content_hash == content_hash
                    )
                )
            ).scalar_one_or_none()
            return _evidence_from_row(row) if row is not None else None

    async def list_evidence(self, status: ExtractionStatus | None = None) -> list[Evidence]:
        stmt = select(EvidenceRow).order_by(EvidenceRow.fetched_at)
        if status is not None:
            stmt = stmt.where(EvidenceRow.extraction_status == status.value)
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_evidence_from_row(row) for row in rows]

    async def update_evidence(self, evidence_id: str, **fields: Any) -> Evidence:
        illegal = sorted(set(fields) - MUTABLE_EVIDENCE_FIELDS)
        if illegal:
            raise ImmutableEvidenceError(evidence_id, illegal)
        async with self._session() as session:
            row = await session.get(EvidenceRow, evidence_id, with_for_update=True)
            if row is None:
                raise NotFound("Evidence", evidence_id)
            updated = _evidence_from_row(row).model_copy(update=fields)
            row.extraction_status = updated.extraction_status.value
            row.data = _dump(updated, exclude={"raw_content"})
            return updated

    async def claim_pending_evidence(self, owner: str, limit: int = 1) -> list[Evidence]:
        now = utcnow()
        async with self._session() as session:
            rows = (await session.execute(pending_evidence_claim_statement(limit))).scalars().all()
            claimed = []
            for row in rows:
                evidence = _evidence_from_row(row).model_copy(
                    update={"extraction_status": ExtractionStatus.PROCESSING}
                )
                row.extraction_status = ExtractionStatus.PROCESSING.value
                row.data = _dump(evidence, exclude={"raw_content"})
                await session.execute(
                    pg_insert(WorkClaimRow)
                    .values(kind="evidence", subject_id=row.id, owner=owner, claimed_at=now)
                    .on_conflict_do_update(
                        index_elements=["kind", "subject_id"],
                        set_={"owner": owner, "claimed_at": now},
                    )
                )
                claimed.append(evidence)
            return claimed

    # =========================================================================
    # Source pointers and concepts
    # =========================================================================

    async def add_pointers(self, pointers: Iterable[SourcePointer]) -> None:
        async with self._session() as session:
            for pointer in pointers:
                session.add(
                    SourcePointerRow(
                        id=pointer.id,
                        evidence_id=pointer.evidence_id,
                        rule_id=pointer.rule_id,
                        data=_dump(pointer),
                    )
                )

    async def get_pointers(self, pointer_ids: Iterable[str]) -> list[SourcePointer]:
        ids = list(pointer_ids)
        async with self._session() as session:
            rows = (
                await session.execute(select(SourcePointerRow).where(SourcePointerRow.id.in_(ids)))
            ).scalars().all()
        by_id = {row.id: _load(SourcePointer, row.data) for row in rows}
        missing = [pointer_id for pointer_id in ids if pointer_id not in by_id]
        if missing:
            raise NotFound("SourcePointer", missing[0])
        return [by_id[pointer_id] for pointer_id in ids]

    async def list_pointers(
        self,
        evidence_id: str | None = None,
        ungrouped_only: bool = False,
    ) -> list[SourcePointer]:
        stmt = select(SourcePointerRow)
        if evidence_id is not None:
            stmt = stmt.where(SourcePointerRow.evidence_id == evidence_id)
        if ungrouped_only:
            stmt = stmt.where(SourcePointerRow.rule_id.is_(None))
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_load(SourcePointer, row.data) for row in rows]

    async def assign_pointers(self, pointer_ids: Iterable[str], rule_id: str) -> None:
        async with self._session() as session:
            rows = (
                await session.execute(
                    select(SourcePointerRow)
                    .where(SourcePointerRow.id.in_(list(pointer_ids)))
                    .with_for_update()
                )
            ).scalars().all()
            for row in rows:
                row.rule_id = rule_id
                row.data = {**row.data, "rule_id": rule_id}

    async def upsert_concept(self, concept: Concept) -> Concept:
        async with self._session() as session:
            await session.execute(
                pg_insert(ConceptRow)
                .values(slug=concept.slug, data=_dump(concept))
                .on_conflict_do_nothing(index_elements=["slug"])
            )
            row = await session.get(ConceptRow, concept.slug)
            return _load(Concept, row.data) if row is not None else concept

    async def list_concepts(self) -> list[Concept]:
        async with self._session() as session:
            rows = (await session.execute(select(ConceptRow))).scalars().all()
            return [_load(Concept, row.data) for row in rows]

    # =========================================================================
    # Rules
    # =========================================================================

    async def add_rule(self, rule: RegulatoryRule) -> RegulatoryRule:
        async with self._session() as session:
            session.add(
                RuleRow(
                    id=rule.id,
                    concept_slug=rule.concept_slug,
                    status=rule.status.value,
                    release_id=rule.release_id,
                    data=_dump(rule),
                )
            )
        return rule

    async def get_rule(self, rule_id: str) -> RegulatoryRule:
        async with self._session() as session:
            row = await session.get(RuleRow, rule_id)
            if row is None:
                raise NotFound("RegulatoryRule", rule_id)
            return _load(RegulatoryRule, row.data)

    async def save_rule(self, rule: RegulatoryRule) -> None:
        rule = rule.model_copy(update={"updated_at": utcnow()})
        async with self._session() as session:
            result = await session.execute(
                update(RuleRow)
                .where(RuleRow.id == rule.id)
                .values(status=rule.status.value, release_id=rule.release_id, data=_dump(rule))
            )
            if result.rowcount == 0:
                raise NotFound("RegulatoryRule", rule.id)

    async def list_rules(
        self,
        statuses: Iterable[RuleStatus] | None = None,
        concept_slug: str | None = None,
    ) -> list[RegulatoryRule]:
        stmt = select(RuleRow).order_by(RuleRow.concept_slug, RuleRow.id)
        if statuses is not None:
            stmt = stmt.where(RuleRow.status.in_([s.value for s in statuses]))
        if concept_slug is not None:
            stmt = stmt.where(RuleRow.concept_slug == concept_slug)
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_load(RegulatoryRule, row.data) for row in rows]

    # =========================================================================
    # Conflicts
    # =========================================================================

    async def add_conflict(self, conflict: RegulatoryConflict) -> RegulatoryConflict:
        async with self._session() as session:
            session.add(
                ConflictRow(id=conflict.id, status=conflict.status.value, data=_dump(conflict))
            )
        return conflict

    async def get_conflict(self, conflict_id: str) -> RegulatoryConflict:
        async with self._session() as session:
            row = await session.get(ConflictRow, conflict_id)
            if row is None:
                raise NotFound("RegulatoryConflict", conflict_id)
            return _load(RegulatoryConflict, row.data)

    async def save_conflict(self, conflict: RegulatoryConflict) -> None:
        async with self._session() as session:
            result = await session.execute(
                update(ConflictRow)
                .where(ConflictRow.id == conflict.id)
                .values(status=conflict.status.value, data=_dump(conflict))
            )
            if result.rowcount == 0:
                raise NotFound("RegulatoryConflict", conflict.id)

    async def list_conflicts(
        self,
        status: ConflictStatus | None = None,
        rule_id: str | None = None,
    ) -> list[RegulatoryConflict]:
        stmt = select(ConflictRow)
        if status is not None:
            stmt = stmt.where(ConflictRow.status == status.value)
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        conflicts = [_load(RegulatoryConflict, row.data) for row in rows]
        if rule_id is not None:
            conflicts = [c for c in conflicts if rule_id in c.rule_ids]
        return conflicts

    # =========================================================================
    # Releases
    # =========================================================================

    async def approved_unpublished_snapshot(self) -> list[RegulatoryRule]:
        async with self._session() as session:
            rows = (await session.execute(approved_unpublished_statement())).scalars().all()
            return [_load(RegulatoryRule, row.data) for row in rows]

    async def publish_release(
        self,
        release: RuleRelease,
        published: list[RegulatoryRule],
        deprecated: list[RegulatoryRule],
    ) -> RuleRelease:
        now = utcnow()
        async with self._session() as session:
            # Lock the batch; any rule already taken by another release aborts
            ids = [rule.id for rule in published]
            rows = {
                row.id: row
                for row in (
                    await session.execute(
                        select(RuleRow).where(RuleRow.id.in_(ids)).with_for_update()
                    )
                ).scalars()
            }
            for rule in published:
                row = rows.get(rule.id)
                if row is None:
                    raise NotFound("RegulatoryRule", rule.id)
                if row.status != RuleStatus.APPROVED.value or row.release_id is not None:
                    raise ClaimError("rule", rule.id, owner=row.release_id)

            for rule in [*published, *deprecated]:
                stamped = rule.model_copy(update={"updated_at": now})
                await session.execute(
                    update(RuleRow)
                    .where(RuleRow.id == rule.id)
                    .values(
                        status=stamped.status.value,
                        release_id=stamped.release_id,
                        data=_dump(stamped),
                    )
                )
            session.add(
                ReleaseRow(
                    id=release.id,
                    version=release.version,
                    published_at=release.published_at,
                    data=_dump(release),
                )
            )
        logger.debug("postgres_release_committed", release_id=release.id, rules=len(published))
        return release

    async def get_release(self, release_id: str) -> RuleRelease:
        async with self._session() as session:
            row = await session.get(ReleaseRow, release_id)
            if row is None:
                raise NotFound("RuleRelease", release_id)
            return _load(RuleRelease, row.data)

    async def latest_release(self) -> RuleRelease | None:
        async with self._session() as session:
            row = (
                await session.execute(
                    select(ReleaseRow).order_by(ReleaseRow.published_at.desc()).limit(1)
                )
            ).scalar_one_or_none()
            return _load(RuleRelease, row.data) if row is not None else None

    async def list_releases(self) -> list[RuleRelease]:
        async with self._session() as session:
            rows = (
                await session.execute(select(ReleaseRow).order_by(ReleaseRow.published_at))
            ).scalars().all()
            return [_load(RuleRelease, row.data) for row in rows]

    # =========================================================================
    # Runs and claims
    # =========================================================================

    async def save_run(self, run: AgentRun) -> None:
        stmt = pg_insert(AgentRunRow).values(
            id=run.id,
            stage=run.stage.value,
            status=run.status.value,
            subject_id=run.subject_id,
            data=_dump(run),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["id"],
            set_={"status": stmt.excluded.status, "data": stmt.excluded.data},
        )
        async with self._session() as session:
            await session.execute(stmt)

    async def list_runs(
        self,
        stage: Stage | None = None,
        status: RunStatus | None = None,
        subject_id: str | None = None,
    ) -> list[AgentRun]:
        stmt = select(AgentRunRow)
        if stage is not None:
            stmt = stmt.where(AgentRunRow.stage == stage.value)
        if status is not None:
            stmt = stmt.where(AgentRunRow.status == status.value)
        if subject_id is not None:
            stmt = stmt.where(AgentRunRow.subject_id == subject_id)
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_load(AgentRun, row.data) for row in rows]

    async def claim(self, kind: str, subject_id: str, owner: str) -> bool:
        stmt = (
            pg_insert(WorkClaimRow)
            .values(kind=kind, subject_id=subject_id, owner=owner, claimed_at=utcnow())
            .on_conflict_do_nothing(index_elements=["kind", "subject_id"])
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            if result.rowcount == 1:
                return True
            holder = await session.get(WorkClaimRow, (kind, subject_id))
            return holder is not None and holder.owner == owner

    async def release_claim(self, kind: str, subject_id: str, owner: str) -> None:
        async with self._session() as session:
            await session.execute(
                delete(WorkClaimRow).where(
                    WorkClaimRow.kind == kind,
                    WorkClaimRow.subject_id == subject_id,
                    WorkClaimRow.owner == owner,
                )
            )

    async def stale_claims(self, older_than: datetime) -> list[WorkClaim]:
        async with self._session() as session:
            rows = (
                await session.execute(
                    select(WorkClaimRow).where(WorkClaimRow.claimed_at < older_than)
                )
            ).scalars().all()
            return [
                WorkClaim(
                    kind=row.kind,
                    subject_id=row.subject_id,
                    owner=row.owner,
                    claimed_at=row.claimed_at,
                )
                for row in rows
            ]

    async def drop_claim(self, kind: str, subject_id: str) -> None:
        async with self._session() as session:
            await session.execute(
                delete(WorkClaimRow).where(
                    WorkClaimRow.kind == kind, WorkClaimRow.subject_id == subject_id
                )
            )

