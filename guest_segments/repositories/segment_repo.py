"""
Segment repository - durable storage for segment definitions and cached counts.

Writes never hold locks: every change is a conditional UPDATE on the row's
version counters, retried or rejected when another writer got there first.
"""
import logging
import uuid
from datetime import datetime
from typing import Optional, List, Any, Dict

from sqlmodel import select, or_
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlalchemy import case, update

from guest_segments.config import settings
from guest_segments.core.exceptions import NotFoundError, ArchivedError, StaleVersion
from guest_segments.models.segment import (
    Segment, SegmentScope, SegmentStatus, CountStatus, DEFAULT_GLOBAL_TEMPLATES
)
from guest_segments.repositories.base import BaseRepository
from guest_segments.segmentation.criteria import validate_all
from guest_segments.segmentation.matching import MatchResult
from guest_segments.segmentation.scope import TenantContext, can_view

logger = logging.getLogger(__name__)


class SegmentRepository(BaseRepository[Segment]):
    """Repository for Segment operations."""

    def __init__(self, session: AsyncSession):
        super().__init__(Segment, session)

    async def _apply(self, segment_id: uuid.UUID, values: Dict[str, Any], *conditions) -> bool:
        """Conditional update; True when the row still satisfied every condition."""
        statement = (
            update(Segment)
            .where(Segment.id == segment_id, *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.exec(statement)
        await self.session.commit()
        return result.rowcount == 1

    async def list_visible(
        self,
        ctx: TenantContext,
        scope: Optional[str] = None,
        status: Optional[str] = SegmentStatus.ACTIVE,
        search: Optional[str] = None
    ) -> List[Segment]:
        """Segments the caller may view; active only unless a status is given (None means any)."""
        query = select(Segment)

        if status:
            query = query.where(Segment.status == status)
        if scope:
            query = query.where(Segment.scope == scope)
        if not ctx.is_platform_admin:
            query = query.where(
                or_(
                    Segment.scope == SegmentScope.GLOBAL,
                    Segment.org_id.in_(list(ctx.org_ids)),
                    Segment.campground_id.in_(list(ctx.campground_ids))
                )
            )
        if search:
            term = f"%{search}%"
            query = query.where(
                or_(Segment.name.ilike(term), Segment.description.ilike(term))
            )

        query = query.order_by(Segment.is_template.desc(), Segment.created_at.desc())
        result = await self.session.exec(query)
        return [segment for segment in result.all() if can_view(ctx, segment)]

    async def list_stale(self, limit: int = 50) -> List[Segment]:
        """Active, corpus-bound segments whose cached count is stale, oldest count first."""
        query = select(Segment).where(
            Segment.status == SegmentStatus.ACTIVE,
            Segment.scope != SegmentScope.GLOBAL,
            Segment.count_status == CountStatus.STALE
        ).order_by(Segment.updated_at).limit(limit)
        result = await self.session.exec(query)
        return result.all()

    async def update_definition(
        self,
        segment_id: uuid.UUID,
        changes: Dict[str, Any],
        expected_version: Optional[int] = None
    ) -> Segment:
        """
        Change name, description and/or criteria of an active segment.
        A criteria change marks the cached count stale in the same write.

        Raises:
            NotFoundError, ArchivedError, StaleVersion
        """
        for attempt in range(1, settings.STORE_WRITE_RETRY_ATTEMPTS + 1):
            segment = await self.get(segment_id)
            if not segment:
                raise NotFoundError("Segment", str(segment_id))
            if segment.status == SegmentStatus.ARCHIVED:
                raise ArchivedError(str(segment_id))
            if expected_version is not None and segment.version != expected_version:
                raise StaleVersion(str(segment_id), expected_version, segment.version)

            values = dict(changes)
            values["version"] = segment.version + 1
            values["updated_at"] = datetime.utcnow()
            if "criteria" in changes:
                values["criteria_version"] = segment.criteria_version + 1
                values["corpus_version"] = None
                values["count_error"] = None
                values["count_status"] = (
                    CountStatus.UNBOUND if segment.is_template else CountStatus.STALE
                )

            applied = await self._apply(
                segment_id,
                values,
                Segment.version == segment.version,
                Segment.status == SegmentStatus.ACTIVE
            )
            if applied:
                return await self.get(segment_id)
            if expected_version is not None:
                # The caller's view is outdated; let them reload
                raise StaleVersion(str(segment_id))
            logger.warning(
                f"Version conflict updating segment {segment_id} (Attempt {attempt}/{settings.STORE_WRITE_RETRY_ATTEMPTS})"
            )

        raise StaleVersion(str(segment_id))

    async def set_status(self, segment_id: uuid.UUID, status: str) -> Segment:
        """Move a segment between active and archived. Setting the current status is a no-op."""
        for attempt in range(1, settings.STORE_WRITE_RETRY_ATTEMPTS + 1):
            segment = await self.get(segment_id)
            if not segment:
                raise NotFoundError("Segment", str(segment_id))
            if segment.status == status:
                return segment

            now = datetime.utcnow()
            values = {
                "status": status,
                "version": segment.version + 1,
                "updated_at": now,
                "archived_at": now if status == SegmentStatus.ARCHIVED else None,
            }
            if await self._apply(segment_id, values, Segment.version == segment.version):
                return await self.get(segment_id)
            logger.warning(
                f"Version conflict changing status of segment {segment_id} (Attempt {attempt}/{settings.STORE_WRITE_RETRY_ATTEMPTS})"
            )

        raise StaleVersion(str(segment_id))

    async def write_count(
        self,
        result: MatchResult,
        corpus_generation: Optional[int] = None
    ) -> bool:
        """
        Store a match result as the segment's cached count.
        Ignored when the criteria changed since the run started, or when a
        run over a newer corpus snapshot already wrote its count.

        Args:
            result: Outcome of the matching run
            corpus_generation: Segment's corpus_generation read before the run.
                If guest data was reported changed since, the count is stored
                but stays stale.
        """
        count_status = CountStatus.FRESH
        if corpus_generation is not None:
            count_status = case(
                (Segment.corpus_generation == corpus_generation, CountStatus.FRESH),
                else_=CountStatus.STALE
            )
        values = {
            "guest_count": result.guest_count,
            "count_status": count_status,
            "counted_at": result.computed_at,
            "corpus_version": result.corpus_version,
            "count_error": None,
        }
        return await self._apply(
            result.segment_id,
            values,
            Segment.criteria_version == result.criteria_version,
            Segment.status == SegmentStatus.ACTIVE,
            or_(Segment.corpus_version.is_(None), Segment.corpus_version <= result.corpus_version)
        )

    async def mark_count_state(
        self,
        segment_id: uuid.UUID,
        count_status: str,
        criteria_version: int,
        error: Optional[str] = None
    ) -> bool:
        """Flag the cached count pending or stale, keeping the last known number."""
        return await self._apply(
            segment_id,
            {"count_status": count_status, "count_error": error},
            Segment.criteria_version == criteria_version,
            Segment.status == SegmentStatus.ACTIVE
        )

    async def mark_corpus_stale(
        self,
        org_id: uuid.UUID,
        campground_id: Optional[uuid.UUID] = None
    ) -> int:
        """
        Guest data changed: flag counted segments stale and bump their
        corpus_generation, so a recount already in flight does not report fresh.
        A campground change affects that campground and its organization;
        an organization-wide change affects all of the organization's segments.
        """
        affected = [
            Segment.scope == SegmentScope.ORGANIZATION,
            Segment.scope == SegmentScope.CAMPGROUND,
        ]
        if campground_id:
            affected[1] = (Segment.scope == SegmentScope.CAMPGROUND) & (Segment.campground_id == campground_id)

        statement = (
            update(Segment)
            .where(
                Segment.org_id == org_id,
                Segment.status == SegmentStatus.ACTIVE,
                Segment.count_status.in_([CountStatus.FRESH, CountStatus.PENDING, CountStatus.STALE]),
                or_(*affected)
            )
            .values(
                count_status=CountStatus.STALE,
                corpus_generation=Segment.corpus_generation + 1
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.exec(statement)
        await self.session.commit()
        return result.rowcount

    async def create_defaults(self, created_by: Optional[uuid.UUID] = None) -> List[Segment]:
        """Seed the platform templates that do not exist yet (matched by name)."""
        query = select(Segment.name).where(Segment.scope == SegmentScope.GLOBAL)
        result = await self.session.exec(query)
        existing = set(result.all())

        templates = []
        for template in DEFAULT_GLOBAL_TEMPLATES:
            if template["name"] in existing:
                continue
            segment = Segment(
                name=template["name"],
                description=template["description"],
                scope=SegmentScope.GLOBAL,
                criteria=[c.to_dict() for c in validate_all(template["criteria"])],
                is_template=True,
                count_status=CountStatus.UNBOUND,
                created_by=created_by
            )
            self.session.add(segment)
            templates.append(segment)

        await self.session.commit()
        for segment in templates:
            await self.session.refresh(segment)

        return templates
