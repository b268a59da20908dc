"""
Segment service - segment lifecycle: create, update, duplicate, archive, recount.

Every operation checks the caller's scope first, writes through the segment
repository and records an activity log entry. Counts are computed by the
matching engine; large corpora are recounted in the background.
"""
import logging
import uuid
from typing import Callable, List, Optional, Tuple

from sqlmodel.ext.asyncio.session import AsyncSession

from guest_segments.config import settings
from guest_segments.core.exceptions import (
    NotFoundError, ScopeForbidden, ValidationError, ArchivedError,
    CorpusUnavailable, MatchTimeout
)
from guest_segments.models.activity import ActivityLog, Actions
from guest_segments.models.segment import Segment, SegmentScope, SegmentStatus, CountStatus
from guest_segments.repositories.activity_repo import ActivityLogRepository
from guest_segments.repositories.segment_repo import SegmentRepository
from guest_segments.repositories.tenant_repo import CampgroundRepository
from guest_segments.schemas.segment import SegmentCreate, SegmentUpdate, SegmentDuplicate
from guest_segments.segmentation.corpus import CorpusProvider, SqlCorpusProvider
from guest_segments.segmentation.criteria import validate_all
from guest_segments.segmentation.matching import MatchingEngine
from guest_segments.segmentation.scope import (
    TenantContext, can_view, can_edit, can_create, corpus_for
)

logger = logging.getLogger(__name__)

# Receives a segment id whose recount should run outside the request
RecountScheduler = Callable[[uuid.UUID], None]


class SegmentService:
    """Service for segment lifecycle operations."""

    def __init__(
        self,
        session: AsyncSession,
        corpus_provider: Optional[CorpusProvider] = None,
        engine: Optional[MatchingEngine] = None,
        schedule: Optional[RecountScheduler] = None
    ):
        self.session = session
        self.segment_repo = SegmentRepository(session)
        self.activity_repo = ActivityLogRepository(session)
        self.campground_repo = CampgroundRepository(session)
        self.corpus_provider = corpus_provider or SqlCorpusProvider(session)
        self.engine = engine or MatchingEngine()
        self.schedule = schedule

    # ==================== Reads ====================

    async def get(self, ctx: TenantContext, segment_id: uuid.UUID) -> Segment:
        """Get a segment the caller may view; hidden segments look missing."""
        segment = await self.segment_repo.get(segment_id)
        if not segment or not can_view(ctx, segment):
            raise NotFoundError("Segment", str(segment_id))
        return segment

    async def list(
        self,
        ctx: TenantContext,
        scope: Optional[str] = None,
        status: Optional[str] = SegmentStatus.ACTIVE,
        search: Optional[str] = None
    ) -> List[Segment]:
        """List visible segments, templates first. Archived ones only on request."""
        if scope and scope not in SegmentScope.ALL:
            raise ValidationError(f"expected one of {list(SegmentScope.ALL)}", "scope")
        if status == "all":
            status = None
        elif status and status not in SegmentStatus.ALL:
            raise ValidationError(f"expected one of {list(SegmentStatus.ALL) + ['all']}", "status")

        return await self.segment_repo.list_visible(ctx, scope=scope, status=status, search=search)

    async def summary(self, ctx: TenantContext) -> dict:
        """Stats over the caller's active segments."""
        segments = await self.segment_repo.list_visible(ctx)
        custom = [s for s in segments if not s.is_template]
        return {
            "template_count": len(segments) - len(custom),
            "custom_count": len(custom),
            "total_guests": sum(s.guest_count or 0 for s in custom),
            "stale_count": sum(1 for s in custom if s.count_status == CountStatus.STALE),
        }

    async def activity(self, ctx: TenantContext, segment_id: uuid.UUID) -> List[ActivityLog]:
        segment = await self.get(ctx, segment_id)
        return await self.activity_repo.list_for_segment(segment.id)

    # ==================== Lifecycle ====================

    async def create(self, ctx: TenantContext, data: SegmentCreate) -> Segment:
        """
        Create a segment bound to a scope and compute its first count.

        Raises:
            ValidationError: bad scope, name or criteria
            ScopeForbidden: caller may not create at that scope
            NotFoundError: campground does not exist
        """
        if not data.name.strip():
            raise ValidationError("name cannot be empty", "name")
        criteria = self._validated_criteria(data.criteria)
        org_id, campground_id = await self._resolve_binding(
            ctx, data.scope, data.org_id, data.campground_id
        )

        return await self._persist_and_count(
            ctx,
            {
                "name": data.name.strip(),
                "description": data.description,
                "scope": data.scope,
                "org_id": org_id,
                "campground_id": campground_id,
                "criteria": criteria,
            },
            Actions.SEGMENT_CREATED
        )

    async def update(
        self,
        ctx: TenantContext,
        segment_id: uuid.UUID,
        data: SegmentUpdate
    ) -> Segment:
        """
        Edit name, description or criteria.
        Changing criteria leaves the cached count stale until the next recount.

        Raises:
            NotFoundError, ScopeForbidden, ArchivedError, ValidationError, StaleVersion
        """
        segment = await self.get(ctx, segment_id)
        if not can_edit(ctx, segment):
            raise ScopeForbidden("You don't have permission to edit this segment")
        if segment.status == SegmentStatus.ARCHIVED:
            raise ArchivedError(str(segment_id))

        changes = data.model_dump(exclude_unset=True, exclude={"expected_version"})
        if "name" in changes:
            if not changes["name"] or not changes["name"].strip():
                raise ValidationError("name cannot be empty", "name")
            changes["name"] = changes["name"].strip()
        if "criteria" in changes:
            changes["criteria"] = self._validated_criteria(changes["criteria"])
        if not changes:
            return segment

        updated = await self.segment_repo.update_definition(
            segment_id, changes, expected_version=data.expected_version
        )

        await self.activity_repo.log_segment(
            updated,
            actor_id=ctx.user_id,
            action=Actions.SEGMENT_UPDATED,
            description=f"Segment '{updated.name}' updated",
            meta_data={"fields": sorted(changes), "version": updated.version}
        )
        logger.info(f"Segment {updated.id} updated to version {updated.version}: {sorted(changes)}")

        return updated

    async def duplicate(
        self,
        ctx: TenantContext,
        segment_id: uuid.UUID,
        data: SegmentDuplicate
    ) -> Segment:
        """
        Copy a viewable segment (typically a template) into the caller's own scope.

        Raises:
            NotFoundError, ScopeForbidden, ValidationError
        """
        source = await self.get(ctx, segment_id)

        scope = data.scope
        if not scope:
            if data.org_id or (not data.campground_id and ctx.current_org_id):
                scope = SegmentScope.ORGANIZATION
            elif data.campground_id or ctx.current_campground_id:
                scope = SegmentScope.CAMPGROUND
            else:
                raise ScopeForbidden("No organization or campground to duplicate into")
        if scope == SegmentScope.GLOBAL:
            raise ValidationError("segments can only be duplicated into an organization or campground", "scope")

        org_id, campground_id = await self._resolve_binding(
            ctx, scope, data.org_id, data.campground_id
        )
        name = data.name.strip() if data.name else f"{source.name}{settings.DUPLICATE_NAME_SUFFIX}"

        return await self._persist_and_count(
            ctx,
            {
                "name": name,
                "description": source.description,
                "scope": scope,
                "org_id": org_id,
                "campground_id": campground_id,
                "criteria": list(source.criteria),
                "source_segment_id": source.id,
            },
            Actions.SEGMENT_DUPLICATED
        )

    async def archive(self, ctx: TenantContext, segment_id: uuid.UUID) -> Segment:
        """
        Archive a segment. Archiving an archived segment changes nothing.

        Raises:
            NotFoundError, ScopeForbidden
        """
        segment = await self.get(ctx, segment_id)
        if not can_edit(ctx, segment):
            raise ScopeForbidden("You don't have permission to archive this segment")
        if segment.is_template:
            raise ScopeForbidden("Templates cannot be archived; duplicate instead")
        if segment.status == SegmentStatus.ARCHIVED:
            return segment

        archived = await self.segment_repo.set_status(segment_id, SegmentStatus.ARCHIVED)

        await self.activity_repo.log_segment(
            archived,
            actor_id=ctx.user_id,
            action=Actions.SEGMENT_ARCHIVED,
            description=f"Segment '{archived.name}' archived"
        )
        logger.info(f"Segment {archived.id} archived")

        return archived

    async def recount(self, ctx: TenantContext, segment_id: uuid.UUID) -> Segment:
        """
        Recompute a segment's count now, or schedule it for large corpora
        (the returned segment is then pending).

        Raises:
            NotFoundError, ValidationError, ArchivedError
        """
        segment = await self.get(ctx, segment_id)
        if segment.is_template:
            raise ValidationError("templates have no guest corpus; duplicate to count", "segment_id")
        if segment.status == SegmentStatus.ARCHIVED:
            raise ArchivedError(str(segment_id))
        return await self._count(segment, ctx.user_id)

    async def corpus_changed(
        self,
        ctx: TenantContext,
        org_id: uuid.UUID,
        campground_id: Optional[uuid.UUID] = None
    ) -> int:
        """
        Guest data changed: flag affected counts stale, including pending ones,
        so runs already in flight do not report their count as fresh.
        Returns how many segments were flagged.

        Raises:
            NotFoundError: campground does not exist
            ScopeForbidden: caller has no access, or the campground belongs to another organization
        """
        if campground_id:
            campground = await self.campground_repo.get(campground_id)
            if not campground:
                raise NotFoundError("Campground", str(campground_id))
            if campground.org_id != org_id:
                raise ScopeForbidden("Campground does not belong to this organization")
            allowed = ctx.is_platform_admin or campground_id in ctx.campground_ids
        else:
            allowed = ctx.is_platform_admin or org_id in ctx.org_ids
        if not allowed:
            raise ScopeForbidden("You don't have access to this guest data")

        marked = await self.segment_repo.mark_corpus_stale(org_id, campground_id)
        logger.info(f"Guest data changed for org {org_id} campground {campground_id}: {marked} segment(s) stale")
        return marked

    async def refresh_stale(self, ctx: TenantContext, limit: int = 50) -> Tuple[int, int]:
        """Recount stale segments the caller can edit. Returns (recounted, failed)."""
        stale_ids = [
            segment.id for segment in await self.segment_repo.list_stale(limit)
            if can_edit(ctx, segment)
        ]

        recounted = failed = 0
        for segment_id in stale_ids:
            # A failed run rolls the session back, so each segment is re-read
            segment = await self.segment_repo.get(segment_id)
            if not segment or segment.status != SegmentStatus.ACTIVE:
                continue
            refreshed = await self._recount_now(segment, ctx.user_id)
            if refreshed.count_status == CountStatus.FRESH:
                recounted += 1
            else:
                failed += 1
        return recounted, failed

    async def seed_templates(self) -> List[Segment]:
        """Create any missing default global templates."""
        templates = await self.segment_repo.create_defaults()
        if templates:
            logger.info(f"Seeded {len(templates)} global template(s)")
        return templates

    # ==================== Internals ====================

    def _validated_criteria(self, criteria) -> List[dict]:
        return [criterion.to_dict() for criterion in validate_all(criteria)]

    async def _resolve_binding(
        self,
        ctx: TenantContext,
        scope: str,
        org_id: Optional[uuid.UUID],
        campground_id: Optional[uuid.UUID]
    ) -> Tuple[Optional[uuid.UUID], Optional[uuid.UUID]]:
        """Organization and campground a new segment is bound to, after the create check."""
        if scope not in SegmentScope.ALL:
            raise ValidationError(f"expected one of {list(SegmentScope.ALL)}", "scope")

        if scope == SegmentScope.GLOBAL:
            org_id = campground_id = None
        elif scope == SegmentScope.ORGANIZATION:
            org_id = org_id or ctx.current_org_id
            campground_id = None
            if not org_id:
                raise ValidationError("organization scope needs an organization", "org_id")
        else:
            campground_id = campground_id or ctx.current_campground_id
            if not campground_id:
                raise ValidationError("campground scope needs a campground", "campground_id")

        if not can_create(ctx, scope, org_id, campground_id):
            raise ScopeForbidden(f"You don't have permission to create {scope} segments here")

        if scope == SegmentScope.CAMPGROUND:
            campground = await self.campground_repo.get(campground_id)
            if not campground:
                raise NotFoundError("Campground", str(campground_id))
            org_id = campground.org_id

        return org_id, campground_id

    async def _persist_and_count(self, ctx: TenantContext, data: dict, action: str) -> Segment:
        is_template = data["scope"] == SegmentScope.GLOBAL
        data["is_template"] = is_template
        data["created_by"] = ctx.user_id
        if is_template:
            data["count_status"] = CountStatus.UNBOUND

        segment = await self.segment_repo.create(data)

        await self.activity_repo.log_segment(
            segment,
            actor_id=ctx.user_id,
            action=action,
            description=f"Segment '{segment.name}' created in {segment.scope} scope",
            meta_data={"source_segment_id": str(segment.source_segment_id)} if segment.source_segment_id else {}
        )
        logger.info(f"Segment {segment.id} ({segment.scope}) created by {ctx.user_id}")

        if is_template:
            return segment
        return await self._count(segment, ctx.user_id)

    async def _count(self, segment: Segment, actor_id: Optional[uuid.UUID] = None) -> Segment:
        """Count synchronously, or mark pending and hand off when the corpus is large."""
        if self.schedule is not None:
            corpus = self.corpus_provider.open(corpus_for(segment))
            try:
                size = await corpus.size()
            except CorpusUnavailable as e:
                return await self._count_failed(segment, e, actor_id)

            if size > settings.MATCH_SYNC_MAX_GUESTS:
                await self.segment_repo.mark_count_state(
                    segment.id, CountStatus.PENDING, segment.criteria_version
                )
                self.schedule(segment.id)
                logger.info(f"Recount of segment {segment.id} over {size} guests scheduled")
                return await self.segment_repo.get(segment.id)

        return await self._recount_now(segment, actor_id)

    async def _recount_now(self, segment: Segment, actor_id: Optional[uuid.UUID] = None) -> Segment:
        corpus_generation = segment.corpus_generation
        corpus = self.corpus_provider.open(corpus_for(segment))
        try:
            result = await self.engine.run(
                segment.id,
                validate_all(segment.criteria),
                corpus,
                criteria_version=segment.criteria_version
            )
        except (CorpusUnavailable, MatchTimeout) as e:
            return await self._count_failed(segment, e, actor_id)

        if await self.segment_repo.write_count(result, corpus_generation):
            await self.activity_repo.log_segment(
                segment,
                actor_id=actor_id,
                action=Actions.SEGMENT_RECOUNTED,
                description=f"Segment '{segment.name}' matched {result.guest_count} guest(s)",
                meta_data={"guest_count": result.guest_count, "corpus_version": result.corpus_version}
            )
        else:
            logger.warning(
                f"Discarded count for segment {segment.id}: criteria or corpus moved on "
                f"(criteria_version={result.criteria_version}, corpus_version={result.corpus_version})"
            )

        return await self.segment_repo.get(segment.id)

    async def _count_failed(self, segment: Segment, error, actor_id: Optional[uuid.UUID]) -> Segment:
        """Keep the last known count, flagged stale with the reason."""
        segment_id, criteria_version = segment.id, segment.criteria_version
        logger.warning(f"Recount of segment {segment_id} failed: {error.message}")

        # A cancelled or failed corpus query leaves the transaction unusable
        await self.session.rollback()
        await self.segment_repo.mark_count_state(
            segment_id, CountStatus.STALE, criteria_version, error=error.message
        )
        segment = await self.segment_repo.get(segment_id)
        await self.activity_repo.log_segment(
            segment,
            actor_id=actor_id,
            action=Actions.SEGMENT_RECOUNT_FAILED,
            description=f"Recount of segment '{segment.name}' failed",
            meta_data={"error": error.error}
        )
        return await self.segment_repo.get(segment_id)


async def run_recount_job(segment_id: uuid.UUID, session_factory) -> None:
    """Background recount on its own session; the request's session is closed by now."""
    async with session_factory() as session:
        service = SegmentService(session)
        segment = await service.segment_repo.get(segment_id)
        if not segment or segment.status != SegmentStatus.ACTIVE or segment.is_template:
            logger.info(f"Skipping background recount of segment {segment_id}: no longer active")
            return

        criteria_version = segment.criteria_version
        try:
            await service._recount_now(segment)
        except Exception as e:
            logger.exception(f"Background recount of segment {segment_id} crashed: {e}")
            await session.rollback()
            await service.segment_repo.mark_count_state(
                segment_id, CountStatus.STALE, criteria_version, error=str(e)
            )
