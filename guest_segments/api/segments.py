"""
Guest segments API routes.
"""
import uuid
from typing import List, Optional, Union

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Response
from sqlmodel.ext.asyncio.session import AsyncSession

from guest_segments.database import get_session, get_session_factory
from guest_segments.services.segment_service import SegmentService, run_recount_job
from guest_segments.schemas.segment import (
    SegmentCreate, SegmentUpdate, SegmentDuplicate, SegmentResponse, SegmentSummary,
    RecountResponse, RecountPendingResponse, CorpusEvent, CorpusEventResponse,
    RefreshStaleResponse, CriterionTypeInfo, ActivityResponse
)
from guest_segments.schemas.common import ErrorResponse
from guest_segments.segmentation.criteria import describe_vocabulary
from guest_segments.segmentation.scope import TenantContext
from guest_segments.models.segment import CountStatus
from guest_segments.api.deps import get_tenant_context

router = APIRouter(
    prefix="/api/segments",
    tags=["segments"],
    responses={
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    }
)


def get_segment_service(
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    session_factory=Depends(get_session_factory)
) -> SegmentService:
    """Segment service whose large recounts run after the response is sent."""
    def schedule(segment_id: uuid.UUID):
        background_tasks.add_task(run_recount_job, segment_id, session_factory)

    return SegmentService(session, schedule=schedule)


@router.post("/", response_model=SegmentResponse, status_code=201)
async def create_segment(
    segment_data: SegmentCreate,
    ctx: TenantContext = Depends(get_tenant_context),
    service: SegmentService = Depends(get_segment_service)
):
    """Create a segment and compute its first guest count."""
    return await service.create(ctx, segment_data)


@router.get("/", response_model=List[SegmentResponse])
async def list_segments(
    scope: Optional[str] = None,
    status: Optional[str] = "active",
    q: Optional[str] = Query(None, max_length=200),
    ctx: TenantContext = Depends(get_tenant_context),
    service: SegmentService = Depends(get_segment_service)
):
    """List visible segments. Pass status=archived or status=all to include archived ones."""
    return await service.list(ctx, scope=scope, status=status, search=q)


@router.get("/criteria-types", response_model=List[CriterionTypeInfo])
async def get_criteria_types():
    """Criterion types, their operators and the value each operator takes."""
    return describe_vocabulary()


@router.get("/summary", response_model=SegmentSummary)
async def get_summary(
    ctx: TenantContext = Depends(get_tenant_context),
    service: SegmentService = Depends(get_segment_service)
):
    """Template count, custom segment count and total cached guests."""
    return await service.summary(ctx)


@router.post("/corpus-events", response_model=CorpusEventResponse, status_code=202)
async def corpus_changed(
    event: CorpusEvent,
    ctx: TenantContext = Depends(get_tenant_context),
    service: SegmentService = Depends(get_segment_service)
):
    """Guest data changed; cached counts over it become stale."""
    marked = await service.corpus_changed(ctx, event.org_id, event.campground_id)
    return {"marked_stale": marked}


@router.post("/refresh-stale", response_model=RefreshStaleResponse)
async def refresh_stale(
    limit: int = Query(50, ge=1, le=500),
    ctx: TenantContext = Depends(get_tenant_context),
    service: SegmentService = Depends(get_segment_service)
):
    """Recount stale segments the caller can edit."""
    recounted, failed = await service.refresh_stale(ctx, limit)
    return {"recounted": recounted, "failed": failed}


@router.get("/{segment_id}", response_model=SegmentResponse)
async def get_segment(
    segment_id: uuid.UUID,
    ctx: TenantContext = Depends(get_tenant_context),
    service: SegmentService = Depends(get_segment_service)
):
    """Get a segment by ID."""
    return await service.get(ctx, segment_id)


@router.get("/{segment_id}/activity", response_model=List[ActivityResponse])
async def get_segment_activity(
    segment_id: uuid.UUID,
    ctx: TenantContext = Depends(get_tenant_context),
    service: SegmentService = Depends(get_segment_service)
):
    """Lifecycle history of a segment, newest first."""
    return await service.activity(ctx, segment_id)


@router.patch("/{segment_id}", response_model=SegmentResponse)
async def update_segment(
    segment_id: uuid.UUID,
    segment_data: SegmentUpdate,
    ctx: TenantContext = Depends(get_tenant_context),
    service: SegmentService = Depends(get_segment_service)
):
    """Update a segment. Changed criteria leave the count stale until recounted."""
    return await service.update(ctx, segment_id, segment_data)


@router.post("/{segment_id}/duplicate", response_model=SegmentResponse, status_code=201)
async def duplicate_segment(
    segment_id: uuid.UUID,
    duplicate_data: Optional[SegmentDuplicate] = None,
    ctx: TenantContext = Depends(get_tenant_context),
    service: SegmentService = Depends(get_segment_service)
):
    """Copy a segment or template into the caller's organization or campground."""
    return await service.duplicate(ctx, segment_id, duplicate_data or SegmentDuplicate())


@router.delete("/{segment_id}", status_code=204)
async def archive_segment(
    segment_id: uuid.UUID,
    ctx: TenantContext = Depends(get_tenant_context),
    service: SegmentService = Depends(get_segment_service)
):
    """Archive a segment. Archiving twice is not an error."""
    await service.archive(ctx, segment_id)
    return Response(status_code=204)


@router.post(
    "/{segment_id}/recount",
    response_model=Union[RecountResponse, RecountPendingResponse],
    responses={202: {"model": RecountPendingResponse}}
)
async def recount_segment(
    segment_id: uuid.UUID,
    response: Response,
    ctx: TenantContext = Depends(get_tenant_context),
    service: SegmentService = Depends(get_segment_service)
):
    """Recount now, or accept the recount for background processing."""
    segment = await service.recount(ctx, segment_id)
    if segment.count_status == CountStatus.PENDING:
        response.status_code = 202
        return RecountPendingResponse(segment_id=segment.id)
    return RecountResponse(
        segment_id=segment.id,
        guest_count=segment.guest_count,
        count_status=segment.count_status,
        counted_at=segment.counted_at,
        count_error=segment.count_error
    )
