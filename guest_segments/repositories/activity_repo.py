"""
Activity log repository - audit trail of segment lifecycle actions.
"""
import uuid
from typing import Optional, List

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from guest_segments.models.activity import ActivityLog
from guest_segments.models.segment import Segment
from guest_segments.repositories.base import BaseRepository

SEGMENT_ENTITY = "segment"


class ActivityLogRepository(BaseRepository[ActivityLog]):
    """Repository for ActivityLog operations."""

    def __init__(self, session: AsyncSession):
        super().__init__(ActivityLog, session)

    async def log_segment(
        self,
        segment: Segment,
        action: str,
        actor_id: Optional[uuid.UUID] = None,
        description: Optional[str] = None,
        meta_data: Optional[dict] = None
    ) -> ActivityLog:
        """Record an action on a segment, filed under the segment's organization."""
        return await self.create({
            "org_id": segment.org_id,
            "actor_id": actor_id,
            "action": action,
            "entity_type": SEGMENT_ENTITY,
            "entity_id": segment.id,
            "description": description,
            "meta_data": meta_data or {},
        })

    async def list_for_segment(self, segment_id: uuid.UUID, limit: int = 50) -> List[ActivityLog]:
        """Actions on a segment, newest first."""
        query = select(ActivityLog).where(
            ActivityLog.entity_type == SEGMENT_ENTITY,
            ActivityLog.entity_id == segment_id
        ).order_by(ActivityLog.created_at.desc()).limit(limit)
        result = await self.session.exec(query)
        return result.all()
