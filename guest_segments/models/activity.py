"""
Activity log model - audit trail for segment lifecycle actions.
"""
import uuid
from datetime import datetime
from typing import Optional, Dict, Any

from sqlmodel import SQLModel, Field
from sqlalchemy import Column

from guest_segments.models.segment import JSONVariant


class ActivityLog(SQLModel, table=True):
    """
    Activity log for tracking all significant actions.
    Global template actions carry no organization.
    """
    __tablename__ = "activity_log"
    
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    org_id: Optional[uuid.UUID] = Field(default=None, foreign_key="organization.id", index=True)
    actor_id: Optional[uuid.UUID] = Field(default=None, foreign_key="user.id", index=True)
    
    # Action details
    action: str = Field(index=True)
    entity_type: str = Field(index=True)  # segment
    entity_id: Optional[uuid.UUID] = None
    
    # Human-readable description
    description: Optional[str] = None
    
    # Additional metadata
    meta_data: Dict[str, Any] = Field(default={}, sa_column=Column(JSONVariant))
    # Example: {"guest_count": 42, "corpus_version": 1733875200000000}
    
    # Timestamps
    created_at: datetime = Field(default_factory=datetime.utcnow)


# Action constants for consistency
class Actions:
    SEGMENT_CREATED = "segment_created"
    SEGMENT_UPDATED = "segment_updated"
    SEGMENT_DUPLICATED = "segment_duplicated"
    SEGMENT_ARCHIVED = "segment_archived"
    SEGMENT_RECOUNTED = "segment_recounted"
    SEGMENT_RECOUNT_FAILED = "segment_recount_failed"
