"""
Segment schemas.
"""
import uuid
from typing import Optional, List, Dict, Any
from datetime import datetime
from pydantic import BaseModel, Field


class SegmentCreate(BaseModel):
    """Create a new segment. Criteria are checked against the criterion vocabulary."""
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    scope: str = "organization"  # global, organization, campground
    org_id: Optional[uuid.UUID] = None  # defaults to the caller's current organization
    campground_id: Optional[uuid.UUID] = None  # required for campground scope unless one is current
    criteria: List[Dict[str, Any]] = []
    
    class Config:
        json_schema_extra = {
            "example": {
                "name": "Southwest Pet Owners",
                "description": "Texas and Arizona guests travelling with pets",
                "scope": "campground",
                "campground_id": "5f0c6f0e-8b5a-4a55-9d6b-1b2f7d1f8e3a",
                "criteria": [
                    {"type": "state", "operator": "in", "value": ["TX", "AZ"]},
                    {"type": "has_pets", "operator": "equals", "value": True}
                ]
            }
        }


class SegmentUpdate(BaseModel):
    """Partial update of an active segment."""
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    criteria: Optional[List[Dict[str, Any]]] = None
    expected_version: Optional[int] = None  # reject the update if the segment moved on


class SegmentDuplicate(BaseModel):
    """Target of a duplicate; everything defaults to the caller's own scope."""
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    scope: Optional[str] = None  # organization or campground
    org_id: Optional[uuid.UUID] = None
    campground_id: Optional[uuid.UUID] = None


class SegmentResponse(BaseModel):
    """Segment response."""
    id: uuid.UUID
    name: str
    description: Optional[str]
    scope: str
    org_id: Optional[uuid.UUID]
    campground_id: Optional[uuid.UUID]
    criteria: List[Dict[str, Any]]
    is_template: bool
    status: str
    guest_count: Optional[int]
    count_status: str  # fresh, stale, pending, unbound
    counted_at: Optional[datetime]
    corpus_version: Optional[int]
    count_error: Optional[str]
    version: int
    source_segment_id: Optional[uuid.UUID]
    created_by: Optional[uuid.UUID]
    created_at: datetime
    updated_at: datetime
    archived_at: Optional[datetime]
    
    class Config:
        from_attributes = True


class RecountResponse(BaseModel):
    """Result of a synchronous recount."""
    segment_id: uuid.UUID
    guest_count: Optional[int]
    count_status: str
    counted_at: Optional[datetime]
    count_error: Optional[str] = None


class RecountPendingResponse(BaseModel):
    """Recount accepted and running in the background."""
    segment_id: uuid.UUID
    status: str = "pending"


class CorpusEvent(BaseModel):
    """Guest data changed outside the engine."""
    org_id: uuid.UUID
    campground_id: Optional[uuid.UUID] = None  # None means organization-wide


class CorpusEventResponse(BaseModel):
    marked_stale: int


class RefreshStaleResponse(BaseModel):
    """Outcome of recounting stale segments."""
    recounted: int
    failed: int


class SegmentSummary(BaseModel):
    """Totals over the caller's active segments."""
    template_count: int
    custom_count: int
    total_guests: int
    stale_count: int


class CriterionTypeInfo(BaseModel):
    """One entry of the criterion vocabulary."""
    type: str
    label: str
    operators: Dict[str, str]  # operator -> value shape
    minimum: Optional[int] = None
    maximum: Optional[int] = None
    known_values: Dict[str, str] = {}


class ActivityResponse(BaseModel):
    """Audit entry for a segment."""
    id: uuid.UUID
    action: str
    actor_id: Optional[uuid.UUID]
    description: Optional[str]
    meta_data: Dict[str, Any]
    created_at: datetime
    
    class Config:
        from_attributes = True
