"""
Guest segment model - named, scoped guest-grouping rules.
The cached count lives on the row and is only ever written by match runs.
"""
import uuid
from datetime import datetime
from typing import Optional, List, Dict, Any

from sqlmodel import SQLModel, Field
from sqlalchemy import Column, BigInteger, JSON
from sqlalchemy.dialects.postgresql import JSONB


class SegmentScope:
    GLOBAL = "global"
    ORGANIZATION = "organization"
    CAMPGROUND = "campground"

    ALL = (GLOBAL, ORGANIZATION, CAMPGROUND)


class SegmentStatus:
    ACTIVE = "active"
    ARCHIVED = "archived"

    ALL = (ACTIVE, ARCHIVED)


class CountStatus:
    FRESH = "fresh"
    STALE = "stale"
    PENDING = "pending"
    UNBOUND = "unbound"  # templates have no corpus


JSONVariant = JSON().with_variant(JSONB(), "postgresql")


class Segment(SQLModel, table=True):
    """
    Guest segment entity.
    Criteria are conjunctive; a guest matches only if every criterion does.
    """
    __tablename__ = "guest_segment"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)

    # Basic info
    name: str = Field(index=True)
    description: Optional[str] = None

    # Scope binding
    scope: str = Field(index=True)  # global, organization, campground
    org_id: Optional[uuid.UUID] = Field(default=None, foreign_key="organization.id", index=True)
    campground_id: Optional[uuid.UUID] = Field(default=None, foreign_key="campground.id", index=True)

    # Rule definition
    criteria: List[Dict[str, Any]] = Field(default=[], sa_column=Column(JSONVariant))
    # Example: [{"type": "state", "operator": "in", "value": ["TX", "AZ"]},
    #           {"type": "has_pets", "operator": "equals", "value": true}]

    is_template: bool = Field(default=False, index=True)
    status: str = Field(default=SegmentStatus.ACTIVE, index=True)  # active, archived

    # Cached match count
    guest_count: Optional[int] = None
    count_status: str = Field(default=CountStatus.STALE)  # fresh, stale, pending, unbound
    counted_at: Optional[datetime] = None
    corpus_version: Optional[int] = Field(default=None, sa_column=Column(BigInteger, nullable=True))
    count_error: Optional[str] = None

    # Optimistic concurrency
    version: int = Field(default=1)  # bumped on every definition change
    criteria_version: int = Field(default=1)  # bumped only when criteria change
    corpus_generation: int = Field(default=0)  # bumped whenever its guest data is reported changed

    # Provenance
    source_segment_id: Optional[uuid.UUID] = None
    created_by: Optional[uuid.UUID] = Field(default=None, foreign_key="user.id")

    # Timestamps
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    archived_at: Optional[datetime] = None


NORTHERN_STATES = ["MI", "OH", "MN", "WI", "IL", "IN", "NY", "PA", "MA"]
NORTHERN_PROVINCES = ["ON", "QC", "MB", "SK", "AB", "BC"]

# Platform templates seeded at startup; tenants duplicate them into their own scope
DEFAULT_GLOBAL_TEMPLATES = [
    {
        "name": "Snowbirds",
        "description": "Guests from northern states and provinces booking in the first quarter",
        "criteria": [
            {"type": "state", "operator": "in", "value": NORTHERN_STATES + NORTHERN_PROVINCES},
            {"type": "booking_month", "operator": "between", "value": [1, 3]},
        ],
    },
    {
        "name": "Pet Owners",
        "description": "Guests travelling with pets",
        "criteria": [{"type": "has_pets", "operator": "equals", "value": True}],
    },
    {
        "name": "Families",
        "description": "Parties with children",
        "criteria": [{"type": "has_children", "operator": "equals", "value": True}],
    },
    {
        "name": "Big Rigs",
        "description": "Class A motorhomes and fifth wheels",
        "criteria": [{"type": "rig_type", "operator": "in", "value": ["class_a", "fifth_wheel"]}],
    },
    {
        "name": "Extended Stays",
        "description": "Stays longer than four weeks",
        "criteria": [{"type": "stay_length", "operator": "greater_than", "value": 28}],
    },
    {
        "name": "Loyal Returners",
        "description": "Guests with three or more stays",
        "criteria": [{"type": "repeat_stays", "operator": "greater_than", "value": 2}],
    },
    {
        "name": "Remote Workers",
        "description": "Working from the campground for a week or more",
        "criteria": [
            {"type": "stay_reason", "operator": "equals", "value": "work_remote"},
            {"type": "stay_length", "operator": "greater_than", "value": 6},
        ],
    },
]
