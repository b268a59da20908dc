"""
Guest record - owned by the reservation system.
The segmentation engine only reads these rows as its matching corpus.
"""
import uuid
from datetime import datetime, date
from typing import Optional

from sqlmodel import SQLModel, Field


class Guest(SQLModel, table=True):
    """
    Guest profile flattened with the stay facts segments filter on.
    Always belongs to one campground (and through it, one organization).
    """
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    org_id: uuid.UUID = Field(foreign_key="organization.id", index=True)
    campground_id: uuid.UUID = Field(foreign_key="campground.id", index=True)
    
    # Identity
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = Field(default=None, index=True)
    
    # Geography
    country: Optional[str] = None
    state: Optional[str] = None
    city: Optional[str] = None
    
    # Party composition
    has_children: Optional[bool] = None
    has_pets: Optional[bool] = None
    
    # Equipment
    rig_type: Optional[str] = None  # class_a, fifth_wheel, travel_trailer, tent, ...
    rig_length: Optional[int] = None
    
    # Stay behavior (latest stay)
    stay_length: Optional[int] = None  # nights
    stay_reason: Optional[str] = None  # vacation, family_visit, event, ...
    repeat_stays: int = Field(default=0)
    booked_at: Optional[datetime] = None
    arrival_date: Optional[date] = None
    
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow, index=True)
