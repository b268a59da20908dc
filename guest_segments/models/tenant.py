"""
Tenant models: organizations, their campgrounds, and the users acting on them.
Segments are scoped to one of these levels.
"""
import uuid
from datetime import datetime
from typing import Optional, List

from sqlmodel import SQLModel, Field, Relationship


class Organization(SQLModel, table=True):
    """
    Organization/Tenant model.
    Owns one or more campgrounds.
    """
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    name: str = Field(index=True)
    
    # Timestamps
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    
    # Relationships
    campgrounds: List["Campground"] = Relationship(back_populates="organization")


class Campground(SQLModel, table=True):
    """A single property owned by an organization."""
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    org_id: uuid.UUID = Field(foreign_key="organization.id", index=True)
    name: str = Field(index=True)
    
    created_at: datetime = Field(default_factory=datetime.utcnow)
    
    organization: Organization = Relationship(back_populates="campgrounds")


class User(SQLModel, table=True):
    """
    Operator console user.
    Access to organizations and campgrounds comes from memberships.
    """
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    
    # Current active tenant (defaults for duplication)
    current_org_id: Optional[uuid.UUID] = Field(default=None, foreign_key="organization.id", index=True)
    current_campground_id: Optional[uuid.UUID] = Field(default=None, foreign_key="campground.id")
    
    email: str = Field(unique=True, index=True)
    full_name: Optional[str] = None
    
    # Platform staff manage global templates
    is_platform_admin: bool = Field(default=False)
    is_active: bool = Field(default=True)
    
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class OrganizationMember(SQLModel, table=True):
    """
    Junction table for User-Organization membership.
    Membership grants access to every campground of the organization.
    """
    __tablename__ = "organization_member"
    
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    user_id: uuid.UUID = Field(foreign_key="user.id", index=True)
    org_id: uuid.UUID = Field(foreign_key="organization.id", index=True)
    
    # Role in this organization
    role: str = Field(default="member")  # owner, admin, member, viewer
    
    is_active: bool = Field(default=True)
    joined_at: datetime = Field(default_factory=datetime.utcnow)


class CampgroundMember(SQLModel, table=True):
    """Access to one property only (e.g. park staff)."""
    __tablename__ = "campground_member"
    
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    user_id: uuid.UUID = Field(foreign_key="user.id", index=True)
    campground_id: uuid.UUID = Field(foreign_key="campground.id", index=True)
    
    role: str = Field(default="member")  # manager, member, viewer
    
    is_active: bool = Field(default=True)
    joined_at: datetime = Field(default_factory=datetime.utcnow)


# Roles that may read but never change segments
READ_ONLY_ROLES = {"viewer"}
