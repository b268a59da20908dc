"""
Tenant repositories - users, memberships and campgrounds.
Used to resolve what a caller may see.
"""
import uuid
from typing import List

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from guest_segments.models.tenant import (
    User, Campground, OrganizationMember, CampgroundMember, READ_ONLY_ROLES
)
from guest_segments.repositories.base import BaseRepository
from guest_segments.segmentation.scope import TenantContext


class UserRepository(BaseRepository[User]):
    """Repository for User operations."""
    
    def __init__(self, session: AsyncSession):
        super().__init__(User, session)


class CampgroundRepository(BaseRepository[Campground]):
    """Repository for Campground operations."""
    
    def __init__(self, session: AsyncSession):
        super().__init__(Campground, session)
    
    async def list_for_orgs(self, org_ids: List[uuid.UUID]) -> List[Campground]:
        """All campgrounds owned by the given organizations."""
        if not org_ids:
            return []
        query = select(Campground).where(Campground.org_id.in_(org_ids))
        result = await self.session.exec(query)
        return result.all()


class MembershipRepository:
    """Active memberships of a user, and the tenant context they grant."""
    
    def __init__(self, session: AsyncSession):
        self.session = session
        self.campground_repo = CampgroundRepository(session)
    
    async def get_org_memberships(self, user_id: uuid.UUID) -> List[OrganizationMember]:
        query = select(OrganizationMember).where(
            OrganizationMember.user_id == user_id,
            OrganizationMember.is_active == True
        )
        result = await self.session.exec(query)
        return result.all()
    
    async def get_campground_memberships(self, user_id: uuid.UUID) -> List[CampgroundMember]:
        query = select(CampgroundMember).where(
            CampgroundMember.user_id == user_id,
            CampgroundMember.is_active == True
        )
        result = await self.session.exec(query)
        return result.all()
    
    async def build_context(self, user: User) -> TenantContext:
        """
        Resolve a user's tenant context.
        Organization members reach every campground of the organization with
        the same role; direct campground memberships add single properties.
        """
        org_members = await self.get_org_memberships(user.id)
        org_ids = {m.org_id for m in org_members}
        editable_org_ids = {m.org_id for m in org_members if m.role not in READ_ONLY_ROLES}
        
        campground_ids = set()
        editable_campground_ids = set()
        for campground in await self.campground_repo.list_for_orgs(list(org_ids)):
            campground_ids.add(campground.id)
            if campground.org_id in editable_org_ids:
                editable_campground_ids.add(campground.id)
        
        for member in await self.get_campground_memberships(user.id):
            campground_ids.add(member.campground_id)
            if member.role not in READ_ONLY_ROLES:
                editable_campground_ids.add(member.campground_id)
        
        return TenantContext(
            user_id=user.id,
            org_ids=frozenset(org_ids),
            editable_org_ids=frozenset(editable_org_ids),
            campground_ids=frozenset(campground_ids),
            editable_campground_ids=frozenset(editable_campground_ids),
            current_org_id=user.current_org_id,
            current_campground_id=user.current_campground_id,
            is_platform_admin=user.is_platform_admin
        )
