"""
API dependencies - shared across all routes.
"""
import uuid

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from sqlmodel.ext.asyncio.session import AsyncSession

from guest_segments.database import get_session
from guest_segments.config import settings
from guest_segments.core.security import verify_token
from guest_segments.core.exceptions import raise_unauthorized
from guest_segments.models.tenant import User
from guest_segments.repositories.tenant_repo import UserRepository, MembershipRepository
from guest_segments.segmentation.scope import TenantContext


# Tokens are issued by the platform's auth service
oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"{settings.API_PREFIX}/auth/login")


async def get_current_user(
    token: str = Depends(oauth2_scheme), 
    session: AsyncSession = Depends(get_session)
) -> User:
    """Get current authenticated user from JWT token."""
    payload = verify_token(token, "access")
    if not payload:
        raise_unauthorized("Could not validate credentials")
    
    user_id = payload.get("user_id")
    if not user_id:
        raise_unauthorized("Could not validate credentials")
    
    try:
        user_uuid = uuid.UUID(user_id)
    except (TypeError, ValueError):
        raise_unauthorized("Could not validate credentials")
    
    user_repo = UserRepository(session)
    user = await user_repo.get(user_uuid)
    
    if not user:
        raise_unauthorized("User not found")
    
    if not user.is_active:
        raise_unauthorized("User account is deactivated")
    
    return user


async def get_tenant_context(
    current_user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session)
) -> TenantContext:
    """Organizations and campgrounds the current user may see and edit."""
    return await MembershipRepository(session).build_context(current_user)
