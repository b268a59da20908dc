"""
Scope resolution - who may see and change a segment, and which guests it reads.

Pure decision functions over a TenantContext; no storage access.
"""
import uuid
from dataclasses import dataclass
from typing import Any, FrozenSet, Optional

from guest_segments.models.segment import SegmentScope


@dataclass(frozen=True)
class TenantContext:
    """
    What the caller is authorized for.
    Organization access implies access to all of that organization's campgrounds;
    the campground sets already include those.
    """
    user_id: Optional[uuid.UUID] = None
    org_ids: FrozenSet[uuid.UUID] = frozenset()
    editable_org_ids: FrozenSet[uuid.UUID] = frozenset()
    campground_ids: FrozenSet[uuid.UUID] = frozenset()
    editable_campground_ids: FrozenSet[uuid.UUID] = frozenset()
    current_org_id: Optional[uuid.UUID] = None
    current_campground_id: Optional[uuid.UUID] = None
    is_platform_admin: bool = False


@dataclass(frozen=True)
class CorpusKey:
    """Guest corpus a segment is bound to; no campground means the whole organization."""
    org_id: uuid.UUID
    campground_id: Optional[uuid.UUID] = None


def can_view(ctx: TenantContext, segment: Any) -> bool:
    if ctx.is_platform_admin or segment.scope == SegmentScope.GLOBAL:
        return True
    if segment.scope == SegmentScope.ORGANIZATION:
        return segment.org_id in ctx.org_ids
    if segment.scope == SegmentScope.CAMPGROUND:
        return segment.campground_id in ctx.campground_ids
    return False


def can_edit(ctx: TenantContext, segment: Any) -> bool:
    """Templates are platform-owned; tenants duplicate them instead."""
    if ctx.is_platform_admin:
        return True
    if segment.scope == SegmentScope.ORGANIZATION:
        return segment.org_id in ctx.editable_org_ids
    if segment.scope == SegmentScope.CAMPGROUND:
        return segment.campground_id in ctx.editable_campground_ids
    return False


def can_create(
    ctx: TenantContext,
    scope: str,
    org_id: Optional[uuid.UUID] = None,
    campground_id: Optional[uuid.UUID] = None
) -> bool:
    if scope == SegmentScope.GLOBAL:
        return ctx.is_platform_admin
    if scope == SegmentScope.ORGANIZATION:
        return org_id is not None and (ctx.is_platform_admin or org_id in ctx.editable_org_ids)
    if scope == SegmentScope.CAMPGROUND:
        return campground_id is not None and (
            ctx.is_platform_admin or campground_id in ctx.editable_campground_ids
        )
    return False


def corpus_for(segment: Any) -> Optional[CorpusKey]:
    """Corpus bound to a segment, or None for templates (never matched directly)."""
    if segment.scope == SegmentScope.ORGANIZATION and segment.org_id:
        return CorpusKey(org_id=segment.org_id)
    if segment.scope == SegmentScope.CAMPGROUND and segment.org_id and segment.campground_id:
        return CorpusKey(org_id=segment.org_id, campground_id=segment.campground_id)
    return None
