"""
Tests for the segment lifecycle against a seeded guest table.
"""
import uuid

import pytest

from guest_segments.config import settings
from guest_segments.core.exceptions import (
    ArchivedError, CorpusUnavailable, CriterionValidationError, NotFoundError,
    ScopeForbidden, ValidationError
)
from guest_segments.models.activity import Actions
from guest_segments.models.segment import SegmentScope, SegmentStatus, CountStatus
from guest_segments.schemas.segment import SegmentCreate, SegmentUpdate, SegmentDuplicate
from guest_segments.repositories.segment_repo import SegmentRepository
from guest_segments.segmentation.corpus import InMemoryCorpus, SqlCorpusProvider, SqlGuestCorpus
from guest_segments.segmentation.matching import MatchingEngine
from guest_segments.services.segment_service import SegmentService, run_recount_job

SOUTHWEST_PETS = [
    {"type": "state", "operator": "in", "value": ["TX", "AZ"]},
    {"type": "has_pets", "operator": "equals", "value": True},
]


class UnavailableCorpus(InMemoryCorpus):
    async def version(self):
        raise CorpusUnavailable("guest database offline")


class UnavailableProvider:
    def open(self, key):
        return UnavailableCorpus([])


class ChangedDuringRunCorpus(SqlGuestCorpus):
    """Guest table that reports a guest import while a count is running."""

    async def version(self):
        await SegmentRepository(self.session).mark_corpus_stale(self.key.org_id, self.key.campground_id)
        return await super().version()


class ChangedDuringRunProvider(SqlCorpusProvider):
    def open(self, key):
        return ChangedDuringRunCorpus(self.session, key)


async def no_wait(delay):
    return None


def campground_segment(tenants, **overrides):
    data = {
        "name": "Southwest Pet Owners",
        "scope": "campground",
        "campground_id": tenants.river.id,
        "criteria": SOUTHWEST_PETS,
    }
    data.update(overrides)
    return SegmentCreate(**data)


@pytest.mark.asyncio
async def test_create_counts_matching_guests(session, tenants, river_guests, ridge_guests, context_for):
    service = SegmentService(session)
    ctx = await context_for(tenants.owner)

    segment = await service.create(ctx, campground_segment(tenants))

    assert segment.guest_count == 3
    assert segment.count_status == CountStatus.FRESH
    assert segment.org_id == tenants.pinewood.id
    assert segment.corpus_version > 0
    assert segment.is_template is False


@pytest.mark.asyncio
async def test_organization_segment_counts_every_campground(session, tenants, river_guests, ridge_guests, context_for):
    service = SegmentService(session)
    ctx = await context_for(tenants.owner)

    segment = await service.create(ctx, SegmentCreate(
        name="Southwest Pet Owners", scope="organization", criteria=SOUTHWEST_PETS
    ))

    assert segment.org_id == tenants.pinewood.id
    assert segment.campground_id is None
    assert segment.guest_count == 5


@pytest.mark.asyncio
async def test_campground_manager_defaults_to_current_campground(session, tenants, river_guests, context_for):
    service = SegmentService(session)
    ctx = await context_for(tenants.manager)

    segment = await service.create(ctx, campground_segment(tenants, campground_id=None))

    assert segment.campground_id == tenants.river.id
    assert segment.guest_count == 3
    with pytest.raises(ScopeForbidden):
        await service.create(ctx, SegmentCreate(name="Everyone", scope="organization",
                                                org_id=tenants.pinewood.id))


@pytest.mark.asyncio
async def test_invalid_criteria_are_rejected_before_persisting(session, tenants, context_for):
    service = SegmentService(session)
    ctx = await context_for(tenants.owner)
    criteria = SOUTHWEST_PETS + [{"type": "stay_length", "operator": "between", "value": [10, 2]}]

    with pytest.raises(CriterionValidationError) as exc_info:
        await service.create(ctx, campground_segment(tenants, criteria=criteria))

    assert exc_info.value.index == 2
    assert await service.list(ctx, status="all") == []


@pytest.mark.asyncio
async def test_scope_rules_on_create(session, tenants, context_for):
    service = SegmentService(session)

    with pytest.raises(ScopeForbidden):
        await service.create(await context_for(tenants.viewer), campground_segment(tenants))
    with pytest.raises(ScopeForbidden):
        await service.create(await context_for(tenants.owner), SegmentCreate(name="Everyone", scope="global"))
    with pytest.raises(ScopeForbidden):
        await service.create(await context_for(tenants.rival), campground_segment(tenants))
    with pytest.raises(ValidationError):
        await service.create(await context_for(tenants.owner), SegmentCreate(name="Everyone", scope="planet"))

    template = await service.create(
        await context_for(tenants.admin),
        SegmentCreate(name="Everyone", scope="global", criteria=[])
    )
    assert template.is_template
    assert template.count_status == CountStatus.UNBOUND
    assert template.guest_count is None


@pytest.mark.asyncio
async def test_duplicate_template_into_organization(session, tenants, river_guests, context_for):
    service = SegmentService(session)
    await service.seed_templates()
    ctx = await context_for(tenants.owner)
    snowbirds = next(s for s in await service.list(ctx, scope="global") if s.name == "Snowbirds")

    copy = await service.duplicate(ctx, snowbirds.id, SegmentDuplicate())

    assert copy.id != snowbirds.id
    assert copy.scope == SegmentScope.ORGANIZATION
    assert copy.org_id == tenants.pinewood.id
    assert copy.is_template is False
    assert copy.status == SegmentStatus.ACTIVE
    assert copy.criteria == snowbirds.criteria
    assert len(copy.criteria) == 2
    assert copy.name == f"Snowbirds{settings.DUPLICATE_NAME_SUFFIX}"
    assert copy.source_segment_id == snowbirds.id
    assert copy.guest_count == 2


@pytest.mark.asyncio
async def test_duplicate_into_campground_and_not_into_global(session, tenants, river_guests, context_for):
    service = SegmentService(session)
    ctx = await context_for(tenants.owner)
    source = await service.create(ctx, SegmentCreate(name="Pets", scope="organization",
                                                     criteria=SOUTHWEST_PETS))

    copy = await service.duplicate(ctx, source.id, SegmentDuplicate(
        scope="campground", campground_id=tenants.ridge.id, name="Ridge Pets"
    ))

    assert copy.name == "Ridge Pets"
    assert copy.campground_id == tenants.ridge.id
    with pytest.raises(ValidationError):
        await service.duplicate(ctx, source.id, SegmentDuplicate(scope="global"))


@pytest.mark.asyncio
async def test_archived_segment_cannot_be_edited(session, tenants, river_guests, context_for):
    service = SegmentService(session)
    ctx = await context_for(tenants.owner)
    segment = await service.create(ctx, campground_segment(tenants))

    await service.archive(ctx, segment.id)
    with pytest.raises(ArchivedError):
        await service.update(ctx, segment.id, SegmentUpdate(criteria=[]))

    stored = await service.get(ctx, segment.id)
    assert stored.criteria == SOUTHWEST_PETS
    assert stored.guest_count == 3


@pytest.mark.asyncio
async def test_archive_is_idempotent_and_hides_from_default_list(session, tenants, river_guests, context_for):
    service = SegmentService(session)
    ctx = await context_for(tenants.owner)
    segment = await service.create(ctx, campground_segment(tenants))

    first = await service.archive(ctx, segment.id)
    second = await service.archive(ctx, segment.id)

    assert first.status == second.status == SegmentStatus.ARCHIVED
    assert first.archived_at == second.archived_at
    assert await service.list(ctx) == []
    assert [s.id for s in await service.list(ctx, status="archived")] == [segment.id]
    with pytest.raises(ArchivedError):
        await service.recount(ctx, segment.id)


@pytest.mark.asyncio
async def test_criteria_edit_shows_stale_count_until_recount(session, tenants, river_guests, context_for):
    service = SegmentService(session)
    ctx = await context_for(tenants.owner)
    segment = await service.create(ctx, campground_segment(tenants))

    updated = await service.update(ctx, segment.id, SegmentUpdate(
        criteria=[{"type": "has_pets", "operator": "equals", "value": True}],
        expected_version=segment.version
    ))

    read_back = await service.get(ctx, segment.id)
    assert read_back.count_status == CountStatus.STALE
    assert read_back.version == updated.version == 2

    recounted = await service.recount(ctx, segment.id)
    assert recounted.count_status == CountStatus.FRESH
    assert recounted.guest_count == 6


@pytest.mark.asyncio
async def test_visibility_and_edit_rights(session, tenants, river_guests, context_for):
    service = SegmentService(session)
    owner = await context_for(tenants.owner)
    segment = await service.create(owner, campground_segment(tenants))

    viewer = await context_for(tenants.viewer)
    assert (await service.get(viewer, segment.id)).id == segment.id
    with pytest.raises(ScopeForbidden):
        await service.update(viewer, segment.id, SegmentUpdate(name="Mine now"))
    with pytest.raises(ScopeForbidden):
        await service.archive(viewer, segment.id)

    rival = await context_for(tenants.rival)
    with pytest.raises(NotFoundError):
        await service.get(rival, segment.id)
    with pytest.raises(NotFoundError):
        await service.archive(rival, segment.id)
    assert await service.list(rival) == []


@pytest.mark.asyncio
async def test_templates_cannot_be_archived_or_counted(session, tenants, context_for):
    service = SegmentService(session)
    await service.seed_templates()
    admin = await context_for(tenants.admin)
    template = (await service.list(admin, scope="global"))[0]

    with pytest.raises(ScopeForbidden):
        await service.archive(await context_for(tenants.owner), template.id)
    with pytest.raises(ScopeForbidden):
        await service.archive(admin, template.id)
    with pytest.raises(ValidationError):
        await service.recount(admin, template.id)


@pytest.mark.asyncio
async def test_unavailable_corpus_leaves_count_stale(session, tenants, river_guests, context_for):
    ctx = await context_for(tenants.owner)
    segment = await SegmentService(session).create(ctx, campground_segment(tenants))
    broken = SegmentService(
        session,
        corpus_provider=UnavailableProvider(),
        engine=MatchingEngine(time_budget_seconds=5, retry_attempts=2, sleep=no_wait)
    )

    recounted = await broken.recount(ctx, segment.id)

    assert recounted.count_status == CountStatus.STALE
    assert recounted.guest_count == 3
    assert "offline" in recounted.count_error
    actions = [entry.action for entry in await broken.activity(ctx, segment.id)]
    assert actions[0] == Actions.SEGMENT_RECOUNT_FAILED


@pytest.mark.asyncio
async def test_timed_out_recount_leaves_count_stale(session, tenants, river_guests, context_for):
    ctx = await context_for(tenants.owner)
    segment_id = (await SegmentService(session).create(ctx, campground_segment(tenants))).id
    hurried = SegmentService(session, engine=MatchingEngine(time_budget_seconds=1e-9))

    recounted = await hurried.recount(ctx, segment_id)

    assert recounted.count_status == CountStatus.STALE
    assert recounted.guest_count == 3
    assert "time budget" in recounted.count_error
    actions = [entry.action for entry in await hurried.activity(ctx, segment_id)]
    assert actions[0] == Actions.SEGMENT_RECOUNT_FAILED

    # The session stays usable after the cancelled query
    assert (await SegmentService(session).recount(ctx, segment_id)).count_status == CountStatus.FRESH


@pytest.mark.asyncio
async def test_large_corpus_is_counted_in_background(
    session, session_factory, tenants, river_guests, context_for, monkeypatch
):
    monkeypatch.setattr(settings, "MATCH_SYNC_MAX_GUESTS", 5)
    scheduled = []
    service = SegmentService(session, schedule=scheduled.append)
    ctx = await context_for(tenants.owner)

    segment = await service.create(ctx, campground_segment(tenants))

    assert segment.count_status == CountStatus.PENDING
    assert segment.guest_count is None
    assert scheduled == [segment.id]

    await run_recount_job(segment.id, session_factory)

    counted = await service.get(ctx, segment.id)
    assert counted.count_status == CountStatus.FRESH
    assert counted.guest_count == 3


@pytest.mark.asyncio
async def test_corpus_change_then_refresh_stale(session, tenants, river_guests, ridge_guests, context_for):
    service = SegmentService(session)
    ctx = await context_for(tenants.owner)
    river = await service.create(ctx, campground_segment(tenants))
    ridge = await service.create(ctx, campground_segment(tenants, campground_id=tenants.ridge.id))

    with pytest.raises(ScopeForbidden):
        await service.corpus_changed(await context_for(tenants.rival), tenants.pinewood.id)
    marked = await service.corpus_changed(ctx, tenants.pinewood.id, tenants.river.id)

    assert marked == 1
    assert (await service.get(ctx, river.id)).count_status == CountStatus.STALE
    assert (await service.get(ctx, ridge.id)).count_status == CountStatus.FRESH
    assert await service.refresh_stale(await context_for(tenants.rival)) == (0, 0)
    assert await service.refresh_stale(ctx) == (1, 0)
    assert (await service.get(ctx, river.id)).count_status == CountStatus.FRESH


@pytest.mark.asyncio
async def test_corpus_change_rejects_campground_of_another_org(session, tenants, river_guests, context_for):
    service = SegmentService(session)
    ctx = await context_for(tenants.owner)
    segment = await service.create(ctx, SegmentCreate(
        name="Southwest Pet Owners", scope="organization", criteria=SOUTHWEST_PETS
    ))
    rival = await context_for(tenants.rival)

    with pytest.raises(ScopeForbidden):
        await service.corpus_changed(rival, tenants.pinewood.id, tenants.shore.id)
    with pytest.raises(NotFoundError):
        await service.corpus_changed(ctx, tenants.pinewood.id, uuid.uuid4())

    assert (await service.get(ctx, segment.id)).count_status == CountStatus.FRESH


@pytest.mark.asyncio
async def test_corpus_change_during_recount_keeps_count_stale(session, tenants, river_guests, context_for):
    ctx = await context_for(tenants.owner)
    segment_id = (await SegmentService(session).create(ctx, campground_segment(tenants))).id
    service = SegmentService(session, corpus_provider=ChangedDuringRunProvider(session))

    recounted = await service.recount(ctx, segment_id)

    assert recounted.guest_count == 3
    assert recounted.count_status == CountStatus.STALE
    assert await SegmentService(session).refresh_stale(ctx) == (1, 0)
    assert (await service.get(ctx, segment_id)).count_status == CountStatus.FRESH


@pytest.mark.asyncio
async def test_summary_and_activity(session, tenants, river_guests, ridge_guests, context_for):
    service = SegmentService(session)
    await service.seed_templates()
    ctx = await context_for(tenants.owner)
    river = await service.create(ctx, campground_segment(tenants))
    await service.create(ctx, campground_segment(tenants, campground_id=tenants.ridge.id))
    await service.update(ctx, river.id, SegmentUpdate(name="River Pets"))

    summary = await service.summary(ctx)
    history = await service.activity(ctx, river.id)

    assert summary == {"template_count": 7, "custom_count": 2, "total_guests": 5, "stale_count": 0}
    assert {entry.action for entry in history} == {
        Actions.SEGMENT_CREATED, Actions.SEGMENT_RECOUNTED, Actions.SEGMENT_UPDATED
    }
    assert all(isinstance(entry.meta_data, dict) for entry in history)
