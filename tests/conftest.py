import uuid
from datetime import datetime, date
from types import SimpleNamespace

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

import guest_segments.models  # noqa: F401
from guest_segments.models.tenant import (
    Organization, Campground, User, OrganizationMember, CampgroundMember
)
from guest_segments.models.guest import Guest
from guest_segments.repositories.tenant_repo import MembershipRepository


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'segments.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def tenants(session):
    """
    Two organizations. Pinewood owns two campgrounds; Lakeside owns one.
    Users: Pinewood owner, Pinewood viewer, a campground-only manager at
    Pinewood's river site, a Lakeside owner and a platform admin.
    """
    pinewood = Organization(name="Pinewood Parks")
    lakeside = Organization(name="Lakeside RV")
    session.add_all([pinewood, lakeside])
    await session.flush()

    river = Campground(name="River Bend", org_id=pinewood.id)
    ridge = Campground(name="Ridge Top", org_id=pinewood.id)
    shore = Campground(name="North Shore", org_id=lakeside.id)
    session.add_all([river, ridge, shore])
    await session.flush()

    owner = User(email="owner@pinewood.test", full_name="Pat Owner",
                 current_org_id=pinewood.id, current_campground_id=river.id)
    viewer = User(email="viewer@pinewood.test", full_name="Val Viewer",
                  current_org_id=pinewood.id)
    manager = User(email="manager@pinewood.test", full_name="Max Manager",
                   current_campground_id=river.id)
    rival = User(email="owner@lakeside.test", full_name="Robin Rival",
                 current_org_id=lakeside.id, current_campground_id=shore.id)
    admin = User(email="admin@platform.test", full_name="Ada Admin", is_platform_admin=True)
    session.add_all([owner, viewer, manager, rival, admin])
    await session.flush()

    session.add_all([
        OrganizationMember(user_id=owner.id, org_id=pinewood.id, role="owner"),
        OrganizationMember(user_id=viewer.id, org_id=pinewood.id, role="viewer"),
        OrganizationMember(user_id=rival.id, org_id=lakeside.id, role="owner"),
        CampgroundMember(user_id=manager.id, campground_id=river.id, role="admin"),
    ])
    await session.commit()

    return SimpleNamespace(
        pinewood=pinewood, lakeside=lakeside,
        river=river, ridge=ridge, shore=shore,
        owner=owner, viewer=viewer, manager=manager, rival=rival, admin=admin
    )


@pytest.fixture
def context_for(session):
    async def _context(user):
        return await MembershipRepository(session).build_context(user)

    return _context


def make_guest(org_id, campground_id, **attributes) -> Guest:
    values = {
        "first_name": "Guest",
        "last_name": uuid.uuid4().hex[:6],
        "country": "US",
        "state": "OR",
        "has_children": False,
        "has_pets": False,
        "rig_type": "travel_trailer",
        "stay_length": 3,
        "stay_reason": "vacation",
        "repeat_stays": 0,
        "booked_at": datetime(2024, 6, 10, 12, 0),
        "arrival_date": date(2024, 7, 4),
    }
    values.update(attributes)
    return Guest(org_id=org_id, campground_id=campground_id, **values)


@pytest_asyncio.fixture
async def river_guests(session, tenants):
    """Ten River Bend guests; three from TX/AZ travel with pets."""
    org, camp = tenants.pinewood.id, tenants.river.id
    guests = [
        make_guest(org, camp, state="TX", has_pets=True),
        make_guest(org, camp, state="AZ", has_pets=True, stay_length=30),
        make_guest(org, camp, state="tx", has_pets=True, repeat_stays=4),
        make_guest(org, camp, state="TX", has_pets=False),
        make_guest(org, camp, state="AZ", has_pets=None),
        make_guest(org, camp, state="CA", has_pets=True),
        make_guest(org, camp, state="OR", has_pets=True, has_children=True),
        make_guest(org, camp, state="MI", booked_at=datetime(2024, 2, 1)),
        make_guest(org, camp, state=None, has_pets=True),
        make_guest(org, camp, country="CA", state="ON", booked_at=datetime(2024, 1, 15)),
    ]
    session.add_all(guests)
    await session.commit()
    return guests


@pytest_asyncio.fixture
async def ridge_guests(session, tenants):
    """Four Ridge Top guests, two with pets from Texas."""
    org, camp = tenants.pinewood.id, tenants.ridge.id
    guests = [
        make_guest(org, camp, state="TX", has_pets=True),
        make_guest(org, camp, state="TX", has_pets=True),
        make_guest(org, camp, state="NM", has_pets=True),
        make_guest(org, camp, state="TX", has_pets=False),
    ]
    session.add_all(guests)
    await session.commit()
    return guests
