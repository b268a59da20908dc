"""
Guest corpus providers.

A corpus is the read-only set of guest records a segment is matched against.
The matching engine only talks to the CorpusHandle interface, so counts can be
computed against the guest table or against fixed in-memory fixtures.
"""
import uuid
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Dict, Iterable, Optional, Protocol, Tuple

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from guest_segments.config import settings
from guest_segments.core.exceptions import CorpusUnavailable
from guest_segments.models.guest import Guest
from guest_segments.segmentation.criteria import GuestAttributes
from guest_segments.segmentation.scope import CorpusKey

EPOCH = datetime(1970, 1, 1)


class CorpusHandle(Protocol):
    """Read access to one guest corpus."""

    async def version(self) -> int:
        """Monotonic marker of the corpus snapshot."""
        ...

    async def size(self) -> int:
        ...

    def stream(self) -> AsyncIterator[Tuple[uuid.UUID, GuestAttributes]]:
        ...


class CorpusProvider(Protocol):
    def open(self, key: CorpusKey) -> CorpusHandle:
        ...


def guest_attributes(guest: Any) -> Dict[str, Any]:
    """
    Attribute bag for one guest record.
    Dates are reduced to calendar components; matching never sees timestamps.
    """
    return {
        "country": guest.country,
        "state": guest.state,
        "city": guest.city,
        "has_children": guest.has_children,
        "has_pets": guest.has_pets,
        "rig_type": guest.rig_type,
        "stay_length": guest.stay_length,
        "stay_reason": guest.stay_reason,
        "repeat_stays": guest.repeat_stays,
        "booking_month": guest.booked_at.month if guest.booked_at else None,
        "arrival_day": guest.arrival_date.day if guest.arrival_date else None,
    }


def version_marker(updated_at: Optional[datetime]) -> int:
    """Microseconds since the epoch of the newest guest change (0 for an empty corpus)."""
    if updated_at is None:
        return 0
    if updated_at.tzinfo is not None:
        updated_at = updated_at.replace(tzinfo=None) - updated_at.utcoffset()
    return (updated_at - EPOCH) // timedelta(microseconds=1)


class InMemoryCorpus:
    """Fixed guest set, for fixtures and previews."""

    def __init__(self, guests: Iterable[Tuple[uuid.UUID, GuestAttributes]], version: int = 1):
        self._guests = list(guests)
        self._version = version

    async def version(self) -> int:
        return self._version

    async def size(self) -> int:
        return len(self._guests)

    async def stream(self) -> AsyncIterator[Tuple[uuid.UUID, GuestAttributes]]:
        for guest_id, attributes in self._guests:
            yield guest_id, attributes


# Columns the matching engine needs; full rows are never loaded
GUEST_COLUMNS = (
    Guest.id,
    Guest.country,
    Guest.state,
    Guest.city,
    Guest.has_children,
    Guest.has_pets,
    Guest.rig_type,
    Guest.stay_length,
    Guest.stay_reason,
    Guest.repeat_stays,
    Guest.booked_at,
    Guest.arrival_date,
)


class SqlGuestCorpus:
    """
    Guests of one organization or campground, read from the guest table
    in keyset-paginated batches.
    """

    def __init__(self, session: AsyncSession, key: CorpusKey, batch_size: Optional[int] = None):
        self.session = session
        self.key = key
        self.batch_size = batch_size or settings.CORPUS_BATCH_SIZE

    def _scoped(self, query):
        query = query.where(Guest.org_id == self.key.org_id)
        if self.key.campground_id:
            query = query.where(Guest.campground_id == self.key.campground_id)
        return query

    async def version(self) -> int:
        try:
            result = await self.session.exec(self._scoped(select(func.max(Guest.updated_at))))
            newest = result.one()
        except SQLAlchemyError as e:
            raise CorpusUnavailable(str(e)) from e
        return version_marker(newest)

    async def size(self) -> int:
        try:
            result = await self.session.exec(self._scoped(select(func.count(Guest.id))))
            return result.one()
        except SQLAlchemyError as e:
            raise CorpusUnavailable(str(e)) from e

    async def stream(self) -> AsyncIterator[Tuple[uuid.UUID, GuestAttributes]]:
        last_id = None
        while True:
            query = self._scoped(select(*GUEST_COLUMNS)).order_by(Guest.id).limit(self.batch_size)
            if last_id is not None:
                query = query.where(Guest.id > last_id)
            try:
                result = await self.session.exec(query)
                batch = result.all()
            except SQLAlchemyError as e:
                raise CorpusUnavailable(str(e)) from e

            for row in batch:
                yield row.id, guest_attributes(row)

            if len(batch) < self.batch_size:
                return
            last_id = batch[-1].id


class SqlCorpusProvider:
    """Opens guest-table corpora on the caller's session."""

    def __init__(self, session: AsyncSession, batch_size: Optional[int] = None):
        self.session = session
        self.batch_size = batch_size

    def open(self, key: CorpusKey) -> SqlGuestCorpus:
        return SqlGuestCorpus(self.session, key, self.batch_size)
