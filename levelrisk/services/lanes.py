"""
Per-location lanes.

Everything that writes for a location (append, evaluate, audit, alert) runs
inside that location's lane, so two writers never interleave on one hash
chain or one alert set. Different locations proceed in parallel.

A lane has two halves: an asyncio lock that orders writers within this
process, and a claim on the location's ``location_lanes`` row that orders
writers across processes (API, scheduler, replicas) sharing one database.
The claim must be the first statement of the writer's transaction and is
released by its commit or rollback.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Iterable

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from levelrisk.db.models import LocationLaneRow

logger = structlog.get_logger(__name__)


class LocationLanes:
    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, location: str) -> asyncio.Lock:
        lock = self._locks.get(location)
        if lock is None:
            lock = self._locks[location] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def lane(self, location: str) -> AsyncIterator[None]:
        async with self._lock_for(location):
            yield

    async def claim(self, session: AsyncSession, location: str) -> None:
        """
        Take the location's row lock for the rest of ``session``'s transaction.

        An UPDATE (not a read) so the lock is exclusive on every backend:
        a row lock on PostgreSQL, the reserved write lock on SQLite.
        """
        result = await session.execute(
            update(LocationLaneRow)
            .where(LocationLaneRow.location == location)
            .values(claims=LocationLaneRow.claims + 1)
        )
        if result.rowcount == 0:
            session.add(LocationLaneRow(location=location, claims=1))
            await session.flush()

    @staticmethod
    async def ensure(session_factory: async_sessionmaker[AsyncSession], locations: Iterable[str]) -> int:
        """Create missing lane rows; returns how many were added."""
        async with session_factory() as session:
            existing = set((await session.execute(select(LocationLaneRow.location))).scalars().all())
            missing = [loc for loc in locations if loc not in existing]
            if not missing:
                return 0
            session.add_all(LocationLaneRow(location=loc, claims=0) for loc in missing)
            try:
                await session.commit()
            except IntegrityError:
                # Another process seeded them first.
                await session.rollback()
                logger.info("location_lanes_seeded_elsewhere", locations=len(missing))
                return 0
        logger.info("location_lanes_seeded", locations=len(missing))
        return len(missing)
