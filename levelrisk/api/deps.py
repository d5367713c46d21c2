"""
FastAPI dependencies for API routes.

Services are built once per process and hung on ``app.state.services``;
request sessions come from the same session factory.
"""

from datetime import datetime
from typing import AsyncGenerator, Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from levelrisk.clock import to_naive_utc
from levelrisk.errors import ValidationError
from levelrisk.services.bootstrap import Services


def get_services(request: Request) -> Services:
    return request.app.state.services


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Provide an async DB session, committed on success."""
    factory = get_services(request).session_factory
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def naive(value: Optional[datetime]) -> Optional[datetime]:
    """Query-string datetimes to naive UTC."""
    return to_naive_utc(value) if value is not None else None


def check_range(start: Optional[datetime], end: Optional[datetime]) -> None:
    if start is not None and end is not None and start > end:
        raise ValidationError("'from' must not be after 'to'", field="from", value=start.isoformat())
