"""
Input Query API Endpoints.

GET /api/v1/events?level=&from=&to=                     — stored events, newest first
GET /api/v1/measurements?level=&sensor_type=&from=&to=  — stored measurements, newest first
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from levelrisk.api.deps import check_range, get_db, get_services, naive
from levelrisk.schemas.api import EventPage, MeasurementPage
from levelrisk.schemas.enums import SensorType
from levelrisk.services.bootstrap import Services

router = APIRouter(prefix="/api/v1", tags=["inputs"])


def _page_limit(services: Services, limit: Optional[int]) -> int:
    return min(limit or services.settings.history_page_size, services.settings.history_max_page_size)


@router.get("/events", response_model=EventPage)
async def list_events(
    level: Optional[str] = Query(default=None),
    from_: Optional[datetime] = Query(default=None, alias="from"),
    to: Optional[datetime] = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: Optional[int] = Query(default=None, ge=1),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    if level:
        services.registry.resolve(level)
    start, end = naive(from_), naive(to)
    check_range(start, end)
    limit = _page_limit(services, limit)
    events, total = await services.store.list_events(db, level, start, end, offset=offset, limit=limit)
    return EventPage(events=events, total=total, has_more=(offset + limit) < total)


@router.get("/measurements", response_model=MeasurementPage)
async def list_measurements(
    level: Optional[str] = Query(default=None),
    sensor_type: Optional[SensorType] = Query(default=None),
    from_: Optional[datetime] = Query(default=None, alias="from"),
    to: Optional[datetime] = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: Optional[int] = Query(default=None, ge=1),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    if level:
        services.registry.resolve(level)
    start, end = naive(from_), naive(to)
    check_range(start, end)
    limit = _page_limit(services, limit)
    measurements, total = await services.store.list_measurements(
        db,
        level,
        sensor_type.value if sensor_type else None,
        start,
        end,
        offset=offset,
        limit=limit,
    )
    return MeasurementPage(measurements=measurements, total=total, has_more=(offset + limit) < total)
