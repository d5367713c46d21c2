"""
Level Risk API Endpoints.

GET /api/v1/levels/current                       — latest RiskState of every level
GET /api/v1/levels/history?from=&to=             — stored snapshots in range (paginated)
GET /api/v1/levels/history?at=                   — every level reconstructed at an instant
GET /api/v1/levels/{location}/state?at=          — one level, current or reconstructed
GET /api/v1/levels/{location}/timeline?from=&to= — how one level's score evolved
"""

from datetime import datetime
from typing import Optional, Union

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from levelrisk.api.deps import check_range, get_db, get_services, naive
from levelrisk.errors import NotFoundError, ValidationError
from levelrisk.schemas.api import ReconstructedStates, SnapshotPage, TimelineResponse
from levelrisk.schemas.risk import RiskState, Snapshot
from levelrisk.services.bootstrap import Services

router = APIRouter(prefix="/api/v1/levels", tags=["levels"])


@router.get("/current", response_model=Snapshot)
async def current_levels(services: Services = Depends(get_services)):
    """Current snapshot: the latest published RiskState of every level."""
    return await services.pipeline.current_snapshot()


@router.get("/history", response_model=Union[ReconstructedStates, SnapshotPage])
async def level_history(
    at: Optional[datetime] = Query(default=None),
    from_: Optional[datetime] = Query(default=None, alias="from"),
    to: Optional[datetime] = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: Optional[int] = Query(default=None, ge=1),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    """
    Either ``at`` (reconstruct every level at that instant) or ``from``/``to``
    (stored snapshots in range). Reconstruction stops at the configured
    deadline and reports the levels it did not reach.
    """
    if at is not None:
        result = await services.reconstructor.states_at(
            db, naive(at), timeout_seconds=services.settings.history_timeout_seconds
        )
        return ReconstructedStates(
            as_of=result.as_of,
            states=result.states,
            partial=result.partial,
            missing=result.missing,
        )

    if from_ is None or to is None:
        raise ValidationError("history needs either 'at' or both 'from' and 'to'", field="at")
    start, end = naive(from_), naive(to)
    check_range(start, end)
    limit = min(limit or services.settings.history_page_size, services.settings.history_max_page_size)
    snapshots, total = await services.store.snapshots_in_range(db, start, end, offset=offset, limit=limit)
    return SnapshotPage(snapshots=snapshots, total=total, has_more=(offset + limit) < total)


@router.get("/{location}/state", response_model=RiskState)
async def level_state(
    location: str,
    at: Optional[datetime] = Query(default=None),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    """Latest state, or the state reconstructed at ``at``."""
    services.registry.resolve(location)
    if at is not None:
        return await services.reconstructor.state_at(db, location, naive(at))
    state = await services.audit.latest_state(db, location)
    if state is None:
        raise NotFoundError("RiskState", location)
    return state


@router.get("/{location}/timeline", response_model=TimelineResponse)
async def level_timeline(
    location: str,
    from_: datetime = Query(..., alias="from"),
    to: datetime = Query(...),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    start, end = naive(from_), naive(to)
    check_range(start, end)
    states, partial = await services.reconstructor.timeline(
        db,
        location,
        start,
        end,
        timeout_seconds=services.settings.history_timeout_seconds,
        max_points=services.settings.history_max_page_size,
    )
    return TimelineResponse(location=location, start=start, end=end, states=states, partial=partial)
