"""
Alert API Endpoints.

GET  /api/v1/alerts?status=&level=         — list alerts, newest first
POST /api/v1/alerts/{alert_id}/acknowledge — active → acknowledged
POST /api/v1/alerts/{alert_id}/resolve     — active/acknowledged → resolved (operator)
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from levelrisk.alerting.schemas import Alert, AlertActionRequest, AlertStatus
from levelrisk.api.deps import get_db, get_services
from levelrisk.schemas.api import AlertPage
from levelrisk.services.bootstrap import Services

router = APIRouter(prefix="/api/v1/alerts", tags=["alerts"])


@router.get("", response_model=AlertPage)
async def list_alerts(
    status: Optional[AlertStatus] = Query(default=None),
    level: Optional[str] = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    if level:
        services.registry.resolve(level)
    alerts, total = await services.alerts.repository.list(
        db, status=status, location=level, offset=offset, limit=limit
    )
    return AlertPage(alerts=alerts, total=total, has_more=(offset + limit) < total)


@router.post("/{alert_id}/acknowledge", response_model=Alert)
async def acknowledge_alert(
    alert_id: str,
    body: Optional[AlertActionRequest] = None,
    services: Services = Depends(get_services),
):
    """Acknowledge an active alert. Any other status → 409."""
    return await services.pipeline.acknowledge_alert(alert_id, comment=body.comment if body else None)


@router.post("/{alert_id}/resolve", response_model=Alert)
async def resolve_alert(
    alert_id: str,
    body: Optional[AlertActionRequest] = None,
    services: Services = Depends(get_services),
):
    """Operator resolution. The risk history is not changed."""
    return await services.pipeline.resolve_alert(alert_id, comment=body.comment if body else None)
