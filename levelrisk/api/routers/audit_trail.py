"""
Audit Trail API Endpoints.

GET /api/v1/audit-trail?level=&from=&to=  — paginated audit records
GET /api/v1/audit-trail/integrity?level=  — hash chain integrity check
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from levelrisk.api.deps import check_range, get_db, get_services, naive
from levelrisk.schemas.api import AuditIntegrityResponse, AuditTrailResponse, ChainReport
from levelrisk.services.bootstrap import Services

router = APIRouter(prefix="/api/v1/audit-trail", tags=["audit"])


@router.get("", response_model=AuditTrailResponse)
async def list_audit_trail(
    level: Optional[str] = Query(default=None),
    from_: Optional[datetime] = Query(default=None, alias="from"),
    to: Optional[datetime] = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    """Audit records ordered by evaluation instant; superseded records stay visible."""
    if level:
        services.registry.resolve(level)
    start, end = naive(from_), naive(to)
    check_range(start, end)
    records, total = await services.audit.audit_trail_for(db, level, start, end, offset=offset, limit=limit)
    return AuditTrailResponse(records=records, total=total, has_more=(offset + limit) < total)


@router.get("/integrity", response_model=AuditIntegrityResponse)
async def check_integrity(
    level: Optional[str] = Query(default=None),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    """Verify the audit hash chains are unbroken."""
    if level:
        services.registry.resolve(level)
    locations = [level] if level else services.registry.locations()
    reports = [ChainReport(**await services.audit.verify_chain(db, loc)) for loc in locations]
    breaks = sum(len(r.breaks) for r in reports)
    return AuditIntegrityResponse(
        chain_intact=breaks == 0,
        breaks_found=breaks,
        locations=reports,
    )
