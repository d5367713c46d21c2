"""
Site API Endpoints.

GET /api/v1/site/summary — structure and site roll-up of the current states
"""

from fastapi import APIRouter, Depends

from levelrisk.api.deps import get_services
from levelrisk.schemas.risk import SiteSummary
from levelrisk.services.bootstrap import Services

router = APIRouter(prefix="/api/v1/site", tags=["site"])


@router.get("/summary", response_model=SiteSummary)
async def site_summary(services: Services = Depends(get_services)):
    """Worst level per structure and for the site, with open alert counts."""
    return await services.pipeline.site_summary()
