"""
Rule Catalog API Endpoints.

GET  /api/v1/rules/catalog?at=       — catalog version in effect now (or at ``at``)
GET  /api/v1/rules/catalog/versions  — every version with its validity interval
POST /api/v1/rules/catalog           — activate a new version
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from levelrisk.api.deps import get_db, get_services, naive
from levelrisk.engine.catalog import RuleCatalogVersion
from levelrisk.schemas.api import (
    CatalogActivateRequest,
    CatalogVersionResponse,
    CatalogVersionSummary,
)
from levelrisk.services.bootstrap import Services

router = APIRouter(prefix="/api/v1/rules", tags=["rules"])


def _summary(version: RuleCatalogVersion) -> dict:
    return {
        "version": version.version,
        "effective_from": version.effective_from,
        "effective_to": version.effective_to,
        "rule_count": len(version.rules),
        "content_hash": version.content_hash(),
    }


def _detail(version: RuleCatalogVersion) -> CatalogVersionResponse:
    return CatalogVersionResponse(
        **_summary(version),
        rules=[r.model_dump(mode="json") for r in version.rules],
        site_overrides=version.site_overrides,
    )


@router.get("/catalog", response_model=CatalogVersionResponse)
async def get_catalog(
    at: Optional[datetime] = Query(default=None),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
):
    await services.catalog_service.sync(db)
    ts = naive(at) if at is not None else services.clock()
    return _detail(services.catalog.catalog_at(ts))


@router.get("/catalog/versions", response_model=list[CatalogVersionSummary])
async def list_catalog_versions(
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
):
    await services.catalog_service.sync(db)
    return [CatalogVersionSummary(**_summary(v)) for v in services.catalog.versions]


@router.post("/catalog", response_model=CatalogVersionResponse, status_code=201)
async def activate_catalog(
    body: CatalogActivateRequest,
    services: Services = Depends(get_services),
):
    """
    Activate a complete rule set from ``effective_from`` (default: now).

    Rules whose definition did not change keep their version number. The
    instant must be later than every computation already audited, so no
    published state is ever re-scored under different rules.
    """
    version = await services.catalog_service.activate(
        {"rules": body.rules, "site_overrides": body.site_overrides},
        effective_from=naive(body.effective_from),
    )
    return _detail(version)
