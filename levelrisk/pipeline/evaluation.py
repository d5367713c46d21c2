"""
Location evaluation — the one scoring path.

Loads the stored inputs of a location for the window the catalog in effect
at ``as_of`` needs, and runs them through the RiskEngine. Live scoring,
late-input recomputation, snapshots and historical replay all call
``LocationEvaluator.assess_at``.

Before choosing a catalog version the evaluator lets ``catalog_sync`` pull
any version another process activated, so a long-running scheduler never
scores with a stale catalog.
"""

from datetime import datetime
from typing import Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from levelrisk.engine.catalog import RuleCatalog
from levelrisk.engine.conditions import EvaluationContext
from levelrisk.engine.risk_engine import RiskAssessment, RiskEngine
from levelrisk.pipeline.temporal_store import TemporalStore
from levelrisk.services.site_registry import LocationRegistry

CatalogSync = Callable[[AsyncSession], Awaitable[bool]]


class LocationEvaluator:
    def __init__(
        self,
        store: TemporalStore,
        catalog: RuleCatalog,
        registry: LocationRegistry,
        engine: Optional[RiskEngine] = None,
        catalog_sync: Optional[CatalogSync] = None,
    ):
        self.store = store
        self.catalog = catalog
        self.registry = registry
        self.engine = engine or RiskEngine()
        self.catalog_sync = catalog_sync

    def lookback_minutes(self, as_of: datetime) -> float:
        return self.catalog.catalog_at(as_of).lookback_minutes(self.registry.site_id)

    async def sync_catalog(self, session: AsyncSession) -> None:
        if self.catalog_sync is not None:
            await self.catalog_sync(session)

    async def assess_at(self, session: AsyncSession, location: str, as_of: datetime) -> RiskAssessment:
        await self.sync_catalog(session)
        installed = self.registry.installed_sensors(location)
        version = self.catalog.catalog_at(as_of)
        lookback = version.lookback_minutes(self.registry.site_id)
        window = await self.store.query_since(session, location, as_of, lookback, sensors=installed)
        ctx = EvaluationContext(
            location=location,
            as_of=as_of,
            window_start=window.window_start,
            events=window.events,
            measurements=window.measurements,
            installed_sensors=installed,
            last_readings=window.last_readings,
        )
        return self.engine.assess(ctx, version, self.registry.site_id)
