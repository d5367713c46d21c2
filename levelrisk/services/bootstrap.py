"""
Service wiring.

Builds the component graph once per process from settings: site layout,
persisted rule catalog (seeded from the catalog file on first start), the
per-location lane rows, store, audit log, evaluator, reconstructor,
alerting and the pipeline. The API and the scheduler both start from
``build_services``.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from levelrisk.alerting.lifecycle import AlertLifecycleManager
from levelrisk.clock import Clock, utcnow
from levelrisk.config import Settings
from levelrisk.pipeline.evaluation import LocationEvaluator
from levelrisk.pipeline.replay import HistoricalReconstructor
from levelrisk.pipeline.temporal_store import RetentionPolicy, TemporalStore
from levelrisk.pipeline.traceability import AuditLog
from levelrisk.services.catalog_store import CatalogService
from levelrisk.services.lanes import LocationLanes
from levelrisk.services.risk_service import RiskPipeline
from levelrisk.services.site_registry import LocationRegistry

logger = structlog.get_logger(__name__)


@dataclass
class Services:
    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    clock: Clock
    registry: LocationRegistry
    catalog_service: CatalogService
    store: TemporalStore
    audit: AuditLog
    evaluator: LocationEvaluator
    reconstructor: HistoricalReconstructor
    alerts: AlertLifecycleManager
    pipeline: RiskPipeline

    @property
    def catalog(self):
        return self.catalog_service.catalog


async def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    clock: Clock = utcnow,
    registry: Optional[LocationRegistry] = None,
) -> Services:
    registry = registry or LocationRegistry.from_file(settings.site_config_path)
    audit = AuditLog(clock=clock)

    async with session_factory() as session:
        catalog = await CatalogService.load(session)
    catalog_service = CatalogService(session_factory, catalog, audit, clock=clock)
    await catalog_service.seed_from_file(settings.rule_catalog_path, settings.catalog_seed_effective_from)
    await LocationLanes.ensure(session_factory, registry.locations())

    store = TemporalStore(
        registry,
        clock=clock,
        max_future_skew=timedelta(seconds=settings.max_future_skew_seconds),
        retention=RetentionPolicy(
            events_days=settings.retention_events_days,
            measurements_days=settings.retention_measurements_days,
            snapshots_days=settings.retention_snapshots_days,
        ),
    )
    evaluator = LocationEvaluator(store, catalog, registry, catalog_sync=catalog_service.sync)
    alerts = AlertLifecycleManager(clock=clock)
    pipeline = RiskPipeline(
        session_factory,
        registry,
        catalog,
        store,
        audit,
        evaluator,
        alerts,
        clock=clock,
        concurrency=settings.evaluation_concurrency,
    )

    logger.info(
        "services_ready",
        site_id=registry.site_id,
        locations=len(registry.locations()),
        catalog_version=catalog.current().version if catalog.current() else None,
    )
    return Services(
        settings=settings,
        session_factory=session_factory,
        clock=clock,
        registry=registry,
        catalog_service=catalog_service,
        store=store,
        audit=audit,
        evaluator=evaluator,
        reconstructor=HistoricalReconstructor(evaluator, audit),
        alerts=alerts,
        pipeline=pipeline,
    )
