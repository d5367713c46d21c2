"""
Risk Pipeline — ingest, evaluate, audit, alert.

Flow per input (inside the location's lane, one transaction):
0. Claim the location's lane row, serializing writers across processes
1. Append to the temporal store (duplicates stop here)
2. Recompute every effective audit record whose window the input falls
   into, plus, for a reading, records that reported its sensor missing;
   each new record supersedes the old one (reason ``late_input``)
3. Evaluate the location live, write the audit record, update alerts
4. Commit; nothing is published without its audit record

Ticks and snapshots evaluate all locations in parallel, bounded by
``evaluation_concurrency``, one session per location.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Union

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from levelrisk.alerting.lifecycle import AlertLifecycleManager
from levelrisk.alerting.schemas import Alert
from levelrisk.clock import Clock, utcnow
from levelrisk.engine.aggregator import Aggregator
from levelrisk.engine.catalog import RuleCatalog
from levelrisk.engine.risk_engine import RiskAssessment
from levelrisk.pipeline.evaluation import LocationEvaluator
from levelrisk.pipeline.temporal_store import TemporalStore
from levelrisk.pipeline.traceability import AuditLog
from levelrisk.schemas.enums import SensorType
from levelrisk.schemas.inputs import Event, Measurement
from levelrisk.schemas.risk import AuditReason, AuditRecord, RiskState, SiteSummary, Snapshot
from levelrisk.services.lanes import LocationLanes
from levelrisk.services.site_registry import LocationRegistry

logger = structlog.get_logger(__name__)


@dataclass
class IngestResult:
    item: Union[Event, Measurement]
    duplicate: bool = False
    out_of_order: bool = False
    state: Optional[RiskState] = None
    recomputed: int = 0
    alerts: List[Alert] = field(default_factory=list)


@dataclass
class Publication:
    """A published state with its audit record and any alert changes."""
    assessment: RiskAssessment
    record: AuditRecord
    alerts: List[Alert] = field(default_factory=list)

    @property
    def state(self) -> RiskState:
        return self.assessment.state


class RiskPipeline:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: LocationRegistry,
        catalog: RuleCatalog,
        store: TemporalStore,
        audit: AuditLog,
        evaluator: LocationEvaluator,
        alerts: AlertLifecycleManager,
        clock: Clock = utcnow,
        concurrency: int = 8,
        lanes: Optional[LocationLanes] = None,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.catalog = catalog
        self.store = store
        self.audit = audit
        self.evaluator = evaluator
        self.alerts = alerts
        self._clock = clock
        self.concurrency = max(1, concurrency)
        self.lanes = lanes or LocationLanes()
        self.aggregator = Aggregator()

    # ── Ingestion ──────────────────────────────────────────────────────

    async def ingest_event(self, event: Event) -> IngestResult:
        return await self._ingest(event)

    async def ingest_measurement(self, measurement: Measurement) -> IngestResult:
        return await self._ingest(measurement)

    async def _ingest(self, item: Union[Event, Measurement]) -> IngestResult:
        # Reject before taking the lane; rejected input never reaches the store.
        self.store.validate(item)

        async with self.lanes.lane(item.location):
            async with self.session_factory() as session:
                try:
                    await self.lanes.claim(session, item.location)
                    appended = await self.store.append(session, item)
                    if appended.duplicate:
                        state = await self.audit.latest_state(session, item.location)
                        await session.commit()
                        return IngestResult(item=appended.item, duplicate=True, state=state)

                    as_of = max(self._clock(), item.timestamp)
                    gap_sensor = item.sensor_type if isinstance(item, Measurement) else None
                    recomputed, superseded_live = await self._recompute_affected(
                        session, item.location, item.timestamp, as_of, gap_sensor
                    )
                    published = await self._publish(
                        session,
                        item.location,
                        as_of,
                        AuditReason.LIVE,
                        supersedes_id=superseded_live,
                    )
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise

        logger.info(
            "input_processed",
            input_id=item.id,
            location=item.location,
            out_of_order=appended.out_of_order,
            recomputed=recomputed,
            score=published.state.score,
            alerts_changed=len(published.alerts),
        )
        return IngestResult(
            item=appended.item,
            out_of_order=appended.out_of_order,
            state=published.state,
            recomputed=recomputed,
            alerts=published.alerts,
        )

    async def _recompute_affected(
        self,
        session: AsyncSession,
        location: str,
        ts: datetime,
        live_as_of: datetime,
        gap_sensor: Optional[SensorType] = None,
    ) -> tuple[int, Optional[str]]:
        """
        Re-evaluate every effective record whose window contains ``ts``.

        For a reading (``gap_sensor``), records that reported that sensor
        missing with no earlier reading are re-evaluated too, and superseded
        only when the new reading changes them.

        A record at exactly ``live_as_of`` is not recomputed here; the live
        record written next supersedes it. Returns (recomputed, that record's id).
        """
        candidates = [(record, False) for record in await self.audit.affected_by(session, location, ts)]
        if gap_sensor is not None:
            candidates += [
                (record, True)
                for record in await self.audit.gap_records_after(session, location, ts, gap_sensor)
            ]
            candidates.sort(key=lambda pair: pair[0].as_of)

        recomputed = 0
        superseded_live: Optional[str] = None
        for record, only_if_changed in candidates:
            if record.as_of == live_as_of:
                superseded_live = record.id
                continue
            assessment = await self.evaluator.assess_at(session, location, record.as_of)
            if only_if_changed and assessment.state.fingerprint() == record.fingerprint:
                continue
            await self.audit.record(
                session,
                assessment.state,
                assessment.inputs,
                AuditReason.LATE_INPUT,
                supersedes_id=record.id,
            )
            recomputed += 1
            if assessment.state.fingerprint() != record.fingerprint:
                logger.info(
                    "risk_state_revised",
                    location=location,
                    as_of=record.as_of.isoformat(),
                    previous_score=record.risk_state.score,
                    score=assessment.state.score,
                    superseded=record.id,
                )
        return recomputed, superseded_live

    async def _publish(
        self,
        session: AsyncSession,
        location: str,
        as_of: datetime,
        reason: AuditReason,
        supersedes_id: Optional[str] = None,
    ) -> Publication:
        """Evaluate, audit and apply alerts; caller owns the transaction."""
        assessment = await self.evaluator.assess_at(session, location, as_of)
        if supersedes_id is None:
            existing = await self.audit.effective_record(session, location, as_of)
            supersedes_id = existing.id if existing else None
        record = await self.audit.record(
            session,
            assessment.state,
            assessment.inputs,
            reason,
            supersedes_id=supersedes_id,
        )
        changed = await self.alerts.on_state(session, assessment, audit_id=record.id)
        return Publication(assessment=assessment, record=record, alerts=changed)

    # ── Ticks & snapshots ──────────────────────────────────────────────

    async def evaluate_location(
        self,
        location: str,
        as_of: Optional[datetime] = None,
        reason: AuditReason = AuditReason.TICK,
    ) -> Publication:
        """Publish a fresh state for one location (time moves windows even without input)."""
        self.registry.resolve(location)
        as_of = as_of or self._clock()
        async with self.lanes.lane(location):
            async with self.session_factory() as session:
                try:
                    await self.lanes.claim(session, location)
                    published = await self._publish(session, location, as_of, reason)
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise
        return published

    async def recompute_all(
        self,
        as_of: Optional[datetime] = None,
        reason: AuditReason = AuditReason.TICK,
    ) -> List[RiskState]:
        """Evaluate every location at ``as_of``; results follow layout order."""
        as_of = as_of or self._clock()
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _one(location: str) -> RiskState:
            async with semaphore:
                return (await self.evaluate_location(location, as_of, reason)).state

        states = await asyncio.gather(*(_one(loc) for loc in self.registry.locations()))
        logger.info("all_locations_evaluated", as_of=as_of.isoformat(), locations=len(states), reason=reason.value)
        return list(states)

    async def take_snapshot(self, as_of: Optional[datetime] = None) -> Snapshot:
        """
        Evaluate all locations at one instant and persist the set.

        Ingestion high-water marks are read before evaluating, so any input
        that races the snapshot is treated as late by replay.
        """
        as_of = as_of or self._clock()
        async with self.session_factory() as session:
            event_seq, measurement_seq = await self.store.high_water(session)

        states = await self.recompute_all(as_of, reason=AuditReason.SNAPSHOT)
        snapshot = Snapshot(
            id=str(uuid.uuid4()),
            timestamp=as_of,
            rule_catalog_version=self.catalog.catalog_at(as_of).version,
            states=states,
            event_seq=event_seq,
            measurement_seq=measurement_seq,
            created_at=self._clock(),
        )
        async with self.session_factory() as session:
            snapshot = await self.store.write_snapshot(session, snapshot)
            await session.commit()
        return snapshot

    async def purge_expired(self) -> Dict[str, int]:
        async with self.session_factory() as session:
            purged = await self.store.purge_expired(session, self._clock())
            await session.commit()
        return purged

    # ── Current view ───────────────────────────────────────────────────

    async def current_states(self) -> List[RiskState]:
        """
        Latest state of every location.

        A never-scored location is published now, like a tick: the state is
        audited and may raise alerts, so the view never shows an unaudited state.
        """
        locations = self.registry.locations()
        async with self.session_factory() as session:
            states = await self.audit.current_states(session, locations)
        for location in locations:
            if location not in states:
                states[location] = (await self.evaluate_location(location)).state
        return [states[loc] for loc in locations]

    async def current_snapshot(self) -> Snapshot:
        """Unpersisted snapshot of the current states."""
        states = await self.current_states()
        now = self._clock()
        return Snapshot(
            id="current",
            timestamp=max((s.computed_at for s in states), default=now),
            rule_catalog_version=self.catalog.catalog_at(now).version,
            states=states,
            created_at=now,
        )

    async def site_summary(self) -> SiteSummary:
        states = await self.current_states()
        async with self.session_factory() as session:
            open_counts = await self.alerts.repository.open_counts(session)
        return self.aggregator.site_summary(
            self.registry.site,
            states,
            open_alerts_by_location=open_counts,
            computed_at=self._clock(),
        )

    # ── Operator actions ───────────────────────────────────────────────

    async def acknowledge_alert(self, alert_id: str, comment: Optional[str] = None) -> Alert:
        return await self._alert_action(alert_id, comment, self.alerts.acknowledge)

    async def resolve_alert(self, alert_id: str, comment: Optional[str] = None) -> Alert:
        return await self._alert_action(alert_id, comment, self.alerts.resolve)

    async def _alert_action(self, alert_id, comment, action) -> Alert:
        async with self.session_factory() as session:
            location = (await self.alerts.repository.get(session, alert_id)).location
        async with self.lanes.lane(location):
            async with self.session_factory() as session:
                try:
                    await self.lanes.claim(session, location)
                    alert = await action(session, alert_id, comment)
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise
        return alert
