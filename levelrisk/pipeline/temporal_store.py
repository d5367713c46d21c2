"""
Temporal Store — append-only, time-indexed Events, Measurements and Snapshots.

Guarantees:
- Validation happens before anything is written; rejected input leaves no trace
- Re-sending an input with the same id and payload is a no-op (duplicate)
- Re-using an id with a different payload is rejected
- Late (out-of-order) input is accepted and flagged so callers can recompute
- Range reads are ordered by (timestamp, id), independent of arrival order
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple, Union

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from levelrisk.clock import Clock, utcnow
from levelrisk.db.models import EventRow, MeasurementRow, SnapshotRow
from levelrisk.errors import ValidationError
from levelrisk.schemas.enums import SensorType
from levelrisk.schemas.inputs import Event, Measurement
from levelrisk.schemas.risk import RiskState, Snapshot
from levelrisk.services.site_registry import LocationRegistry

logger = structlog.get_logger(__name__)

Input = Union[Event, Measurement]


@dataclass(frozen=True)
class AppendResult:
    item: Input
    duplicate: bool
    out_of_order: bool
    seq: int


@dataclass(frozen=True)
class StoreWindow:
    """
    Inputs of one location inside ``[window_start, as_of]``.

    ``last_readings`` holds, for each requested sensor with no reading inside
    the window, its newest reading before ``window_start``; data gaps report it.
    """
    location: str
    window_start: datetime
    as_of: datetime
    events: Tuple[Event, ...] = ()
    measurements: Tuple[Measurement, ...] = ()
    last_readings: Tuple[Measurement, ...] = ()


@dataclass(frozen=True)
class RetentionPolicy:
    events_days: int = 180
    measurements_days: int = 180
    snapshots_days: int = 90


# ── Row conversion ─────────────────────────────────────────────────────────


def event_from_row(row: EventRow) -> Event:
    return Event(
        id=row.id,
        timestamp=row.timestamp,
        location=row.location,
        type=row.event_type,
        severity=row.severity,
        metadata=row.event_metadata or {},
        activity=row.activity,
    )


def measurement_from_row(row: MeasurementRow) -> Measurement:
    return Measurement(
        id=row.id,
        timestamp=row.timestamp,
        location=row.location,
        sensor_type=row.sensor_type,
        value=row.value,
        unit=row.unit,
        activity=row.activity,
    )


def snapshot_from_row(row: SnapshotRow) -> Snapshot:
    return Snapshot(
        id=row.id,
        timestamp=row.timestamp,
        rule_catalog_version=row.rule_catalog_version,
        states=[RiskState.model_validate(s) for s in row.states],
        event_seq=row.event_seq,
        measurement_seq=row.measurement_seq,
        created_at=row.created_at,
    )


class TemporalStore:
    """Persistence for inputs and snapshots. All methods take the caller's session."""

    def __init__(
        self,
        registry: LocationRegistry,
        clock: Clock = utcnow,
        max_future_skew: timedelta = timedelta(seconds=120),
        retention: Optional[RetentionPolicy] = None,
    ):
        self.registry = registry
        self._clock = clock
        self.max_future_skew = max_future_skew
        self.retention = retention or RetentionPolicy()

    # ── Validation ─────────────────────────────────────────────────────

    def validate(self, item: Input, now: Optional[datetime] = None) -> None:
        """Reject input the store must never hold. Raises ValidationError."""
        now = now or self._clock()
        self.registry.resolve(item.location)
        self.registry.check_activity(item.location, item.activity)

        if item.timestamp > now + self.max_future_skew:
            raise ValidationError(
                f"timestamp is more than {int(self.max_future_skew.total_seconds())}s in the future",
                field="timestamp",
                value=item.timestamp.isoformat(),
            )

        days = self.retention.events_days if isinstance(item, Event) else self.retention.measurements_days
        if item.timestamp < now - timedelta(days=days):
            raise ValidationError(
                f"timestamp is outside the {days}-day retention window",
                field="timestamp",
                value=item.timestamp.isoformat(),
            )

    # ── Append ─────────────────────────────────────────────────────────

    async def append(self, session: AsyncSession, item: Input) -> AppendResult:
        now = self._clock()
        self.validate(item, now)

        is_event = isinstance(item, Event)
        model = EventRow if is_event else MeasurementRow
        existing = (
            await session.execute(select(model).where(model.id == item.id))
        ).scalar_one_or_none()
        if existing is not None:
            stored = event_from_row(existing) if is_event else measurement_from_row(existing)
            if not stored.payload_equals(item):
                raise ValidationError(
                    f"id {item.id} was already ingested with a different payload",
                    field="id",
                    value=item.id,
                )
            logger.info("input_duplicate_ignored", input_id=item.id, location=item.location)
            return AppendResult(item=stored, duplicate=True, out_of_order=False, seq=existing.seq)

        latest = await self.latest_timestamp(session, item.location)
        out_of_order = latest is not None and item.timestamp < latest

        if is_event:
            row = EventRow(
                id=item.id,
                timestamp=item.timestamp,
                location=item.location,
                event_type=item.type.value,
                severity=item.severity.value,
                event_metadata=dict(item.metadata),
                activity=item.activity,
                ingested_at=now,
            )
        else:
            row = MeasurementRow(
                id=item.id,
                timestamp=item.timestamp,
                location=item.location,
                sensor_type=item.sensor_type.value,
                value=item.value,
                unit=item.unit,
                activity=item.activity,
                ingested_at=now,
            )
        session.add(row)
        await session.flush()

        logger.info(
            "input_appended",
            input_id=item.id,
            kind="event" if is_event else "measurement",
            location=item.location,
            timestamp=item.timestamp.isoformat(),
            out_of_order=out_of_order,
            seq=row.seq,
        )
        return AppendResult(item=item, duplicate=False, out_of_order=out_of_order, seq=row.seq)

    async def latest_timestamp(self, session: AsyncSession, location: str) -> Optional[datetime]:
        event_max = (
            await session.execute(select(func.max(EventRow.timestamp)).where(EventRow.location == location))
        ).scalar()
        measurement_max = (
            await session.execute(
                select(func.max(MeasurementRow.timestamp)).where(MeasurementRow.location == location)
            )
        ).scalar()
        candidates = [t for t in (event_max, measurement_max) if t is not None]
        return max(candidates) if candidates else None

    # ── Window reads ───────────────────────────────────────────────────

    async def query_since(
        self,
        session: AsyncSession,
        location: str,
        as_of: datetime,
        window_minutes: float,
        sensors: Iterable[SensorType] = (),
    ) -> StoreWindow:
        """Inputs in ``[as_of - window, as_of]`` ordered by (timestamp, id)."""
        window_start = as_of - timedelta(minutes=window_minutes)

        event_rows = (
            await session.execute(
                select(EventRow)
                .where(
                    EventRow.location == location,
                    EventRow.timestamp >= window_start,
                    EventRow.timestamp <= as_of,
                )
                .order_by(EventRow.timestamp, EventRow.id)
            )
        ).scalars().all()

        measurement_rows = (
            await session.execute(
                select(MeasurementRow)
                .where(
                    MeasurementRow.location == location,
                    MeasurementRow.timestamp >= window_start,
                    MeasurementRow.timestamp <= as_of,
                )
                .order_by(MeasurementRow.timestamp, MeasurementRow.id)
            )
        ).scalars().all()
        measurements = tuple(measurement_from_row(r) for r in measurement_rows)

        seen = {m.sensor_type for m in measurements}
        last_readings = []
        for sensor in sorted(set(sensors) - seen):
            row = (
                await session.execute(
                    select(MeasurementRow)
                    .where(
                        MeasurementRow.location == location,
                        MeasurementRow.sensor_type == sensor.value,
                        MeasurementRow.timestamp < window_start,
                    )
                    .order_by(MeasurementRow.timestamp.desc(), MeasurementRow.id.desc())
                    .limit(1)
                )
            ).scalar_one_or_none()
            if row is not None:
                last_readings.append(measurement_from_row(row))

        return StoreWindow(
            location=location,
            window_start=window_start,
            as_of=as_of,
            events=tuple(event_from_row(r) for r in event_rows),
            measurements=measurements,
            last_readings=tuple(last_readings),
        )

    async def input_timestamps(
        self,
        session: AsyncSession,
        location: str,
        start: datetime,
        end: datetime,
    ) -> List[datetime]:
        """Distinct input instants in ``(start, end]``, ascending."""
        event_ts = (
            await session.execute(
                select(EventRow.timestamp).where(
                    EventRow.location == location, EventRow.timestamp > start, EventRow.timestamp <= end
                )
            )
        ).scalars().all()
        measurement_ts = (
            await session.execute(
                select(MeasurementRow.timestamp).where(
                    MeasurementRow.location == location,
                    MeasurementRow.timestamp > start,
                    MeasurementRow.timestamp <= end,
                )
            )
        ).scalars().all()
        return sorted(set(event_ts) | set(measurement_ts))

    # ── Listing (paginated, newest first) ──────────────────────────────

    async def list_events(
        self,
        session: AsyncSession,
        location: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> Tuple[List[Event], int]:
        filters = []
        if location:
            filters.append(EventRow.location == location)
        if start:
            filters.append(EventRow.timestamp >= start)
        if end:
            filters.append(EventRow.timestamp <= end)

        total = (await session.execute(select(func.count(EventRow.seq)).where(*filters))).scalar() or 0
        rows = (
            await session.execute(
                select(EventRow)
                .where(*filters)
                .order_by(EventRow.timestamp.desc(), EventRow.id)
                .offset(offset)
                .limit(limit)
            )
        ).scalars().all()
        return [event_from_row(r) for r in rows], total

    async def list_measurements(
        self,
        session: AsyncSession,
        location: Optional[str] = None,
        sensor_type: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> Tuple[List[Measurement], int]:
        filters = []
        if location:
            filters.append(MeasurementRow.location == location)
        if sensor_type:
            filters.append(MeasurementRow.sensor_type == sensor_type)
        if start:
            filters.append(MeasurementRow.timestamp >= start)
        if end:
            filters.append(MeasurementRow.timestamp <= end)

        total = (await session.execute(select(func.count(MeasurementRow.seq)).where(*filters))).scalar() or 0
        rows = (
            await session.execute(
                select(MeasurementRow)
                .where(*filters)
                .order_by(MeasurementRow.timestamp.desc(), MeasurementRow.id)
                .offset(offset)
                .limit(limit)
            )
        ).scalars().all()
        return [measurement_from_row(r) for r in rows], total

    # ── Snapshots ──────────────────────────────────────────────────────

    async def high_water(self, session: AsyncSession) -> Tuple[int, int]:
        """Highest ingestion sequence numbers (events, measurements)."""
        event_seq = (await session.execute(select(func.max(EventRow.seq)))).scalar() or 0
        measurement_seq = (await session.execute(select(func.max(MeasurementRow.seq)))).scalar() or 0
        return event_seq, measurement_seq

    async def write_snapshot(self, session: AsyncSession, snapshot: Snapshot) -> Snapshot:
        row = SnapshotRow(
            id=snapshot.id,
            timestamp=snapshot.timestamp,
            rule_catalog_version=snapshot.rule_catalog_version,
            states=[s.model_dump(mode="json") for s in snapshot.states],
            event_seq=snapshot.event_seq,
            measurement_seq=snapshot.measurement_seq,
            created_at=snapshot.created_at or self._clock(),
        )
        session.add(row)
        await session.flush()
        logger.info(
            "snapshot_written",
            snapshot_id=snapshot.id,
            timestamp=snapshot.timestamp.isoformat(),
            locations=len(snapshot.states),
        )
        return snapshot_from_row(row)

    async def nearest_snapshot(self, session: AsyncSession, ts: datetime) -> Optional[Snapshot]:
        """Latest snapshot taken at or before ``ts``."""
        row = (
            await session.execute(
                select(SnapshotRow)
                .where(SnapshotRow.timestamp <= ts)
                .order_by(SnapshotRow.timestamp.desc(), SnapshotRow.created_at.desc())
                .limit(1)
            )
        ).scalar_one_or_none()
        return snapshot_from_row(row) if row else None

    async def snapshots_in_range(
        self,
        session: AsyncSession,
        start: datetime,
        end: datetime,
        offset: int = 0,
        limit: int = 50,
    ) -> Tuple[List[Snapshot], int]:
        filters = [SnapshotRow.timestamp >= start, SnapshotRow.timestamp <= end]
        total = (await session.execute(select(func.count(SnapshotRow.id)).where(*filters))).scalar() or 0
        rows = (
            await session.execute(
                select(SnapshotRow)
                .where(*filters)
                .order_by(SnapshotRow.timestamp, SnapshotRow.created_at)
                .offset(offset)
                .limit(limit)
            )
        ).scalars().all()
        return [snapshot_from_row(r) for r in rows], total

    async def has_late_inputs(
        self,
        session: AsyncSession,
        snapshot: Snapshot,
        location: str,
        window_start: datetime,
    ) -> bool:
        """True when input for the snapshot's window arrived after the snapshot was written."""
        late_event = (
            await session.execute(
                select(EventRow.seq)
                .where(
                    EventRow.location == location,
                    EventRow.seq > snapshot.event_seq,
                    EventRow.timestamp >= window_start,
                    EventRow.timestamp <= snapshot.timestamp,
                )
                .limit(1)
            )
        ).scalar_one_or_none()
        if late_event is not None:
            return True
        late_measurement = (
            await session.execute(
                select(MeasurementRow.seq)
                .where(
                    MeasurementRow.location == location,
                    MeasurementRow.seq > snapshot.measurement_seq,
                    MeasurementRow.timestamp >= window_start,
                    MeasurementRow.timestamp <= snapshot.timestamp,
                )
                .limit(1)
            )
        ).scalar_one_or_none()
        return late_measurement is not None

    # ── Retention ──────────────────────────────────────────────────────

    def retention_cutoff(self, now: Optional[datetime] = None) -> datetime:
        """Inputs older than this may already have been purged."""
        now = now or self._clock()
        return now - timedelta(days=min(self.retention.events_days, self.retention.measurements_days))

    async def missing_inputs(
        self,
        session: AsyncSession,
        event_ids: Iterable[str],
        measurement_ids: Iterable[str],
    ) -> int:
        """How many of the given input ids the store no longer holds."""
        event_ids, measurement_ids = set(event_ids), set(measurement_ids)
        found = 0
        if event_ids:
            found += (
                await session.execute(select(func.count(EventRow.seq)).where(EventRow.id.in_(event_ids)))
            ).scalar() or 0
        if measurement_ids:
            found += (
                await session.execute(
                    select(func.count(MeasurementRow.seq)).where(MeasurementRow.id.in_(measurement_ids))
                )
            ).scalar() or 0
        return len(event_ids) + len(measurement_ids) - found

    async def purge_expired(self, session: AsyncSession, now: Optional[datetime] = None) -> Dict[str, int]:
        """Delete inputs and snapshots older than their retention windows. Alerts are kept."""
        now = now or self._clock()
        cutoffs = {
            "events": (EventRow, now - timedelta(days=self.retention.events_days)),
            "measurements": (MeasurementRow, now - timedelta(days=self.retention.measurements_days)),
            "snapshots": (SnapshotRow, now - timedelta(days=self.retention.snapshots_days)),
        }
        purged: Dict[str, int] = {}
        for name, (model, cutoff) in cutoffs.items():
            result = await session.execute(delete(model).where(model.timestamp < cutoff))
            purged[name] = result.rowcount or 0
        logger.info("retention_purge_completed", now=now.isoformat(), **purged)
        return purged
