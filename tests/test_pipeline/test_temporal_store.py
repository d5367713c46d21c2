"""Tests for the temporal store.

Tests:
- Validation (unknown location, future skew, retention)
- Duplicate and conflicting ids
- Out-of-order detection and ordered reads
- Activities on lifecycle events
- Last reading of sensors silent in the window
- Listing with pagination
- Snapshots and retention purge
"""

from datetime import timedelta

import pytest

from levelrisk.errors import ValidationError
from levelrisk.schemas.enums import ActivityStatus, EventType, SensorType
from levelrisk.schemas.inputs import Event
from levelrisk.schemas.risk import Snapshot

from tests.conftest import T0


@pytest.fixture
def store(services):
    return services.store


# ============================================================================
# VALIDATION
# ============================================================================


class TestValidation:
    """Input rejected before it is written."""

    @pytest.mark.asyncio
    async def test_unknown_location_rejected(self, store, db, make_event):
        with pytest.raises(ValidationError) as exc_info:
            await store.append(db, make_event(EventType.GAS_ALERT, T0, location="SHAFT:9"))
        assert exc_info.value.field == "location"

    @pytest.mark.asyncio
    async def test_future_timestamp_beyond_skew_rejected(self, store, db, make_event):
        with pytest.raises(ValidationError, match="future"):
            await store.append(db, make_event(EventType.GAS_ALERT, T0 + timedelta(minutes=3)))

    @pytest.mark.asyncio
    async def test_small_future_skew_accepted(self, store, db, make_event):
        result = await store.append(db, make_event(EventType.GAS_ALERT, T0 + timedelta(seconds=90)))
        assert result.duplicate is False

    @pytest.mark.asyncio
    async def test_outside_retention_rejected(self, store, db, make_reading):
        with pytest.raises(ValidationError, match="retention"):
            await store.append(db, make_reading(SensorType.CO, 10.0, T0 - timedelta(days=181)))

    def test_malformed_location_rejected_by_schema(self):
        with pytest.raises(ValueError):
            Event(timestamp=T0, location="PIT-3", type=EventType.GAS_ALERT)

    def test_scheduled_for_must_be_timestamp(self):
        with pytest.raises(ValueError):
            Event(timestamp=T0, location="PIT:3", type=EventType.BLAST_SCHEDULED, metadata={"scheduled_for": "soon"})

    def test_aware_timestamps_normalized(self):
        event = Event(timestamp="2026-03-02T10:00:00+02:00", location="PIT:03", type=EventType.GAS_ALERT)
        assert event.timestamp == T0
        assert event.timestamp.tzinfo is None
        assert event.location == "PIT:3"

    def test_lifecycle_event_needs_activity(self):
        with pytest.raises(ValueError, match="activity"):
            Event(timestamp=T0, location="PIT:3", type=EventType.ACTIVITY_STARTED)

    @pytest.mark.asyncio
    async def test_undeclared_activity_rejected(self, store, db, make_event):
        with pytest.raises(ValidationError) as exc_info:
            await store.append(db, make_event(EventType.ACTIVITY_STARTED, T0, activity="Hot Work - Crusher Liner Change"))
        assert exc_info.value.field == "activity"

    @pytest.mark.asyncio
    async def test_declared_activity_stored(self, store, db, make_event):
        await store.append(db, make_event(EventType.ACTIVITY_STARTED, T0, activity="Road Grading"))
        window = await store.query_since(db, "PIT:3", T0, 10)
        assert window.events[0].activity == "Road Grading"
        assert window.events[0].activity_status == ActivityStatus.ACTIVE


# ============================================================================
# APPEND
# ============================================================================


class TestAppend:
    """Idempotency and ordering flags."""

    @pytest.mark.asyncio
    async def test_same_id_same_payload_is_duplicate(self, store, db, make_event):
        event = make_event(EventType.GAS_ALERT, T0 - timedelta(minutes=1), id="evt-dup")
        first = await store.append(db, event)
        second = await store.append(db, event)
        assert first.duplicate is False
        assert second.duplicate is True
        assert second.seq == first.seq

        events, total = await store.list_events(db)
        assert total == 1

    @pytest.mark.asyncio
    async def test_same_id_different_payload_rejected(self, store, db, make_event):
        await store.append(db, make_event(EventType.GAS_ALERT, T0 - timedelta(minutes=1), id="evt-x"))
        with pytest.raises(ValidationError, match="different payload"):
            await store.append(db, make_event(EventType.GAS_ALERT, T0 - timedelta(minutes=2), id="evt-x"))

    @pytest.mark.asyncio
    async def test_late_input_flagged(self, store, db, make_event):
        await store.append(db, make_event(EventType.GAS_ALERT, T0 - timedelta(minutes=1)))
        late = await store.append(db, make_event(EventType.GAS_ALERT, T0 - timedelta(minutes=5)))
        assert late.out_of_order is True

    @pytest.mark.asyncio
    async def test_out_of_order_is_per_location(self, store, db, make_event):
        await store.append(db, make_event(EventType.GAS_ALERT, T0 - timedelta(minutes=1), location="PIT:1"))
        other = await store.append(db, make_event(EventType.GAS_ALERT, T0 - timedelta(minutes=5), location="PIT:3"))
        assert other.out_of_order is False


# ============================================================================
# READS
# ============================================================================


class TestReads:
    """Window reads and listings."""

    @pytest.mark.asyncio
    async def test_window_read_ordered_by_timestamp_then_id(self, store, db, make_event, make_reading):
        await store.append(db, make_event(EventType.GAS_ALERT, T0 - timedelta(minutes=2), id="b"))
        await store.append(db, make_event(EventType.GAS_ALERT, T0 - timedelta(minutes=8), id="c"))
        await store.append(db, make_event(EventType.GAS_ALERT, T0 - timedelta(minutes=2), id="a"))
        await store.append(db, make_event(EventType.GAS_ALERT, T0 - timedelta(minutes=30), id="old"))
        await store.append(db, make_reading(SensorType.CO, 12.0, T0 - timedelta(minutes=1), location="PIT:3"))

        window = await store.query_since(db, "PIT:3", T0, 10)
        assert [e.id for e in window.events] == ["c", "a", "b"]
        assert len(window.measurements) == 1
        assert window.window_start == T0 - timedelta(minutes=10)

    @pytest.mark.asyncio
    async def test_window_read_carries_last_reading_of_silent_sensors(self, store, db, make_reading):
        await store.append(db, make_reading(SensorType.CO, 8.0, T0 - timedelta(hours=6), id="older"))
        await store.append(db, make_reading(SensorType.CO, 9.0, T0 - timedelta(hours=5), id="newest"))
        await store.append(db, make_reading(SensorType.CH4, 0.1, T0 - timedelta(hours=5), unit="%"))

        window = await store.query_since(db, "PIT:4", T0, 10, sensors=[SensorType.CO])
        assert window.measurements == ()
        assert [m.id for m in window.last_readings] == ["newest"]

        plain = await store.query_since(db, "PIT:4", T0, 10)
        assert plain.last_readings == ()

    @pytest.mark.asyncio
    async def test_sensor_reporting_in_window_has_no_last_reading(self, store, db, make_reading):
        await store.append(db, make_reading(SensorType.CO, 8.0, T0 - timedelta(hours=6)))
        await store.append(db, make_reading(SensorType.CO, 9.0, T0 - timedelta(minutes=2)))

        window = await store.query_since(db, "PIT:4", T0, 10, sensors=[SensorType.CO])
        assert len(window.measurements) == 1
        assert window.last_readings == ()

    @pytest.mark.asyncio
    async def test_list_events_paginated_newest_first(self, store, db, make_event):
        for minutes in range(5):
            await store.append(db, make_event(EventType.PROXIMITY_ALARM, T0 - timedelta(minutes=minutes)))

        page, total = await store.list_events(db, location="PIT:3", offset=0, limit=2)
        assert total == 5
        assert [e.timestamp for e in page] == [T0, T0 - timedelta(minutes=1)]

        page, _ = await store.list_events(db, location="PIT:3", offset=4, limit=2)
        assert [e.timestamp for e in page] == [T0 - timedelta(minutes=4)]

    @pytest.mark.asyncio
    async def test_list_measurements_filters_sensor(self, store, db, make_reading):
        await store.append(db, make_reading(SensorType.CO, 12.0, T0, location="PIT:2"))
        await store.append(db, make_reading(SensorType.CH4, 0.2, T0, location="PIT:2", unit="%"))
        readings, total = await store.list_measurements(db, location="PIT:2", sensor_type="CH4")
        assert total == 1
        assert readings[0].sensor_type == SensorType.CH4

    @pytest.mark.asyncio
    async def test_input_timestamps_distinct_and_sorted(self, store, db, make_event, make_reading):
        await store.append(db, make_event(EventType.GAS_ALERT, T0 - timedelta(minutes=2), location="PIT:4"))
        await store.append(db, make_reading(SensorType.CO, 1.0, T0 - timedelta(minutes=2)))
        await store.append(db, make_reading(SensorType.CO, 1.0, T0 - timedelta(minutes=7)))
        instants = await store.input_timestamps(db, "PIT:4", T0 - timedelta(minutes=10), T0)
        assert instants == [T0 - timedelta(minutes=7), T0 - timedelta(minutes=2)]


# ============================================================================
# SNAPSHOTS & RETENTION
# ============================================================================


class TestSnapshotsAndRetention:
    """Snapshot storage and purge."""

    @pytest.mark.asyncio
    async def test_nearest_snapshot(self, store, db):
        for minutes in (0, 15, 30):
            await store.write_snapshot(
                db, Snapshot(id=f"snap-{minutes}", timestamp=T0 + timedelta(minutes=minutes), rule_catalog_version=1)
            )
        nearest = await store.nearest_snapshot(db, T0 + timedelta(minutes=20))
        assert nearest.id == "snap-15"
        assert await store.nearest_snapshot(db, T0 - timedelta(minutes=1)) is None

        page, total = await store.snapshots_in_range(db, T0, T0 + timedelta(minutes=15))
        assert total == 2
        assert [s.id for s in page] == ["snap-0", "snap-15"]

    @pytest.mark.asyncio
    async def test_high_water_tracks_sequences(self, store, db, make_event):
        assert await store.high_water(db) == (0, 0)
        await store.append(db, make_event(EventType.GAS_ALERT, T0))
        event_seq, measurement_seq = await store.high_water(db)
        assert event_seq >= 1
        assert measurement_seq == 0

    @pytest.mark.asyncio
    async def test_purge_expired(self, store, db, make_event, clock):
        await store.append(db, make_event(EventType.GAS_ALERT, T0 - timedelta(days=100)))
        await store.append(db, make_event(EventType.GAS_ALERT, T0))
        purged = await store.purge_expired(db, now=T0 + timedelta(days=90))
        assert purged["events"] == 1
        _, total = await store.list_events(db)
        assert total == 1
