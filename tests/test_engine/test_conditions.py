"""Tests for condition evaluation.

Tests:
- Event conditions (present, count, scheduled, uncleared, unpermitted)
- Activity status with an optional required event
- Measurement thresholds, including data gaps and uninstalled sensors
- Compound AND / OR over tri-state results
"""

from datetime import timedelta

import pytest

from levelrisk.engine.conditions import ConditionEvaluator
from levelrisk.engine.rules import Condition, ConditionKind, MatchState
from levelrisk.schemas.enums import ActivityStatus, EventType, SensorType

from tests.conftest import T0


@pytest.fixture
def evaluator():
    return ConditionEvaluator()


@pytest.fixture
def rule(catalog):
    return lambda code: catalog.current().rule(code)


def _check(evaluator, rule, ctx):
    return evaluator.evaluate(rule.condition, rule.thresholds, ctx)


# ============================================================================
# EVENT CONDITIONS
# ============================================================================


class TestEventUncleared:
    """Blast fired without re-entry clearance."""

    def test_blast_without_clearance_matches(self, evaluator, rule, make_event, context_for):
        blast = make_event(EventType.BLAST_FIRED, T0 - timedelta(minutes=10))
        outcome = _check(evaluator, rule("BLAST_NO_REENTRY"), context_for("PIT:3", T0, [blast]))
        assert outcome.state == MatchState.MATCHED
        assert outcome.cited == (blast.id,)
        assert outcome.facts["minutes_since"] == 10

    def test_clearance_after_blast_clears(self, evaluator, rule, make_event, context_for):
        events = [
            make_event(EventType.BLAST_FIRED, T0 - timedelta(minutes=40)),
            make_event(EventType.REENTRY_CLEARED, T0 - timedelta(minutes=5)),
        ]
        outcome = _check(evaluator, rule("BLAST_NO_REENTRY"), context_for("PIT:3", T0, events))
        assert outcome.state == MatchState.CLEAR

    def test_clearance_before_latest_blast_does_not_count(self, evaluator, rule, make_event, context_for):
        events = [
            make_event(EventType.BLAST_FIRED, T0 - timedelta(minutes=60)),
            make_event(EventType.REENTRY_CLEARED, T0 - timedelta(minutes=50)),
            make_event(EventType.BLAST_FIRED, T0 - timedelta(minutes=20)),
        ]
        outcome = _check(evaluator, rule("BLAST_NO_REENTRY"), context_for("PIT:3", T0, events))
        assert outcome.state == MatchState.MATCHED
        assert outcome.cited == (events[2].id,)

    def test_blast_outside_window_ignored(self, evaluator, rule, make_event, context_for):
        blast = make_event(EventType.BLAST_FIRED, T0 - timedelta(minutes=121))
        outcome = _check(evaluator, rule("BLAST_NO_REENTRY"), context_for("PIT:3", T0, [blast]))
        assert outcome.state == MatchState.CLEAR


class TestEventScheduled:
    """Announced blasts inside the lead time."""

    def test_blast_within_lead_matches(self, evaluator, rule, make_event, context_for):
        notice = make_event(EventType.BLAST_SCHEDULED, T0 - timedelta(minutes=5), scheduled_for=T0 + timedelta(minutes=25))
        outcome = _check(evaluator, rule("BLAST_SCHEDULED"), context_for("PIT:3", T0, [notice]))
        assert outcome.state == MatchState.MATCHED
        assert outcome.facts["minutes_until"] == 25
        assert outcome.facts["announced_at"] == notice.timestamp

    def test_blast_beyond_lead_clear(self, evaluator, rule, make_event, context_for):
        notice = make_event(EventType.BLAST_SCHEDULED, T0 - timedelta(minutes=5), scheduled_for=T0 + timedelta(minutes=45))
        outcome = _check(evaluator, rule("BLAST_SCHEDULED"), context_for("PIT:3", T0, [notice]))
        assert outcome.state == MatchState.CLEAR

    def test_blast_time_already_passed_clear(self, evaluator, rule, make_event, context_for):
        notice = make_event(EventType.BLAST_SCHEDULED, T0 - timedelta(hours=2), scheduled_for=T0 - timedelta(minutes=1))
        outcome = _check(evaluator, rule("BLAST_SCHEDULED"), context_for("PIT:3", T0, [notice]))
        assert outcome.state == MatchState.CLEAR

    def test_earliest_upcoming_blast_wins(self, evaluator, rule, make_event, context_for):
        events = [
            make_event(EventType.BLAST_SCHEDULED, T0 - timedelta(minutes=30), scheduled_for=T0 + timedelta(minutes=20)),
            make_event(EventType.BLAST_SCHEDULED, T0 - timedelta(minutes=10), scheduled_for=T0 + timedelta(minutes=10)),
        ]
        outcome = _check(evaluator, rule("BLAST_SCHEDULED"), context_for("PIT:3", T0, events))
        assert outcome.facts["minutes_until"] == 10
        assert outcome.cited == (events[1].id,)

    def test_notice_without_time_is_imminent_for_lead(self, evaluator, rule, make_event, context_for):
        recent = make_event(EventType.BLAST_SCHEDULED, T0 - timedelta(minutes=10))
        stale = make_event(EventType.BLAST_SCHEDULED, T0 - timedelta(minutes=40))
        assert _check(evaluator, rule("BLAST_SCHEDULED"), context_for("PIT:3", T0, [recent])).state == MatchState.MATCHED
        assert _check(evaluator, rule("BLAST_SCHEDULED"), context_for("PIT:3", T0, [stale])).state == MatchState.CLEAR


class TestEventCount:
    """Proximity alarm counts."""

    def test_below_count_clear(self, evaluator, rule, make_event, context_for):
        events = [make_event(EventType.PROXIMITY_ALARM, T0 - timedelta(minutes=m)) for m in (1, 5)]
        outcome = _check(evaluator, rule("PROXIMITY_ALARMS"), context_for("PIT:3", T0, events))
        assert outcome.state == MatchState.CLEAR
        assert outcome.facts["count"] == 2

    def test_at_count_matches(self, evaluator, rule, make_event, context_for):
        events = [make_event(EventType.PROXIMITY_ALARM, T0 - timedelta(minutes=m)) for m in (1, 5, 14)]
        outcome = _check(evaluator, rule("PROXIMITY_ALARMS"), context_for("PIT:3", T0, events))
        assert outcome.state == MatchState.MATCHED
        assert outcome.facts["count"] == 3
        assert len(outcome.cited) == 3


class TestEventUnpermitted:
    """Confined space entries without a permit."""

    def test_entry_without_permit_matches(self, evaluator, rule, make_event, context_for):
        entry = make_event(EventType.CONFINED_SPACE_ENTRY, T0 - timedelta(minutes=30))
        outcome = _check(evaluator, rule("CONFINED_NO_PERMIT"), context_for("PIT:3", T0, [entry]))
        assert outcome.state == MatchState.MATCHED

    def test_permit_before_entry_clears(self, evaluator, rule, make_event, context_for):
        events = [
            make_event(EventType.PERMIT_ISSUED, T0 - timedelta(minutes=300)),
            make_event(EventType.CONFINED_SPACE_ENTRY, T0 - timedelta(minutes=200)),
        ]
        outcome = _check(evaluator, rule("CONFINED_NO_PERMIT"), context_for("PIT:3", T0, events))
        assert outcome.state == MatchState.CLEAR

    def test_permit_after_entry_does_not_count(self, evaluator, rule, make_event, context_for):
        events = [
            make_event(EventType.CONFINED_SPACE_ENTRY, T0 - timedelta(minutes=30)),
            make_event(EventType.PERMIT_ISSUED, T0 - timedelta(minutes=10)),
        ]
        outcome = _check(evaluator, rule("CONFINED_NO_PERMIT"), context_for("PIT:3", T0, events))
        assert outcome.state == MatchState.MATCHED


# ============================================================================
# ACTIVITY CONDITIONS
# ============================================================================

HOT_WORK = "Hot Work - Barrier Repair"


class TestActivityStatus:
    """Hot work running without a permit."""

    def test_active_hot_work_without_permit_matches(self, evaluator, rule, make_event, context_for):
        planned = make_event(EventType.ACTIVITY_PLANNED, T0 - timedelta(minutes=120), activity=HOT_WORK)
        started = make_event(EventType.ACTIVITY_STARTED, T0 - timedelta(minutes=45), activity=HOT_WORK)
        outcome = _check(evaluator, rule("HOT_WORK_NO_PERMIT"), context_for("PIT:3", T0, [planned, started]))
        assert outcome.state == MatchState.MATCHED
        assert outcome.facts["activity"] == HOT_WORK
        assert outcome.facts["status"] == "active"
        assert outcome.facts["status_since"] == started.timestamp
        assert outcome.facts["minutes_in_status"] == 45
        assert outcome.facts["required"] == "permit issued"
        assert outcome.cited == (started.id,)

    @pytest.mark.parametrize("scope", [None, HOT_WORK])
    def test_permit_for_activity_or_level_clears(self, scope, evaluator, rule, make_event, context_for):
        events = [
            make_event(EventType.PERMIT_ISSUED, T0 - timedelta(minutes=60), activity=scope),
            make_event(EventType.ACTIVITY_STARTED, T0 - timedelta(minutes=45), activity=HOT_WORK),
        ]
        outcome = _check(evaluator, rule("HOT_WORK_NO_PERMIT"), context_for("PIT:3", T0, events))
        assert outcome.state == MatchState.CLEAR

    def test_permit_for_other_activity_does_not_count(self, evaluator, rule, make_event, context_for):
        events = [
            make_event(EventType.PERMIT_ISSUED, T0 - timedelta(minutes=60), activity="Road Grading"),
            make_event(EventType.ACTIVITY_STARTED, T0 - timedelta(minutes=45), activity=HOT_WORK),
        ]
        outcome = _check(evaluator, rule("HOT_WORK_NO_PERMIT"), context_for("PIT:3", T0, events))
        assert outcome.state == MatchState.MATCHED

    def test_completed_activity_clears(self, evaluator, rule, make_event, context_for):
        events = [
            make_event(EventType.ACTIVITY_STARTED, T0 - timedelta(minutes=45), activity=HOT_WORK),
            make_event(EventType.ACTIVITY_COMPLETED, T0 - timedelta(minutes=5), activity=HOT_WORK),
        ]
        outcome = _check(evaluator, rule("HOT_WORK_NO_PERMIT"), context_for("PIT:3", T0, events))
        assert outcome.state == MatchState.CLEAR

    def test_name_filter_is_case_insensitive_substring(self, evaluator, rule, make_event, context_for):
        grading = make_event(EventType.ACTIVITY_STARTED, T0 - timedelta(minutes=45), activity="Road Grading")
        outcome = _check(evaluator, rule("HOT_WORK_NO_PERMIT"), context_for("PIT:3", T0, [grading]))
        assert outcome.state == MatchState.CLEAR

    def test_status_filter(self, evaluator, make_event, context_for):
        condition = Condition(
            kind=ConditionKind.ACTIVITY_STATUS,
            activity_contains="GRADING",
            activity_status=ActivityStatus.PLANNED,
        )
        planned = make_event(EventType.ACTIVITY_PLANNED, T0 - timedelta(minutes=20), activity="Road Grading")
        outcome = evaluator.evaluate(condition, {"window_minutes": 60}, context_for("PIT:3", T0, [planned]))
        assert outcome.state == MatchState.MATCHED
        assert outcome.facts["status"] == "planned"
        assert "required" not in outcome.facts

        started = make_event(EventType.ACTIVITY_STARTED, T0 - timedelta(minutes=10), activity="Road Grading")
        outcome = evaluator.evaluate(condition, {"window_minutes": 60}, context_for("PIT:3", T0, [planned, started]))
        assert outcome.state == MatchState.CLEAR


# ============================================================================
# MEASUREMENT CONDITIONS
# ============================================================================


class TestMeasurementThreshold:
    """Sustained threshold breaches and data gaps."""

    def test_sustained_breach_matches_with_duration(self, evaluator, rule, make_reading, context_for):
        readings = [make_reading(SensorType.CO, 60.0, T0 - timedelta(minutes=m)) for m in range(12, -1, -1)]
        outcome = _check(evaluator, rule("CO_THRESHOLD"), context_for("PIT:4", T0, measurements=readings))
        assert outcome.state == MatchState.MATCHED
        assert outcome.facts["duration_minutes"] == 12
        assert outcome.facts["latest_value"] == 60.0
        assert outcome.facts["direction"] == "above"
        # Only readings inside the 10 minute window are cited.
        assert len(outcome.cited) == 11

    def test_one_reading_below_threshold_clears(self, evaluator, rule, make_reading, context_for):
        readings = [make_reading(SensorType.CO, 60.0, T0 - timedelta(minutes=m)) for m in range(9, 0, -1)]
        readings.append(make_reading(SensorType.CO, 40.0, T0))
        outcome = _check(evaluator, rule("CO_THRESHOLD"), context_for("PIT:4", T0, measurements=readings))
        assert outcome.state == MatchState.CLEAR

    def test_uninstalled_sensor_is_clear(self, evaluator, rule, context_for):
        # PIT:3 has no CO sensor, so a missing CO reading is not a gap.
        outcome = _check(evaluator, rule("CO_THRESHOLD"), context_for("PIT:3", T0))
        assert outcome.state == MatchState.CLEAR
        assert outcome.gaps == ()

    def test_no_reading_ever_is_uncertain(self, evaluator, rule, context_for):
        outcome = _check(evaluator, rule("CO_THRESHOLD"), context_for("PIT:4", T0))
        assert outcome.state == MatchState.UNCERTAIN
        assert outcome.gaps[0].sensor_type == SensorType.CO
        assert outcome.gaps[0].since is None

    def test_stale_reading_gap_reports_since(self, evaluator, rule, make_reading, context_for):
        stale = make_reading(SensorType.CO, 12.0, T0 - timedelta(minutes=45))
        outcome = _check(evaluator, rule("CO_THRESHOLD"), context_for("PIT:4", T0, measurements=[stale]))
        assert outcome.state == MatchState.UNCERTAIN
        assert outcome.gaps[0].since == stale.timestamp


# ============================================================================
# COMPOUND
# ============================================================================


class TestCompound:
    """AND takes the weakest child, OR the strongest."""

    @pytest.fixture
    def children(self):
        return [
            Condition.model_validate({"kind": "event_present", "id": "gas", "event_type": "gas_alert"}),
            Condition.model_validate(
                {"kind": "measurement_threshold", "id": "co", "sensor_type": "CO", "operator": "gt"}
            ),
        ]

    @pytest.fixture
    def thresholds(self):
        return {"window_minutes": 10, "threshold": 50}

    def _compound(self, logic, children):
        return Condition.model_validate(
            {"kind": "compound", "logic": logic, "conditions": [c.model_dump() for c in children]}
        )

    def test_and_with_gap_is_uncertain(self, evaluator, children, thresholds, make_event, context_for):
        gas = make_event(EventType.GAS_ALERT, T0 - timedelta(minutes=2), location="PIT:4")
        outcome = evaluator.evaluate(self._compound("and", children), thresholds, context_for("PIT:4", T0, [gas]))
        assert outcome.state == MatchState.UNCERTAIN
        assert outcome.cited == (gas.id,)
        assert outcome.facts["gas_count"] == 1
        assert [g.sensor_type for g in outcome.gaps] == [SensorType.CO]

    def test_and_with_clear_child_is_clear(self, evaluator, children, thresholds, context_for):
        outcome = evaluator.evaluate(self._compound("and", children), thresholds, context_for("PIT:4", T0))
        assert outcome.state == MatchState.CLEAR

    def test_or_takes_matched_child(self, evaluator, children, thresholds, make_event, make_reading, context_for):
        gas = make_event(EventType.GAS_ALERT, T0 - timedelta(minutes=2), location="PIT:4")
        reading = make_reading(SensorType.CO, 10.0, T0 - timedelta(minutes=1))
        ctx = context_for("PIT:4", T0, [gas], [reading])
        outcome = evaluator.evaluate(self._compound("or", children), thresholds, ctx)
        assert outcome.state == MatchState.MATCHED
        assert outcome.cited == (gas.id,)
