"""
Condition evaluation.

Evaluates a rule's condition tree against the inputs of one location at one
instant. Results are tri-state (see ``MatchState``):

- MATCHED:   the condition holds on the available data
- UNCERTAIN: a measurement condition had no reading inside its window;
             scored as if it held (missing data never lowers risk)
- CLEAR:     the condition does not hold

Each outcome carries the facts the explanation template binds to and the ids
of the inputs it relied on.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog

from levelrisk.clock import minutes_between
from levelrisk.engine.rules import (
    Condition,
    ConditionKind,
    Logic,
    MatchState,
    RuleOperator,
)
from levelrisk.errors import DataGapError
from levelrisk.schemas.enums import ActivityStatus, SensorType
from levelrisk.schemas.inputs import Event, Measurement

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class DataGap:
    """A sensor with no reading inside a rule window."""
    sensor_type: SensorType
    since: Optional[datetime]


@dataclass(frozen=True)
class ConditionOutcome:
    state: MatchState
    facts: Dict[str, Any] = field(default_factory=dict)
    cited: Tuple[str, ...] = ()
    gaps: Tuple[DataGap, ...] = ()


@dataclass(frozen=True)
class EvaluationContext:
    """Everything a rule may look at for one location at one instant."""
    location: str
    as_of: datetime
    window_start: datetime
    events: Tuple[Event, ...]
    measurements: Tuple[Measurement, ...]
    installed_sensors: frozenset = frozenset()
    # newest pre-window reading of installed sensors silent inside the window
    last_readings: Tuple[Measurement, ...] = ()

    @property
    def input_span_start(self) -> datetime:
        """Earliest input instant this context holds."""
        return min([self.window_start] + [m.timestamp for m in self.last_readings])

    def events_of(self, event_type, since: datetime) -> List[Event]:
        return [
            e for e in self.events
            if e.type == event_type and since <= e.timestamp <= self.as_of
        ]

    def readings_of(self, sensor_type, since: Optional[datetime] = None) -> List[Measurement]:
        lower = since or datetime.min
        return [
            m for m in self.measurements
            if m.sensor_type == sensor_type and lower <= m.timestamp <= self.as_of
        ]

    def last_reading_at(self, sensor_type) -> Optional[datetime]:
        """Newest reading of the sensor at or before ``as_of``, inside the window or not."""
        times = [m.timestamp for m in self.readings_of(sensor_type)]
        times += [m.timestamp for m in self.last_readings if m.sensor_type == sensor_type]
        return max(times, default=None)

    def activities(self, since: datetime) -> Dict[str, Event]:
        """Latest lifecycle event per activity in ``[since, as_of]``."""
        latest: Dict[str, Event] = {}
        for event in sorted(self.events, key=lambda e: (e.timestamp, e.id)):
            if event.activity_status is not None and since <= event.timestamp <= self.as_of:
                latest[event.activity] = event
        return latest


def _label(value: Any) -> str:
    return str(value).replace("_", " ")


def _breaches(operator: RuleOperator, value: float, threshold: float) -> bool:
    if operator == RuleOperator.GT:
        return value > threshold
    elif operator == RuleOperator.GTE:
        return value >= threshold
    elif operator == RuleOperator.LT:
        return value < threshold
    elif operator == RuleOperator.LTE:
        return value <= threshold
    return False


_DIRECTION = {
    RuleOperator.GT: "above",
    RuleOperator.GTE: "at or above",
    RuleOperator.LT: "below",
    RuleOperator.LTE: "at or below",
}


def _ids(items: Iterable) -> Tuple[str, ...]:
    return tuple(sorted(item.id for item in items))


class ConditionEvaluator:
    """
    Stateless evaluator for condition trees.

    Thresholds always come from the rule; this class holds no numbers of its own.
    """

    def evaluate(
        self,
        condition: Condition,
        thresholds: Dict[str, float],
        ctx: EvaluationContext,
    ) -> ConditionOutcome:
        kind = condition.kind
        if kind == ConditionKind.COMPOUND:
            return self._compound(condition, thresholds, ctx)
        elif kind == ConditionKind.EVENT_PRESENT:
            return self._event_present(condition, thresholds, ctx)
        elif kind == ConditionKind.EVENT_COUNT:
            return self._event_count(condition, thresholds, ctx)
        elif kind == ConditionKind.EVENT_SCHEDULED:
            return self._event_scheduled(condition, thresholds, ctx)
        elif kind == ConditionKind.EVENT_UNCLEARED:
            return self._event_uncleared(condition, thresholds, ctx)
        elif kind == ConditionKind.EVENT_UNPERMITTED:
            return self._event_unpermitted(condition, thresholds, ctx)
        elif kind == ConditionKind.ACTIVITY_STATUS:
            return self._activity_status(condition, thresholds, ctx)
        elif kind == ConditionKind.MEASUREMENT_THRESHOLD:
            return self._measurement_threshold(condition, thresholds, ctx)
        raise ValueError(f"unsupported condition kind: {kind}")

    # ── Event conditions ─────────────────────────────────────────────────

    def _since(self, condition: Condition, thresholds: Dict[str, float], ctx: EvaluationContext) -> datetime:
        window = condition.threshold("window_minutes", thresholds)
        return ctx.as_of - timedelta(minutes=window)

    def _event_present(self, condition, thresholds, ctx) -> ConditionOutcome:
        matches = ctx.events_of(condition.event_type, self._since(condition, thresholds, ctx))
        if not matches:
            return ConditionOutcome(MatchState.CLEAR)
        latest = max(matches, key=lambda e: (e.timestamp, e.id))
        return ConditionOutcome(
            MatchState.MATCHED,
            facts={
                "event": _label(condition.event_type),
                "count": len(matches),
                "latest_at": latest.timestamp,
                "minutes_ago": minutes_between(latest.timestamp, ctx.as_of),
                "window_minutes": condition.threshold("window_minutes", thresholds),
            },
            cited=_ids(matches),
        )

    def _event_count(self, condition, thresholds, ctx) -> ConditionOutcome:
        matches = ctx.events_of(condition.event_type, self._since(condition, thresholds, ctx))
        required = condition.threshold("count", thresholds)
        if not matches or len(matches) < required:
            return ConditionOutcome(MatchState.CLEAR, facts={"count": len(matches)})
        latest = max(matches, key=lambda e: (e.timestamp, e.id))
        return ConditionOutcome(
            MatchState.MATCHED,
            facts={
                "event": _label(condition.event_type),
                "count": len(matches),
                "required": required,
                "latest_at": latest.timestamp,
                "window_minutes": condition.threshold("window_minutes", thresholds),
            },
            cited=_ids(matches),
        )

    def _event_scheduled(self, condition, thresholds, ctx) -> ConditionOutcome:
        """Announcement of a future event whose scheduled time is within the lead time."""
        lead = timedelta(minutes=condition.threshold("lead_minutes", thresholds))
        notices = ctx.events_of(condition.event_type, self._since(condition, thresholds, ctx))
        upcoming: List[Tuple[datetime, Event]] = []
        for notice in notices:
            scheduled = notice.scheduled_for
            if scheduled is None:
                # No planned time: treat the notice itself as imminent for the lead period.
                if ctx.as_of - notice.timestamp <= lead:
                    upcoming.append((notice.timestamp, notice))
            elif timedelta(0) <= scheduled - ctx.as_of <= lead:
                upcoming.append((scheduled, notice))
        if not upcoming:
            return ConditionOutcome(MatchState.CLEAR)
        scheduled, notice = min(upcoming, key=lambda pair: (pair[0], pair[1].id))
        return ConditionOutcome(
            MatchState.MATCHED,
            facts={
                "event": _label(condition.event_type),
                "scheduled_for": notice.scheduled_for,
                "minutes_until": max(0, minutes_between(ctx.as_of, scheduled)),
                "announced_at": notice.timestamp,
            },
            cited=(notice.id,),
        )

    def _event_uncleared(self, condition, thresholds, ctx) -> ConditionOutcome:
        """Trigger event not yet followed by its clearing event."""
        since = self._since(condition, thresholds, ctx)
        triggers = ctx.events_of(condition.event_type, since)
        if not triggers:
            return ConditionOutcome(MatchState.CLEAR)
        latest = max(triggers, key=lambda e: (e.timestamp, e.id))
        clearances = [
            c for c in ctx.events_of(condition.companion_event, since)
            if c.timestamp > latest.timestamp
        ]
        if clearances:
            return ConditionOutcome(MatchState.CLEAR, facts={"cleared_at": min(c.timestamp for c in clearances)})
        return ConditionOutcome(
            MatchState.MATCHED,
            facts={
                "event": _label(condition.event_type),
                "companion": _label(condition.companion_event),
                "occurred_at": latest.timestamp,
                "minutes_since": minutes_between(latest.timestamp, ctx.as_of),
            },
            cited=(latest.id,),
        )

    def _event_unpermitted(self, condition, thresholds, ctx) -> ConditionOutcome:
        """Trigger event with no permitting event in the window before it."""
        window = timedelta(minutes=condition.threshold("window_minutes", thresholds))
        triggers = ctx.events_of(condition.event_type, ctx.as_of - window)
        permits = ctx.events_of(condition.companion_event, ctx.as_of - 2 * window)
        unpermitted = [
            t for t in triggers
            if not any(t.timestamp - window <= p.timestamp <= t.timestamp for p in permits)
        ]
        if not unpermitted:
            return ConditionOutcome(MatchState.CLEAR)
        latest = max(unpermitted, key=lambda e: (e.timestamp, e.id))
        return ConditionOutcome(
            MatchState.MATCHED,
            facts={
                "event": _label(condition.event_type),
                "companion": _label(condition.companion_event),
                "occurred_at": latest.timestamp,
                "minutes_since": minutes_between(latest.timestamp, ctx.as_of),
            },
            cited=_ids(unpermitted),
        )

    # ── Activity conditions ───────────────────────────────────────────────

    def _activity_status(self, condition, thresholds, ctx) -> ConditionOutcome:
        """
        Activity in a given status (default active), optionally without the event it requires.

        An activity's status is set by its latest lifecycle event inside the
        window. A required event counts when it names the same activity or
        names none.
        """
        since = self._since(condition, thresholds, ctx)
        wanted = condition.activity_status or ActivityStatus.ACTIVE
        pattern = (condition.activity_contains or "").lower()
        matching = [
            (name, event)
            for name, event in sorted(ctx.activities(since).items())
            if event.activity_status == wanted and pattern in name.lower()
        ]
        if condition.companion_event is not None:
            required = ctx.events_of(condition.companion_event, since)
            matching = [
                (name, event)
                for name, event in matching
                if not any(r.activity in (None, name) for r in required)
            ]
        if not matching:
            return ConditionOutcome(MatchState.CLEAR)

        name, event = min(matching, key=lambda pair: (pair[1].timestamp, pair[0]))
        facts = {
            "activity": name,
            "status": str(wanted),
            "status_since": event.timestamp,
            "minutes_in_status": minutes_between(event.timestamp, ctx.as_of),
            "count": len(matching),
        }
        if condition.companion_event is not None:
            facts["required"] = _label(condition.companion_event)
        return ConditionOutcome(
            MatchState.MATCHED,
            facts=facts,
            cited=_ids(e for _, e in matching),
        )

    # ── Measurement conditions ────────────────────────────────────────────

    def _readings_in_window(self, condition, thresholds, ctx) -> List[Measurement]:
        readings = ctx.readings_of(condition.sensor_type, self._since(condition, thresholds, ctx))
        if not readings:
            raise DataGapError(ctx.location, condition.sensor_type, ctx.last_reading_at(condition.sensor_type))
        return readings

    def _measurement_threshold(self, condition, thresholds, ctx) -> ConditionOutcome:
        sensor = condition.sensor_type
        if sensor not in ctx.installed_sensors:
            return ConditionOutcome(MatchState.CLEAR)

        threshold = condition.threshold("threshold", thresholds)
        window = condition.threshold("window_minutes", thresholds)
        try:
            readings = self._readings_in_window(condition, thresholds, ctx)
        except DataGapError as gap:
            logger.debug(
                "condition_data_gap",
                location=ctx.location,
                sensor_type=str(sensor),
                since=gap.since.isoformat() if gap.since else None,
            )
            return ConditionOutcome(
                MatchState.UNCERTAIN,
                facts={"sensor": str(sensor), "since": gap.since, "window_minutes": window},
                gaps=(DataGap(sensor_type=sensor, since=gap.since),),
            )

        latest = max(readings, key=lambda m: (m.timestamp, m.id))
        if not all(_breaches(condition.operator, m.value, threshold) for m in readings):
            return ConditionOutcome(MatchState.CLEAR, facts={"latest_value": latest.value})

        # Start of the breaching run, looking back past the window where data allows.
        history = sorted(ctx.readings_of(sensor), key=lambda m: (m.timestamp, m.id))
        run_start = latest.timestamp
        for reading in reversed(history):
            if not _breaches(condition.operator, reading.value, threshold):
                break
            run_start = reading.timestamp

        return ConditionOutcome(
            MatchState.MATCHED,
            facts={
                "sensor": str(sensor),
                "direction": _DIRECTION[condition.operator],
                "threshold": threshold,
                "unit": latest.unit,
                "latest_value": latest.value,
                "latest_at": latest.timestamp,
                "duration_minutes": minutes_between(run_start, ctx.as_of),
                "window_minutes": window,
            },
            cited=_ids(readings),
        )

    # ── Compound ──────────────────────────────────────────────────────────

    def _compound(self, condition, thresholds, ctx) -> ConditionOutcome:
        outcomes = [self.evaluate(child, thresholds, ctx) for child in condition.conditions]
        states = [o.state for o in outcomes]
        state = min(states) if condition.logic == Logic.AND else max(states)
        if state == MatchState.CLEAR:
            return ConditionOutcome(MatchState.CLEAR)

        facts: Dict[str, Any] = {}
        cited: set = set()
        gaps: List[DataGap] = []
        for child, outcome in zip(condition.conditions, outcomes):
            if outcome.state == MatchState.CLEAR:
                continue
            for key, value in outcome.facts.items():
                facts.setdefault(key, value)
                if child.id:
                    facts[f"{child.id}_{key}"] = value
            cited.update(outcome.cited)
            gaps.extend(g for g in outcome.gaps if g not in gaps)
        return ConditionOutcome(state, facts=facts, cited=tuple(sorted(cited)), gaps=tuple(gaps))
