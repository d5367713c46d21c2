"""
Rule model.

A rule is declarative: a condition tree, a category, an impact and a set of
named thresholds. Threshold values are never hard-coded in evaluation code;
conditions read them from the rule (after site overrides are applied).

Threshold lookup for a condition with ``id`` set tries ``"<id>_<name>"``
first and falls back to ``"<name>"``, so compound rules can carry distinct
thresholds per child.
"""

import hashlib
import json
from enum import IntEnum, StrEnum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from levelrisk.schemas.enums import ActivityStatus, EventType, SensorType


class RuleCategory(StrEnum):
    LOCKOUT = "lockout"
    TIME_CRITICAL = "time_critical"
    ENVIRONMENTAL = "environmental"
    BEHAVIORAL = "behavioral"


# Evaluation order; lockout always first.
CATEGORY_ORDER = (
    RuleCategory.LOCKOUT,
    RuleCategory.TIME_CRITICAL,
    RuleCategory.ENVIRONMENTAL,
    RuleCategory.BEHAVIORAL,
)


class ImpactType(StrEnum):
    ADDITIVE = "additive"
    FORCE = "force"


class ConditionKind(StrEnum):
    EVENT_PRESENT = "event_present"
    EVENT_COUNT = "event_count"
    EVENT_SCHEDULED = "event_scheduled"
    EVENT_UNCLEARED = "event_uncleared"
    EVENT_UNPERMITTED = "event_unpermitted"
    ACTIVITY_STATUS = "activity_status"
    MEASUREMENT_THRESHOLD = "measurement_threshold"
    COMPOUND = "compound"


class RuleOperator(StrEnum):
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"


class Logic(StrEnum):
    AND = "and"
    OR = "or"


class MatchState(IntEnum):
    """Tri-state condition result. Ordering matters: AND takes min, OR takes max."""
    CLEAR = 0
    UNCERTAIN = 1
    MATCHED = 2


FORCE_IMPACT = 100

_REQUIRED_THRESHOLDS: Dict[ConditionKind, tuple] = {
    ConditionKind.EVENT_PRESENT: ("window_minutes",),
    ConditionKind.EVENT_COUNT: ("window_minutes", "count"),
    ConditionKind.EVENT_SCHEDULED: ("window_minutes", "lead_minutes"),
    ConditionKind.EVENT_UNCLEARED: ("window_minutes",),
    ConditionKind.EVENT_UNPERMITTED: ("window_minutes",),
    ConditionKind.ACTIVITY_STATUS: ("window_minutes",),
    ConditionKind.MEASUREMENT_THRESHOLD: ("window_minutes", "threshold"),
    ConditionKind.COMPOUND: (),
}


class Condition(BaseModel):
    """One node of a rule's condition tree."""

    model_config = ConfigDict(frozen=True)

    kind: ConditionKind
    id: Optional[str] = None
    event_type: Optional[EventType] = None
    companion_event: Optional[EventType] = None
    sensor_type: Optional[SensorType] = None
    activity_contains: Optional[str] = None
    activity_status: Optional[ActivityStatus] = None
    operator: Optional[RuleOperator] = None
    logic: Optional[Logic] = None
    conditions: List["Condition"] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_shape(self) -> "Condition":
        kind = self.kind
        if kind == ConditionKind.COMPOUND:
            if self.logic is None or len(self.conditions) < 2:
                raise ValueError("compound condition needs logic and at least two children")
            return self
        if self.conditions:
            raise ValueError(f"{kind} condition cannot have children")
        if kind == ConditionKind.MEASUREMENT_THRESHOLD:
            if self.sensor_type is None or self.operator is None:
                raise ValueError("measurement_threshold needs sensor_type and operator")
            return self
        if kind == ConditionKind.ACTIVITY_STATUS:
            # companion_event, when set, is the event the activity requires
            return self
        if self.activity_contains is not None or self.activity_status is not None:
            raise ValueError(f"{kind} condition cannot filter activities")
        if self.event_type is None:
            raise ValueError(f"{kind} condition needs event_type")
        if kind in (ConditionKind.EVENT_UNCLEARED, ConditionKind.EVENT_UNPERMITTED):
            if self.companion_event is None:
                raise ValueError(f"{kind} condition needs companion_event")
        return self

    def threshold_key(self, name: str, thresholds: Dict[str, float]) -> str:
        if self.id and f"{self.id}_{name}" in thresholds:
            return f"{self.id}_{name}"
        return name

    def threshold(self, name: str, thresholds: Dict[str, float]) -> float:
        return thresholds[self.threshold_key(name, thresholds)]

    def missing_thresholds(self, thresholds: Dict[str, float]) -> List[str]:
        missing = [
            self.threshold_key(name, thresholds)
            for name in _REQUIRED_THRESHOLDS[self.kind]
            if self.threshold_key(name, thresholds) not in thresholds
        ]
        for child in self.conditions:
            missing.extend(child.missing_thresholds(thresholds))
        return missing

    def lookback_minutes(self, thresholds: Dict[str, float]) -> float:
        """How far back this condition reads inputs."""
        if self.kind == ConditionKind.COMPOUND:
            return max(c.lookback_minutes(thresholds) for c in self.conditions)
        window = self.threshold("window_minutes", thresholds)
        if self.kind == ConditionKind.EVENT_UNPERMITTED:
            # permits are looked up one window before the earliest trigger
            return 2 * window
        return window

    def sensors(self) -> List[SensorType]:
        if self.kind == ConditionKind.COMPOUND:
            return [s for c in self.conditions for s in c.sensors()]
        return [self.sensor_type] if self.sensor_type else []


Condition.model_rebuild()


class Rule(BaseModel):
    """A declarative risk rule."""

    model_config = ConfigDict(frozen=True)

    code: str = Field(..., min_length=1, max_length=64)
    name: str
    category: RuleCategory
    condition: Condition
    impact_type: ImpactType = ImpactType.ADDITIVE
    impact_value: int = Field(..., ge=1, le=100)
    enabled: bool = True
    thresholds: Dict[str, float] = Field(default_factory=dict)
    explanation: str = ""
    version: int = Field(default=1, ge=1)

    @field_validator("code")
    @classmethod
    def _upper_code(cls, v: str) -> str:
        return v.strip().upper()

    @model_validator(mode="after")
    def _check_impact(self) -> "Rule":
        if self.category == RuleCategory.LOCKOUT:
            if self.impact_type != ImpactType.FORCE or self.impact_value != FORCE_IMPACT:
                raise ValueError(f"lockout rule {self.code} must force {FORCE_IMPACT}")
        elif self.impact_type == ImpactType.FORCE:
            raise ValueError(f"only lockout rules may force a score ({self.code})")
        missing = self.condition.missing_thresholds(self.thresholds)
        if missing:
            raise ValueError(f"rule {self.code} missing thresholds: {sorted(set(missing))}")
        return self

    @property
    def lookback_minutes(self) -> float:
        return self.condition.lookback_minutes(self.thresholds)

    def definition_hash(self) -> str:
        """Content hash of everything except the version number."""
        payload = self.model_dump(mode="json", exclude={"version"})
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode()).hexdigest()

    def with_overrides(self, overrides: Dict[str, Any]) -> "Rule":
        """Apply a site override block ({"enabled": bool, "thresholds": {...}})."""
        if not overrides:
            return self
        thresholds = dict(self.thresholds)
        thresholds.update(overrides.get("thresholds", {}))
        return self.model_copy(
            update={
                "thresholds": thresholds,
                "enabled": overrides.get("enabled", self.enabled),
            }
        )
