"""Enumerations shared by input and site layout schemas."""

from enum import StrEnum


class EventType(StrEnum):
    BLAST_SCHEDULED = "blast_scheduled"
    BLAST_FIRED = "blast_fired"
    REENTRY_CLEARED = "reentry_cleared"
    GAS_ALERT = "gas_alert"
    PERMIT_ISSUED = "permit_issued"
    CONFINED_SPACE_ENTRY = "confined_space_entry"
    PROXIMITY_ALARM = "proximity_alarm"
    SEISMIC_EVENT = "seismic_event"
    OVERSPEED_VIOLATION = "overspeed_violation"
    UNAUTHORIZED_ACCESS = "unauthorized_access"
    EXPOSURE_LIMIT_EXCEEDED = "exposure_limit_exceeded"
    ACTIVITY_PLANNED = "activity_planned"
    ACTIVITY_STARTED = "activity_started"
    ACTIVITY_COMPLETED = "activity_completed"


# Lifecycle events move a named activity between these statuses.
class ActivityStatus(StrEnum):
    PLANNED = "planned"
    ACTIVE = "active"
    COMPLETED = "completed"


ACTIVITY_TRANSITIONS = {
    EventType.ACTIVITY_PLANNED: ActivityStatus.PLANNED,
    EventType.ACTIVITY_STARTED: ActivityStatus.ACTIVE,
    EventType.ACTIVITY_COMPLETED: ActivityStatus.COMPLETED,
}


class Severity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SensorType(StrEnum):
    O2 = "O2"
    CO = "CO"
    NOX = "NOx"
    CH4 = "CH4"
    AIRFLOW = "airflow"
    SEISMIC = "seismic"
