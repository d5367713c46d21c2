"""
Error taxonomy for LevelRisk.

Every domain error carries a stable error code so the HTTP layer can map it
to a typed response without string matching.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Stable error codes surfaced to API clients."""
    UNKNOWN_ERROR = "unknown_error"
    VALIDATION_ERROR = "validation_error"
    INVALID_TRANSITION = "invalid_transition"
    DATA_GAP = "data_gap"
    REPLAY_DIVERGENCE = "replay_divergence"
    NOT_FOUND = "not_found"


class LevelRiskError(Exception):
    """
    Base exception for LevelRisk.

    All domain exceptions inherit from this class.
    """

    error_code: ErrorCode = ErrorCode.UNKNOWN_ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/API responses."""
        result: Dict[str, Any] = {
            "error": self.error_code.value,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result

    def __str__(self) -> str:
        return f"[{self.error_code.value}] {self.message}"


class ValidationError(LevelRiskError):
    """Malformed or out-of-policy input, rejected before it reaches the store."""

    error_code = ErrorCode.VALIDATION_ERROR

    def __init__(self, message: str, field: Optional[str] = None, value: Any = None):
        details: Dict[str, Any] = {}
        if field is not None:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)
        super().__init__(message, details)
        self.field = field
        self.value = value


class InvalidTransitionError(LevelRiskError):
    """Alert state change not permitted from the alert's current status."""

    error_code = ErrorCode.INVALID_TRANSITION

    def __init__(self, alert_id: str, from_status: str, to_status: str):
        super().__init__(
            f"Alert {alert_id} cannot move from {from_status} to {to_status}",
            {"alert_id": alert_id, "from": from_status, "to": to_status},
        )
        self.alert_id = alert_id
        self.from_status = from_status
        self.to_status = to_status


class DataGapError(LevelRiskError):
    """
    No reading for a sensor inside a rule window.

    Raised inside condition evaluation and folded into an uncertain match;
    it never escapes scoring.
    """

    error_code = ErrorCode.DATA_GAP

    def __init__(self, location: str, sensor_type: str, since: Optional[datetime] = None):
        super().__init__(
            f"No {sensor_type} reading for {location}",
            {
                "location": location,
                "sensor_type": sensor_type,
                "since": since.isoformat() if since else None,
            },
        )
        self.location = location
        self.sensor_type = sensor_type
        self.since = since


class ReplayDivergenceError(LevelRiskError):
    """Reconstructed state differs from the audited state under the same catalog version."""

    error_code = ErrorCode.REPLAY_DIVERGENCE

    def __init__(
        self,
        location: str,
        as_of: datetime,
        rule_catalog_version: int,
        stored_fingerprint: str,
        replayed_fingerprint: str,
    ):
        super().__init__(
            f"Replay of {location} at {as_of.isoformat()} diverged from audit record",
            {
                "location": location,
                "as_of": as_of.isoformat(),
                "rule_catalog_version": rule_catalog_version,
                "stored_fingerprint": stored_fingerprint,
                "replayed_fingerprint": replayed_fingerprint,
            },
        )
        self.location = location
        self.as_of = as_of


class NotFoundError(LevelRiskError):
    """Requested resource does not exist."""

    error_code = ErrorCode.NOT_FOUND

    def __init__(self, resource_type: str, resource_id: str):
        super().__init__(
            f"{resource_type} {resource_id} not found",
            {"resource_type": resource_type, "resource_id": resource_id},
        )
        self.resource_type = resource_type
        self.resource_id = resource_id
