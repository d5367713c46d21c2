"""
Alert Schemas.

An Alert is derived from an elevated RiskState and only ever changes status
through the lifecycle transitions.
"""

from datetime import datetime
from enum import StrEnum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ── Enums ──────────────────────────────────────────────────────────────


class AlertStatus(StrEnum):
    GENERATED = "generated"
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


OPEN_STATUSES = (AlertStatus.GENERATED, AlertStatus.ACTIVE, AlertStatus.ACKNOWLEDGED)


class ResolvedBy(StrEnum):
    SYSTEM = "system"           # cause no longer present in the current state
    OPERATOR = "operator"


# ── Models ─────────────────────────────────────────────────────────────


class Alert(BaseModel):
    """A lifecycle-tracked alert for one location."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    location: str
    status: AlertStatus
    risk_score_at_creation: int = Field(..., ge=0, le=100)
    band_at_creation: str
    cause: str
    cause_codes: List[str] = Field(default_factory=list)
    cause_key: str
    cause_fingerprint: str
    cause_inputs: List[str] = Field(default_factory=list)
    explanation: str
    rule_catalog_version: int
    audit_id: Optional[str] = None

    generated_at: datetime
    activated_at: Optional[datetime] = None
    acknowledged_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    comment: Optional[str] = None
    resolution_comment: Optional[str] = None
    resolved_by: Optional[ResolvedBy] = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES


class AlertActionRequest(BaseModel):
    """Body of acknowledge / resolve calls."""
    comment: Optional[str] = Field(default=None, max_length=2000)
