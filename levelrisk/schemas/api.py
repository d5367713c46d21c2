"""
API Schemas — request and response bodies of the HTTP contract.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from levelrisk.alerting.schemas import Alert
from levelrisk.schemas.inputs import Event, Measurement
from levelrisk.schemas.risk import AuditRecord, RiskState, Snapshot


# ── Levels ─────────────────────────────────────────────────────────────


class SnapshotPage(BaseModel):
    """Stored snapshots in a time range, oldest first."""
    snapshots: list[Snapshot] = Field(default_factory=list)
    total: int = 0
    has_more: bool = False


class ReconstructedStates(BaseModel):
    """All levels reconstructed at one instant."""
    as_of: datetime
    states: list[RiskState] = Field(default_factory=list)
    partial: bool = False
    missing: list[str] = Field(default_factory=list)


class TimelineResponse(BaseModel):
    """States of one level at each instant its inputs changed."""
    location: str
    start: datetime
    end: datetime
    states: list[RiskState] = Field(default_factory=list)
    partial: bool = False


# ── Inputs ─────────────────────────────────────────────────────────────


class EventPage(BaseModel):
    events: list[Event] = Field(default_factory=list)
    total: int = 0
    has_more: bool = False


class MeasurementPage(BaseModel):
    measurements: list[Measurement] = Field(default_factory=list)
    total: int = 0
    has_more: bool = False


class IngestResponse(BaseModel):
    input_id: str
    duplicate: bool = False
    out_of_order: bool = False
    recomputed: int = 0
    state: Optional[RiskState] = None
    alerts: list[Alert] = Field(default_factory=list)


# ── Alerts ─────────────────────────────────────────────────────────────


class AlertPage(BaseModel):
    alerts: list[Alert] = Field(default_factory=list)
    total: int = 0
    has_more: bool = False


# ── Audit ──────────────────────────────────────────────────────────────


class AuditTrailResponse(BaseModel):
    """Paginated audit records, superseded ones included."""
    records: list[AuditRecord] = Field(default_factory=list)
    total: int = 0
    has_more: bool = False


class ChainReport(BaseModel):
    location: str
    status: str
    total_entries: int
    chain_intact: bool
    breaks: list[dict[str, Any]] = Field(default_factory=list)


class AuditIntegrityResponse(BaseModel):
    """Hash chain integrity check result across the requested levels."""
    chain_intact: bool
    breaks_found: int = 0
    locations: list[ChainReport] = Field(default_factory=list)


# ── Rule catalog ───────────────────────────────────────────────────────


class CatalogVersionSummary(BaseModel):
    version: int
    effective_from: datetime
    effective_to: Optional[datetime] = None
    rule_count: int
    content_hash: str


class CatalogVersionResponse(CatalogVersionSummary):
    rules: list[dict[str, Any]] = Field(default_factory=list)
    site_overrides: dict[str, Any] = Field(default_factory=dict)


class CatalogActivateRequest(BaseModel):
    """A complete rule set; it replaces the current one from effective_from on."""
    rules: list[dict[str, Any]]
    site_overrides: dict[str, Any] = Field(default_factory=dict)
    effective_from: Optional[datetime] = None
