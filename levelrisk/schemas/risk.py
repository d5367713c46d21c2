"""
Risk output schemas — RiskState, Snapshot, AuditRecord, summaries.
"""

import hashlib
import json
from datetime import datetime
from enum import StrEnum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class RiskBand(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TriggeredRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    rule_code: str
    rule_version: int
    category: str
    contribution: int
    uncertain: bool = False
    cited_inputs: List[str] = Field(default_factory=list)


class RiskState(BaseModel):
    """Scored, explained state of one level at one instant."""

    model_config = ConfigDict(frozen=True)

    location: str
    score: int = Field(..., ge=0, le=100)
    band: RiskBand
    forced: bool = False
    triggered_rules: List[TriggeredRule] = Field(default_factory=list)
    explanation: str
    computed_at: datetime
    rule_catalog_version: int
    data_gaps: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_score(self) -> "RiskState":
        if self.forced:
            if self.score != 100 or len(self.triggered_rules) != 1:
                raise ValueError("forced state must score 100 with exactly one triggered rule")
        else:
            expected = min(100, sum(t.contribution for t in self.triggered_rules))
            if self.score != expected:
                raise ValueError(f"score {self.score} does not match contributions ({expected})")
        return self

    @property
    def rule_codes(self) -> List[str]:
        return [t.rule_code for t in self.triggered_rules]

    def canonical_json(self) -> str:
        return json.dumps(self.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))

    def fingerprint(self) -> str:
        """SHA-256 of the canonical JSON form; equal fingerprints mean byte-identical states."""
        return hashlib.sha256(self.canonical_json().encode()).hexdigest()


class InputsConsumed(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_ids: List[str] = Field(default_factory=list)
    measurement_ids: List[str] = Field(default_factory=list)
    window_start: datetime
    window_end: datetime


class AuditReason(StrEnum):
    LIVE = "live"
    TICK = "tick"
    SNAPSHOT = "snapshot"
    LATE_INPUT = "late_input"


class AuditRecord(BaseModel):
    """Write-once provenance of one published RiskState."""

    id: str
    seq: Optional[int] = None
    location: str
    as_of: datetime
    rule_catalog_version: int
    inputs_consumed: InputsConsumed
    risk_state: RiskState
    fingerprint: str
    reason: AuditReason
    supersedes_id: Optional[str] = None
    recorded_at: datetime
    previous_hash: Optional[str] = None
    entry_hash: str


class Snapshot(BaseModel):
    """All levels' RiskStates at one instant."""

    id: str
    timestamp: datetime
    rule_catalog_version: int
    states: List[RiskState] = Field(default_factory=list)
    event_seq: int = 0
    measurement_seq: int = 0
    created_at: Optional[datetime] = None

    def state_for(self, location: str) -> Optional[RiskState]:
        for state in self.states:
            if state.location == location:
                return state
        return None


class StructureSummary(BaseModel):
    code: str
    name: str = ""
    score: int
    band: RiskBand
    worst_location: Optional[str] = None
    level_count: int = 0
    open_alerts: int = 0


class SiteSummary(BaseModel):
    site_id: str
    name: str = ""
    score: int
    band: RiskBand
    worst_location: Optional[str] = None
    structures: List[StructureSummary] = Field(default_factory=list)
    open_alerts: int = 0
    computed_at: datetime
