"""
LevelRisk SQLAlchemy Models.

Inputs (events, measurements), outputs (risk states, snapshots), provenance
(audit records, catalog versions) and alerts. Every timestamp is naive UTC.

Write-once tables: events, measurements, snapshots, audit_records,
risk_states. Rows there are never updated, only inserted (and purged by
retention where a retention window applies).
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from levelrisk.clock import utcnow
from levelrisk.db.compat import JSONType, UTCDateTime
from levelrisk.db.engine import Base


def _genid() -> str:
    return str(uuid.uuid4())


# ──────────────────────────────────────────────────────────────────────────────
# 1. Inputs
# ──────────────────────────────────────────────────────────────────────────────


class EventRow(Base):
    """Operational event. ``seq`` is the store's ingestion order."""

    __tablename__ = "events"
    __table_args__ = (
        Index("ix_events_location_timestamp", "location", "timestamp"),
        Index("ix_events_timestamp", "timestamp"),
    )

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    location: Mapped[str] = mapped_column(String(64), nullable=False)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    event_metadata: Mapped[dict] = mapped_column("metadata", JSONType(), nullable=False, default=dict)
    activity: Mapped[Optional[str]] = mapped_column(String(128))
    ingested_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)


class MeasurementRow(Base):
    """Sensor reading. ``seq`` is the store's ingestion order."""

    __tablename__ = "measurements"
    __table_args__ = (
        Index("ix_measurements_location_sensor_timestamp", "location", "sensor_type", "timestamp"),
        Index("ix_measurements_timestamp", "timestamp"),
    )

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    location: Mapped[str] = mapped_column(String(64), nullable=False)
    sensor_type: Mapped[str] = mapped_column(String(20), nullable=False)
    value: Mapped[float] = mapped_column(Float, nullable=False)
    unit: Mapped[str] = mapped_column(String(20), nullable=False, default="")
    activity: Mapped[Optional[str]] = mapped_column(String(128))
    ingested_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)


# ──────────────────────────────────────────────────────────────────────────────
# 2. Rules
# ──────────────────────────────────────────────────────────────────────────────


class RuleCatalogVersionRow(Base):
    """
    One activated catalog version.

    ``payload`` holds the full rule set and overrides; it is never edited.
    ``effective_to`` is filled once, when the next version is activated.
    """

    __tablename__ = "rule_catalog_versions"

    version: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    effective_from: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    effective_to: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    payload: Mapped[dict] = mapped_column(JSONType(), nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    activated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)


# ──────────────────────────────────────────────────────────────────────────────
# 3. Outputs & provenance
# ──────────────────────────────────────────────────────────────────────────────


class AuditRecordRow(Base):
    """
    Provenance of one published RiskState.

    Hash-chained per location: entry_hash covers previous_hash, so any edit
    or deletion breaks the chain. ``window_start``..``as_of`` is the span of
    inputs the computation read; late inputs use it to find what to recompute.
    """

    __tablename__ = "audit_records"
    __table_args__ = (
        Index("ix_audit_records_location_as_of", "location", "as_of"),
        Index("ix_audit_records_location_window", "location", "window_start"),
        Index("ix_audit_records_supersedes", "supersedes_id"),
    )

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False, default=_genid)
    location: Mapped[str] = mapped_column(String(64), nullable=False)
    as_of: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    window_start: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    rule_catalog_version: Mapped[int] = mapped_column(Integer, nullable=False)
    inputs_consumed: Mapped[dict] = mapped_column(JSONType(), nullable=False)
    risk_state: Mapped[dict] = mapped_column(JSONType(), nullable=False)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    reason: Mapped[str] = mapped_column(String(20), nullable=False)
    supersedes_id: Mapped[Optional[str]] = mapped_column(String(36))
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    previous_hash: Mapped[Optional[str]] = mapped_column(String(64))
    entry_hash: Mapped[str] = mapped_column(String(64), nullable=False)


class RiskStateRow(Base):
    """Published RiskState, written in the same transaction as its audit record."""

    __tablename__ = "risk_states"
    __table_args__ = (
        Index("ix_risk_states_location_as_of", "location", "as_of"),
    )

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    audit_id: Mapped[str] = mapped_column(String(36), ForeignKey("audit_records.id"), unique=True, nullable=False)
    location: Mapped[str] = mapped_column(String(64), nullable=False)
    as_of: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    score: Mapped[int] = mapped_column(Integer, nullable=False)
    band: Mapped[str] = mapped_column(String(10), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType(), nullable=False)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)


class SnapshotRow(Base):
    """All levels' states at one instant, plus store high-water marks at write time."""

    __tablename__ = "snapshots"
    __table_args__ = (
        Index("ix_snapshots_timestamp", "timestamp"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_genid)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    rule_catalog_version: Mapped[int] = mapped_column(Integer, nullable=False)
    states: Mapped[list] = mapped_column(JSONType(), nullable=False, default=list)
    event_seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    measurement_seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)


# ──────────────────────────────────────────────────────────────────────────────
# 4. Alerts
# ──────────────────────────────────────────────────────────────────────────────


class AlertRow(Base):
    """Alert and its lifecycle timestamps. Only status columns change after insert."""

    __tablename__ = "alerts"
    __table_args__ = (
        Index("ix_alerts_location_status", "location", "status"),
        Index("ix_alerts_cause_fingerprint", "cause_fingerprint"),
        Index("ix_alerts_generated_at", "generated_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_genid)
    location: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)

    # What triggered it
    risk_score_at_creation: Mapped[int] = mapped_column(Integer, nullable=False)
    band_at_creation: Mapped[str] = mapped_column(String(10), nullable=False)
    cause: Mapped[str] = mapped_column(Text, nullable=False)
    cause_codes: Mapped[list] = mapped_column(JSONType(), nullable=False, default=list)
    cause_key: Mapped[str] = mapped_column(String(512), nullable=False)
    cause_fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    cause_inputs: Mapped[list] = mapped_column(JSONType(), nullable=False, default=list)
    explanation: Mapped[str] = mapped_column(Text, nullable=False)
    rule_catalog_version: Mapped[int] = mapped_column(Integer, nullable=False)
    audit_id: Mapped[Optional[str]] = mapped_column(String(36))

    # Lifecycle
    generated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    activated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    acknowledged_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    resolved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    comment: Mapped[Optional[str]] = mapped_column(Text)
    resolution_comment: Mapped[Optional[str]] = mapped_column(Text)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(20))


# ──────────────────────────────────────────────────────────────────────────────
# 5. Coordination
# ──────────────────────────────────────────────────────────────────────────────


class LocationLaneRow(Base):
    """
    One row per location; every writer bumps ``claims`` first in its transaction.

    The row lock (the database write lock on SQLite) is held until commit,
    so writers for one location serialize across processes.
    """

    __tablename__ = "location_lanes"

    location: Mapped[str] = mapped_column(String(64), primary_key=True)
    claims: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
