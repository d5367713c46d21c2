"""
Audit & Traceability — write-once provenance for every published RiskState.

Each record names the catalog version, the exact inputs read, and the state
produced. Records for a location form a SHA-256 hash chain; a recomputation
(after late input) appends a new record that supersedes the earlier one
instead of editing it.
"""

import hashlib
import uuid
from datetime import datetime
from typing import Dict, List, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from levelrisk.clock import Clock, utcnow
from levelrisk.db.models import AuditRecordRow, RiskStateRow
from levelrisk.schemas.risk import AuditReason, AuditRecord, InputsConsumed, RiskState

logger = structlog.get_logger(__name__)


def _compute_entry_hash(
    entry_id: str,
    location: str,
    as_of: str,
    catalog_version: int,
    fingerprint: str,
    reason: str,
    supersedes_id: str,
    previous_hash: str,
) -> str:
    """SHA-256 over the pipe-joined identity fields and the previous hash."""
    payload = f"{entry_id}|{location}|{as_of}|{catalog_version}|{fingerprint}|{reason}|{supersedes_id}|{previous_hash}"
    return hashlib.sha256(payload.encode()).hexdigest()


def record_from_row(row: AuditRecordRow) -> AuditRecord:
    return AuditRecord(
        id=row.id,
        seq=row.seq,
        location=row.location,
        as_of=row.as_of,
        rule_catalog_version=row.rule_catalog_version,
        inputs_consumed=InputsConsumed.model_validate(row.inputs_consumed),
        risk_state=RiskState.model_validate(row.risk_state),
        fingerprint=row.fingerprint,
        reason=row.reason,
        supersedes_id=row.supersedes_id,
        recorded_at=row.recorded_at,
        previous_hash=row.previous_hash,
        entry_hash=row.entry_hash,
    )


def _effective():
    """Filter: records no later record supersedes."""
    newer = aliased(AuditRecordRow)
    return ~select(newer.seq).where(newer.supersedes_id == AuditRecordRow.id).exists()


class AuditLog:
    """Append-only audit trail with per-location hash chains."""

    def __init__(self, clock: Clock = utcnow):
        self._clock = clock

    async def record(
        self,
        session: AsyncSession,
        state: RiskState,
        inputs: InputsConsumed,
        reason: AuditReason,
        supersedes_id: Optional[str] = None,
    ) -> AuditRecord:
        """
        Write the audit record and the RiskState row in the caller's transaction.

        Nothing is committed here; the caller commits both or neither.
        """
        previous_hash = await self._get_last_hash(session, state.location)
        entry_id = str(uuid.uuid4())
        fingerprint = state.fingerprint()

        entry_hash = _compute_entry_hash(
            entry_id=entry_id,
            location=state.location,
            as_of=state.computed_at.isoformat(),
            catalog_version=state.rule_catalog_version,
            fingerprint=fingerprint,
            reason=reason.value,
            supersedes_id=supersedes_id or "",
            previous_hash=previous_hash or "",
        )

        payload = state.model_dump(mode="json")
        row = AuditRecordRow(
            id=entry_id,
            location=state.location,
            as_of=state.computed_at,
            window_start=inputs.window_start,
            rule_catalog_version=state.rule_catalog_version,
            inputs_consumed=inputs.model_dump(mode="json"),
            risk_state=payload,
            fingerprint=fingerprint,
            reason=reason.value,
            supersedes_id=supersedes_id,
            recorded_at=self._clock(),
            previous_hash=previous_hash,
            entry_hash=entry_hash,
        )
        session.add(row)
        await session.flush()

        session.add(
            RiskStateRow(
                audit_id=entry_id,
                location=state.location,
                as_of=state.computed_at,
                score=state.score,
                band=state.band.value,
                payload=payload,
                fingerprint=fingerprint,
            )
        )
        await session.flush()

        logger.info(
            "risk_state_recorded",
            audit_id=entry_id,
            location=state.location,
            as_of=state.computed_at.isoformat(),
            score=state.score,
            band=state.band.value,
            reason=reason.value,
            supersedes_id=supersedes_id,
        )
        return record_from_row(row)

    async def _get_last_hash(self, session: AsyncSession, location: str) -> Optional[str]:
        """entry_hash of the most recent record for the location."""
        result = await session.execute(
            select(AuditRecordRow.entry_hash)
            .where(AuditRecordRow.location == location)
            .order_by(AuditRecordRow.seq.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    # ── Queries ────────────────────────────────────────────────────────

    async def audit_trail_for(
        self,
        session: AsyncSession,
        location: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        offset: int = 0,
        limit: int = 100,
    ) -> tuple[List[AuditRecord], int]:
        """Records ordered by (as_of, seq), superseded ones included."""
        filters = []
        if location:
            filters.append(AuditRecordRow.location == location)
        if start:
            filters.append(AuditRecordRow.as_of >= start)
        if end:
            filters.append(AuditRecordRow.as_of <= end)

        total = (await session.execute(select(func.count(AuditRecordRow.seq)).where(*filters))).scalar() or 0
        rows = (
            await session.execute(
                select(AuditRecordRow)
                .where(*filters)
                .order_by(AuditRecordRow.as_of, AuditRecordRow.seq)
                .offset(offset)
                .limit(limit)
            )
        ).scalars().all()
        return [record_from_row(r) for r in rows], total

    async def effective_record(
        self,
        session: AsyncSession,
        location: str,
        as_of: datetime,
    ) -> Optional[AuditRecord]:
        """The latest non-superseded record computed for exactly ``as_of``."""
        row = (
            await session.execute(
                select(AuditRecordRow)
                .where(
                    AuditRecordRow.location == location,
                    AuditRecordRow.as_of == as_of,
                    _effective(),
                )
                .order_by(AuditRecordRow.seq.desc())
                .limit(1)
            )
        ).scalar_one_or_none()
        return record_from_row(row) if row else None

    async def affected_by(
        self,
        session: AsyncSession,
        location: str,
        ts: datetime,
    ) -> List[AuditRecord]:
        """
        Effective records whose input window contains ``ts``.

        This is the dependency index used to recompute after late input.
        """
        rows = (
            await session.execute(
                select(AuditRecordRow)
                .where(
                    AuditRecordRow.location == location,
                    AuditRecordRow.window_start <= ts,
                    AuditRecordRow.as_of >= ts,
                    _effective(),
                )
                .order_by(AuditRecordRow.as_of, AuditRecordRow.seq)
            )
        ).scalars().all()
        return [record_from_row(r) for r in rows]

    async def gap_records_after(
        self,
        session: AsyncSession,
        location: str,
        ts: datetime,
        sensor_type: str,
    ) -> List[AuditRecord]:
        """
        Effective records whose input span starts after ``ts`` and that report
        a gap for ``sensor_type``.

        A reading at ``ts`` is older than anything these records read, yet it
        becomes the sensor's last reading when they had none.
        """
        rows = (
            await session.execute(
                select(AuditRecordRow)
                .where(
                    AuditRecordRow.location == location,
                    AuditRecordRow.window_start > ts,
                    _effective(),
                )
                .order_by(AuditRecordRow.as_of, AuditRecordRow.seq)
            )
        ).scalars().all()
        records = [record_from_row(r) for r in rows]
        return [r for r in records if sensor_type in r.risk_state.data_gaps]

    async def latest_as_of(self, session: AsyncSession) -> Optional[datetime]:
        """Latest instant any computation has been audited for."""
        return (await session.execute(select(func.max(AuditRecordRow.as_of)))).scalar()

    async def latest_state(self, session: AsyncSession, location: str) -> Optional[RiskState]:
        """Latest effective RiskState for the location."""
        row = (
            await session.execute(
                select(RiskStateRow)
                .join(AuditRecordRow, AuditRecordRow.id == RiskStateRow.audit_id)
                .where(RiskStateRow.location == location, _effective())
                .order_by(AuditRecordRow.as_of.desc(), AuditRecordRow.seq.desc())
                .limit(1)
            )
        ).scalar_one_or_none()
        return RiskState.model_validate(row.payload) if row else None

    async def current_states(self, session: AsyncSession, locations: List[str]) -> Dict[str, RiskState]:
        """Latest effective RiskState per location; locations never scored are absent."""
        states: Dict[str, RiskState] = {}
        for location in locations:
            state = await self.latest_state(session, location)
            if state is not None:
                states[location] = state
        return states

    # ── Integrity ──────────────────────────────────────────────────────

    async def verify_chain(self, session: AsyncSession, location: str) -> dict:
        """
        Verify the location's hash chain is unbroken.

        Returns a report with integrity status and any breaks found.
        """
        rows = (
            await session.execute(
                select(AuditRecordRow)
                .where(AuditRecordRow.location == location)
                .order_by(AuditRecordRow.seq)
            )
        ).scalars().all()

        if not rows:
            return {"location": location, "status": "empty", "total_entries": 0, "chain_intact": True, "breaks": []}

        breaks = []
        previous_hash: Optional[str] = None
        for row in rows:
            expected = _compute_entry_hash(
                entry_id=row.id,
                location=row.location,
                as_of=row.as_of.isoformat(),
                catalog_version=row.rule_catalog_version,
                fingerprint=row.fingerprint,
                reason=row.reason,
                supersedes_id=row.supersedes_id or "",
                previous_hash=previous_hash or "",
            )
            state_fingerprint = RiskState.model_validate(row.risk_state).fingerprint()
            if row.previous_hash != previous_hash:
                breaks.append({"audit_id": row.id, "issue": "previous_hash mismatch"})
            elif row.entry_hash != expected:
                breaks.append({"audit_id": row.id, "issue": "entry_hash mismatch"})
            elif state_fingerprint != row.fingerprint:
                breaks.append({"audit_id": row.id, "issue": "risk_state does not match fingerprint"})
            previous_hash = row.entry_hash

        intact = not breaks
        if not intact:
            logger.critical("audit_chain_broken", location=location, breaks=len(breaks))
        return {
            "location": location,
            "status": "intact" if intact else "broken",
            "total_entries": len(rows),
            "chain_intact": intact,
            "breaks": breaks,
        }
