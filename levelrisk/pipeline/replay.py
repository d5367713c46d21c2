"""
Historical Reconstructor — "what was the risk at T, and why".

Reconstruction uses the catalog version in effect at T (never the current
one) and the same evaluation path as live scoring, so a replayed state is
byte-identical to the state that was published at T.

Verification:
- If an audit record exists for (location, T) under the same catalog
  version, the replayed fingerprint must equal the audited one. A mismatch
  is logged at critical level and raised as ReplayDivergenceError.
- A different catalog version for the same instant is logged as a warning
  and the replayed state is returned.
- Once retention has purged inputs the audited computation read (its input
  span starts before the retention cutoff, or a consumed input id is gone),
  the audited RiskState is returned as is. Replay cannot reproduce it, and
  the resulting divergence is expected: it is logged as
  ``replay_inputs_purged`` at warning level and never raised.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from levelrisk.errors import ReplayDivergenceError
from levelrisk.pipeline.evaluation import LocationEvaluator
from levelrisk.pipeline.traceability import AuditLog
from levelrisk.schemas.risk import AuditRecord, RiskState

logger = structlog.get_logger(__name__)


@dataclass
class BulkReplay:
    """Result of a bulk reconstruction; ``partial`` when the deadline hit first."""
    as_of: datetime
    states: List[RiskState] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    partial: bool = False


class HistoricalReconstructor:
    def __init__(self, evaluator: LocationEvaluator, audit: AuditLog):
        self.evaluator = evaluator
        self.store = evaluator.store
        self.registry = evaluator.registry
        self.catalog = evaluator.catalog
        self.audit = audit

    async def state_at(self, session: AsyncSession, location: str, ts: datetime) -> RiskState:
        """RiskState of ``location`` at instant ``ts``."""
        self.registry.resolve(location)
        await self.evaluator.sync_catalog(session)
        version = self.catalog.catalog_at(ts)
        record = await self.audit.effective_record(session, location, ts)

        if record is not None and await self._inputs_purged(session, record):
            logger.warning(
                "replay_inputs_purged",
                location=location,
                as_of=ts.isoformat(),
                audit_id=record.id,
                input_span_start=record.inputs_consumed.window_start.isoformat(),
                retention_cutoff=self.store.retention_cutoff().isoformat(),
            )
            state = record.risk_state
            source = "audit"
        else:
            state = await self._from_snapshot(session, location, ts, version.version)
            source = "snapshot"
            if state is None:
                state = (await self.evaluator.assess_at(session, location, ts)).state
                source = "replay"
            self._verify(state, record)

        logger.info(
            "state_reconstructed",
            location=location,
            as_of=ts.isoformat(),
            score=state.score,
            catalog_version=state.rule_catalog_version,
            source=source,
        )
        return state

    async def _from_snapshot(
        self,
        session: AsyncSession,
        location: str,
        ts: datetime,
        catalog_version: int,
    ) -> Optional[RiskState]:
        """Snapshot fast path: only an exact-instant snapshot with no late input since."""
        snapshot = await self.store.nearest_snapshot(session, ts)
        if snapshot is None or snapshot.timestamp != ts:
            return None
        cached = snapshot.state_for(location)
        if cached is None or cached.rule_catalog_version != catalog_version:
            return None
        if cached.data_gaps:
            # a late reading from before the window can move the gap's "since"
            return None
        window_start = cached.computed_at - timedelta(minutes=self.evaluator.lookback_minutes(ts))
        if await self.store.has_late_inputs(session, snapshot, location, window_start):
            return None
        return cached

    async def _inputs_purged(self, session: AsyncSession, record: AuditRecord) -> bool:
        consumed = record.inputs_consumed
        if consumed.window_start < self.store.retention_cutoff():
            return True
        missing = await self.store.missing_inputs(session, consumed.event_ids, consumed.measurement_ids)
        return missing > 0

    def _verify(self, state: RiskState, record: Optional[AuditRecord]) -> None:
        if record is None:
            return
        if record.rule_catalog_version != state.rule_catalog_version:
            logger.warning(
                "replay_catalog_version_differs",
                location=state.location,
                as_of=state.computed_at.isoformat(),
                audited_version=record.rule_catalog_version,
                replayed_version=state.rule_catalog_version,
            )
            return
        replayed = state.fingerprint()
        if record.fingerprint != replayed:
            logger.critical(
                "replay_divergence",
                location=state.location,
                as_of=state.computed_at.isoformat(),
                catalog_version=state.rule_catalog_version,
                audit_id=record.id,
                stored_fingerprint=record.fingerprint,
                replayed_fingerprint=replayed,
            )
            raise ReplayDivergenceError(
                location=state.location,
                as_of=state.computed_at,
                rule_catalog_version=state.rule_catalog_version,
                stored_fingerprint=record.fingerprint,
                replayed_fingerprint=replayed,
            )

    # ── Bulk & timeline ───────────────────────────────────────────────

    async def states_at(self, session: AsyncSession, ts: datetime, timeout_seconds: float) -> BulkReplay:
        """Every location at ``ts``; returns what finished before the deadline."""
        deadline = time.monotonic() + timeout_seconds
        result = BulkReplay(as_of=ts)
        for location in self.registry.locations():
            if time.monotonic() > deadline:
                result.missing.append(location)
                continue
            result.states.append(await self.state_at(session, location, ts))
        result.partial = bool(result.missing)
        if result.partial:
            logger.warning(
                "bulk_replay_partial",
                as_of=ts.isoformat(),
                completed=len(result.states),
                missing=len(result.missing),
            )
        return result

    async def timeline(
        self,
        session: AsyncSession,
        location: str,
        start: datetime,
        end: datetime,
        timeout_seconds: float,
        max_points: int = 500,
    ) -> tuple[List[RiskState], bool]:
        """
        States at ``start``, at every input instant in (start, end], and at ``end``.

        Consecutive states with the same score and triggered rules are
        collapsed. Returns (states, partial).
        """
        self.registry.resolve(location)
        await self.evaluator.sync_catalog(session)
        instants = [start] + await self.store.input_timestamps(session, location, start, end)
        if instants[-1] != end:
            instants.append(end)

        deadline = time.monotonic() + timeout_seconds
        states: List[RiskState] = []
        partial = False
        for instant in instants:
            if time.monotonic() > deadline or len(states) >= max_points:
                partial = True
                break
            state = (await self.evaluator.assess_at(session, location, instant)).state
            if states and _same_risk(states[-1], state):
                continue
            states.append(state)
        return states, partial


def _same_risk(a: RiskState, b: RiskState) -> bool:
    return a.score == b.score and a.rule_codes == b.rule_codes and a.data_gaps == b.data_gaps
