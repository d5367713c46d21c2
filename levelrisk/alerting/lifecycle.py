"""
Alert Lifecycle Manager.

State machine::

    generated → active → acknowledged → resolved
                   └──────────────────────┘

- A live RiskState at medium or above (or a lockout) raises an alert unless
  DedupManager finds it already covered. New alerts are promoted to active
  immediately; both timestamps are kept.
- ``acknowledge`` is only valid from active.
- ``resolve`` happens automatically once the current state no longer carries
  the alert's causes at medium or above, or on operator request from active
  or acknowledged. Resolved is terminal.
"""

import uuid
from datetime import datetime
from typing import List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from levelrisk.alerting.dedup import DedupManager, cause_fingerprint, cause_key
from levelrisk.alerting.repository import AlertRepository
from levelrisk.alerting.schemas import Alert, AlertStatus, ResolvedBy
from levelrisk.clock import Clock, utcnow
from levelrisk.db.models import AlertRow
from levelrisk.engine.risk_engine import RiskAssessment
from levelrisk.errors import InvalidTransitionError
from levelrisk.schemas.risk import RiskBand

logger = structlog.get_logger(__name__)


ALLOWED_TRANSITIONS: dict[AlertStatus, frozenset] = {
    AlertStatus.GENERATED: frozenset({AlertStatus.ACTIVE, AlertStatus.RESOLVED}),
    AlertStatus.ACTIVE: frozenset({AlertStatus.ACKNOWLEDGED, AlertStatus.RESOLVED}),
    AlertStatus.ACKNOWLEDGED: frozenset({AlertStatus.RESOLVED}),
    AlertStatus.RESOLVED: frozenset(),
}


def check_transition(alert_id: str, current: AlertStatus, target: AlertStatus) -> None:
    """Raise InvalidTransitionError unless ``current → target`` is allowed."""
    if target not in ALLOWED_TRANSITIONS[AlertStatus(current)]:
        raise InvalidTransitionError(alert_id, str(current), str(target))


def _alerting(assessment: RiskAssessment) -> bool:
    state = assessment.state
    return bool(state.triggered_rules) and (state.forced or state.band != RiskBand.LOW)


class AlertLifecycleManager:
    def __init__(
        self,
        repository: Optional[AlertRepository] = None,
        dedup: Optional[DedupManager] = None,
        clock: Clock = utcnow,
    ):
        self.repository = repository or AlertRepository()
        self.dedup = dedup or DedupManager()
        self._clock = clock

    async def on_state(
        self,
        session: AsyncSession,
        assessment: RiskAssessment,
        audit_id: Optional[str] = None,
    ) -> List[Alert]:
        """
        Apply a freshly published live state to the location's alerts.

        Returns the alerts created or auto-resolved by this state.
        """
        state = assessment.state
        now = self._clock()
        changed: List[Alert] = []

        # ── 1. Auto-resolve alerts whose cause has cleared ────────────
        current_codes = set(state.rule_codes)
        elevated = _alerting(assessment)
        for row in await self.repository.open_rows_for(session, state.location):
            if elevated and set(row.cause_codes) <= current_codes:
                continue
            changed.append(
                self._apply(row, AlertStatus.RESOLVED, now, resolved_by=ResolvedBy.SYSTEM)
            )

        # ── 2. Raise an alert for the current cause ───────────────────
        if elevated:
            key = cause_key(state.rule_codes)
            fingerprint = cause_fingerprint(state.location, key, assessment.cited_inputs)
            suppress, reason = await self.dedup.should_suppress(session, state.location, key, fingerprint)
            if not suppress:
                alert = Alert(
                    id=str(uuid.uuid4()),
                    location=state.location,
                    status=AlertStatus.GENERATED,
                    risk_score_at_creation=state.score,
                    band_at_creation=state.band.value,
                    cause=assessment.cause,
                    cause_codes=sorted(current_codes),
                    cause_key=key,
                    cause_fingerprint=fingerprint,
                    cause_inputs=assessment.cited_inputs,
                    explanation=state.explanation,
                    rule_catalog_version=state.rule_catalog_version,
                    audit_id=audit_id,
                    generated_at=now,
                )
                await self.repository.add(session, alert)
                row = await self.repository.get_row(session, alert.id)
                changed.append(self._apply(row, AlertStatus.ACTIVE, now))
                logger.info(
                    "alert_raised",
                    alert_id=alert.id,
                    location=state.location,
                    score=state.score,
                    cause_key=key,
                )

        if changed:
            await session.flush()
        return changed

    async def acknowledge(
        self,
        session: AsyncSession,
        alert_id: str,
        comment: Optional[str] = None,
    ) -> Alert:
        row = await self.repository.get_row(session, alert_id)
        alert = self._apply(row, AlertStatus.ACKNOWLEDGED, self._clock(), comment=comment)
        await session.flush()
        return alert

    async def resolve(
        self,
        session: AsyncSession,
        alert_id: str,
        comment: Optional[str] = None,
    ) -> Alert:
        """Operator resolution; the stored risk history is untouched."""
        row = await self.repository.get_row(session, alert_id)
        if AlertStatus(row.status) == AlertStatus.GENERATED:
            # Only active or acknowledged alerts are visible to operators.
            raise InvalidTransitionError(alert_id, row.status, AlertStatus.RESOLVED.value)
        alert = self._apply(
            row,
            AlertStatus.RESOLVED,
            self._clock(),
            comment=comment,
            resolved_by=ResolvedBy.OPERATOR,
        )
        await session.flush()
        return alert

    def _apply(
        self,
        row: AlertRow,
        target: AlertStatus,
        now: datetime,
        comment: Optional[str] = None,
        resolved_by: Optional[ResolvedBy] = None,
    ) -> Alert:
        current = AlertStatus(row.status)
        check_transition(row.id, current, target)

        row.status = target.value
        if target == AlertStatus.ACTIVE:
            row.activated_at = now
        elif target == AlertStatus.ACKNOWLEDGED:
            row.acknowledged_at = now
            if comment is not None:
                row.comment = comment
        elif target == AlertStatus.RESOLVED:
            row.resolved_at = now
            row.resolved_by = resolved_by.value if resolved_by else None
            if comment is not None:
                row.resolution_comment = comment

        logger.info(
            "alert_transition",
            alert_id=row.id,
            location=row.location,
            from_status=current.value,
            to_status=target.value,
            resolved_by=row.resolved_by,
        )
        return Alert.model_validate(row)
