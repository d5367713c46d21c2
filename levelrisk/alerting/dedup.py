"""
Alert Deduplication — one alert per cause.

Strategies:
1. Open cause: an unresolved alert for the same (location, cause key)
   already covers the state, whatever its inputs
2. Content dedup: an alert (in any status) was already raised for exactly
   the same cause codes and cited inputs; re-evaluating the same inputs never
   raises twice

State lives in the database, so suppression survives restarts and is shared
between the API and the scheduler.
"""

import hashlib
from typing import Iterable, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from levelrisk.alerting.schemas import OPEN_STATUSES
from levelrisk.db.models import AlertRow

logger = structlog.get_logger(__name__)


def cause_key(rule_codes: Iterable[str]) -> str:
    """Order-independent key of the rules behind an alert."""
    return "|".join(sorted(set(rule_codes)))


def cause_fingerprint(location: str, key: str, cited_inputs: Iterable[str]) -> str:
    """SHA-256 of location, cause key and the sorted cited input ids."""
    content = f"{location}:{key}:{','.join(sorted(set(cited_inputs)))}"
    return hashlib.sha256(content.encode()).hexdigest()


class DedupManager:
    """Decides whether a candidate alert is already covered."""

    async def should_suppress(
        self,
        session: AsyncSession,
        location: str,
        key: str,
        fingerprint: str,
    ) -> tuple[bool, str]:
        """
        Check if an alert for this cause should be suppressed.

        Returns:
            (should_suppress: bool, reason: str)
        """
        # ── 1. Open alert for the same cause ──────────────────────────
        open_id: Optional[str] = (
            await session.execute(
                select(AlertRow.id)
                .where(
                    AlertRow.location == location,
                    AlertRow.cause_key == key,
                    AlertRow.status.in_([s.value for s in OPEN_STATUSES]),
                )
                .limit(1)
            )
        ).scalar_one_or_none()
        if open_id is not None:
            logger.debug("alert_suppressed_open_cause", location=location, cause_key=key, alert_id=open_id)
            return True, f"Alert {open_id} is still open for this cause"

        # ── 2. Same cause and inputs already alerted ──────────────────
        seen_id: Optional[str] = (
            await session.execute(
                select(AlertRow.id).where(AlertRow.cause_fingerprint == fingerprint).limit(1)
            )
        ).scalar_one_or_none()
        if seen_id is not None:
            logger.debug("alert_suppressed_duplicate", location=location, cause_key=key, alert_id=seen_id)
            return True, f"Alert {seen_id} was already raised for these inputs"

        return False, ""
