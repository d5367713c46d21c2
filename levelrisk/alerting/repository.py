"""
Alert persistence.

Alerts are kept indefinitely; only their lifecycle columns change after insert.
"""

from typing import Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from levelrisk.alerting.schemas import OPEN_STATUSES, Alert, AlertStatus
from levelrisk.db.models import AlertRow
from levelrisk.errors import NotFoundError


class AlertRepository:
    async def add(self, session: AsyncSession, alert: Alert) -> Alert:
        data = alert.model_dump()
        data["status"] = alert.status.value
        data["resolved_by"] = alert.resolved_by.value if alert.resolved_by else None
        row = AlertRow(**data)
        session.add(row)
        await session.flush()
        return Alert.model_validate(row)

    async def get_row(self, session: AsyncSession, alert_id: str) -> AlertRow:
        row = await session.get(AlertRow, alert_id)
        if row is None:
            raise NotFoundError("Alert", alert_id)
        return row

    async def get(self, session: AsyncSession, alert_id: str) -> Alert:
        return Alert.model_validate(await self.get_row(session, alert_id))

    async def open_rows_for(self, session: AsyncSession, location: str) -> List[AlertRow]:
        result = await session.execute(
            select(AlertRow)
            .where(
                AlertRow.location == location,
                AlertRow.status.in_([s.value for s in OPEN_STATUSES]),
            )
            .order_by(AlertRow.generated_at, AlertRow.id)
        )
        return list(result.scalars().all())

    async def list(
        self,
        session: AsyncSession,
        status: Optional[AlertStatus] = None,
        location: Optional[str] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> tuple[List[Alert], int]:
        """Alerts matching the filters, newest first."""
        filters = []
        if status:
            filters.append(AlertRow.status == status.value)
        if location:
            filters.append(AlertRow.location == location)

        total = (await session.execute(select(func.count(AlertRow.id)).where(*filters))).scalar() or 0
        rows = (
            await session.execute(
                select(AlertRow)
                .where(*filters)
                .order_by(AlertRow.generated_at.desc(), AlertRow.id)
                .offset(offset)
                .limit(limit)
            )
        ).scalars().all()
        return [Alert.model_validate(r) for r in rows], total

    async def open_counts(self, session: AsyncSession) -> Dict[str, int]:
        """Unresolved alerts per location."""
        result = await session.execute(
            select(AlertRow.location, func.count(AlertRow.id))
            .where(AlertRow.status.in_([s.value for s in OPEN_STATUSES]))
            .group_by(AlertRow.location)
        )
        return {location: count for location, count in result.all()}
