"""
Rule catalog persistence and activation.

Catalog versions live in ``rule_catalog_versions``; the in-memory
RuleCatalog is rebuilt from that table on start. A version is persisted
before it is published, so a version that scored anything is always on
record.
"""

import asyncio
import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Union

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from levelrisk.clock import Clock, utcnow
from levelrisk.db.models import RuleCatalogVersionRow
from levelrisk.engine.catalog import RuleCatalog, RuleCatalogVersion, parse_catalog_payload
from levelrisk.pipeline.traceability import AuditLog

logger = structlog.get_logger(__name__)


def version_from_row(row: RuleCatalogVersionRow) -> RuleCatalogVersion:
    return RuleCatalogVersion.model_validate(
        {
            "version": row.version,
            "effective_from": row.effective_from,
            "effective_to": row.effective_to,
            **row.payload,
        }
    )


def _payload(version: RuleCatalogVersion) -> Dict[str, Any]:
    return version.model_dump(mode="json", include={"rules", "site_overrides"})


class CatalogService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        catalog: RuleCatalog,
        audit: AuditLog,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.catalog = catalog
        self.audit = audit
        self._clock = clock
        self._lock = asyncio.Lock()

    @staticmethod
    async def load(session: AsyncSession) -> RuleCatalog:
        rows = (
            await session.execute(select(RuleCatalogVersionRow).order_by(RuleCatalogVersionRow.version))
        ).scalars().all()
        return RuleCatalog(version_from_row(r) for r in rows)

    async def sync(self, session: AsyncSession) -> bool:
        """
        Catch the in-memory catalog up with ``rule_catalog_versions``.

        Activations made by another process (the API while the scheduler
        runs, or a second replica) only reach this one through the table.
        Returns True when newer versions were loaded.
        """
        latest = (await session.execute(select(func.max(RuleCatalogVersionRow.version)))).scalar()
        current = self.catalog.current()
        if latest is None or (current is not None and latest <= current.version):
            return False
        rows = (
            await session.execute(select(RuleCatalogVersionRow).order_by(RuleCatalogVersionRow.version))
        ).scalars().all()
        self.catalog.reload(version_from_row(r) for r in rows)
        return True

    async def activate(
        self,
        payload: Dict[str, Any],
        effective_from: Optional[datetime] = None,
    ) -> RuleCatalogVersion:
        """
        Validate, persist and publish a new catalog version.

        Raises:
            ValidationError: malformed rules, or effective_from not after the
                current version and every audited computation.
        """
        rules, overrides = parse_catalog_payload(payload)
        effective_from = effective_from or self._clock()

        async with self._lock:
            async with self.session_factory() as session:
                await self.sync(session)
                not_before = await self.audit.latest_as_of(session)
                new_version, closed = self.catalog.build_version(
                    rules, effective_from, overrides, not_before=not_before
                )
                await self._save(session, new_version, closed)
                await session.commit()
            self.catalog.publish(new_version, closed)
        return new_version

    async def seed_from_file(self, path: Union[str, Path], effective_from: datetime) -> Optional[RuleCatalogVersion]:
        """Activate the catalog file as version 1 when no version exists yet."""
        async with self.session_factory() as session:
            await self.sync(session)
        if self.catalog.current() is not None:
            return None
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
        version = await self.activate(payload, effective_from=effective_from)
        logger.info("rule_catalog_seeded", path=str(path), version=version.version)
        return version

    async def _save(
        self,
        session: AsyncSession,
        new_version: RuleCatalogVersion,
        closed: Optional[RuleCatalogVersion],
    ) -> None:
        if closed is not None:
            row = await session.get(RuleCatalogVersionRow, closed.version)
            if row is not None:
                row.effective_to = closed.effective_to
        session.add(
            RuleCatalogVersionRow(
                version=new_version.version,
                effective_from=new_version.effective_from,
                effective_to=None,
                payload=_payload(new_version),
                content_hash=new_version.content_hash(),
                activated_at=self._clock(),
            )
        )
        await session.flush()
