"""
Test fixtures for LevelRisk.

Provides:
- A small test site (structure PIT with four levels, PLANT with one)
- The shipped rule catalog (config/rules.json) activated as version 1
- A manually advanced clock
- Per-test SQLite database file with all tables
- Fully wired services and an ASGI test client
- Input factories
"""

import itertools
import json
from datetime import datetime, timedelta
from pathlib import Path
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from levelrisk.clock import FixedClock
from levelrisk.config import Settings
from levelrisk.db.engine import build_engine, build_session_factory, create_tables
from levelrisk.engine.catalog import RuleCatalog, parse_catalog_payload
from levelrisk.engine.conditions import EvaluationContext
from levelrisk.main import create_app
from levelrisk.schemas.enums import EventType, SensorType, Severity
from levelrisk.schemas.inputs import Event, Measurement
from levelrisk.schemas.location import LevelConfig, SiteConfig, StructureConfig
from levelrisk.services.bootstrap import build_services
from levelrisk.services.site_registry import LocationRegistry

ROOT = Path(__file__).resolve().parent.parent
RULES_PATH = ROOT / "config" / "rules.json"

CATALOG_START = datetime(2026, 1, 1)
T0 = datetime(2026, 3, 2, 8, 0)
SITE_ID = "TEST"


def _site() -> SiteConfig:
    return SiteConfig(
        site_id=SITE_ID,
        name="Test Site",
        structures=[
            StructureConfig(
                code="PIT",
                name="Test Pit",
                type="open_pit",
                levels=[
                    LevelConfig(level=1, name="Bench 1", sensors=[]),
                    LevelConfig(level=2, name="Bench 2", sensors=[SensorType.CO, SensorType.CH4]),
                    LevelConfig(
                        level=3,
                        name="Haulage Ramp",
                        sensors=[],
                        activities=["Hot Work - Barrier Repair", "Road Grading"],
                    ),
                    LevelConfig(level=4, name="Grade Control", sensors=[SensorType.CO]),
                ],
            ),
            StructureConfig(
                code="PLANT",
                name="Plant",
                type="plant",
                levels=[LevelConfig(level=0, name="Ground Floor", sensors=[])],
            ),
        ],
    )


# ── Site & catalog ───────────────────────────────────────────────────────


@pytest.fixture
def site() -> SiteConfig:
    return _site()


@pytest.fixture
def registry(site) -> LocationRegistry:
    return LocationRegistry(site)


@pytest.fixture
def catalog_payload() -> dict:
    return json.loads(RULES_PATH.read_text(encoding="utf-8"))


@pytest.fixture
def catalog(catalog_payload) -> RuleCatalog:
    """In-memory catalog holding the shipped rules as version 1."""
    rules, overrides = parse_catalog_payload(catalog_payload)
    catalog = RuleCatalog()
    catalog.activate(rules, effective_from=CATALOG_START, site_overrides=overrides)
    return catalog


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(T0)


# ── Input factories ──────────────────────────────────────────────────────


@pytest.fixture
def make_event():
    counter = itertools.count(1)

    def _make(
        event_type: EventType,
        at: datetime,
        location: str = "PIT:3",
        scheduled_for: datetime = None,
        id: str = None,
        severity: Severity = Severity.HIGH,
        activity: str = None,
    ) -> Event:
        metadata = {"scheduled_for": scheduled_for.isoformat()} if scheduled_for else {}
        return Event(
            id=id or f"evt-{next(counter):04d}",
            timestamp=at,
            location=location,
            type=event_type,
            severity=severity,
            metadata=metadata,
            activity=activity,
        )

    return _make


@pytest.fixture
def make_reading():
    counter = itertools.count(1)

    def _make(
        sensor_type: SensorType,
        value: float,
        at: datetime,
        location: str = "PIT:4",
        unit: str = "ppm",
        id: str = None,
    ) -> Measurement:
        return Measurement(
            id=id or f"msr-{next(counter):04d}",
            timestamp=at,
            location=location,
            sensor_type=sensor_type,
            value=value,
            unit=unit,
        )

    return _make


@pytest.fixture
def context_for(registry, catalog):
    """Build an EvaluationContext the way the store would, without a database."""

    def _make(location: str, as_of: datetime, events=(), measurements=()) -> EvaluationContext:
        lookback = catalog.catalog_at(as_of).lookback_minutes(SITE_ID)
        window_start = as_of - timedelta(minutes=lookback)
        in_window = lambda item: item.location == location and window_start <= item.timestamp <= as_of  # noqa: E731
        installed = registry.installed_sensors(location)
        window_readings = tuple(sorted(filter(in_window, measurements), key=lambda m: (m.timestamp, m.id)))
        silent = installed - {m.sensor_type for m in window_readings}
        last_readings = []
        for sensor in sorted(silent):
            earlier = [
                m for m in measurements
                if m.location == location and m.sensor_type == sensor and m.timestamp < window_start
            ]
            if earlier:
                last_readings.append(max(earlier, key=lambda m: (m.timestamp, m.id)))
        return EvaluationContext(
            location=location,
            as_of=as_of,
            window_start=window_start,
            events=tuple(sorted(filter(in_window, events), key=lambda e: (e.timestamp, e.id))),
            measurements=window_readings,
            installed_sensors=installed,
            last_readings=tuple(last_readings),
        )

    return _make


# ── Database ─────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def engine(tmp_path):
    """A fresh SQLite database file per test."""
    eng = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'levelrisk_test.db'}")
    await create_tables(eng)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        rule_catalog_path=str(RULES_PATH),
        catalog_seed_effective_from=CATALOG_START,
        evaluation_concurrency=4,
        history_timeout_seconds=30.0,
        max_future_skew_seconds=120,
    )


@pytest_asyncio.fixture
async def services(test_settings, session_factory, clock, registry):
    return await build_services(test_settings, session_factory, clock=clock, registry=registry)


@pytest_asyncio.fixture
async def client(services) -> AsyncGenerator[AsyncClient, None]:
    app = create_app(services=services)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
