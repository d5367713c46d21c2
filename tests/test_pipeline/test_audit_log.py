"""Tests for the audit log.

Tests:
- Hash chain integrity and tamper detection
- Supersession instead of edits
- Dependency lookup for late input
- Latest effective state
"""

from datetime import timedelta

import pytest
from sqlalchemy import update

from levelrisk.db.models import AuditRecordRow
from levelrisk.schemas.enums import EventType
from levelrisk.schemas.risk import AuditReason

from tests.conftest import T0


@pytest.fixture
def audit(services):
    return services.audit


@pytest.fixture
def record_at(services, audit, db):
    async def _record(location, as_of, reason=AuditReason.LIVE, supersedes_id=None):
        assessment = await services.evaluator.assess_at(db, location, as_of)
        return await audit.record(db, assessment.state, assessment.inputs, reason, supersedes_id=supersedes_id)

    return _record


# ============================================================================
# HASH CHAIN
# ============================================================================


class TestHashChain:
    """Per-location chain of entry hashes."""

    @pytest.mark.asyncio
    async def test_chain_links_records(self, audit, db, record_at):
        first = await record_at("PIT:3", T0)
        second = await record_at("PIT:3", T0 + timedelta(minutes=5))
        other = await record_at("PIT:1", T0)

        assert first.previous_hash is None
        assert second.previous_hash == first.entry_hash
        assert other.previous_hash is None
        assert first.fingerprint == first.risk_state.fingerprint()

        report = await audit.verify_chain(db, "PIT:3")
        assert report["chain_intact"] is True
        assert report["total_entries"] == 2

    @pytest.mark.asyncio
    async def test_empty_chain_is_intact(self, audit, db):
        report = await audit.verify_chain(db, "PLANT:0")
        assert report["status"] == "empty"
        assert report["chain_intact"] is True

    @pytest.mark.asyncio
    async def test_edited_state_detected(self, audit, db, record_at):
        record = await record_at("PIT:3", T0)
        await record_at("PIT:3", T0 + timedelta(minutes=5))

        tampered = dict(record.risk_state.model_dump(mode="json"), explanation="LOW risk (0): Nothing to see.")
        await db.execute(update(AuditRecordRow).where(AuditRecordRow.id == record.id).values(risk_state=tampered))

        report = await audit.verify_chain(db, "PIT:3")
        assert report["chain_intact"] is False
        assert report["breaks"][0]["audit_id"] == record.id

    @pytest.mark.asyncio
    async def test_edited_hash_link_detected(self, audit, db, record_at):
        await record_at("PIT:3", T0)
        second = await record_at("PIT:3", T0 + timedelta(minutes=5))
        await db.execute(update(AuditRecordRow).where(AuditRecordRow.id == second.id).values(previous_hash="0" * 64))

        report = await audit.verify_chain(db, "PIT:3")
        assert report["status"] == "broken"
        assert report["breaks"][0]["issue"] == "previous_hash mismatch"


# ============================================================================
# SUPERSESSION & DEPENDENCIES
# ============================================================================


class TestSupersession:
    """Recomputations append; the superseded record stays on file."""

    @pytest.mark.asyncio
    async def test_superseding_record_becomes_effective(self, audit, db, record_at):
        original = await record_at("PIT:3", T0)
        revised = await record_at("PIT:3", T0, AuditReason.LATE_INPUT, supersedes_id=original.id)

        effective = await audit.effective_record(db, "PIT:3", T0)
        assert effective.id == revised.id
        assert effective.supersedes_id == original.id

        records, total = await audit.audit_trail_for(db, location="PIT:3")
        assert total == 2
        assert [r.id for r in records] == [original.id, revised.id]

    @pytest.mark.asyncio
    async def test_affected_by_uses_input_window(self, audit, db, record_at):
        record = await record_at("PIT:3", T0)
        assert [r.id for r in await audit.affected_by(db, "PIT:3", T0 - timedelta(minutes=100))] == [record.id]
        assert await audit.affected_by(db, "PIT:3", T0 - timedelta(minutes=721)) == []
        assert await audit.affected_by(db, "PIT:3", T0 + timedelta(seconds=1)) == []
        assert await audit.affected_by(db, "PIT:1", T0 - timedelta(minutes=100)) == []

    @pytest.mark.asyncio
    async def test_affected_by_skips_superseded(self, audit, db, record_at):
        original = await record_at("PIT:3", T0)
        revised = await record_at("PIT:3", T0, AuditReason.LATE_INPUT, supersedes_id=original.id)
        affected = await audit.affected_by(db, "PIT:3", T0 - timedelta(minutes=1))
        assert [r.id for r in affected] == [revised.id]


# ============================================================================
# LATEST STATE
# ============================================================================


class TestLatestState:
    """Current view reads the latest effective record."""

    @pytest.mark.asyncio
    async def test_latest_state_and_latest_as_of(self, audit, services, db, record_at, make_event):
        assert await audit.latest_state(db, "PIT:3") is None
        assert await audit.latest_as_of(db) is None

        await record_at("PIT:3", T0 - timedelta(minutes=10))
        await services.store.append(db, make_event(EventType.OVERSPEED_VIOLATION, T0 - timedelta(minutes=1)))
        await record_at("PIT:3", T0)

        state = await audit.latest_state(db, "PIT:3")
        assert state.computed_at == T0
        assert state.score == 15
        assert await audit.latest_as_of(db) == T0

        states = await audit.current_states(db, ["PIT:3", "PIT:1"])
        assert list(states) == ["PIT:3"]
