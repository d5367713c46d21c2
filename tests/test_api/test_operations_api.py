"""Integration tests for alert, audit, rule catalog and site endpoints.

Tests:
- GET /api/v1/alerts, POST acknowledge / resolve (200, 404, 409)
- GET /api/v1/audit-trail and /integrity
- GET/POST /api/v1/rules/catalog
- GET /api/v1/site/summary
"""

import copy
from datetime import timedelta

import pytest

from tests.conftest import T0


async def _lockout(client, location="PIT:3", id="evt-blast"):
    response = await client.post(
        "/api/v1/ingest/events",
        json={
            "id": id,
            "timestamp": (T0 - timedelta(minutes=10)).isoformat(),
            "location": location,
            "type": "blast_fired",
            "severity": "critical",
        },
    )
    assert response.status_code == 200
    return response.json()


# ============================================================================
# ALERTS
# ============================================================================


class TestAlertsAPI:
    """Alert listing and operator actions."""

    @pytest.mark.asyncio
    async def test_list_active_alerts(self, client):
        await _lockout(client)
        response = await client.get("/api/v1/alerts", params={"status": "active"})
        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["alerts"][0]["location"] == "PIT:3"
        assert data["alerts"][0]["cause_codes"] == ["BLAST_NO_REENTRY"]

        none = await client.get("/api/v1/alerts", params={"status": "resolved"})
        assert none.json()["total"] == 0

    @pytest.mark.asyncio
    async def test_acknowledge_then_conflict(self, client):
        alert_id = (await _lockout(client))["alerts"][0]["id"]

        acked = await client.post(f"/api/v1/alerts/{alert_id}/acknowledge", json={"comment": "en route"})
        assert acked.status_code == 200
        assert acked.json()["status"] == "acknowledged"
        assert acked.json()["comment"] == "en route"

        again = await client.post(f"/api/v1/alerts/{alert_id}/acknowledge")
        assert again.status_code == 409
        assert again.json()["error"] == "invalid_transition"

    @pytest.mark.asyncio
    async def test_operator_resolve(self, client):
        alert_id = (await _lockout(client))["alerts"][0]["id"]
        response = await client.post(f"/api/v1/alerts/{alert_id}/resolve", json={"comment": "crew withdrawn"})
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "resolved"
        assert data["resolved_by"] == "operator"

        state = await client.get("/api/v1/levels/PIT:3/state")
        assert state.json()["score"] == 100

    @pytest.mark.asyncio
    async def test_unknown_alert_is_404(self, client):
        response = await client.post("/api/v1/alerts/missing/acknowledge")
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    @pytest.mark.asyncio
    async def test_invalid_status_filter(self, client):
        response = await client.get("/api/v1/alerts", params={"status": "snoozed"})
        assert response.status_code == 422


# ============================================================================
# AUDIT TRAIL
# ============================================================================


class TestAuditTrailAPI:
    """Audit records and chain integrity."""

    @pytest.mark.asyncio
    async def test_trail_lists_records(self, client):
        await _lockout(client)
        response = await client.get("/api/v1/audit-trail", params={"level": "PIT:3"})
        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        record = data["records"][0]
        assert record["reason"] == "live"
        assert record["inputs_consumed"]["event_ids"] == ["evt-blast"]
        assert record["risk_state"]["score"] == 100

    @pytest.mark.asyncio
    async def test_integrity_intact(self, client):
        await _lockout(client)
        response = await client.get("/api/v1/audit-trail/integrity")
        assert response.status_code == 200
        data = response.json()
        assert data["chain_intact"] is True
        assert data["breaks_found"] == 0
        assert len(data["locations"]) == 5

        single = await client.get("/api/v1/audit-trail/integrity", params={"level": "PIT:3"})
        assert [r["total_entries"] for r in single.json()["locations"]] == [1]


# ============================================================================
# RULE CATALOG
# ============================================================================


class TestRulesAPI:
    """Reading and activating catalog versions."""

    @pytest.mark.asyncio
    async def test_current_catalog(self, client):
        response = await client.get("/api/v1/rules/catalog")
        assert response.status_code == 200
        data = response.json()
        assert data["version"] == 1
        assert data["rule_count"] == 12
        assert data["effective_to"] is None
        assert "BLAST_NO_REENTRY" in [r["code"] for r in data["rules"]]

    @pytest.mark.asyncio
    async def test_activate_new_version(self, client, catalog_payload):
        payload = copy.deepcopy(catalog_payload)
        payload["effective_from"] = (T0 + timedelta(hours=1)).isoformat()
        response = await client.post("/api/v1/rules/catalog", json=payload)
        assert response.status_code == 201
        assert response.json()["version"] == 2

        versions = await client.get("/api/v1/rules/catalog/versions")
        assert [v["version"] for v in versions.json()] == [1, 2]
        assert versions.json()[0]["effective_to"] == (T0 + timedelta(hours=1)).isoformat()

        before = await client.get("/api/v1/rules/catalog", params={"at": T0.isoformat()})
        assert before.json()["version"] == 1

    @pytest.mark.asyncio
    async def test_activation_in_the_past_rejected(self, client, catalog_payload):
        payload = copy.deepcopy(catalog_payload)
        payload["effective_from"] = "2025-12-01T00:00:00"
        response = await client.post("/api/v1/rules/catalog", json=payload)
        assert response.status_code == 422
        assert response.json()["error"] == "validation_error"

    @pytest.mark.asyncio
    async def test_invalid_rule_rejected(self, client, catalog_payload):
        payload = copy.deepcopy(catalog_payload)
        payload["rules"][0]["impact_type"] = "force"
        payload["rules"][0]["category"] = "gas"
        response = await client.post("/api/v1/rules/catalog", json=payload)
        assert response.status_code == 422

        current = await client.get("/api/v1/rules/catalog")
        assert current.json()["version"] == 1


# ============================================================================
# SITE
# ============================================================================


class TestSiteAPI:
    """Structure and site roll-up."""

    @pytest.mark.asyncio
    async def test_summary(self, client):
        await _lockout(client)
        response = await client.get("/api/v1/site/summary")
        assert response.status_code == 200
        data = response.json()
        assert data["site_id"] == "TEST"
        assert data["score"] == 100
        assert data["band"] == "high"
        assert data["worst_location"] == "PIT:3"
        assert sorted(s["code"] for s in data["structures"]) == ["PIT", "PLANT"]
