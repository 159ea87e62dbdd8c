"""
Tests for the HTTP API over an in-memory pipeline.
"""

import pytest
from fastapi.testclient import TestClient

from vigil.main import Services, create_app
from vigil.models.alert import AlertType
from vigil.utils import utcnow


@pytest.fixture
def client(pipeline, cache, store, test_settings):
    """Client with the lifespan running; exiting flushes the audit buffer."""
    app = create_app(services=Services(cache, store, pipeline), config=test_settings)
    with TestClient(app) as test_client:
        yield test_client


class TestHealthEndpoint:
    """Tests for the service health check."""

    def test_health_check(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["services"]["cache"]["status"] == "healthy"
        assert data["services"]["store"]["status"] == "healthy"
        assert data["audit_buffer"] == 0
        assert "X-Request-ID" in response.headers

    def test_oversized_body_rejected(self, client):
        response = client.post(
            "/api/v1/security/events",
            content=b"x" * (1024 * 1024 + 1),
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 413


class TestEventIngestion:
    """Tests for POST /api/v1/security/events."""

    def test_accepts_valid_event(self, client, make_event, pipeline):
        response = client.post("/api/v1/security/events", json=make_event())

        assert response.status_code == 202
        assert response.json()["accepted"] is True
        assert pipeline.audit_trail.buffer_size == 1

    def test_rejects_missing_fields(self, client):
        response = client.post("/api/v1/security/events", json={"type": "request"})

        assert response.status_code == 422
        assert response.json()["accepted"] is False

    def test_rejects_malformed_json(self, client, pipeline):
        response = client.post(
            "/api/v1/security/events",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 422
        assert pipeline.stats()["rejected"] == 1

    def test_blacklist_loaded_at_startup(self, client, make_event, channels):
        response = client.post("/api/v1/security/events", json=make_event(ip="192.0.2.66"))

        assert response.status_code == 202
        threat_alerts = [a for a in channels["log"].sent if a.type == AlertType.THREAT]
        assert [a.identifier for a in threat_alerts] == ["192.0.2.66"]

    def test_stats(self, client, make_event):
        client.post("/api/v1/security/events", json=make_event())
        client.post("/api/v1/security/events", json={})

        data = client.get("/api/v1/security/stats").json()

        assert data["processed"] == 2
        assert data["accepted"] == 1
        assert data["rejected"] == 1
        assert data["audit"]["buffer_size"] == 1


class TestComplianceCheck:
    """Tests for ad-hoc compliance checks."""

    def test_clean_content(self, client):
        response = client.post("/api/v1/security/compliance/check", json="a friendly greeting")

        assert response.status_code == 200
        assert response.json()["compliant"] is True
        assert response.json()["score"] == 1.0

    def test_violating_content(self, client):
        response = client.post(
            "/api/v1/security/compliance/check", json={"note": "this is plain fraud"}
        )

        data = response.json()
        assert data["compliant"] is False
        assert len(data["violations"]) == 1
        assert data["score"] < 1.0


class TestMetricsEndpoints:
    """Tests for the read-only monitoring routes."""

    def test_current_metrics(self, client):
        data = client.get("/api/v1/metrics/current").json()

        assert set(data) >= {"system", "security", "performance", "uptime_seconds"}

    def test_health_evaluated_on_demand(self, client):
        data = client.get("/api/v1/metrics/health").json()

        assert data["overall_status"] == "healthy"
        assert set(data["checks"]) >= {"cpu", "memory", "disk"}


class TestAuditEndpoints:
    """Tests for audit search, violations and integrity reports."""

    def test_search_returns_decrypted_entries(self, client, make_event, pipeline):
        client.post("/api/v1/security/events", json=make_event())
        client.portal.call(pipeline.audit_trail.flush)

        data = client.get(
            "/api/v1/audit/search", params={"event_type": "security_event"}
        ).json()

        assert data["count"] == 1
        entry = data["entries"][0]
        assert entry["event_data"]["event"]["type"] == "request"
        assert entry["metadata"]["source_ip"] == "198.51.100.10"

    def test_search_filters_by_source_ip(self, client, make_event, pipeline):
        client.post("/api/v1/security/events", json=make_event())
        client.portal.call(pipeline.audit_trail.flush)

        data = client.get("/api/v1/audit/search", params={"source_ip": "198.51.100.99"}).json()

        assert data["count"] == 0

    def test_search_limit_bounds(self, client):
        assert client.get("/api/v1/audit/search", params={"limit": 0}).status_code == 422
        assert client.get("/api/v1/audit/search", params={"limit": 5000}).status_code == 422

    def test_violation_workflow(self, client, make_event, pipeline):
        client.post(
            "/api/v1/security/events",
            json=make_event(data={"message": "they want to destroy everything"}),
        )
        client.portal.call(pipeline.audit_trail.flush)

        listed = client.get("/api/v1/audit/violations").json()
        assert listed["count"] == 1
        violation_id = listed["violations"][0]["id"]
        assert listed["violations"][0]["investigation_status"] == "pending"

        response = client.patch(
            f"/api/v1/audit/violations/{violation_id}", json={"status": "reviewed"}
        )
        assert response.status_code == 200
        assert response.json()["investigation_status"] == "reviewed"
        assert response.json()["status_updated_at"] is not None

        response = client.patch(
            f"/api/v1/audit/violations/{violation_id}", json={"status": "pending"}
        )
        assert response.status_code == 409

        reviewed = client.get("/api/v1/audit/violations", params={"status": "reviewed"}).json()
        assert reviewed["count"] == 1
        pending = client.get("/api/v1/audit/violations", params={"status": "pending"}).json()
        assert pending["count"] == 0

    def test_unknown_violation(self, client):
        response = client.patch("/api/v1/audit/violations/missing", json={"status": "closed"})

        assert response.status_code == 404

    def test_invalid_status_value(self, client):
        response = client.patch("/api/v1/audit/violations/missing", json={"status": "escalated"})

        assert response.status_code == 422

    def test_integrity_report(self, client, make_event, pipeline):
        today = utcnow().date()
        assert client.get(f"/api/v1/audit/integrity/{today.isoformat()}").status_code == 404

        client.post("/api/v1/security/events", json=make_event())
        client.portal.call(pipeline.run_integrity_check, today)

        data = client.get(f"/api/v1/audit/integrity/{today.isoformat()}").json()
        assert data["total_logs"] == 1
        assert data["integrity_score"] == 100.0


class TestLifespan:
    """Tests for startup and shutdown."""

    def test_shutdown_flushes_audit_buffer(self, pipeline, cache, store, test_settings, make_event):
        app = create_app(services=Services(cache, store, pipeline), config=test_settings)

        with TestClient(app) as client:
            client.post("/api/v1/security/events", json=make_event())
            assert store.audit_logs == {}

        assert len(store.audit_logs) == 1
