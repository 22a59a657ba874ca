"""
Tests for the stats, health and metrics endpoints.

Tests cover:
- Empty tenant returns zeros
- Counts by status and success rate
- Liveness and readiness probes
- Prometheus exposition
"""

from msgrelay import main


def send(client, request_id: str, tenant_id: str = "t1"):
    response = client.post(
        "/messages",
        json={"tenant_id": tenant_id, "to": "+6281234567890", "text": "Hello", "request_id": request_id},
    )
    assert response.status_code == 200
    return response.json()


class TestTenantStats:
    """GET /tenants/{tenant_id}/stats."""

    def test_empty_tenant(self, client):
        """Test stats for a tenant with no messages."""
        response = client.get("/tenants/t1/stats")

        assert response.status_code == 200
        assert response.json() == {
            "total": 0,
            "sent": 0,
            "pending": 0,
            "sending": 0,
            "failed": 0,
            "expired": 0,
            "success_rate": 0.0,
        }

    def test_counts_by_status(self, client, ledger):
        """Sent and quota-failed messages are counted separately."""
        send(client, "req-1")
        send(client, "req-2")
        ledger.set_balance("t1", 0)
        send(client, "req-3")

        data = client.get("/tenants/t1/stats").json()

        assert data["total"] == 3
        assert data["sent"] == 2
        assert data["failed"] == 1
        assert data["success_rate"] == 66.67

    def test_tenants_are_isolated(self, client, ledger):
        ledger.set_balance("t2", 10)
        send(client, "req-1", tenant_id="t2")

        assert client.get("/tenants/t1/stats").json()["total"] == 0
        assert client.get("/tenants/t2/stats").json()["total"] == 1


class TestHealth:
    """Liveness and readiness probes."""

    def test_live(self, client):
        response = client.get("/health/live")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_ready(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ready"
        assert data["details"]["providers"] == ["generic", "gupshup", "meta", "twilio"]

    def test_not_ready_without_secret(self, client, monkeypatch):
        monkeypatch.setattr(main.settings, "WEBHOOK_SECRET", "")
        response = client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["reason"] == "WEBHOOK_SECRET not configured"


class TestMetrics:
    """GET /metrics."""

    def test_metrics_exposed(self, client):
        send(client, "req-1")
        client.post("/webhooks/carrier-pigeon", content="{}")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        body = response.text
        assert "http_requests_total" in body
        assert 'send_outcomes_total{status="sent",reason="none"}' in body
        assert 'webhook_events_total{provider="unknown",result="rejected"}' in body
        assert 'path="/messages"' in body
