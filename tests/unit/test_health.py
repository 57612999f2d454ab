"""
Tests for health check endpoints.
"""

from unittest.mock import AsyncMock, patch

from fastapi.testclient import TestClient

from app.main import app

client = TestClient(app)

HEALTHY_DB = {"healthy": True, "pool_stats": {"pool_size": 2, "pool_available": 2}}


def test_healthz_endpoint():
    """Test the basic health check endpoint."""
    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "integration-reconciler"}


def test_readyz_endpoint_all_services_healthy():
    with (
        patch("app.routes.health.db_health_check", AsyncMock(return_value=HEALTHY_DB)),
        patch("app.routes.health.settings.STRIPE_SECRET_KEY", None),
    ):
        response = client.get("/readyz")

    assert response.status_code == 200
    data = response.json()
    assert data["overall_ok"] is True
    assert data["checks"]["database"]["ok"] is True
    assert data["checks"]["database"]["pool_size"] == 2
    assert data["checks"]["configuration"]["billing_enabled"] is False


def test_readyz_endpoint_database_unhealthy():
    unhealthy = {"healthy": False, "error": "Connection failed"}
    with (
        patch("app.routes.health.db_health_check", AsyncMock(return_value=unhealthy)),
        patch("app.routes.health.settings.STRIPE_SECRET_KEY", None),
    ):
        response = client.get("/readyz")

    assert response.status_code == 503
    data = response.json()
    assert data["overall_ok"] is False
    assert data["checks"]["database"]["error"] == "Connection failed"


def test_readyz_endpoint_database_raises():
    with (
        patch("app.routes.health.db_health_check", AsyncMock(side_effect=RuntimeError("pool closed"))),
        patch("app.routes.health.settings.STRIPE_SECRET_KEY", None),
    ):
        response = client.get("/readyz")

    assert response.status_code == 503
    assert response.json()["checks"]["database"]["error"] == "RuntimeError: pool closed"


def test_readyz_reports_missing_billing_configuration():
    with (
        patch("app.routes.health.db_health_check", AsyncMock(return_value=HEALTHY_DB)),
        patch("app.routes.health.settings.STRIPE_SECRET_KEY", "sk_test_123"),
        patch("app.routes.health.settings.STRIPE_WEBHOOK_SECRET", None),
        patch("app.routes.health.settings.STRIPE_PRICE_ID_ELITE", None),
    ):
        response = client.get("/readyz")

    assert response.status_code == 503
    issues = response.json()["checks"]["configuration"]["issues"]
    assert "STRIPE_WEBHOOK_SECRET not set" in issues
    assert any("elite" in issue for issue in issues)


def test_readyz_includes_latency_metrics():
    with (
        patch("app.routes.health.db_health_check", AsyncMock(return_value=HEALTHY_DB)),
        patch("app.routes.health.settings.STRIPE_SECRET_KEY", None),
    ):
        response = client.get("/readyz")

    assert isinstance(response.json()["checks"]["database"]["latency_ms"], (int, float))


def test_request_id_is_returned():
    response = client.get("/healthz")

    assert response.headers["X-Request-ID"]


def test_inbound_request_id_is_reused():
    response = client.get("/healthz", headers={"X-Request-ID": "req-42"})

    assert response.headers["X-Request-ID"] == "req-42"
