"""
tests/test_health.py -- Integration tests for GET /api/v1/health.

Covers:
  - 200 response with status, version and components fields
  - components.database reports 'ok' against the test directory
  - No authentication required
"""

from __future__ import annotations

from fastapi.testclient import TestClient


def test_health_returns_200_with_components(client: TestClient) -> None:
    """Health endpoint returns 200 with status, version, and components."""
    resp = client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert "version" in data
    assert data["components"] == {"app": "ok", "database": "ok"}


def test_health_no_auth_required(client: TestClient) -> None:
    """Health endpoint is reachable without a session cookie or API key."""
    resp = client.get("/api/v1/health", headers={})
    assert resp.status_code == 200
