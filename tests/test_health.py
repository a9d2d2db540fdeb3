"""
tests/test_health.py -- Integration tests for GET /api/v1/health.

Covers:
  - 200 response with status, version and database fields
  - database reports 'unavailable' when the store does not answer
  - No authentication required
"""

from __future__ import annotations

from unittest.mock import patch

from api.main import VERSION


def test_health_returns_200(api_client):
    """Health endpoint returns 200 with status, version and database."""
    client, _, _ = api_client
    resp = client.get("/api/v1/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "version": VERSION, "database": "ok"}


def test_health_reports_unavailable_database(api_client, api_store):
    """A store that fails its ping is reported, but the endpoint still answers."""
    client, _, _ = api_client
    with patch.object(api_store, "ping", return_value=False):
        resp = client.get("/api/v1/health")
    assert resp.status_code == 200
    assert resp.json()["database"] == "unavailable"


def test_health_no_auth_required(api_client):
    """Health endpoint is accessible without any authentication headers."""
    client, _, _ = api_client
    resp = client.get("/api/v1/health", headers={})
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
