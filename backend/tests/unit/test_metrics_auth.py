"""Tests for /metrics endpoint authentication gating."""

from __future__ import annotations

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

PRODUCTION_ENV = {
    "ENVIRONMENT": "production",
    "CORS_ORIGINS": '["https://lab.example.com"]',
    "TOKEN_CLEANUP_ENABLED": "false",
}


@pytest.fixture
def _clear_settings():
    """Clear cached settings before/after each test."""
    from mylab.core.config import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def _client() -> TestClient:
    from mylab.main import create_application

    return TestClient(create_application())


class TestMetricsAuthProduction:
    """Verify /metrics is gated in production-like config."""

    def test_metrics_returns_404_when_no_token_in_production(self, _clear_settings):
        """Production with empty metrics_auth_token should return 404."""
        with patch.dict("os.environ", {**PRODUCTION_ENV, "METRICS_AUTH_TOKEN": ""}):
            resp = _client().get("/metrics")
            assert resp.status_code == 404

    def test_metrics_returns_401_without_bearer(self, _clear_settings):
        """Production with token set but no auth header should return 401."""
        with patch.dict("os.environ", {**PRODUCTION_ENV, "METRICS_AUTH_TOKEN": "scrape-secret"}):
            resp = _client().get("/metrics")
            assert resp.status_code == 401

    def test_metrics_returns_401_with_wrong_token(self, _clear_settings):
        """Production with wrong bearer token should return 401."""
        with patch.dict("os.environ", {**PRODUCTION_ENV, "METRICS_AUTH_TOKEN": "scrape-secret"}):
            resp = _client().get(
                "/metrics", headers={"Authorization": "Bearer wrong-token"}
            )
            assert resp.status_code == 401

    def test_metrics_returns_200_with_correct_token(self, _clear_settings):
        """Production with correct bearer token should return metrics."""
        with patch.dict("os.environ", {**PRODUCTION_ENV, "METRICS_AUTH_TOKEN": "scrape-secret"}):
            resp = _client().get(
                "/metrics", headers={"Authorization": "Bearer scrape-secret"}
            )
            assert resp.status_code == 200
            assert "text/plain" in resp.headers.get("content-type", "")


def test_production_requires_explicit_cors_origins(_clear_settings) -> None:
    from pydantic import ValidationError

    from mylab.core.config import Settings

    with patch.dict("os.environ", {"ENVIRONMENT": "production"}):
        with pytest.raises(ValidationError, match="cors_origins"):
            Settings()
