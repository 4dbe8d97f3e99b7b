"""Tests for the application wiring in supportdesk/main.py."""

import pytest
from fastapi import Request
from fastapi.testclient import TestClient

from supportdesk import main
from supportdesk.__version__ import __build_date__, __commit_sha__, __version__
from supportdesk.config import Settings


@pytest.fixture
def client():
    """Test client that does not run the lifespan."""
    return TestClient(main.app)


def _request(headers=None, client=("10.0.0.9", 4321)):
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


class TestHealthEndpoint:
    def test_health_returns_ok_status(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}


class TestVersionEndpoint:
    def test_version_returns_build_info(self, client):
        resp = client.get("/api/version")
        assert resp.status_code == 200
        assert resp.json() == {
            "version": __version__,
            "build_date": __build_date__,
            "commit_sha": __commit_sha__,
        }


class TestMetricsEndpoint:
    def test_metrics_are_exposed(self, client):
        client.get("/api/health")
        resp = client.get("/api/metrics")
        assert resp.status_code == 200
        assert "http_request" in resp.text


class TestRoutes:
    def test_routers_are_mounted(self):
        paths = {route.path for route in main.app.routes}
        assert "/api/messages" in paths
        assert "/api/conversations/{conversation_id}/claim" in paths
        assert "/api/presence/heartbeat" in paths
        assert "/api/rate-limits/{limit_type}" in paths

    def test_protected_route_requires_token(self, client):
        assert client.get("/api/conversations").status_code == 401


class TestGetClientIp:
    def test_prefers_first_forwarded_hop(self):
        request = _request({"X-Forwarded-For": "203.0.113.5, 10.0.0.1"})
        assert main.get_client_ip(request) == "203.0.113.5"

    def test_falls_back_to_peer_address(self):
        assert main.get_client_ip(_request()) == "10.0.0.9"

    def test_unknown_without_client(self):
        assert main.get_client_ip(_request(client=None)) == "unknown"


class FakeScheduler:
    def __init__(self):
        self.started = False
        self.stopped = False

    def start(self):
        self.started = True

    def shutdown(self):
        self.stopped = True


class TestLifespan:
    def test_scheduler_disabled(self, monkeypatch):
        monkeypatch.setenv("SCHEDULER_ENABLED", "false")
        with TestClient(main.app):
            assert main.app.state.scheduler is None

    def test_scheduler_runs_for_app_lifetime(self, monkeypatch):
        fake = FakeScheduler()
        monkeypatch.setenv("SCHEDULER_ENABLED", "true")
        monkeypatch.setattr(main, "build_scheduler", lambda settings: fake)

        with TestClient(main.app):
            assert main.app.state.scheduler is fake
            assert fake.started and not fake.stopped
        assert fake.stopped


class TestCreateApp:
    def test_settings_live_on_the_app(self):
        settings = Settings()
        app = main.create_app(settings)

        assert app.state.settings is settings
        assert not hasattr(main, "settings")

    def test_scheduler_is_built_from_app_settings(self, monkeypatch):
        settings = Settings()
        app = main.create_app(settings)
        seen = []
        monkeypatch.setenv("SCHEDULER_ENABLED", "true")
        monkeypatch.setattr(
            main, "build_scheduler", lambda s: seen.append(s) or FakeScheduler()
        )

        with TestClient(app):
            pass
        assert seen == [settings]
