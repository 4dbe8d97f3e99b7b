from contextlib import contextmanager

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from conftest import auth_header
from supportdesk.ratelimit import RateLimitExceeded
from supportdesk.routers import rate_limits as rate_limits_router


@pytest.fixture
def client(desk, token_env, monkeypatch):
    @contextmanager
    def fake_service_context(request):
        yield desk.limiter

    monkeypatch.setattr(rate_limits_router, "_service_context", fake_service_context)
    app = FastAPI()
    app.state.settings = desk.settings
    app.include_router(rate_limits_router.router)
    return TestClient(app)


def test_ai_response_limit_is_company_scoped(client, desk):
    resp = client.get("/api/rate-limits/aiResponse", headers=auth_header(desk.company_id, desk.agent_id))

    assert resp.status_code == 200
    body = resp.json()
    assert body["identifier"] == str(desk.company_id)
    assert body["remaining_requests"] == 10
    assert body["is_rate_limited"] is False


def test_user_message_limit_is_per_user(client, desk):
    for _ in range(3):
        desk.limiter.record("userMessage", str(desk.customer_id))

    mine = client.get(
        "/api/rate-limits/userMessage", headers=auth_header(desk.company_id, desk.customer_id)
    ).json()
    theirs = client.get(
        "/api/rate-limits/userMessage", headers=auth_header(desk.company_id, desk.agent_id)
    ).json()

    assert mine["identifier"] == str(desk.customer_id)
    assert mine["remaining_requests"] == 27
    assert theirs["remaining_requests"] == 30


def test_blocked_user_is_reported(client, desk):
    for _ in range(30):
        desk.limiter.record("userMessage", str(desk.customer_id))
    with pytest.raises(RateLimitExceeded):
        desk.limiter.record("userMessage", str(desk.customer_id))

    body = client.get(
        "/api/rate-limits/userMessage", headers=auth_header(desk.company_id, desk.customer_id)
    ).json()

    assert body["is_rate_limited"] is True
    assert body["message"] == "Rate limit exceeded. Please wait 300 seconds."
    assert body["blocked_until"] is not None


def test_unknown_limit_type(client, desk):
    resp = client.get("/api/rate-limits/bogus", headers=auth_header(desk.company_id, desk.agent_id))

    assert resp.status_code == 404


def test_requires_token(client):
    assert client.get("/api/rate-limits/aiResponse").status_code == 401
