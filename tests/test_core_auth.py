"""Tests for bearer-token caller identification."""

from __future__ import annotations

import uuid
from datetime import timedelta

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from conftest import issue_token
from supportdesk.core.auth import (
    Caller,
    CompanyTokenConfigurationError,
    CompanyTokenValidationError,
    decode_company_token,
    get_caller,
)

COMPANY_ID = uuid.UUID("6f1c2a4e-1111-4d2b-9a4e-0c5a7d9e8b01")
USER_ID = uuid.UUID("0b8f3c1d-2222-4e7a-8d6b-3f2e1a0c9d45")


def test_decode_company_token_success(token_env: None) -> None:
    """A valid token returns the decoded payload."""

    token = issue_token(COMPANY_ID, USER_ID, name="Alice Agent")

    payload = decode_company_token(token)

    assert payload["company_id"] == str(COMPANY_ID)
    assert payload["user_id"] == str(USER_ID)
    assert payload["name"] == "Alice Agent"


def test_decode_company_token_missing_required_claims(token_env: None) -> None:
    """Tokens missing company or user identifiers are rejected."""

    with pytest.raises(CompanyTokenValidationError):
        decode_company_token(issue_token(COMPANY_ID, None))


def test_decode_company_token_rejects_non_uuid_claims(token_env: None) -> None:
    with pytest.raises(CompanyTokenValidationError, match="company_id"):
        decode_company_token(issue_token("acme", USER_ID))


def test_decode_company_token_requires_access_type(token_env: None) -> None:
    """Tokens that are not access tokens are rejected."""

    with pytest.raises(CompanyTokenValidationError):
        decode_company_token(issue_token(COMPANY_ID, USER_ID, type="refresh"))


def test_decode_company_token_rejects_expired_and_forged(token_env: None) -> None:
    expired = issue_token(COMPANY_ID, USER_ID, expires_in=timedelta(minutes=-1))
    with pytest.raises(CompanyTokenValidationError, match="expired"):
        decode_company_token(expired)

    forged = issue_token(COMPANY_ID, USER_ID, secret="not-the-secret-key-at-all")
    with pytest.raises(CompanyTokenValidationError, match="invalid"):
        decode_company_token(forged)


def test_decode_company_token_configuration_error(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Missing configuration raises a configuration error."""

    monkeypatch.delenv("TENANT_TOKEN_SECRET", raising=False)
    monkeypatch.delenv("TENANT_TOKEN_AUDIENCE", raising=False)
    monkeypatch.delenv("TENANT_TOKEN_ISSUER", raising=False)

    with pytest.raises(CompanyTokenConfigurationError):
        decode_company_token("token")


def _create_test_client() -> TestClient:
    """Create a FastAPI application wired with the caller dependency."""

    app = FastAPI()

    @app.get("/me")
    async def read_caller(caller: Caller = Depends(get_caller)) -> dict[str, str | None]:
        return {
            "company_id": str(caller.company_id),
            "user_id": str(caller.user_id),
            "name": caller.name,
        }

    return TestClient(app)


def test_get_caller_success(token_env: None) -> None:
    """Dependency returns the caller when a valid bearer token is supplied."""

    client = _create_test_client()
    token = issue_token(COMPANY_ID, USER_ID)

    response = client.get("/me", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 200
    assert response.json() == {
        "company_id": str(COMPANY_ID),
        "user_id": str(USER_ID),
        "name": None,
    }


@pytest.mark.parametrize(
    "headers",
    [
        {},
        {"Authorization": "Token abc"},
        {"Authorization": "Bearer"},
        {"Authorization": "Bearer not-a-jwt"},
    ],
)
def test_get_caller_unauthorized(token_env: None, headers: dict[str, str]) -> None:
    client = _create_test_client()

    response = client.get("/me", headers=headers)

    assert response.status_code == 401


def test_get_caller_configuration_error(monkeypatch: pytest.MonkeyPatch) -> None:
    """Configuration errors surface as HTTP 500 responses."""

    monkeypatch.delenv("TENANT_TOKEN_SECRET", raising=False)
    client = _create_test_client()

    response = client.get("/me", headers={"Authorization": "Bearer whatever"})

    assert response.status_code == 500
