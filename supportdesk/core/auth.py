"""Bearer-token identification of the calling user and company."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import TypedDict, cast
from uuid import UUID

import jwt
from fastapi import HTTPException, Request, status
from jwt import ExpiredSignatureError, InvalidTokenError

__all__ = [
    "Caller",
    "CompanyTokenConfigurationError",
    "CompanyTokenPayload",
    "CompanyTokenValidationError",
    "decode_company_token",
    "get_caller",
]


class CompanyTokenConfigurationError(RuntimeError):
    """Raised when token validation settings are missing."""


class CompanyTokenValidationError(ValueError):
    """Raised when the provided token cannot be validated."""


class _CompanyTokenRequiredClaims(TypedDict):
    company_id: str
    user_id: str


class CompanyTokenPayload(_CompanyTokenRequiredClaims, total=False):
    """Decoded JWT payload for company-scoped requests."""

    aud: str | list[str]
    exp: int
    iat: int
    iss: str
    name: str
    type: str


@dataclass(frozen=True)
class Caller:
    """Who is calling, resolved from the bearer token."""

    company_id: UUID
    user_id: UUID
    name: str | None = None


def _get_env(name: str, *, required: bool = True, default: str | None = None) -> str:
    """Fetch an environment variable with optional requirement enforcement.

    Args:
        name: Name of the environment variable to read.
        required: Whether to raise when the variable is missing or empty.
        default: Value to use when ``required`` is ``False`` and the variable is
            undefined.

    Returns:
        str: Stripped environment variable value or provided default.

    Raises:
        CompanyTokenConfigurationError: If ``required`` is ``True`` and the
            variable is missing or blank.
    """

    value = os.getenv(name, default)
    if required and (value is None or not value.strip()):
        raise CompanyTokenConfigurationError(
            f"Environment variable '{name}' must be set for token validation.",
        )
    if value is None:
        return ""
    return value.strip()


def decode_company_token(token: str) -> CompanyTokenPayload:
    """Decode and validate an access token.

    Args:
        token: Encoded JWT token string from the ``Authorization`` header.

    Returns:
        CompanyTokenPayload: Parsed payload containing company and user identifiers.

    Raises:
        CompanyTokenConfigurationError: If mandatory environment configuration is missing.
        CompanyTokenValidationError: If signature, claims, identifiers or expiry are invalid.
    """

    secret_key = _get_env("TENANT_TOKEN_SECRET")
    audience = _get_env("TENANT_TOKEN_AUDIENCE")
    issuer = _get_env("TENANT_TOKEN_ISSUER")
    algorithm = _get_env("TENANT_TOKEN_ALGORITHM", required=False, default="HS256")

    try:
        payload = jwt.decode(
            token,
            secret_key,
            algorithms=[algorithm],
            audience=audience,
            issuer=issuer,
            options={"require": ["exp", "aud", "iss"]},
        )
    except ExpiredSignatureError as exc:
        raise CompanyTokenValidationError("Token has expired.") from exc
    except InvalidTokenError as exc:
        raise CompanyTokenValidationError("Token is invalid.") from exc

    if "company_id" not in payload or "user_id" not in payload:
        raise CompanyTokenValidationError(
            "Token payload must include 'company_id' and 'user_id'.",
        )
    for claim in ("company_id", "user_id"):
        try:
            UUID(str(payload[claim]))
        except ValueError as exc:
            raise CompanyTokenValidationError(f"Token claim '{claim}' is not a UUID.") from exc
    type_claim = payload.get("type")
    if type_claim and type_claim != "access":
        raise CompanyTokenValidationError("Token must be an access token.")

    return cast(CompanyTokenPayload, payload)


async def get_caller(request: Request) -> Caller:
    """Extract the caller from the ``Authorization`` header.

    Raises:
        HTTPException: With status ``401`` when the header is missing or invalid,
            or ``500`` if token configuration is incorrect.
    """

    authorization = request.headers.get("Authorization")
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Authorization header.",
        )

    scheme, _, credentials = authorization.partition(" ")
    if not credentials or scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header must use Bearer scheme.",
        )

    try:
        payload = decode_company_token(credentials)
    except CompanyTokenConfigurationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(exc),
        ) from exc
    except CompanyTokenValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
        ) from exc

    caller = Caller(
        company_id=UUID(str(payload["company_id"])),
        user_id=UUID(str(payload["user_id"])),
        name=payload.get("name"),
    )
    # read back by the access log middleware
    request.state.caller = caller
    return caller
