"""Application and access logging setup.

Two rotating log files are written under ``LOG_DIR``:

- ``supportdesk.log`` for everything logged below the ``supportdesk`` logger.
  Records emitted while a request is being served carry its request id.
- ``access.log`` with one JSON line per HTTP request: method, path, status,
  latency, client IP, the authenticated company and user, scrubbed headers
  and optionally the scrubbed body.

Message text is customer data, so ``content`` fields are redacted along with
credentials. Environment variables: LOG_DIR, LOG_LEVEL, LOG_JSON,
LOG_REQUEST_BODIES, LOG_RETENTION_DAYS, LOG_ROTATE_UTC.
"""

from __future__ import annotations

import json
import logging
import os
import time
from contextvars import ContextVar
from dataclasses import dataclass
from logging.handlers import TimedRotatingFileHandler
from typing import Any, cast
from uuid import uuid4

from fastapi import FastAPI, Request

APP_LOGGER = "supportdesk"
ACCESS_LOGGER = "uvicorn.access"

_request_id: ContextVar[str | None] = ContextVar("supportdesk_request_id", default=None)


@dataclass(frozen=True)
class LogOptions:
    log_dir: str = "logs"
    level: int = logging.INFO
    use_json: bool = False
    request_bodies: bool = False
    retention_days: int = 7
    rotate_utc: bool = False

    @classmethod
    def from_env(cls) -> "LogOptions":
        def flag(name: str) -> bool:
            return os.getenv(name, "false").lower() == "true"

        return cls(
            log_dir=os.getenv("LOG_DIR", "logs"),
            level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
            use_json=flag("LOG_JSON"),
            request_bodies=flag("LOG_REQUEST_BODIES"),
            retention_days=int(os.getenv("LOG_RETENTION_DAYS", "7")),
            rotate_utc=flag("LOG_ROTATE_UTC"),
        )


class RequestIdFilter(logging.Filter):
    """Copy the id of the request being served onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = _request_id.get()
        return True


class JsonFormatter(logging.Formatter):
    """Minimal JSON log formatter used when LOG_JSON=true."""

    def format(self, record: logging.LogRecord) -> str:
        log_record = {
            "level": record.levelname,
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        request_id = getattr(record, "request_id", None)
        if request_id:
            log_record["request_id"] = request_id
        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(log_record)


def _get_formatter(log_json: bool) -> logging.Formatter:
    if log_json:
        return JsonFormatter()
    return logging.Formatter("[%(asctime)s] %(levelname)s in %(name)s: %(message)s")


def _rotating_handler(filename: str, options: LogOptions) -> TimedRotatingFileHandler:
    handler = TimedRotatingFileHandler(
        os.path.join(options.log_dir, filename),
        when="midnight",
        backupCount=options.retention_days,
        utc=options.rotate_utc,
    )
    handler.setFormatter(_get_formatter(options.use_json))
    return handler


SENSITIVE_FIELDS = {
    "authorization",
    "cookie",
    "set-cookie",
    "password",
    "token",
    "access_token",
    "refresh_token",
    "api_key",
    "content",
    "attachment_url",
}


def _scrub(data: object) -> object:
    """Recursively scrub sensitive fields from dictionaries and lists."""

    if isinstance(data, dict):
        return {
            k: ("***" if k.lower() in SENSITIVE_FIELDS else _scrub(v))
            for k, v in data.items()
        }
    if isinstance(data, list):
        return [_scrub(v) for v in data]
    return data


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def _install_access_logging(app: FastAPI, options: LogOptions | None = None) -> None:
    """Install request/response access logging middleware.

    Health and metrics probes are not logged. Every other request gets an
    ``X-Request-Id`` (taken from the request or generated) that is echoed back
    on the response.
    """

    options = options or LogOptions.from_env()
    skip_paths = {"/api/health", "/api/metrics"}
    access_logger = logging.getLogger(ACCESS_LOGGER)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        if request.url.path in skip_paths:
            return await call_next(request)

        request_id = request.headers.get("X-Request-Id") or uuid4().hex
        request.state.request_id = request_id
        token = _request_id.set(request_id)
        started = time.perf_counter()

        body_content = None
        if options.request_bodies:
            body_bytes = await request.body()

            async def receive() -> dict:  # pragma: no cover - internal
                return {"type": "http.request", "body": body_bytes, "more_body": False}

            request._receive = receive  # type: ignore[attr-defined]

            if body_bytes:
                try:
                    body_content = _scrub(json.loads(body_bytes))
                except ValueError:
                    body_content = "<non-json body omitted>"

        try:
            response = await call_next(request)
        finally:
            _request_id.reset(token)

        log_data: dict[str, Any] = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "latency_ms": round((time.perf_counter() - started) * 1000, 2),
            "client_ip": _client_ip(request),
            "headers": _scrub(dict(request.headers)),
        }
        caller = getattr(request.state, "caller", None)
        if caller is not None:
            log_data["company_id"] = str(caller.company_id)
            log_data["user_id"] = str(caller.user_id)
        if response.status_code == 429:
            log_data["retry_after"] = response.headers.get("Retry-After")
        if body_content is not None:
            log_data["body"] = body_content

        response.headers["X-Request-Id"] = request_id
        access_logger.info(json.dumps(log_data, default=str))
        return response


def init_logging(app: FastAPI | None = None) -> None:
    """Initialise application and access loggers."""

    options = LogOptions.from_env()
    os.makedirs(options.log_dir, exist_ok=True)

    app_logger = logging.getLogger(APP_LOGGER)
    if not app_logger.handlers:
        handler = _rotating_handler("supportdesk.log", options)
        handler.addFilter(RequestIdFilter())
        app_logger.addHandler(handler)
    app_logger.setLevel(options.level)

    access_logger = logging.getLogger(ACCESS_LOGGER)
    access_logger.handlers.clear()
    access_logger.addHandler(_rotating_handler("access.log", options))
    access_logger.setLevel(options.level)

    if app is not None:
        cast(Any, app).logger = app_logger
        _install_access_logging(app, options)
