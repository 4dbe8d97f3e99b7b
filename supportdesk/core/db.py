"""Database connection helpers shared by routers and scheduled jobs."""

from __future__ import annotations

import logging
import os
from functools import lru_cache

import psycopg
from sqlalchemy.orm import Session, sessionmaker

from ..models.session import get_sessionmaker

logger = logging.getLogger(__name__)


class DatabaseNotConfiguredError(RuntimeError):
    """Raised when ``DATABASE_URL`` is missing."""


def get_database_url() -> str:
    url = os.getenv("DATABASE_URL")
    if not url or not url.strip():
        raise DatabaseNotConfiguredError("DATABASE_URL not configured")
    return url.strip()


def connect() -> psycopg.Connection:
    """Open an autocommit connection.

    Repositories open explicit ``conn.transaction()`` blocks where they need
    atomicity, so nothing stays locked between statements.
    """

    return psycopg.connect(get_database_url(), autocommit=True)


@lru_cache(maxsize=4)
def _session_factory(database_url: str) -> sessionmaker[Session]:
    logger.info("Creating SQLAlchemy session factory")
    return get_sessionmaker(database_url, pool_pre_ping=True)


def get_session_factory() -> sessionmaker[Session]:
    return _session_factory(get_database_url())
