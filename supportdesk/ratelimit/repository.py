"""Storage for rate limit buckets."""
from __future__ import annotations

import copy
import threading
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from .models import RateLimitBucket, RequestEntry


class RateLimitRepository(Protocol):
    """Abstraction for persisting rate limit buckets."""

    def get_bucket(self, key: str) -> Optional[RateLimitBucket]: ...

    def locked_bucket(
        self, key: str, *, limit_type: str, identifier: str, now: datetime
    ) -> AbstractContextManager[RateLimitBucket]:
        """Yield the bucket for ``key`` under an exclusive lock.

        The bucket is created when missing. Changes made to the yielded
        object are written back before the lock is released.
        """
        ...

    def delete_bucket(self, key: str) -> None: ...

    def delete_stale(self, updated_before: datetime) -> int: ...


class PostgresRateLimitRepository:
    """PostgreSQL implementation of :class:`RateLimitRepository`."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def _cursor(self):
        return self._conn.cursor(row_factory=dict_row)

    def get_bucket(self, key: str) -> Optional[RateLimitBucket]:
        with self._cursor() as cur:
            cur.execute("SELECT * FROM rate_limit_buckets WHERE key = %s", (key,))
            row = cur.fetchone()
        if not row:
            return None
        return self._hydrate(row)

    @contextmanager
    def locked_bucket(
        self, key: str, *, limit_type: str, identifier: str, now: datetime
    ) -> Iterator[RateLimitBucket]:
        with self._conn.transaction():
            with self._cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO rate_limit_buckets
                        (key, limit_type, identifier, requests, created_at, updated_at)
                    VALUES (%s, %s, %s, '[]'::jsonb, %s, %s)
                    ON CONFLICT (key) DO NOTHING
                    """,
                    (key, limit_type, identifier, now, now),
                )
                cur.execute(
                    "SELECT * FROM rate_limit_buckets WHERE key = %s FOR UPDATE",
                    (key,),
                )
                row = cur.fetchone()
            bucket = self._hydrate(row)
            yield bucket
            with self._cursor() as cur:
                cur.execute(
                    """
                    UPDATE rate_limit_buckets
                    SET requests = %s, blocked_until = %s, updated_at = %s
                    WHERE key = %s
                    """,
                    (
                        Jsonb(self._dump_requests(bucket.requests)),
                        bucket.blocked_until,
                        bucket.updated_at,
                        key,
                    ),
                )

    def delete_bucket(self, key: str) -> None:
        with self._cursor() as cur:
            cur.execute("DELETE FROM rate_limit_buckets WHERE key = %s", (key,))

    def delete_stale(self, updated_before: datetime) -> int:
        with self._cursor() as cur:
            cur.execute(
                "DELETE FROM rate_limit_buckets WHERE updated_at < %s",
                (updated_before,),
            )
            return cur.rowcount

    # Helpers ------------------------------------------------------------------
    @staticmethod
    def _dump_requests(requests: List[RequestEntry]) -> List[Dict[str, Any]]:
        return [
            {"timestamp": entry.timestamp.isoformat(), "metadata": entry.metadata}
            for entry in requests
        ]

    def _hydrate(self, row: Dict[str, Any]) -> RateLimitBucket:
        requests = [
            RequestEntry(
                timestamp=datetime.fromisoformat(item["timestamp"]),
                metadata=item.get("metadata"),
            )
            for item in row.get("requests") or []
        ]
        return RateLimitBucket(
            key=row["key"],
            limit_type=row["limit_type"],
            identifier=row["identifier"],
            requests=requests,
            blocked_until=row.get("blocked_until"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class InMemoryRateLimitRepository:
    """Thread-safe in-process bucket store used by tests and local runs."""

    def __init__(self) -> None:
        self._buckets: Dict[str, RateLimitBucket] = {}
        self._lock = threading.RLock()

    def get_bucket(self, key: str) -> Optional[RateLimitBucket]:
        with self._lock:
            bucket = self._buckets.get(key)
            return copy.deepcopy(bucket) if bucket else None

    @contextmanager
    def locked_bucket(
        self, key: str, *, limit_type: str, identifier: str, now: datetime
    ) -> Iterator[RateLimitBucket]:
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = RateLimitBucket(
                    key=key,
                    limit_type=limit_type,
                    identifier=identifier,
                    created_at=now,
                    updated_at=now,
                )
            working = copy.deepcopy(bucket)
            yield working
            self._buckets[key] = working

    def delete_bucket(self, key: str) -> None:
        with self._lock:
            self._buckets.pop(key, None)

    def delete_stale(self, updated_before: datetime) -> int:
        with self._lock:
            stale = [
                key
                for key, bucket in self._buckets.items()
                if bucket.updated_at < updated_before
            ]
            for key in stale:
                del self._buckets[key]
            return len(stale)
