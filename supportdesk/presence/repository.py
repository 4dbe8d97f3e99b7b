"""Storage for presence records."""
from __future__ import annotations

import threading
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol
from uuid import UUID

import psycopg
from psycopg.rows import dict_row

from .schemas import Presence

_UPDATABLE = frozenset(
    {
        "is_typing",
        "typing_in_conversation",
        "typing_started_at",
        "viewing_conversation",
        "heartbeat_at",
        "expires_at",
    }
)


class PresenceRepository(Protocol):
    def get(self, user_id: UUID) -> Optional[Presence]: ...

    def upsert(self, presence: Presence) -> Presence:
        """Insert or replace identity, viewing and heartbeat fields.

        Typing state survives the upsert so a reconnecting client does not
        reset an indicator it is still showing.
        """
        ...

    def update(self, user_id: UUID, **fields: Any) -> Optional[Presence]:
        """Patch ``fields`` in a single statement; ``None`` when no record."""
        ...

    def list_typing(
        self,
        company_id: UUID,
        conversation_id: int,
        now: datetime,
        exclude_user_id: Optional[UUID] = None,
    ) -> List[Presence]: ...

    def list_viewing(
        self, company_id: UUID, conversation_id: int, now: datetime
    ) -> List[Presence]: ...

    def list_active(self, company_id: UUID, now: datetime) -> List[Presence]: ...

    def delete_expired(self, now: datetime, limit: int) -> int: ...


class PostgresPresenceRepository:
    """PostgreSQL implementation of :class:`PresenceRepository`."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def _cursor(self):
        return self._conn.cursor(row_factory=dict_row)

    def get(self, user_id: UUID) -> Optional[Presence]:
        with self._cursor() as cur:
            cur.execute("SELECT * FROM presence WHERE user_id = %s", (user_id,))
            row = cur.fetchone()
        return Presence(**row) if row else None

    def upsert(self, presence: Presence) -> Presence:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO presence
                    (user_id, company_id, user_role, is_typing, typing_in_conversation,
                     typing_started_at, viewing_conversation, heartbeat_at, expires_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (user_id) DO UPDATE SET
                    company_id = EXCLUDED.company_id,
                    user_role = EXCLUDED.user_role,
                    viewing_conversation = EXCLUDED.viewing_conversation,
                    heartbeat_at = EXCLUDED.heartbeat_at,
                    expires_at = EXCLUDED.expires_at
                RETURNING *
                """,
                (
                    presence.user_id,
                    presence.company_id,
                    presence.user_role,
                    presence.is_typing,
                    presence.typing_in_conversation,
                    presence.typing_started_at,
                    presence.viewing_conversation,
                    presence.heartbeat_at,
                    presence.expires_at,
                ),
            )
            row = cur.fetchone()
        return Presence(**row)

    def update(self, user_id: UUID, **fields: Any) -> Optional[Presence]:
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise ValueError(f"Unsupported presence fields: {sorted(unknown)}")
        assignments = ", ".join(f"{name} = %s" for name in fields)
        with self._cursor() as cur:
            cur.execute(
                f"UPDATE presence SET {assignments} WHERE user_id = %s RETURNING *",
                [*fields.values(), user_id],
            )
            row = cur.fetchone()
        return Presence(**row) if row else None

    def list_typing(
        self,
        company_id: UUID,
        conversation_id: int,
        now: datetime,
        exclude_user_id: Optional[UUID] = None,
    ) -> List[Presence]:
        clauses = [
            "company_id = %s",
            "typing_in_conversation = %s",
            "is_typing",
            "expires_at > %s",
        ]
        params: List[Any] = [company_id, conversation_id, now]
        if exclude_user_id is not None:
            clauses.append("user_id <> %s")
            params.append(exclude_user_id)
        with self._cursor() as cur:
            cur.execute(
                f"SELECT * FROM presence WHERE {' AND '.join(clauses)} ORDER BY typing_started_at",
                params,
            )
            rows = cur.fetchall()
        return [Presence(**row) for row in rows]

    def list_viewing(
        self, company_id: UUID, conversation_id: int, now: datetime
    ) -> List[Presence]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT * FROM presence
                WHERE company_id = %s AND viewing_conversation = %s
                  AND user_role <> 'customer' AND expires_at > %s
                ORDER BY heartbeat_at DESC
                """,
                (company_id, conversation_id, now),
            )
            rows = cur.fetchall()
        return [Presence(**row) for row in rows]

    def list_active(self, company_id: UUID, now: datetime) -> List[Presence]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT * FROM presence
                WHERE company_id = %s AND expires_at > %s
                ORDER BY heartbeat_at DESC
                """,
                (company_id, now),
            )
            rows = cur.fetchall()
        return [Presence(**row) for row in rows]

    def delete_expired(self, now: datetime, limit: int) -> int:
        with self._cursor() as cur:
            cur.execute(
                """
                DELETE FROM presence WHERE user_id IN (
                    SELECT user_id FROM presence
                    WHERE expires_at < %s
                    ORDER BY expires_at
                    LIMIT %s
                )
                """,
                (now, limit),
            )
            return cur.rowcount


class InMemoryPresenceRepository:
    """Simple in-memory repository used for tests and local development."""

    def __init__(self) -> None:
        self._records: Dict[UUID, Presence] = {}
        self._lock = threading.Lock()

    def get(self, user_id: UUID) -> Optional[Presence]:
        with self._lock:
            record = self._records.get(user_id)
            return record.model_copy() if record else None

    def upsert(self, presence: Presence) -> Presence:
        with self._lock:
            existing = self._records.get(presence.user_id)
            if existing is not None:
                presence = presence.model_copy(
                    update={
                        "is_typing": existing.is_typing,
                        "typing_in_conversation": existing.typing_in_conversation,
                        "typing_started_at": existing.typing_started_at,
                    }
                )
            self._records[presence.user_id] = presence
            return presence.model_copy()

    def update(self, user_id: UUID, **fields: Any) -> Optional[Presence]:
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise ValueError(f"Unsupported presence fields: {sorted(unknown)}")
        with self._lock:
            record = self._records.get(user_id)
            if record is None:
                return None
            updated = record.model_copy(update=fields)
            self._records[user_id] = updated
            return updated.model_copy()

    def list_typing(
        self,
        company_id: UUID,
        conversation_id: int,
        now: datetime,
        exclude_user_id: Optional[UUID] = None,
    ) -> List[Presence]:
        with self._lock:
            items = [
                p
                for p in self._records.values()
                if p.company_id == company_id
                and p.is_typing
                and p.typing_in_conversation == conversation_id
                and p.is_active(now)
                and p.user_id != exclude_user_id
            ]
        return sorted(items, key=lambda p: p.typing_started_at or p.heartbeat_at)

    def list_viewing(
        self, company_id: UUID, conversation_id: int, now: datetime
    ) -> List[Presence]:
        with self._lock:
            items = [
                p
                for p in self._records.values()
                if p.company_id == company_id
                and p.viewing_conversation == conversation_id
                and p.user_role != "customer"
                and p.is_active(now)
            ]
        return sorted(items, key=lambda p: p.heartbeat_at, reverse=True)

    def list_active(self, company_id: UUID, now: datetime) -> List[Presence]:
        with self._lock:
            items = [
                p for p in self._records.values() if p.company_id == company_id and p.is_active(now)
            ]
        return sorted(items, key=lambda p: p.heartbeat_at, reverse=True)

    def delete_expired(self, now: datetime, limit: int) -> int:
        with self._lock:
            expired = sorted(
                (p for p in self._records.values() if p.expires_at < now),
                key=lambda p: p.expires_at,
            )[:limit]
            for record in expired:
                del self._records[record.user_id]
            return len(expired)
