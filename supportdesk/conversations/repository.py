"""Database repository for conversations and their messages."""
from __future__ import annotations

import itertools
import threading
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Tuple
from uuid import UUID

import psycopg
from psycopg.rows import dict_row

from . import schemas
from .models import ConversationStatus, MessageRole, NewMessage, Reader

_READ_COLUMNS = {
    Reader.AGENT: "read_by_agent_at",
    Reader.CUSTOMER: "read_by_customer_at",
}


class ConversationRepository(Protocol):
    """Company-scoped persistence for conversations and messages.

    Every query is filtered by the company the repository was built for.
    Writes that must be atomic with a status check happen inside
    :meth:`locked`.
    """

    @property
    def company_id(self) -> UUID: ...

    def create_conversation(
        self, customer_id: UUID, *, now: datetime
    ) -> Tuple[schemas.Conversation, bool]:
        """Return the customer's open conversation, inserting one if needed.

        The boolean is ``True`` when a new row was created.
        """
        ...

    def get_open_conversation(self, customer_id: UUID) -> Optional[schemas.Conversation]: ...

    def get_conversation(self, conversation_id: int) -> Optional[schemas.Conversation]: ...

    def locked(
        self, conversation_id: int
    ) -> AbstractContextManager[Optional[schemas.Conversation]]:
        """Hold an exclusive row lock on the conversation for the block."""
        ...

    def save_conversation(self, conversation: schemas.Conversation) -> schemas.Conversation: ...

    def add_message(self, message: NewMessage) -> schemas.Message: ...

    def get_message(self, message_id: int) -> Optional[schemas.Message]: ...

    def latest_message(self, conversation_id: int) -> Optional[schemas.Message]: ...

    def list_messages(
        self,
        conversation_id: int,
        *,
        limit: int = 50,
        before: Optional[datetime] = None,
    ) -> List[schemas.Message]: ...

    def mark_read(self, conversation_id: int, reader: Reader, at: datetime) -> int: ...

    def count_unread(self, conversation_id: int, reader: Reader) -> int: ...

    def list_conversations(
        self, *, status: Optional[ConversationStatus] = None, limit: int = 50
    ) -> List[schemas.Conversation]: ...

    def count_by_status(self) -> Dict[str, int]: ...

    def delete_customer_conversations(self, customer_id: UUID) -> int: ...


class PostgresConversationRepository:
    """PostgreSQL implementation of :class:`ConversationRepository`.

    The connection is expected to run in autocommit mode so that each
    :meth:`locked` block is its own transaction and releases the row lock
    as soon as the block exits.
    """

    def __init__(self, conn: psycopg.Connection, company_id: UUID) -> None:
        self._conn = conn
        self._company_id = company_id

    # Utility -----------------------------------------------------------------
    def _cursor(self):
        return self._conn.cursor(row_factory=dict_row)

    @property
    def company_id(self) -> UUID:
        return self._company_id

    # Conversation operations --------------------------------------------------
    def create_conversation(
        self, customer_id: UUID, *, now: datetime
    ) -> Tuple[schemas.Conversation, bool]:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO conversations (company_id, customer_id, status, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (company_id, customer_id) WHERE status <> 'resolved' DO NOTHING
                RETURNING *
                """,
                (self._company_id, customer_id, ConversationStatus.AI_HANDLING.value, now, now),
            )
            row = cur.fetchone()
        if row:
            return self._hydrate_conversation(row), True
        existing = self.get_open_conversation(customer_id)
        if existing is None:  # pragma: no cover - resolved between insert and select
            raise RuntimeError("Conversation disappeared after insert conflict")
        return existing, False

    def get_open_conversation(self, customer_id: UUID) -> Optional[schemas.Conversation]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT * FROM conversations
                WHERE company_id = %s AND customer_id = %s AND status <> 'resolved'
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (self._company_id, customer_id),
            )
            row = cur.fetchone()
        return self._hydrate_conversation(row) if row else None

    def get_conversation(self, conversation_id: int) -> Optional[schemas.Conversation]:
        with self._cursor() as cur:
            cur.execute(
                "SELECT * FROM conversations WHERE company_id = %s AND id = %s",
                (self._company_id, conversation_id),
            )
            row = cur.fetchone()
        return self._hydrate_conversation(row) if row else None

    @contextmanager
    def locked(self, conversation_id: int) -> Iterator[Optional[schemas.Conversation]]:
        with self._conn.transaction():
            with self._cursor() as cur:
                cur.execute(
                    "SELECT * FROM conversations WHERE company_id = %s AND id = %s FOR UPDATE",
                    (self._company_id, conversation_id),
                )
                row = cur.fetchone()
            yield self._hydrate_conversation(row) if row else None

    def save_conversation(self, conversation: schemas.Conversation) -> schemas.Conversation:
        with self._cursor() as cur:
            cur.execute(
                """
                UPDATE conversations SET
                    status = %s,
                    participating_agents = %s,
                    ai_processing = %s,
                    ai_processing_started_at = %s,
                    ai_failure_count = %s,
                    handoff_triggered_at = %s,
                    handoff_reason = %s,
                    message_count = %s,
                    first_message_at = %s,
                    last_message_at = %s,
                    last_agent_message = %s,
                    resolved_at = %s,
                    updated_at = %s
                WHERE company_id = %s AND id = %s
                RETURNING *
                """,
                (
                    conversation.status.value,
                    list(conversation.participating_agents),
                    conversation.ai_processing,
                    conversation.ai_processing_started_at,
                    conversation.ai_failure_count,
                    conversation.handoff_triggered_at,
                    conversation.handoff_reason,
                    conversation.message_count,
                    conversation.first_message_at,
                    conversation.last_message_at,
                    conversation.last_agent_message,
                    conversation.resolved_at,
                    conversation.updated_at,
                    self._company_id,
                    conversation.id,
                ),
            )
            row = cur.fetchone()
        if not row:
            raise RuntimeError(f"Conversation {conversation.id} vanished during update")
        return self._hydrate_conversation(row)

    def list_conversations(
        self, *, status: Optional[ConversationStatus] = None, limit: int = 50
    ) -> List[schemas.Conversation]:
        clauses = ["company_id = %s"]
        params: List[Any] = [self._company_id]
        if status is not None:
            clauses.append("status = %s")
            params.append(status.value)
        params.append(limit)
        query = (
            "SELECT * FROM conversations WHERE "
            f"{' AND '.join(clauses)} "
            "ORDER BY updated_at DESC, id DESC LIMIT %s"
        )
        with self._cursor() as cur:
            cur.execute(query, params)
            rows = cur.fetchall()
        return [self._hydrate_conversation(row) for row in rows]

    def count_by_status(self) -> Dict[str, int]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT status, COUNT(*) AS total FROM conversations
                WHERE company_id = %s
                GROUP BY status
                """,
                (self._company_id,),
            )
            rows = cur.fetchall()
        return {row["status"]: row["total"] for row in rows}

    def delete_customer_conversations(self, customer_id: UUID) -> int:
        with self._conn.transaction():
            with self._cursor() as cur:
                cur.execute(
                    """
                    DELETE FROM messages
                    WHERE company_id = %s AND conversation_id IN (
                        SELECT id FROM conversations WHERE company_id = %s AND customer_id = %s
                    )
                    """,
                    (self._company_id, self._company_id, customer_id),
                )
                cur.execute(
                    "DELETE FROM conversations WHERE company_id = %s AND customer_id = %s",
                    (self._company_id, customer_id),
                )
                return cur.rowcount

    # Message operations -------------------------------------------------------
    def add_message(self, message: NewMessage) -> schemas.Message:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO messages
                    (conversation_id, company_id, role, content, timestamp,
                     attachment_url, attachment_type, ai_model, tokens_used,
                     processing_time_ms, agent_id, agent_name, system_message_type)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    message.conversation_id,
                    self._company_id,
                    message.role.value,
                    message.content,
                    message.timestamp,
                    message.attachment_url,
                    message.attachment_type,
                    message.ai_model,
                    message.tokens_used,
                    message.processing_time_ms,
                    message.agent_id,
                    message.agent_name,
                    message.system_message_type.value if message.system_message_type else None,
                ),
            )
            row = cur.fetchone()
        return schemas.Message(**row)

    def get_message(self, message_id: int) -> Optional[schemas.Message]:
        with self._cursor() as cur:
            cur.execute(
                "SELECT * FROM messages WHERE company_id = %s AND id = %s",
                (self._company_id, message_id),
            )
            row = cur.fetchone()
        return schemas.Message(**row) if row else None

    def latest_message(self, conversation_id: int) -> Optional[schemas.Message]:
        messages = self.list_messages(conversation_id, limit=1)
        return messages[0] if messages else None

    def list_messages(
        self,
        conversation_id: int,
        *,
        limit: int = 50,
        before: Optional[datetime] = None,
    ) -> List[schemas.Message]:
        clauses = ["company_id = %s", "conversation_id = %s"]
        params: List[Any] = [self._company_id, conversation_id]
        if before is not None:
            clauses.append("timestamp < %s")
            params.append(before)
        params.append(limit)
        query = (
            "SELECT * FROM ("
            f"SELECT * FROM messages WHERE {' AND '.join(clauses)} "
            "ORDER BY timestamp DESC, id DESC LIMIT %s"
            ") recent ORDER BY timestamp ASC, id ASC"
        )
        with self._cursor() as cur:
            cur.execute(query, params)
            rows = cur.fetchall()
        return [schemas.Message(**row) for row in rows]

    def mark_read(self, conversation_id: int, reader: Reader, at: datetime) -> int:
        column = _READ_COLUMNS[reader]
        with self._cursor() as cur:
            cur.execute(
                f"""
                UPDATE messages SET {column} = %s
                WHERE company_id = %s AND conversation_id = %s
                  AND role = ANY(%s) AND {column} IS NULL
                """,
                (at, self._company_id, conversation_id, [r.value for r in reader.unread_roles]),
            )
            return cur.rowcount

    def count_unread(self, conversation_id: int, reader: Reader) -> int:
        column = _READ_COLUMNS[reader]
        with self._cursor() as cur:
            cur.execute(
                f"""
                SELECT COUNT(*) AS total FROM messages
                WHERE company_id = %s AND conversation_id = %s
                  AND role = ANY(%s) AND {column} IS NULL
                """,
                (self._company_id, conversation_id, [r.value for r in reader.unread_roles]),
            )
            row = cur.fetchone() or {"total": 0}
        return row["total"]

    # Helpers ------------------------------------------------------------------
    def _hydrate_conversation(self, row: Dict[str, Any]) -> schemas.Conversation:
        data = dict(row)
        data["participating_agents"] = list(data.get("participating_agents") or [])
        return schemas.Conversation(**data)


class InMemoryConversationStore:
    """Shared backing store so several company-scoped repositories can coexist."""

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.conversations: Dict[int, schemas.Conversation] = {}
        self.messages: Dict[int, schemas.Message] = {}
        self._conversation_ids = itertools.count(1)
        self._message_ids = itertools.count(1)

    def next_conversation_id(self) -> int:
        return next(self._conversation_ids)

    def next_message_id(self) -> int:
        return next(self._message_ids)


class InMemoryConversationRepository:
    """Lock-based in-process implementation used by tests and local runs."""

    def __init__(
        self, company_id: UUID, store: Optional[InMemoryConversationStore] = None
    ) -> None:
        self._company_id = company_id
        self._store = store or InMemoryConversationStore()

    @property
    def company_id(self) -> UUID:
        return self._company_id

    @property
    def store(self) -> InMemoryConversationStore:
        return self._store

    def create_conversation(
        self, customer_id: UUID, *, now: datetime
    ) -> Tuple[schemas.Conversation, bool]:
        with self._store.lock:
            existing = self.get_open_conversation(customer_id)
            if existing is not None:
                return existing, False
            conversation = schemas.Conversation(
                id=self._store.next_conversation_id(),
                company_id=self._company_id,
                customer_id=customer_id,
                created_at=now,
                updated_at=now,
            )
            self._store.conversations[conversation.id] = conversation
            return conversation.model_copy(deep=True), True

    def get_open_conversation(self, customer_id: UUID) -> Optional[schemas.Conversation]:
        with self._store.lock:
            candidates = [
                c
                for c in self._own_conversations()
                if c.customer_id == customer_id and c.status is not ConversationStatus.RESOLVED
            ]
            if not candidates:
                return None
            latest = max(candidates, key=lambda c: (c.created_at, c.id))
            return latest.model_copy(deep=True)

    def get_conversation(self, conversation_id: int) -> Optional[schemas.Conversation]:
        with self._store.lock:
            conversation = self._store.conversations.get(conversation_id)
            if conversation is None or conversation.company_id != self._company_id:
                return None
            return conversation.model_copy(deep=True)

    @contextmanager
    def locked(self, conversation_id: int) -> Iterator[Optional[schemas.Conversation]]:
        with self._store.lock:
            yield self.get_conversation(conversation_id)

    def save_conversation(self, conversation: schemas.Conversation) -> schemas.Conversation:
        with self._store.lock:
            current = self._store.conversations.get(conversation.id)
            if current is None or current.company_id != self._company_id:
                raise RuntimeError(f"Conversation {conversation.id} vanished during update")
            stored = conversation.model_copy(deep=True)
            self._store.conversations[conversation.id] = stored
            return stored.model_copy(deep=True)

    def list_conversations(
        self, *, status: Optional[ConversationStatus] = None, limit: int = 50
    ) -> List[schemas.Conversation]:
        with self._store.lock:
            items = [
                c for c in self._own_conversations() if status is None or c.status is status
            ]
            items.sort(key=lambda c: (c.updated_at, c.id), reverse=True)
            return [c.model_copy(deep=True) for c in items[:limit]]

    def count_by_status(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        with self._store.lock:
            for conversation in self._own_conversations():
                key = conversation.status.value
                counts[key] = counts.get(key, 0) + 1
        return counts

    def delete_customer_conversations(self, customer_id: UUID) -> int:
        with self._store.lock:
            doomed = {
                c.id for c in self._own_conversations() if c.customer_id == customer_id
            }
            for conversation_id in doomed:
                del self._store.conversations[conversation_id]
            for message_id in [
                m.id for m in self._store.messages.values() if m.conversation_id in doomed
            ]:
                del self._store.messages[message_id]
            return len(doomed)

    def add_message(self, message: NewMessage) -> schemas.Message:
        with self._store.lock:
            stored = schemas.Message(
                id=self._store.next_message_id(),
                conversation_id=message.conversation_id,
                company_id=self._company_id,
                role=message.role,
                content=message.content,
                timestamp=message.timestamp,
                attachment_url=message.attachment_url,
                attachment_type=message.attachment_type,
                ai_model=message.ai_model,
                tokens_used=message.tokens_used,
                processing_time_ms=message.processing_time_ms,
                agent_id=message.agent_id,
                agent_name=message.agent_name,
                system_message_type=message.system_message_type,
            )
            self._store.messages[stored.id] = stored
            return stored.model_copy(deep=True)

    def get_message(self, message_id: int) -> Optional[schemas.Message]:
        with self._store.lock:
            message = self._store.messages.get(message_id)
            if message is None or message.company_id != self._company_id:
                return None
            return message.model_copy(deep=True)

    def latest_message(self, conversation_id: int) -> Optional[schemas.Message]:
        messages = self.list_messages(conversation_id, limit=1)
        return messages[0] if messages else None

    def list_messages(
        self,
        conversation_id: int,
        *,
        limit: int = 50,
        before: Optional[datetime] = None,
    ) -> List[schemas.Message]:
        with self._store.lock:
            items = [
                m
                for m in self._own_messages(conversation_id)
                if before is None or m.timestamp < before
            ]
            items.sort(key=lambda m: (m.timestamp, m.id))
            return [m.model_copy(deep=True) for m in items[-limit:]] if limit > 0 else []

    def mark_read(self, conversation_id: int, reader: Reader, at: datetime) -> int:
        column = _READ_COLUMNS[reader]
        marked = 0
        with self._store.lock:
            for message in self._own_messages(conversation_id):
                if message.role in reader.unread_roles and getattr(message, column) is None:
                    setattr(message, column, at)
                    marked += 1
        return marked

    def count_unread(self, conversation_id: int, reader: Reader) -> int:
        column = _READ_COLUMNS[reader]
        with self._store.lock:
            return sum(
                1
                for message in self._own_messages(conversation_id)
                if message.role in reader.unread_roles and getattr(message, column) is None
            )

    # Helpers ------------------------------------------------------------------
    def _own_conversations(self) -> List[schemas.Conversation]:
        return [
            c for c in self._store.conversations.values() if c.company_id == self._company_id
        ]

    def _own_messages(self, conversation_id: int) -> List[schemas.Message]:
        return [
            m
            for m in self._store.messages.values()
            if m.conversation_id == conversation_id and m.company_id == self._company_id
        ]
