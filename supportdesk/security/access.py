"""Membership lookups and the capability checks built on them.

Every operation that acts on behalf of staff or reads presence resolves the
caller's membership once and derives a :class:`Capabilities` value from it.
Role branching lives here and nowhere else.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from ..exceptions import AccessDeniedError
from ..models import User, UserCompany

logger = logging.getLogger(__name__)

ROLES = ("admin", "manager", "support", "viewer", "customer")
AGENT_ROLES = frozenset({"admin", "manager", "support"})


@dataclass(frozen=True)
class Access:
    has_access: bool
    role: str | None = None
    display_name: str | None = None

    @property
    def first_name(self) -> str | None:
        if not self.display_name:
            return None
        return self.display_name.split()[0]


NO_ACCESS = Access(has_access=False)


@dataclass(frozen=True)
class Capabilities:
    can_claim: bool = False
    can_resolve: bool = False
    can_send_as_agent: bool = False
    can_view_presence: bool = False
    can_manage: bool = False

    @classmethod
    def for_access(cls, access: Access) -> "Capabilities":
        if not access.has_access:
            return cls()
        is_agent = access.role in AGENT_ROLES
        return cls(
            can_claim=is_agent,
            can_resolve=is_agent,
            can_send_as_agent=is_agent,
            can_view_presence=True,
            can_manage=access.role == "admin",
        )


class AccessResolver(Protocol):
    """Answers "may this user act in this company, and as what?"."""

    def resolve(self, user_id: uuid.UUID, company_id: uuid.UUID) -> Access: ...

    def list_members(
        self, company_id: uuid.UUID, roles: Iterable[str] | None = None
    ) -> list[uuid.UUID]: ...


def authorize(
    resolver: AccessResolver,
    user_id: uuid.UUID,
    company_id: uuid.UUID,
    capability: str,
) -> Access:
    """Return the caller's :class:`Access` or raise :class:`AccessDeniedError`."""

    access = resolver.resolve(user_id, company_id)
    if not getattr(Capabilities.for_access(access), capability):
        logger.info(
            "Denied %s for user %s in company %s (role=%s)",
            capability,
            user_id,
            company_id,
            access.role,
        )
        raise AccessDeniedError(f"User is not allowed to perform '{capability}'")
    return access


class SqlAccessResolver:
    """Resolve memberships from the ``user_companies`` table."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def resolve(self, user_id: uuid.UUID, company_id: uuid.UUID) -> Access:
        with self._session_factory() as session:
            row = session.execute(
                select(UserCompany.role, User.display_name)
                .join(User, User.id == UserCompany.user_id)
                .where(UserCompany.user_id == user_id, UserCompany.company_id == company_id)
            ).first()
        if row is None:
            return NO_ACCESS
        return Access(has_access=True, role=row.role, display_name=row.display_name)

    def list_members(
        self, company_id: uuid.UUID, roles: Iterable[str] | None = None
    ) -> list[uuid.UUID]:
        stmt = select(UserCompany.user_id).where(UserCompany.company_id == company_id)
        if roles is not None:
            stmt = stmt.where(UserCompany.role.in_(list(roles)))
        with self._session_factory() as session:
            return list(session.scalars(stmt.order_by(UserCompany.joined_at)))


class InMemoryAccessResolver:
    """Dictionary-backed resolver for tests and local runs."""

    def __init__(self) -> None:
        self._members: dict[tuple[uuid.UUID, uuid.UUID], Access] = {}
        self._lock = threading.Lock()

    def grant(
        self,
        user_id: uuid.UUID,
        company_id: uuid.UUID,
        role: str,
        display_name: str | None = None,
    ) -> None:
        if role not in ROLES:
            raise ValueError(f"Unknown role: {role}")
        with self._lock:
            self._members[(user_id, company_id)] = Access(
                has_access=True, role=role, display_name=display_name
            )

    def revoke(self, user_id: uuid.UUID, company_id: uuid.UUID) -> None:
        with self._lock:
            self._members.pop((user_id, company_id), None)

    def resolve(self, user_id: uuid.UUID, company_id: uuid.UUID) -> Access:
        with self._lock:
            return self._members.get((user_id, company_id), NO_ACCESS)

    def list_members(
        self, company_id: uuid.UUID, roles: Iterable[str] | None = None
    ) -> list[uuid.UUID]:
        wanted = set(roles) if roles is not None else None
        with self._lock:
            return [
                user_id
                for (user_id, member_company), access in self._members.items()
                if member_company == company_id and (wanted is None or access.role in wanted)
            ]
