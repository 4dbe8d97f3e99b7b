"""Best-effort delivery of staff and customer notices.

Notification failures never block a conversation transition: notifiers log
and report ``False`` instead of raising.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

import requests

logger = logging.getLogger(__name__)

AGENT_JOINED = "agent_joined"
CONVERSATION_NEEDS_AGENT = "conversation_needs_agent"
USAGE_WARNING = "usage_warning"


@dataclass(frozen=True)
class Notification:
    kind: str
    company_id: uuid.UUID
    recipients: tuple[uuid.UUID, ...]
    title: str
    content: str
    data: dict[str, Any] = field(default_factory=dict)

    def as_payload(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "company_id": str(self.company_id),
            "recipients": [str(r) for r in self.recipients],
            "title": self.title,
            "content": self.content,
            "data": self.data,
        }


class Notifier(Protocol):
    def send(self, notification: Notification) -> bool: ...


class LoggingNotifier:
    """Default notifier: records the notice in the application log."""

    def send(self, notification: Notification) -> bool:
        if not notification.recipients:
            logger.info("No recipients for %s notification", notification.kind)
            return False
        logger.info(
            "Notification %s for %d recipient(s) in company %s",
            notification.kind,
            len(notification.recipients),
            notification.company_id,
        )
        return True


class WebhookNotifier:
    """POST notices as JSON to an external delivery service."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 5.0,
        session: requests.Session | None = None,
    ) -> None:
        self._url = url
        self._timeout = timeout
        self._session = session or requests.Session()

    def send(self, notification: Notification) -> bool:
        if not notification.recipients:
            return False
        try:
            response = self._session.post(
                self._url, json=notification.as_payload(), timeout=self._timeout
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.warning(
                "Failed to deliver %s notification: %s", notification.kind, exc
            )
            return False
        return True


def notify_agent_joined(
    notifier: Notifier,
    *,
    company_id: uuid.UUID,
    customer_id: uuid.UUID,
    conversation_id: int,
    agent_name: str,
) -> bool:
    return notifier.send(
        Notification(
            kind=AGENT_JOINED,
            company_id=company_id,
            recipients=(customer_id,),
            title="Agent support is here",
            content=f"{agent_name} has joined your conversation",
            data={"conversation_id": conversation_id},
        )
    )


def notify_conversation_needs_agent(
    notifier: Notifier,
    *,
    company_id: uuid.UUID,
    agent_ids: list[uuid.UUID],
    conversation_id: int,
    reason: str,
) -> bool:
    return notifier.send(
        Notification(
            kind=CONVERSATION_NEEDS_AGENT,
            company_id=company_id,
            recipients=tuple(agent_ids),
            title="A conversation needs you",
            content=reason,
            data={"conversation_id": conversation_id},
        )
    )


def notify_usage_warning(
    notifier: Notifier,
    *,
    company_id: uuid.UUID,
    admin_ids: list[uuid.UUID],
    current_usage: int,
    limit: int,
    plan_name: str,
    threshold: float = 0.8,
) -> bool:
    return notifier.send(
        Notification(
            kind=USAGE_WARNING,
            company_id=company_id,
            recipients=tuple(admin_ids),
            title="Usage Warning",
            content=(
                f"Your AI responses have reached {round(threshold * 100)}% of your {plan_name} plan limit "
                f"({current_usage}/{limit})."
            ),
            data={"current_usage": current_usage, "limit": limit},
        )
    )
