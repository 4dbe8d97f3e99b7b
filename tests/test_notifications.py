import logging
import uuid

import requests

from conftest import RecordingNotifier
from supportdesk.notifications import (
    AGENT_JOINED,
    CONVERSATION_NEEDS_AGENT,
    LoggingNotifier,
    Notification,
    WebhookNotifier,
    notify_agent_joined,
    notify_conversation_needs_agent,
    notify_usage_warning,
)

COMPANY_ID = uuid.UUID("11111111-1111-1111-1111-111111111111")
USER_ID = uuid.UUID("22222222-2222-2222-2222-222222222222")


class FakeResponse:
    def __init__(self, status_code=200):
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response or FakeResponse()
        self.error = error
        self.posts = []

    def post(self, url, json=None, timeout=None):
        self.posts.append((url, json, timeout))
        if self.error is not None:
            raise self.error
        return self.response


def _notification(recipients=(USER_ID,)):
    return Notification(
        kind=AGENT_JOINED,
        company_id=COMPANY_ID,
        recipients=recipients,
        title="Agent support is here",
        content="Alice has joined your conversation",
        data={"conversation_id": 7},
    )


def test_webhook_posts_payload():
    session = FakeSession()
    notifier = WebhookNotifier("https://hooks.example.com/notify", timeout=2.0, session=session)

    assert notifier.send(_notification()) is True
    url, payload, timeout = session.posts[0]
    assert url == "https://hooks.example.com/notify"
    assert timeout == 2.0
    assert payload == {
        "kind": "agent_joined",
        "company_id": str(COMPANY_ID),
        "recipients": [str(USER_ID)],
        "title": "Agent support is here",
        "content": "Alice has joined your conversation",
        "data": {"conversation_id": 7},
    }


def test_webhook_failures_are_reported_not_raised(caplog):
    down = WebhookNotifier("https://hooks.example.com", session=FakeSession(error=requests.ConnectionError("refused")))
    rejected = WebhookNotifier("https://hooks.example.com", session=FakeSession(FakeResponse(502)))

    assert down.send(_notification()) is False
    assert rejected.send(_notification()) is False
    assert "Failed to deliver agent_joined notification" in caplog.text


def test_webhook_skips_empty_recipients():
    session = FakeSession()

    assert WebhookNotifier("https://hooks.example.com", session=session).send(_notification(())) is False
    assert session.posts == []


def test_logging_notifier(caplog):
    caplog.set_level(logging.INFO, logger="supportdesk.notifications")
    notifier = LoggingNotifier()

    assert notifier.send(_notification()) is True
    assert notifier.send(_notification(())) is False
    assert "Notification agent_joined for 1 recipient(s)" in caplog.text


def test_helpers_build_notices():
    notifier = RecordingNotifier()
    agents = [uuid.uuid4(), uuid.uuid4()]

    notify_agent_joined(
        notifier, company_id=COMPANY_ID, customer_id=USER_ID, conversation_id=3, agent_name="Alice"
    )
    notify_conversation_needs_agent(
        notifier, company_id=COMPANY_ID, agent_ids=agents, conversation_id=3, reason="Customer requested human support"
    )
    sent = notify_usage_warning(
        notifier, company_id=COMPANY_ID, admin_ids=[], current_usage=8, limit=10, plan_name="Starter"
    )

    joined, needs_agent, warning = notifier.sent
    assert joined.recipients == (USER_ID,)
    assert joined.content == "Alice has joined your conversation"
    assert needs_agent.kind == CONVERSATION_NEEDS_AGENT
    assert needs_agent.recipients == tuple(agents)
    assert needs_agent.data == {"conversation_id": 3}
    assert warning.content == "Your AI responses have reached 80% of your Starter plan limit (8/10)."
    assert sent is False
