import pathlib
import sys
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi import FastAPI, Request
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from supportdesk.ai.client import CompletionRequest, LLMOutcome, TextReply
from supportdesk.ai.prompts import AIConfig
from supportdesk.app_logging import init_logging
from supportdesk.companies import InMemoryCompanyDirectory
from supportdesk.config import Settings
from supportdesk.conversations import (
    ConversationService,
    InMemoryConversationRepository,
    InMemoryConversationStore,
)
from supportdesk.models import Base
from supportdesk.notifications import Notification
from supportdesk.presence import InMemoryPresenceRepository, PresenceTracker
from supportdesk.ratelimit import InMemoryRateLimitRepository, RateLimiter
from supportdesk.security.access import InMemoryAccessResolver
from supportdesk.usage import InMemoryUsageTracker

TOKEN_SECRET = "super-secret-key"
TOKEN_AUDIENCE = "supportdesk"
TOKEN_ISSUER = "auth.supportdesk"


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeLLM:
    """Returns queued outcomes (or raises queued exceptions) in order."""

    def __init__(self, *outcomes: LLMOutcome | Exception) -> None:
        self.outcomes: deque = deque(outcomes)
        self.requests: list[CompletionRequest] = []

    def queue(self, *outcomes: LLMOutcome | Exception) -> None:
        self.outcomes.extend(outcomes)

    def complete(self, request: CompletionRequest) -> LLMOutcome:
        self.requests.append(request)
        outcome = self.outcomes.popleft() if self.outcomes else TextReply(
            text="How can I help?", model="gpt-4o-mini", tokens_used=12
        )
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[Notification] = []

    def send(self, notification: Notification) -> bool:
        self.sent.append(notification)
        return bool(notification.recipients)

    def kinds(self) -> list[str]:
        return [n.kind for n in self.sent]


@dataclass
class Desk:
    """One company with a customer, two agents and an admin, all in memory."""

    company_id: uuid.UUID
    customer_id: uuid.UUID
    agent_id: uuid.UUID
    second_agent_id: uuid.UUID
    admin_id: uuid.UUID
    clock: FakeClock
    access: InMemoryAccessResolver
    companies: InMemoryCompanyDirectory
    usage: InMemoryUsageTracker
    limiter: RateLimiter
    notifier: RecordingNotifier
    store: InMemoryConversationStore
    llm: FakeLLM
    settings: Settings = field(default_factory=Settings)

    def repository(self, company_id: uuid.UUID | None = None) -> InMemoryConversationRepository:
        return InMemoryConversationRepository(company_id or self.company_id, self.store)

    def service(
        self,
        *,
        settings: Settings | None = None,
        llm: object | None = None,
        company_id: uuid.UUID | None = None,
    ) -> ConversationService:
        return ConversationService(
            self.repository(company_id),
            access=self.access,
            rate_limiter=self.limiter,
            usage=self.usage,
            companies=self.companies,
            llm=llm if llm is not None else self.llm,
            notifier=self.notifier,
            settings=settings or self.settings,
            clock=self.clock,
        )

    def presence(self, repository: InMemoryPresenceRepository | None = None) -> PresenceTracker:
        conversations = self.repository()

        def conversation_company(conversation_id: int) -> uuid.UUID | None:
            conversation = conversations.get_conversation(conversation_id)
            return conversation.company_id if conversation else None

        return PresenceTracker(
            repository or InMemoryPresenceRepository(),
            access=self.access,
            conversation_company=conversation_company,
            settings=self.settings.presence,
            clock=self.clock,
        )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def desk(clock: FakeClock) -> Desk:
    company_id = uuid.uuid4()
    access = InMemoryAccessResolver()
    customer_id, agent_id, second_agent_id, admin_id = (uuid.uuid4() for _ in range(4))
    access.grant(customer_id, company_id, "customer", "Casey Customer")
    access.grant(agent_id, company_id, "support", "Alice Agent")
    access.grant(second_agent_id, company_id, "support", "Bob Builder")
    access.grant(admin_id, company_id, "admin", "Ada Admin")
    settings = Settings()
    return Desk(
        company_id=company_id,
        customer_id=customer_id,
        agent_id=agent_id,
        second_agent_id=second_agent_id,
        admin_id=admin_id,
        clock=clock,
        access=access,
        companies=InMemoryCompanyDirectory(AIConfig()),
        usage=InMemoryUsageTracker(default_limit=100),
        limiter=RateLimiter(InMemoryRateLimitRepository(), settings.rate_limits, clock=clock),
        notifier=RecordingNotifier(),
        store=InMemoryConversationStore(),
        llm=FakeLLM(),
        settings=settings,
    )


@pytest.fixture
def session_factory() -> sessionmaker[Session]:
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, expire_on_commit=False, future=True)
    yield factory
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def token_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TENANT_TOKEN_SECRET", TOKEN_SECRET)
    monkeypatch.setenv("TENANT_TOKEN_AUDIENCE", TOKEN_AUDIENCE)
    monkeypatch.setenv("TENANT_TOKEN_ISSUER", TOKEN_ISSUER)
    monkeypatch.setenv("TENANT_TOKEN_ALGORITHM", "HS256")


def issue_token(
    company_id: uuid.UUID | str | None,
    user_id: uuid.UUID | str | None,
    *,
    secret: str = TOKEN_SECRET,
    expires_in: timedelta = timedelta(minutes=5),
    **extra_claims: object,
) -> str:
    payload: dict[str, object] = {
        "aud": TOKEN_AUDIENCE,
        "iss": TOKEN_ISSUER,
        "exp": datetime.now(timezone.utc) + expires_in,
    }
    if company_id is not None:
        payload["company_id"] = str(company_id)
    if user_id is not None:
        payload["user_id"] = str(user_id)
    payload.update(extra_claims)
    return jwt.encode(payload, secret, algorithm="HS256")


def auth_header(company_id: uuid.UUID, user_id: uuid.UUID) -> dict[str, str]:
    return {"Authorization": f"Bearer {issue_token(company_id, user_id)}"}


@pytest.fixture
def app_factory(monkeypatch):
    def _create_app(log_dir: str, log_request_bodies: bool = False):
        """Create a FastAPI app with logging initialised."""
        monkeypatch.setenv("LOG_DIR", str(log_dir))
        if log_request_bodies:
            monkeypatch.setenv("LOG_REQUEST_BODIES", "true")
        app = FastAPI()

        @app.post("/echo")
        async def echo(request: Request):
            return await request.json()

        init_logging(app)
        return app

    return _create_app
