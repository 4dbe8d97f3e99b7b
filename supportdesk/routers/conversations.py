"""Conversation lifecycle API routes."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request

from ..config import Settings, load_settings
from ..conversations import ConversationService, ConversationStatus
from ..conversations import schemas as convo_schemas
from ..core.auth import Caller, get_caller
from ..core.db import DatabaseNotConfiguredError, connect
from ..core.errors import to_http_exception
from ..core.services import build_conversation_service
from ..exceptions import SupportDeskError
from ..ratelimit import RateLimitExceeded

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["conversations"])


def _settings(request: Request) -> Settings:
    settings = getattr(request.app.state, "settings", None)
    return settings if settings is not None else load_settings()


@contextmanager
def _open_service(company_id: UUID, settings: Settings) -> Iterator[ConversationService]:
    try:
        conn = connect()
    except DatabaseNotConfiguredError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    try:
        yield build_conversation_service(conn, company_id, settings)
    finally:
        conn.close()


@contextmanager
def _service_context(request: Request, caller: Caller) -> Iterator[ConversationService]:
    with _open_service(caller.company_id, _settings(request)) as service:
        try:
            yield service
        except (SupportDeskError, RateLimitExceeded) as exc:
            raise to_http_exception(exc) from exc


def _respond_with_ai(
    company_id: UUID, conversation_id: int, message_id: int, settings: Settings
) -> None:
    with _open_service(company_id, settings) as service:
        result = service.generate_ai_response(conversation_id, message_id)
    logger.info(
        "AI response for conversation %s finished: %s", conversation_id, result.outcome.value
    )


# Customer routes --------------------------------------------------------------
@router.post("/conversations", response_model=convo_schemas.Conversation)
def create_conversation(
    request: Request, caller: Caller = Depends(get_caller)
) -> convo_schemas.Conversation:
    with _service_context(request, caller) as conversations:
        return conversations.create_conversation(caller.user_id)


@router.post("/messages", response_model=convo_schemas.CustomerMessageResult)
def send_customer_message(
    payload: convo_schemas.CustomerMessageRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    caller: Caller = Depends(get_caller),
) -> convo_schemas.CustomerMessageResult:
    """Store a customer message and queue the AI reply when the AI owns the thread."""

    with _service_context(request, caller) as conversations:
        result = conversations.send_customer_message(caller.user_id, payload)
    if result.ai_eligible:
        background_tasks.add_task(
            _respond_with_ai,
            caller.company_id,
            result.conversation.id,
            result.message.id,
            _settings(request),
        )
    return result


@router.post(
    "/conversations/{conversation_id}/request-human",
    response_model=convo_schemas.Conversation,
)
def request_human_support(
    conversation_id: int, request: Request, caller: Caller = Depends(get_caller)
) -> convo_schemas.Conversation:
    with _service_context(request, caller) as conversations:
        return conversations.request_human_support(conversation_id, caller.user_id)


@router.post(
    "/conversations/{conversation_id}/read/customer",
    response_model=convo_schemas.ReadReceipt,
)
def mark_read_by_customer(
    conversation_id: int, request: Request, caller: Caller = Depends(get_caller)
) -> convo_schemas.ReadReceipt:
    with _service_context(request, caller) as conversations:
        return conversations.mark_read_by_customer(conversation_id, caller.user_id)


@router.get(
    "/conversations/{conversation_id}/unread/customer",
    response_model=convo_schemas.UnreadCount,
)
def unread_count_for_customer(
    conversation_id: int, request: Request, caller: Caller = Depends(get_caller)
) -> convo_schemas.UnreadCount:
    with _service_context(request, caller) as conversations:
        return conversations.unread_count_for_customer(conversation_id, caller.user_id)


# Shared read routes -----------------------------------------------------------
@router.get("/conversations", response_model=convo_schemas.ConversationList)
def list_conversations(
    request: Request,
    status: ConversationStatus | None = None,
    limit: int = Query(50, ge=1, le=200),
    caller: Caller = Depends(get_caller),
) -> convo_schemas.ConversationList:
    with _service_context(request, caller) as conversations:
        return conversations.list_conversations(caller.user_id, status=status, limit=limit)


@router.get("/conversations/counts", response_model=convo_schemas.StatusCounts)
def count_by_status(
    request: Request, caller: Caller = Depends(get_caller)
) -> convo_schemas.StatusCounts:
    with _service_context(request, caller) as conversations:
        return conversations.count_by_status(caller.user_id)


@router.get(
    "/conversations/{conversation_id}",
    response_model=convo_schemas.ConversationOverview,
)
def get_conversation(
    conversation_id: int, request: Request, caller: Caller = Depends(get_caller)
) -> convo_schemas.ConversationOverview:
    with _service_context(request, caller) as conversations:
        return conversations.get_conversation(conversation_id, caller.user_id)


@router.get(
    "/conversations/{conversation_id}/messages",
    response_model=convo_schemas.MessageList,
)
def list_messages(
    conversation_id: int,
    request: Request,
    limit: int | None = Query(None, ge=1, le=200),
    before: datetime | None = None,
    caller: Caller = Depends(get_caller),
) -> convo_schemas.MessageList:
    with _service_context(request, caller) as conversations:
        return conversations.list_messages(
            conversation_id, caller.user_id, limit=limit, before=before
        )


# Staff routes -----------------------------------------------------------------
@router.post(
    "/conversations/{conversation_id}/claim",
    response_model=convo_schemas.ClaimResult,
)
def claim_conversation(
    conversation_id: int, request: Request, caller: Caller = Depends(get_caller)
) -> convo_schemas.ClaimResult:
    with _service_context(request, caller) as conversations:
        return conversations.claim_conversation(conversation_id, caller.user_id)


@router.post(
    "/conversations/{conversation_id}/agent-messages",
    response_model=convo_schemas.AgentMessageResult,
)
def send_agent_message(
    conversation_id: int,
    payload: convo_schemas.AgentMessageRequest,
    request: Request,
    caller: Caller = Depends(get_caller),
) -> convo_schemas.AgentMessageResult:
    with _service_context(request, caller) as conversations:
        return conversations.send_agent_message(conversation_id, caller.user_id, payload)


@router.post(
    "/conversations/{conversation_id}/handoff",
    response_model=convo_schemas.Conversation,
)
def trigger_handoff(
    conversation_id: int,
    payload: convo_schemas.HandoffRequest,
    request: Request,
    caller: Caller = Depends(get_caller),
) -> convo_schemas.Conversation:
    with _service_context(request, caller) as conversations:
        return conversations.trigger_handoff(
            conversation_id, payload.reason, actor_id=caller.user_id
        )


@router.post(
    "/conversations/{conversation_id}/resolve",
    response_model=convo_schemas.Conversation,
)
def resolve_conversation(
    conversation_id: int, request: Request, caller: Caller = Depends(get_caller)
) -> convo_schemas.Conversation:
    with _service_context(request, caller) as conversations:
        return conversations.resolve_conversation(conversation_id, caller.user_id)


@router.post(
    "/conversations/{conversation_id}/handback",
    response_model=convo_schemas.Conversation,
)
def hand_back_to_ai(
    conversation_id: int, request: Request, caller: Caller = Depends(get_caller)
) -> convo_schemas.Conversation:
    with _service_context(request, caller) as conversations:
        return conversations.hand_back_to_ai(conversation_id, caller.user_id)


@router.post(
    "/conversations/{conversation_id}/read/agent",
    response_model=convo_schemas.ReadReceipt,
)
def mark_read_by_agent(
    conversation_id: int, request: Request, caller: Caller = Depends(get_caller)
) -> convo_schemas.ReadReceipt:
    with _service_context(request, caller) as conversations:
        return conversations.mark_read_by_agent(conversation_id, caller.user_id)


@router.get(
    "/conversations/{conversation_id}/unread/agent",
    response_model=convo_schemas.UnreadCount,
)
def unread_count_for_agent(
    conversation_id: int, request: Request, caller: Caller = Depends(get_caller)
) -> convo_schemas.UnreadCount:
    with _service_context(request, caller) as conversations:
        return conversations.unread_count_for_agent(conversation_id, caller.user_id)


@router.delete("/customers/{customer_id}/conversations")
def delete_customer_conversations(
    customer_id: UUID, request: Request, caller: Caller = Depends(get_caller)
) -> dict[str, int]:
    with _service_context(request, caller) as conversations:
        deleted = conversations.delete_customer_conversations(customer_id, caller.user_id)
    return {"deleted": deleted}
