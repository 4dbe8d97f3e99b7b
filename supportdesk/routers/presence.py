"""Presence, typing and viewing API routes."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request

from ..config import Settings, load_settings
from ..core.auth import Caller, get_caller
from ..core.db import DatabaseNotConfiguredError, connect
from ..core.errors import to_http_exception
from ..core.services import build_presence_tracker
from ..exceptions import SupportDeskError
from ..presence import PresenceTracker
from ..presence import schemas as presence_schemas

router = APIRouter(prefix="/api/presence", tags=["presence"])


def _settings(request: Request) -> Settings:
    settings = getattr(request.app.state, "settings", None)
    return settings if settings is not None else load_settings()


@contextmanager
def _open_tracker(company_id: UUID, settings: Settings) -> Iterator[PresenceTracker]:
    try:
        conn = connect()
    except DatabaseNotConfiguredError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    try:
        yield build_presence_tracker(conn, company_id, settings)
    finally:
        conn.close()


@contextmanager
def _service_context(request: Request, caller: Caller) -> Iterator[PresenceTracker]:
    with _open_tracker(caller.company_id, _settings(request)) as tracker:
        try:
            yield tracker
        except SupportDeskError as exc:
            raise to_http_exception(exc) from exc


@router.put("", response_model=presence_schemas.Presence)
def update_presence(
    payload: presence_schemas.PresenceUpdateRequest,
    request: Request,
    caller: Caller = Depends(get_caller),
) -> presence_schemas.Presence:
    with _service_context(request, caller) as presence:
        return presence.update_presence(
            caller.user_id,
            caller.company_id,
            viewing_conversation=payload.viewing_conversation,
        )


@router.post("/heartbeat", response_model=presence_schemas.Presence)
def heartbeat(
    request: Request, caller: Caller = Depends(get_caller)
) -> presence_schemas.Presence:
    with _service_context(request, caller) as presence:
        return presence.heartbeat(caller.user_id)


@router.post("/typing", response_model=presence_schemas.Presence)
def set_typing(
    payload: presence_schemas.TypingRequest,
    request: Request,
    caller: Caller = Depends(get_caller),
) -> presence_schemas.Presence:
    with _service_context(request, caller) as presence:
        return presence.set_typing(caller.user_id, payload.conversation_id, payload.is_typing)


@router.delete("/typing", response_model=presence_schemas.Presence)
def clear_typing(
    request: Request, caller: Caller = Depends(get_caller)
) -> presence_schemas.Presence:
    with _service_context(request, caller) as presence:
        return presence.clear_typing(caller.user_id)


@router.post("/viewing", response_model=presence_schemas.Presence)
def set_viewing(
    payload: presence_schemas.ViewingRequest,
    request: Request,
    caller: Caller = Depends(get_caller),
) -> presence_schemas.Presence:
    with _service_context(request, caller) as presence:
        return presence.set_viewing(caller.user_id, payload.conversation_id)


@router.get(
    "/conversations/{conversation_id}/typing",
    response_model=list[presence_schemas.TypingUser],
)
def get_typing_users(
    conversation_id: int,
    request: Request,
    exclude_self: bool = True,
    caller: Caller = Depends(get_caller),
) -> list[presence_schemas.TypingUser]:
    with _service_context(request, caller) as presence:
        return presence.get_typing_users(
            conversation_id,
            requesting_user_id=caller.user_id,
            exclude_user_id=caller.user_id if exclude_self else None,
        )


@router.get(
    "/conversations/{conversation_id}/viewers",
    response_model=list[presence_schemas.ViewingAgent],
)
def get_viewing_agents(
    conversation_id: int, request: Request, caller: Caller = Depends(get_caller)
) -> list[presence_schemas.ViewingAgent]:
    with _service_context(request, caller) as presence:
        return presence.get_viewing_agents(conversation_id, requesting_user_id=caller.user_id)


@router.get("/users/{user_id}", response_model=presence_schemas.UserPresence)
def get_user_presence(
    user_id: UUID, request: Request, caller: Caller = Depends(get_caller)
) -> presence_schemas.UserPresence:
    with _service_context(request, caller) as presence:
        record = presence.get_user_presence(user_id, requesting_user_id=caller.user_id)
    if record is None:
        raise HTTPException(status_code=404, detail="No presence record")
    return record


@router.get("/company", response_model=list[presence_schemas.Presence])
def get_company_presence(
    request: Request, caller: Caller = Depends(get_caller)
) -> list[presence_schemas.Presence]:
    with _service_context(request, caller) as presence:
        return presence.get_company_presence(
            caller.company_id, requesting_user_id=caller.user_id
        )
