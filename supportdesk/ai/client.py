"""LLM client abstraction and the OpenAI chat completions implementation.

Clients return one of three outcome variants instead of raw provider
payloads. Provider failures of any kind surface as
:class:`~supportdesk.exceptions.LLMProviderError` so callers can tell them
apart from a successful reply that asks for escalation.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol, Union

from openai import OpenAI, OpenAIError

from ..config import AISettings
from ..exceptions import LLMProviderError
from .providers import ProviderRegistry

logger = logging.getLogger(__name__)

ESCALATE_TOOL_NAME = "escalate_to_human"
DEFAULT_ESCALATION_REASON = "Customer requested support staff"

ESCALATE_TOOL: dict[str, Any] = {
    "type": "function",
    "function": {
        "name": ESCALATE_TOOL_NAME,
        "description": (
            "Escalate the conversation to human support staff when the customer "
            "asks for a person or the question cannot be answered confidently."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "reason": {
                    "type": "string",
                    "description": "Brief reason for escalating to support staff.",
                }
            },
            "required": ["reason"],
        },
    },
}


@dataclass(frozen=True)
class CompletionRequest:
    system_prompt: str
    history: Sequence[dict[str, str]]
    model: str
    temperature: float = 0.7
    max_tokens: int = 1000
    tools: Sequence[dict[str, Any]] = field(default_factory=lambda: (ESCALATE_TOOL,))


@dataclass(frozen=True)
class TextReply:
    text: str
    model: str
    tokens_used: int | None = None
    processing_ms: int = 0
    kind: Literal["text"] = "text"


@dataclass(frozen=True)
class EscalationRequested:
    reason: str
    model: str
    text: str | None = None
    tokens_used: int | None = None
    processing_ms: int = 0
    kind: Literal["escalate"] = "escalate"


@dataclass(frozen=True)
class UnhandledToolCall:
    """The model called a tool this service does not implement."""

    name: str
    arguments: str
    model: str
    text: str | None = None
    tokens_used: int | None = None
    processing_ms: int = 0
    kind: Literal["unhandled"] = "unhandled"


LLMOutcome = Union[TextReply, EscalationRequested, UnhandledToolCall]


class LLMClient(Protocol):
    def complete(self, request: CompletionRequest) -> LLMOutcome: ...


def _escalation_reason(arguments: str | None) -> str:
    if not arguments:
        return DEFAULT_ESCALATION_REASON
    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError:
        return DEFAULT_ESCALATION_REASON
    reason = parsed.get("reason") if isinstance(parsed, dict) else None
    if isinstance(reason, str) and reason.strip():
        return reason.strip()
    return DEFAULT_ESCALATION_REASON


class OpenAIChatClient:
    """Chat completions client with the escalation tool attached."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        organization: str | None = None,
        timeout: float = 30.0,
        client: Any | None = None,
    ) -> None:
        # Retries would stretch a single call past ``timeout``.
        self._client = client or OpenAI(
            api_key=api_key,
            base_url=base_url,
            organization=organization,
            timeout=timeout,
            max_retries=0,
        )
        self._timeout = timeout

    def complete(self, request: CompletionRequest) -> LLMOutcome:
        messages = [{"role": "system", "content": request.system_prompt}, *request.history]
        started = time.monotonic()
        try:
            response = self._client.chat.completions.create(
                model=request.model,
                messages=messages,
                tools=list(request.tools),
                tool_choice="auto",
                temperature=request.temperature,
                max_tokens=request.max_tokens,
                timeout=self._timeout,
            )
        except OpenAIError as exc:
            logger.warning("LLM request failed: %s", exc.__class__.__name__)
            raise LLMProviderError("LLM provider request failed") from exc
        processing_ms = int((time.monotonic() - started) * 1000)

        if not response.choices:
            raise LLMProviderError("LLM provider returned no choices")
        message = response.choices[0].message
        text = (message.content or "").strip() or None
        model = getattr(response, "model", None) or request.model
        usage = getattr(response, "usage", None)
        tokens = getattr(usage, "total_tokens", None) if usage is not None else None

        for call in message.tool_calls or []:
            name = call.function.name
            arguments = call.function.arguments
            if name == ESCALATE_TOOL_NAME:
                return EscalationRequested(
                    reason=_escalation_reason(arguments),
                    text=text,
                    model=model,
                    tokens_used=tokens,
                    processing_ms=processing_ms,
                )
            return UnhandledToolCall(
                name=name,
                arguments=arguments or "",
                text=text,
                model=model,
                tokens_used=tokens,
                processing_ms=processing_ms,
            )

        if text is None:
            raise LLMProviderError("LLM provider returned an empty completion")
        return TextReply(text=text, model=model, tokens_used=tokens, processing_ms=processing_ms)


def build_llm_client(
    settings: AISettings, registry: ProviderRegistry | None = None
) -> LLMClient | None:
    """Return a configured client, or ``None`` when no API key is available."""

    credentials = (registry or ProviderRegistry()).get_credentials(settings.provider)
    if not credentials.configured:
        logger.warning("No API key configured for %s; AI replies are disabled", credentials.provider)
        return None
    return OpenAIChatClient(
        api_key=credentials.api_key,
        base_url=credentials.base_url,
        organization=credentials.organization,
        timeout=settings.request_timeout,
    )


__all__ = [
    "CompletionRequest",
    "DEFAULT_ESCALATION_REASON",
    "ESCALATE_TOOL",
    "EscalationRequested",
    "LLMClient",
    "LLMOutcome",
    "OpenAIChatClient",
    "TextReply",
    "UnhandledToolCall",
    "build_llm_client",
]
