"""Prompt assembly, rule matching and LLM access for the support assistant."""

from .client import (
    CompletionRequest,
    EscalationRequested,
    LLMClient,
    LLMOutcome,
    OpenAIChatClient,
    TextReply,
    UnhandledToolCall,
    build_llm_client,
)
from .prompts import AIConfig, build_conversation_history, build_system_prompt

__all__ = [
    "AIConfig",
    "CompletionRequest",
    "EscalationRequested",
    "LLMClient",
    "LLMOutcome",
    "OpenAIChatClient",
    "TextReply",
    "UnhandledToolCall",
    "build_conversation_history",
    "build_llm_client",
    "build_system_prompt",
]
