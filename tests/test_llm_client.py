from types import SimpleNamespace

import pytest
from openai import OpenAIError

from supportdesk.ai.client import (
    DEFAULT_ESCALATION_REASON,
    ESCALATE_TOOL_NAME,
    CompletionRequest,
    EscalationRequested,
    OpenAIChatClient,
    TextReply,
    UnhandledToolCall,
    build_llm_client,
)
from supportdesk.ai.providers import ProviderRegistry
from supportdesk.config import AISettings
from supportdesk.exceptions import LLMProviderError


def _tool_call(name: str, arguments: str | None):
    return SimpleNamespace(function=SimpleNamespace(name=name, arguments=arguments))


def _response(content: str | None = None, tool_calls=None, *, tokens: int = 42):
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(
        choices=[SimpleNamespace(message=message)],
        model="gpt-4o-mini-2024",
        usage=SimpleNamespace(total_tokens=tokens),
    )


class FakeCompletions:
    def __init__(self, result):
        self.result = result
        self.calls: list[dict] = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


def _client(result):
    completions = FakeCompletions(result)
    fake = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return OpenAIChatClient(client=fake, timeout=12.0), completions


REQUEST = CompletionRequest(
    system_prompt="You are helpful.",
    history=[{"role": "user", "content": "Hi"}],
    model="gpt-4o-mini",
    temperature=0.3,
    max_tokens=500,
)


def test_text_reply():
    client, completions = _client(_response("  Hello there!  "))

    outcome = client.complete(REQUEST)

    assert isinstance(outcome, TextReply)
    assert outcome.text == "Hello there!"
    assert outcome.model == "gpt-4o-mini-2024"
    assert outcome.tokens_used == 42
    call = completions.calls[0]
    assert call["messages"][0] == {"role": "system", "content": "You are helpful."}
    assert call["messages"][1:] == [{"role": "user", "content": "Hi"}]
    assert call["tools"][0]["function"]["name"] == ESCALATE_TOOL_NAME
    assert call["tool_choice"] == "auto"
    assert call["max_tokens"] == 500
    assert call["timeout"] == 12.0


def test_escalation_tool_call_with_text():
    client, _ = _client(
        _response(
            "Of course! Let me connect you with our support team right away.",
            [_tool_call(ESCALATE_TOOL_NAME, '{"reason": "Customer explicitly requested human support"}')],
        )
    )

    outcome = client.complete(REQUEST)

    assert isinstance(outcome, EscalationRequested)
    assert outcome.reason == "Customer explicitly requested human support"
    assert outcome.text == "Of course! Let me connect you with our support team right away."


@pytest.mark.parametrize("arguments", [None, "not json", '{"reason": "  "}', "[]"])
def test_escalation_with_bad_arguments_uses_default_reason(arguments):
    client, _ = _client(_response(None, [_tool_call(ESCALATE_TOOL_NAME, arguments)]))

    outcome = client.complete(REQUEST)

    assert isinstance(outcome, EscalationRequested)
    assert outcome.reason == DEFAULT_ESCALATION_REASON
    assert outcome.text is None


def test_unknown_tool_is_reported_not_executed():
    client, _ = _client(_response("Checking...", [_tool_call("lookup_order", '{"id": 1}')]))

    outcome = client.complete(REQUEST)

    assert isinstance(outcome, UnhandledToolCall)
    assert outcome.name == "lookup_order"
    assert outcome.arguments == '{"id": 1}'


def test_provider_error_is_wrapped():
    client, _ = _client(OpenAIError("connection reset"))

    with pytest.raises(LLMProviderError) as excinfo:
        client.complete(REQUEST)
    assert "connection reset" not in str(excinfo.value)


def test_empty_completion_is_a_provider_error():
    client, _ = _client(_response("   "))

    with pytest.raises(LLMProviderError):
        client.complete(REQUEST)


def test_no_choices_is_a_provider_error():
    client, _ = _client(SimpleNamespace(choices=[], model="x", usage=None))

    with pytest.raises(LLMProviderError):
        client.complete(REQUEST)


def test_build_llm_client_requires_api_key():
    assert build_llm_client(AISettings(), ProviderRegistry({"openai": {}})) is None

    client = build_llm_client(AISettings(), ProviderRegistry({"openai": {"api_key": "test"}}))
    assert isinstance(client, OpenAIChatClient)


def test_provider_registry_reads_environment(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
    monkeypatch.setenv("OPENAI_BASE_URL", "https://llm.internal/v1")

    credentials = ProviderRegistry().get_credentials("OpenAI")

    assert credentials.configured
    assert credentials.api_key == "sk-env"
    assert credentials.base_url == "https://llm.internal/v1"


def test_provider_registry_rejects_unknown_provider():
    with pytest.raises(ValueError):
        ProviderRegistry().get_credentials("mystery")
