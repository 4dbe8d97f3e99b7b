from datetime import timedelta

import pytest

from supportdesk.config import ResolvedPolicy, Settings, load_settings


def test_defaults_match_documented_limits():
    settings = load_settings({})

    ai_rule = settings.rate_limits.rule_for("aiResponse")
    assert ai_rule.max_requests == 10
    assert ai_rule.window == timedelta(seconds=60)
    assert ai_rule.block_duration == timedelta(minutes=5)

    upload_rule = settings.rate_limits.rule_for("fileUpload")
    assert upload_rule.max_requests == 20
    assert upload_rule.window == timedelta(hours=1)
    assert upload_rule.block_duration == timedelta(hours=1)

    assert settings.presence.ttl == timedelta(seconds=60)
    assert settings.ai.processing_lease == timedelta(seconds=60)
    assert settings.conversations.resolved_policy is ResolvedPolicy.NEW_CONVERSATION
    assert settings.conversations.agent_greeting is None


def test_environment_overrides():
    settings = load_settings(
        {
            "SUPPORTDESK_AI_RESPONSE_MAX_REQUESTS": "3",
            "SUPPORTDESK_USER_MESSAGE_WINDOW_SECONDS": "10",
            "SUPPORTDESK_PRESENCE_TTL_SECONDS": "15",
            "SUPPORTDESK_AI_TIMEOUT_SECONDS": "5",
            "SUPPORTDESK_RESOLVED_POLICY": "REOPEN",
            "SUPPORTDESK_AGENT_GREETING": "  Hi, I'm here to help.  ",
            "SUPPORTDESK_USAGE_DAILY_RETENTION_DAYS": "30",
        }
    )

    assert settings.rate_limits.rule_for("aiResponse").max_requests == 3
    assert settings.rate_limits.rule_for("userMessage").window == timedelta(seconds=10)
    assert settings.presence.ttl == timedelta(seconds=15)
    assert settings.ai.processing_lease == timedelta(seconds=10)
    assert settings.conversations.resolved_policy is ResolvedPolicy.REOPEN
    assert settings.conversations.agent_greeting == "Hi, I'm here to help."
    assert settings.usage.daily_retention == timedelta(days=30)


def test_blank_values_fall_back_to_defaults():
    settings = load_settings({"SUPPORTDESK_AI_MODEL": "   "})
    assert settings.ai.model == Settings().ai.model


def test_unknown_limit_type_is_rejected():
    with pytest.raises(ValueError):
        Settings().rate_limits.rule_for("emailDigest")
