"""Deterministic pre- and post-processing around the LLM call.

Covers IF/THEN quick rules authored in the company context, handoff trigger
phrase detection, and sanitisation of customer text before it is sent to the
model.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

_RULE_PATTERN = re.compile(r"^\s*(?:[-*]\s*)?if\s+(.+?)\s*,?\s*then\s+(.+)\s*$", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")

MIN_CONDITION_LENGTH = 3
MAX_INPUT_LENGTH = 10_000
TRUNCATION_SUFFIX = "... [message truncated]"
FILTERED = "[FILTERED]"

TRIGGER_PHRASES: Mapping[str, tuple[str, ...]] = {
    "customer_requests_human": (
        "speak to a human", "talk to a human", "real person", "human agent",
        "talk to someone", "speak to someone", "real agent", "live agent",
        "customer service", "support agent", "talk to support", "speak to support",
        "need a human", "want a human", "get me a human", "transfer me",
    ),
    "billing_questions": (
        "billing", "payment", "refund", "charge", "invoice", "subscription",
        "cancel my", "charged me", "money back", "pricing", "cost", "price",
        "credit card", "debit card", "transaction",
    ),
    "negative_sentiment": (
        "frustrated", "angry", "upset", "terrible", "awful", "horrible",
        "worst", "hate", "useless", "waste of time", "ridiculous", "unacceptable",
        "disappointed", "disgusted", "furious",
    ),
    # counted from failed AI attempts, not phrases
    "multiple_failed_attempts": (),
}

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_INJECTION_PATTERNS = (
    re.compile(r"\[SYSTEM\]", re.IGNORECASE),
    re.compile(r"\[INST\]", re.IGNORECASE),
    re.compile(r"<<SYS>>", re.IGNORECASE),
    re.compile(r"<\|system\|>", re.IGNORECASE),
    re.compile(r"<\|assistant\|>", re.IGNORECASE),
    re.compile(r"<\|user\|>", re.IGNORECASE),
    re.compile(r"###\s*(System|Assistant|Human|User)\s*:", re.IGNORECASE),
    re.compile(r"ignore\s+(all\s+)?(previous|above|prior)\s+(instructions?|prompts?|rules?)", re.IGNORECASE),
    re.compile(r"disregard\s+(all\s+)?(previous|above|prior)\s+(instructions?|prompts?|rules?)", re.IGNORECASE),
    re.compile(r"forget\s+(all\s+)?(previous|above|prior)\s+(instructions?|prompts?|rules?)", re.IGNORECASE),
    re.compile(r"new\s+instructions?:", re.IGNORECASE),
    re.compile(r"override\s+(system|instructions?|rules?)", re.IGNORECASE),
    re.compile(r"you\s+are\s+now\s+(a|an|the)\s+", re.IGNORECASE),
    re.compile(r"pretend\s+(to\s+be|you\s+are)", re.IGNORECASE),
    re.compile(r"act\s+as\s+(if\s+you\s+are|a|an)", re.IGNORECASE),
    re.compile(r"roleplay\s+as", re.IGNORECASE),
    re.compile(r"\bDAN\b"),
    re.compile(r"developer\s+mode", re.IGNORECASE),
    re.compile(r"jailbreak", re.IGNORECASE),
)
_FENCE_SYSTEM = re.compile(r"```system", re.IGNORECASE)
_FENCE_ASSISTANT = re.compile(r"```assistant", re.IGNORECASE)


@dataclass(frozen=True)
class IfThenRule:
    condition: str
    response: str


def extract_if_then_rules(context: str) -> list[IfThenRule]:
    """Collect ``if <condition> then <response>`` lines from company context."""

    if not context:
        return []
    rules: list[IfThenRule] = []
    for line in context.splitlines():
        match = _RULE_PATTERN.match(line)
        if not match:
            continue
        condition = _WHITESPACE.sub(" ", match.group(1)).strip()
        response = _WHITESPACE.sub(" ", match.group(2)).strip()
        if len(condition) < MIN_CONDITION_LENGTH or not response:
            continue
        rules.append(IfThenRule(condition=condition, response=response))
    return rules


def find_matching_rule(rules: Iterable[IfThenRule], message: str) -> IfThenRule | None:
    """Return the rule with the longest condition contained in ``message``."""

    if not message:
        return None
    lowered = message.lower()
    # sorted() is stable, so equal-length conditions keep authoring order
    for rule in sorted(rules, key=lambda r: len(r.condition), reverse=True):
        if rule.condition.lower() in lowered:
            return rule
    return None


def match_handoff_trigger(triggers: Iterable[str], message: str) -> str | None:
    """Return the first trigger phrase found in ``message``.

    Known trigger keys expand to their phrase lists; anything else is a
    company-authored trigger and is matched literally.
    """

    lowered = message.lower()
    for trigger in triggers:
        if not trigger or not trigger.strip():
            continue
        phrases = TRIGGER_PHRASES.get(trigger, (trigger,))
        for phrase in phrases:
            if phrase.lower() in lowered:
                return phrase
    return None


def handoff_reason_for_phrase(phrase: str) -> str:
    return f'Customer message matched handoff trigger: "{phrase}"'


def sanitize_user_input(text: str | None) -> str:
    """Neutralise obvious prompt-injection attempts in customer text."""

    if not text:
        return ""
    sanitized = text
    if len(sanitized) > MAX_INPUT_LENGTH:
        sanitized = sanitized[:MAX_INPUT_LENGTH] + TRUNCATION_SUFFIX
    sanitized = _CONTROL_CHARS.sub("", sanitized)
    for pattern in _INJECTION_PATTERNS:
        sanitized = pattern.sub(FILTERED, sanitized)
    sanitized = _FENCE_SYSTEM.sub("``` system", sanitized)
    sanitized = _FENCE_ASSISTANT.sub("``` assistant", sanitized)
    return sanitized.strip()


__all__ = [
    "IfThenRule",
    "TRIGGER_PHRASES",
    "extract_if_then_rules",
    "find_matching_rule",
    "handoff_reason_for_phrase",
    "match_handoff_trigger",
    "sanitize_user_input",
]
