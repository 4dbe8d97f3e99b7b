"""Conversation lifecycle: customer messages, AI replies and human takeover."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from uuid import UUID

from ..ai.client import (
    CompletionRequest,
    EscalationRequested,
    LLMClient,
    LLMOutcome,
    TextReply,
    UnhandledToolCall,
)
from ..ai.prompts import AIConfig, build_conversation_history, build_system_prompt
from ..ai.responses import completion_parameters
from ..ai.rules import (
    extract_if_then_rules,
    find_matching_rule,
    handoff_reason_for_phrase,
    match_handoff_trigger,
    sanitize_user_input,
)
from ..companies import CompanyDirectory
from ..config import ResolvedPolicy, Settings
from ..exceptions import (
    AccessDeniedError,
    ConversationNotFoundError,
    DataIntegrityError,
    InvalidRequestError,
    InvalidTransitionError,
    LLMProviderError,
)
from ..notifications import (
    LoggingNotifier,
    Notifier,
    notify_agent_joined,
    notify_conversation_needs_agent,
)
from ..ratelimit import RateLimiter, RateLimitExceeded
from ..security.access import AGENT_ROLES, Access, AccessResolver, authorize
from ..usage import UsageEvent, UsageQuota
from . import schemas
from .models import (
    AI_UNAVAILABLE_REASON,
    DEFAULT_STAFF_NAME,
    FALLBACK_REPLY,
    HANDBACK_MESSAGE,
    HANDOFF_MESSAGE,
    HANDOFF_REQUESTED_BY_CUSTOMER,
    QUOTA_REACHED_MESSAGE,
    QUOTA_REACHED_REASON,
    RATE_LIMIT_REASON,
    REOPENED_MESSAGE,
    RULE_MODEL,
    AIOutcome,
    ClaimOutcome,
    ConversationStatus,
    DeliveryStatus,
    MessageRole,
    NewMessage,
    Reader,
    SystemMessageType,
)
from .repository import ConversationRepository

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def delivery_status_for(
    message: schemas.Message, now: datetime, delivered_after: timedelta
) -> DeliveryStatus | None:
    """Sent/delivered/seen indicator for the newest message in a conversation."""

    if message.role in (MessageRole.AI, MessageRole.AGENT):
        if message.read_by_customer_at is not None:
            return DeliveryStatus.SEEN
        if now - message.timestamp >= delivered_after:
            return DeliveryStatus.DELIVERED
        return DeliveryStatus.SENT
    if message.role is MessageRole.CUSTOMER:
        if message.read_by_agent_at is not None:
            return DeliveryStatus.SEEN
        return DeliveryStatus.SENT
    return None


class ConversationService:
    """Owns every status transition of a conversation.

    Transitions are applied inside ``repository.locked()`` so the status that
    decided a change is the status the change is written against. The LLM
    call is the one slow step and always runs with no lock held; the
    ``ai_processing`` flag guards it instead.
    """

    def __init__(
        self,
        repository: ConversationRepository,
        *,
        access: AccessResolver,
        rate_limiter: RateLimiter,
        usage: UsageQuota,
        companies: CompanyDirectory,
        llm: LLMClient | None = None,
        notifier: Notifier | None = None,
        settings: Settings | None = None,
        company_id: UUID | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._company_id = company_id or repository.company_id
        self._access = access
        self._rate_limiter = rate_limiter
        self._usage = usage
        self._companies = companies
        self._llm = llm
        self._notifier = notifier or LoggingNotifier()
        self._settings = settings or Settings()
        self._clock = clock or _utcnow

    @property
    def company_id(self) -> UUID:
        return self._company_id

    # ------------------------------------------------------------------
    # Customer side

    def create_conversation(self, customer_id: UUID) -> schemas.Conversation:
        """Return the customer's open conversation or start a new one."""

        self._require_member(customer_id)
        conversation, _ = self._open_conversation(customer_id)
        return conversation

    def send_customer_message(
        self, customer_id: UUID, request: schemas.CustomerMessageRequest
    ) -> schemas.CustomerMessageResult:
        content = (request.content or "").strip()
        if not content and not request.attachment_url:
            raise InvalidRequestError("Message content is required")
        self._require_member(customer_id)

        target: schemas.Conversation | None = None
        if request.conversation_id is not None:
            target = self._get(request.conversation_id)
            self._require_owner(target, customer_id)

        self._record_customer_limits(customer_id, request)

        started_new = False
        if target is None:
            conversation, started_new = self._open_conversation(customer_id)
        elif target.status is not ConversationStatus.RESOLVED:
            conversation = target
        elif self._settings.conversations.resolved_policy is ResolvedPolicy.REOPEN:
            conversation = self._reopen(target.id)
        else:
            conversation, started_new = self._open_conversation(customer_id)

        now = self._clock()
        with self._repository.locked(conversation.id) as current:
            current = self._checked(current, conversation.id)
            message = self._append(
                current,
                NewMessage(
                    conversation_id=current.id,
                    company_id=self._company_id,
                    role=MessageRole.CUSTOMER,
                    content=content,
                    timestamp=now,
                    attachment_url=request.attachment_url,
                    attachment_type=request.attachment_type,
                ),
            )
            saved = self._repository.save_conversation(current)
        self._usage.record_event(self._company_id, UsageEvent.CUSTOMER_MESSAGE)

        ai_eligible = saved.status is ConversationStatus.AI_HANDLING and not self._processing_active(
            saved, now
        )
        return schemas.CustomerMessageResult(
            conversation=saved,
            message=message,
            ai_eligible=ai_eligible,
            started_new_conversation=started_new,
        )

    def _record_customer_limits(
        self, customer_id: UUID, request: schemas.CustomerMessageRequest
    ) -> None:
        # a message rejected by either limit must not use up a slot of the other
        identifier = str(customer_id)
        if request.attachment_url and not self._rate_limiter.check(
            "userMessage", identifier
        ).is_rate_limited:
            self._rate_limiter.record(
                "fileUpload", identifier, {"attachment_type": request.attachment_type}
            )
        self._rate_limiter.record("userMessage", identifier)

    def request_human_support(
        self, conversation_id: int, customer_id: UUID
    ) -> schemas.Conversation:
        """Customer asks for a person. Repeated requests are no-ops."""

        conversation = self._get(conversation_id)
        self._require_owner(conversation, customer_id)
        if conversation.status in (
            ConversationStatus.AVAILABLE,
            ConversationStatus.SUPPORT_STAFF_HANDLING,
        ):
            return conversation
        return self.trigger_handoff(conversation_id, HANDOFF_REQUESTED_BY_CUSTOMER)

    # ------------------------------------------------------------------
    # AI path

    def generate_ai_response(
        self, conversation_id: int, trigger_message_id: int
    ) -> schemas.AIResponseResult:
        """Answer ``trigger_message_id`` unless someone else already is.

        Safe to call for every customer message: at most one call per
        conversation gets past the ``ai_processing`` check at a time.
        """

        trigger = self._answerable_trigger(trigger_message_id, conversation_id, self._clock())
        if trigger is None:
            logger.info(
                "Skipping AI response for conversation %s: trigger %s is not answerable",
                conversation_id,
                trigger_message_id,
            )
            return schemas.AIResponseResult(outcome=AIOutcome.SKIPPED)

        lease = self._begin_ai_processing(conversation_id)
        if lease is None:
            return schemas.AIResponseResult(
                outcome=AIOutcome.SKIPPED,
                conversation=self._repository.get_conversation(conversation_id),
            )
        try:
            return self._run_ai(conversation_id, trigger, lease)
        except LLMProviderError:
            return self._record_ai_failure(conversation_id, lease)
        except DataIntegrityError:
            logger.error(
                "AI response aborted for conversation %s: data integrity error",
                conversation_id,
                exc_info=True,
            )
            raise
        except Exception:
            logger.exception("AI response failed for conversation %s", conversation_id)
            self._record_ai_failure(conversation_id, lease)
            raise
        finally:
            self._end_ai_processing(conversation_id, lease)

    def _run_ai(
        self, conversation_id: int, trigger: schemas.Message, lease: datetime
    ) -> schemas.AIResponseResult:
        quota = self._usage.check_usage_limit(self._company_id)
        if quota.has_reached_limit:
            logger.info(
                "Company %s is out of AI responses (%s/%s)",
                self._company_id,
                quota.current_usage,
                quota.limit,
            )
            return self._handoff_from_ai(
                conversation_id, QUOTA_REACHED_REASON, content=QUOTA_REACHED_MESSAGE
            )

        config = self._companies.get_ai_config(self._company_id)
        try:
            self._rate_limiter.record(
                "aiResponse", str(self._company_id), {"conversation_id": conversation_id}
            )
        except RateLimitExceeded:
            return self._handoff_from_ai(conversation_id, RATE_LIMIT_REASON)

        rule = find_matching_rule(extract_if_then_rules(config.company_context), trigger.content)
        if rule is not None:
            outcome: LLMOutcome = TextReply(text=rule.response, model=RULE_MODEL)
            return self._apply_ai_outcome(
                conversation_id, trigger, config, outcome, lease, rule_matched=True
            )

        if self._llm is None:
            raise LLMProviderError("No LLM client configured")
        outcome = self._llm.complete(self._completion_request(conversation_id, config))
        return self._apply_ai_outcome(conversation_id, trigger, config, outcome, lease)

    def _completion_request(self, conversation_id: int, config: AIConfig) -> CompletionRequest:
        recent = self._repository.list_messages(
            conversation_id, limit=self._settings.ai.history_limit
        )
        cleaned = [
            m.model_copy(update={"content": sanitize_user_input(m.content)})
            if m.role is MessageRole.CUSTOMER
            else m
            for m in recent
        ]
        params = completion_parameters(self._settings.ai, config.response_length)
        return CompletionRequest(
            system_prompt=build_system_prompt(config),
            history=build_conversation_history(cleaned),
            model=config.model or self._settings.ai.model,
            temperature=params["temperature"],
            max_tokens=params["max_tokens"],
        )

    def _apply_ai_outcome(
        self,
        conversation_id: int,
        trigger: schemas.Message,
        config: AIConfig,
        outcome: LLMOutcome,
        lease: datetime,
        *,
        rule_matched: bool = False,
    ) -> schemas.AIResponseResult:
        now = self._clock()
        handoff_reason: str | None = None
        message: schemas.Message | None = None
        with self._repository.locked(conversation_id) as current:
            current = self._checked(current, conversation_id)
            if current.status is not ConversationStatus.AI_HANDLING:
                logger.info(
                    "Discarding AI reply for conversation %s now in %s",
                    conversation_id,
                    current.status.value,
                )
                self._clear_processing(current)
                saved = self._repository.save_conversation(current)
                return schemas.AIResponseResult(outcome=AIOutcome.SKIPPED, conversation=saved)
            if current.ai_processing_started_at != lease:
                logger.warning(
                    "Discarding AI reply for conversation %s: lease was taken over",
                    conversation_id,
                )
                return schemas.AIResponseResult(outcome=AIOutcome.SKIPPED, conversation=current)

            text: str | None
            if isinstance(outcome, EscalationRequested):
                text = outcome.text
                handoff_reason = outcome.reason
            elif isinstance(outcome, UnhandledToolCall):
                logger.warning(
                    "Model called unknown tool %s in conversation %s", outcome.name, conversation_id
                )
                text = outcome.text or FALLBACK_REPLY
            else:
                text = outcome.text

            if text:
                message = self._append(
                    current,
                    NewMessage(
                        conversation_id=current.id,
                        company_id=self._company_id,
                        role=MessageRole.AI,
                        content=text,
                        timestamp=now,
                        ai_model=outcome.model,
                        tokens_used=outcome.tokens_used,
                        processing_time_ms=outcome.processing_ms,
                    ),
                )
            current.ai_failure_count = 0

            if handoff_reason is None:
                phrase = match_handoff_trigger(config.handoff_triggers, trigger.content)
                if phrase is not None:
                    handoff_reason = handoff_reason_for_phrase(phrase)
            if handoff_reason is not None:
                self._mark_handoff(current, handoff_reason, now)
            self._clear_processing(current)
            saved = self._repository.save_conversation(current)

        self._usage.track_ai_response(self._company_id)
        if handoff_reason is not None:
            self._after_handoff(saved, handoff_reason)

        if isinstance(outcome, EscalationRequested):
            result = AIOutcome.ESCALATED
        elif handoff_reason is not None:
            result = AIOutcome.HANDED_OFF
        elif rule_matched:
            result = AIOutcome.RULE_MATCHED
        else:
            result = AIOutcome.REPLIED
        return schemas.AIResponseResult(
            outcome=result, conversation=saved, message=message, handoff_reason=handoff_reason
        )

    def _record_ai_failure(
        self, conversation_id: int, lease: datetime
    ) -> schemas.AIResponseResult:
        now = self._clock()
        handoff_reason: str | None = None
        message: schemas.Message | None = None
        with self._repository.locked(conversation_id) as current:
            current = self._checked(current, conversation_id)
            if current.ai_processing_started_at != lease:
                # lease taken over, or cleared by a claim or resolve
                return schemas.AIResponseResult(outcome=AIOutcome.FAILED, conversation=current)
            if current.status is ConversationStatus.AI_HANDLING:
                message = self._append(
                    current,
                    NewMessage(
                        conversation_id=current.id,
                        company_id=self._company_id,
                        role=MessageRole.AI,
                        content=FALLBACK_REPLY,
                        timestamp=now,
                    ),
                )
                current.ai_failure_count += 1
                if current.ai_failure_count >= self._settings.ai.max_consecutive_failures:
                    handoff_reason = AI_UNAVAILABLE_REASON
                    self._mark_handoff(current, handoff_reason, now)
            self._clear_processing(current)
            saved = self._repository.save_conversation(current)
        logger.warning(
            "AI response failed for conversation %s (%s consecutive)",
            conversation_id,
            saved.ai_failure_count,
        )
        if handoff_reason is not None:
            self._after_handoff(saved, handoff_reason)
            return schemas.AIResponseResult(
                outcome=AIOutcome.HANDED_OFF,
                conversation=saved,
                message=message,
                handoff_reason=handoff_reason,
            )
        return schemas.AIResponseResult(outcome=AIOutcome.FAILED, conversation=saved, message=message)

    def _handoff_from_ai(
        self, conversation_id: int, reason: str, *, content: str = HANDOFF_MESSAGE
    ) -> schemas.AIResponseResult:
        with self._repository.locked(conversation_id) as current:
            current = self._checked(current, conversation_id)
            if current.status is not ConversationStatus.AI_HANDLING:
                self._clear_processing(current)
                saved = self._repository.save_conversation(current)
                return schemas.AIResponseResult(outcome=AIOutcome.SKIPPED, conversation=saved)
            self._mark_handoff(current, reason, self._clock(), content=content)
            saved = self._repository.save_conversation(current)
        self._after_handoff(saved, reason)
        return schemas.AIResponseResult(
            outcome=AIOutcome.HANDED_OFF, conversation=saved, handoff_reason=reason
        )

    def _begin_ai_processing(self, conversation_id: int) -> datetime | None:
        """Claim the AI slot; returns the lease start or ``None`` if busy."""

        now = self._clock()
        with self._repository.locked(conversation_id) as current:
            current = self._checked(current, conversation_id)
            if current.status is not ConversationStatus.AI_HANDLING:
                return None
            if self._processing_active(current, now):
                return None
            latest = self._repository.latest_message(conversation_id)
            if latest is None or latest.role is not MessageRole.CUSTOMER:
                # already answered
                return None
            if current.ai_processing:
                logger.warning(
                    "Taking over stale AI lease on conversation %s (started %s)",
                    conversation_id,
                    current.ai_processing_started_at,
                )
            current.ai_processing = True
            current.ai_processing_started_at = now
            current.updated_at = now
            self._repository.save_conversation(current)
        return now

    def _end_ai_processing(self, conversation_id: int, lease: datetime) -> None:
        with self._repository.locked(conversation_id) as current:
            if current is None or not current.ai_processing:
                return
            if current.ai_processing_started_at != lease:
                return
            self._clear_processing(current)
            self._repository.save_conversation(current)

    def _processing_active(self, conversation: schemas.Conversation, now: datetime) -> bool:
        if not conversation.ai_processing or conversation.ai_processing_started_at is None:
            return False
        return now - conversation.ai_processing_started_at < self._settings.ai.processing_lease

    def _answerable_trigger(
        self, message_id: int, conversation_id: int, now: datetime
    ) -> schemas.Message | None:
        trigger = self._repository.get_message(message_id)
        if trigger is None or trigger.conversation_id != conversation_id:
            return None
        if trigger.role is not MessageRole.CUSTOMER:
            return None
        if now - trigger.timestamp > self._settings.ai.trigger_message_max_age:
            return None
        return trigger

    # ------------------------------------------------------------------
    # Staff side

    def trigger_handoff(
        self, conversation_id: int, reason: str, *, actor_id: UUID | None = None
    ) -> schemas.Conversation:
        """Move an AI-handled conversation into the agent queue."""

        if actor_id is not None:
            authorize(self._access, actor_id, self._company_id, "can_claim")
        with self._repository.locked(conversation_id) as current:
            current = self._checked(current, conversation_id)
            if current.status is not ConversationStatus.AI_HANDLING:
                raise InvalidTransitionError(
                    f"Cannot hand off a conversation in status {current.status.value}"
                )
            self._mark_handoff(current, reason, self._clock())
            saved = self._repository.save_conversation(current)
        self._after_handoff(saved, reason)
        return saved

    def claim_conversation(self, conversation_id: int, agent_id: UUID) -> schemas.ClaimResult:
        """Take over a conversation, or join it if another agent already has."""

        access = authorize(self._access, agent_id, self._company_id, "can_claim")
        name = access.display_name or DEFAULT_STAFF_NAME
        now = self._clock()
        with self._repository.locked(conversation_id) as current:
            current = self._checked(current, conversation_id)
            if current.status is ConversationStatus.RESOLVED:
                raise InvalidTransitionError("Cannot claim a resolved conversation")
            if agent_id in current.participating_agents:
                return schemas.ClaimResult(
                    conversation=current, outcome=ClaimOutcome.ALREADY_PARTICIPATING
                )
            current.participating_agents.append(agent_id)
            if current.status is ConversationStatus.SUPPORT_STAFF_HANDLING:
                outcome = ClaimOutcome.JOINED
                self._append_system(
                    current, f"{name} joined the conversation", SystemMessageType.AGENT_JOINED, now
                )
            else:
                outcome = ClaimOutcome.CLAIMED
                current.status = ConversationStatus.SUPPORT_STAFF_HANDLING
                current.handoff_triggered_at = None
                current.handoff_reason = None
                self._clear_processing(current)
                self._append_system(
                    current,
                    f"{name} (Support Staff) has joined the conversation.",
                    SystemMessageType.AGENT_JOINED,
                    now,
                )
                greeting = self._settings.conversations.agent_greeting
                if greeting:
                    self._append_agent(current, agent_id, name, greeting, now)
            saved = self._repository.save_conversation(current)

        logger.info(
            "Agent %s %s conversation %s", agent_id, outcome.value, conversation_id
        )
        if outcome is ClaimOutcome.CLAIMED:
            notify_agent_joined(
                self._notifier,
                company_id=self._company_id,
                customer_id=saved.customer_id,
                conversation_id=saved.id,
                agent_name=name,
            )
        return schemas.ClaimResult(conversation=saved, outcome=outcome)

    def send_agent_message(
        self, conversation_id: int, agent_id: UUID, request: schemas.AgentMessageRequest
    ) -> schemas.AgentMessageResult:
        access = authorize(self._access, agent_id, self._company_id, "can_send_as_agent")
        content = request.content.strip()
        if not content:
            raise InvalidRequestError("Message content is required")

        conversation = self._get(conversation_id)
        claim: ClaimOutcome | None = None
        if conversation.status in (ConversationStatus.AI_HANDLING, ConversationStatus.AVAILABLE):
            claim = self.claim_conversation(conversation_id, agent_id).outcome

        with self._repository.locked(conversation_id) as current:
            current = self._checked(current, conversation_id)
            if current.status is ConversationStatus.RESOLVED:
                raise InvalidTransitionError("Cannot reply to a resolved conversation")
            if agent_id not in current.participating_agents:
                raise AccessDeniedError("Join the conversation before replying")
            message = self._append_agent(
                current,
                agent_id,
                access.display_name or DEFAULT_STAFF_NAME,
                content,
                self._clock(),
            )
            saved = self._repository.save_conversation(current)
        self._usage.record_event(self._company_id, UsageEvent.AGENT_MESSAGE)
        return schemas.AgentMessageResult(conversation=saved, message=message, claim=claim)

    def resolve_conversation(
        self, conversation_id: int, agent_id: UUID | None = None
    ) -> schemas.Conversation:
        """Close the conversation. ``agent_id=None`` means the AI resolved it."""

        if agent_id is None:
            resolved_by = "AI"
        else:
            access = authorize(self._access, agent_id, self._company_id, "can_resolve")
            resolved_by = f"{access.first_name or DEFAULT_STAFF_NAME} (Support Staff)"
        now = self._clock()
        with self._repository.locked(conversation_id) as current:
            current = self._checked(current, conversation_id)
            if current.status is ConversationStatus.RESOLVED:
                raise InvalidTransitionError("Conversation is already resolved")
            current.status = ConversationStatus.RESOLVED
            current.resolved_at = now
            self._clear_processing(current)
            self._append_system(
                current,
                f"Conversation marked as resolved by {resolved_by}",
                SystemMessageType.ISSUE_RESOLVED,
                now,
            )
            saved = self._repository.save_conversation(current)
        logger.info("Conversation %s resolved by %s", conversation_id, agent_id or "AI")
        return saved

    def hand_back_to_ai(self, conversation_id: int, agent_id: UUID) -> schemas.Conversation:
        authorize(self._access, agent_id, self._company_id, "can_claim")
        quota = self._usage.check_usage_limit(self._company_id)
        if quota.has_reached_limit:
            raise InvalidTransitionError(QUOTA_REACHED_REASON)
        now = self._clock()
        with self._repository.locked(conversation_id) as current:
            current = self._checked(current, conversation_id)
            if current.status is not ConversationStatus.SUPPORT_STAFF_HANDLING:
                raise InvalidTransitionError(
                    f"Cannot hand back a conversation in status {current.status.value}"
                )
            current.status = ConversationStatus.AI_HANDLING
            current.participating_agents = []
            current.handoff_triggered_at = None
            current.handoff_reason = None
            current.ai_failure_count = 0
            self._append_system(current, HANDBACK_MESSAGE, SystemMessageType.HANDBACK, now)
            saved = self._repository.save_conversation(current)
        logger.info("Conversation %s handed back to AI by %s", conversation_id, agent_id)
        return saved

    # ------------------------------------------------------------------
    # Read markers

    def mark_read_by_agent(self, conversation_id: int, agent_id: UUID) -> schemas.ReadReceipt:
        authorize(self._access, agent_id, self._company_id, "can_send_as_agent")
        self._get(conversation_id)
        marked = self._repository.mark_read(conversation_id, Reader.AGENT, self._clock())
        return schemas.ReadReceipt(conversation_id=conversation_id, marked=marked)

    def mark_read_by_customer(
        self, conversation_id: int, customer_id: UUID
    ) -> schemas.ReadReceipt:
        self._require_owner(self._get(conversation_id), customer_id)
        marked = self._repository.mark_read(conversation_id, Reader.CUSTOMER, self._clock())
        return schemas.ReadReceipt(conversation_id=conversation_id, marked=marked)

    def unread_count_for_agent(self, conversation_id: int, agent_id: UUID) -> schemas.UnreadCount:
        authorize(self._access, agent_id, self._company_id, "can_send_as_agent")
        self._get(conversation_id)
        count = self._repository.count_unread(conversation_id, Reader.AGENT)
        return schemas.UnreadCount(conversation_id=conversation_id, count=count)

    def unread_count_for_customer(
        self, conversation_id: int, customer_id: UUID
    ) -> schemas.UnreadCount:
        self._require_owner(self._get(conversation_id), customer_id)
        count = self._repository.count_unread(conversation_id, Reader.CUSTOMER)
        return schemas.UnreadCount(conversation_id=conversation_id, count=count)

    # ------------------------------------------------------------------
    # Queries

    def get_conversation(self, conversation_id: int, user_id: UUID) -> schemas.ConversationOverview:
        conversation = self._get(conversation_id)
        self._require_reader(conversation, user_id)
        return self._overview(conversation)

    def list_conversations(
        self,
        user_id: UUID,
        *,
        status: ConversationStatus | None = None,
        limit: int = 50,
    ) -> schemas.ConversationList:
        authorize(self._access, user_id, self._company_id, "can_claim")
        items = [
            self._overview(c)
            for c in self._repository.list_conversations(status=status, limit=limit)
        ]
        return schemas.ConversationList(items=items, total=len(items))

    def list_messages(
        self,
        conversation_id: int,
        user_id: UUID,
        *,
        limit: int | None = None,
        before: datetime | None = None,
    ) -> schemas.MessageList:
        conversation = self._get(conversation_id)
        self._require_reader(conversation, user_id)
        page = limit or self._settings.conversations.message_page_size
        items = self._repository.list_messages(conversation_id, limit=page + 1, before=before)
        has_more = len(items) > page
        if has_more:
            items = items[1:]
        return schemas.MessageList(items=items, has_more=has_more)

    def count_by_status(self, user_id: UUID) -> schemas.StatusCounts:
        authorize(self._access, user_id, self._company_id, "can_claim")
        counts = self._repository.count_by_status()
        return schemas.StatusCounts(**counts, total=sum(counts.values()))

    def delete_customer_conversations(self, customer_id: UUID, admin_id: UUID) -> int:
        """Hard-delete everything a (test) customer wrote. Admin only."""

        authorize(self._access, admin_id, self._company_id, "can_manage")
        deleted = self._repository.delete_customer_conversations(customer_id)
        logger.info(
            "Deleted %s conversations for customer %s in company %s",
            deleted,
            customer_id,
            self._company_id,
        )
        return deleted

    # ------------------------------------------------------------------
    # Helpers

    def _open_conversation(self, customer_id: UUID) -> tuple[schemas.Conversation, bool]:
        conversation, created = self._repository.create_conversation(
            customer_id, now=self._clock()
        )
        if created:
            logger.info(
                "Started conversation %s for customer %s", conversation.id, customer_id
            )
            self._usage.record_event(self._company_id, UsageEvent.CONVERSATION)
        return conversation, created

    def _reopen(self, conversation_id: int) -> schemas.Conversation:
        now = self._clock()
        with self._repository.locked(conversation_id) as current:
            current = self._checked(current, conversation_id)
            if current.status is not ConversationStatus.RESOLVED:
                return current
            current.status = ConversationStatus.AI_HANDLING
            current.participating_agents = []
            current.handoff_triggered_at = None
            current.handoff_reason = None
            current.resolved_at = None
            current.ai_failure_count = 0
            self._append_system(current, REOPENED_MESSAGE, SystemMessageType.HANDOFF, now)
            saved = self._repository.save_conversation(current)
        logger.info("Conversation %s reopened by its customer", conversation_id)
        return saved

    def _mark_handoff(
        self,
        conversation: schemas.Conversation,
        reason: str,
        now: datetime,
        *,
        content: str = HANDOFF_MESSAGE,
    ) -> None:
        conversation.status = ConversationStatus.AVAILABLE
        conversation.handoff_triggered_at = now
        conversation.handoff_reason = reason
        self._clear_processing(conversation)
        self._append_system(conversation, content, SystemMessageType.HANDOFF, now)

    def _after_handoff(self, conversation: schemas.Conversation, reason: str) -> None:
        logger.info("Conversation %s handed off: %s", conversation.id, reason)
        self._usage.record_event(self._company_id, UsageEvent.HANDOFF)
        # the handoff is already committed
        try:
            notify_conversation_needs_agent(
                self._notifier,
                company_id=self._company_id,
                agent_ids=self._access.list_members(self._company_id, AGENT_ROLES),
                conversation_id=conversation.id,
                reason=reason,
            )
        except Exception as exc:
            logger.warning(
                "Could not notify agents about conversation %s: %s", conversation.id, exc
            )

    @staticmethod
    def _clear_processing(conversation: schemas.Conversation) -> None:
        conversation.ai_processing = False
        conversation.ai_processing_started_at = None

    def _append(self, conversation: schemas.Conversation, message: NewMessage) -> schemas.Message:
        stored = self._repository.add_message(message)
        conversation.message_count += 1
        conversation.first_message_at = conversation.first_message_at or message.timestamp
        conversation.last_message_at = message.timestamp
        conversation.updated_at = message.timestamp
        return stored

    def _append_system(
        self,
        conversation: schemas.Conversation,
        content: str,
        kind: SystemMessageType,
        now: datetime,
    ) -> schemas.Message:
        return self._append(
            conversation,
            NewMessage(
                conversation_id=conversation.id,
                company_id=self._company_id,
                role=MessageRole.SYSTEM,
                content=content,
                timestamp=now,
                system_message_type=kind,
            ),
        )

    def _append_agent(
        self,
        conversation: schemas.Conversation,
        agent_id: UUID,
        name: str,
        content: str,
        now: datetime,
    ) -> schemas.Message:
        message = self._append(
            conversation,
            NewMessage(
                conversation_id=conversation.id,
                company_id=self._company_id,
                role=MessageRole.AGENT,
                content=content,
                timestamp=now,
                agent_id=agent_id,
                agent_name=name,
            ),
        )
        conversation.last_agent_message = now
        return message

    def _overview(self, conversation: schemas.Conversation) -> schemas.ConversationOverview:
        latest = self._repository.latest_message(conversation.id)
        status = (
            delivery_status_for(latest, self._clock(), self._settings.conversations.delivered_after)
            if latest
            else None
        )
        unread = self._repository.count_unread(conversation.id, Reader.AGENT)
        return schemas.ConversationOverview(
            **conversation.model_dump(),
            latest_message=latest,
            delivery_status=status,
            has_unread_messages=unread > 0,
        )

    def _get(self, conversation_id: int) -> schemas.Conversation:
        conversation = self._repository.get_conversation(conversation_id)
        return self._checked(conversation, conversation_id)

    def _checked(
        self, conversation: schemas.Conversation | None, conversation_id: int
    ) -> schemas.Conversation:
        if conversation is None:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
        if conversation.company_id != self._company_id:
            logger.error(
                "Conversation %s belongs to company %s, not %s",
                conversation_id,
                conversation.company_id,
                self._company_id,
            )
            raise DataIntegrityError("Conversation does not belong to this company")
        return conversation

    def _require_member(self, user_id: UUID) -> Access:
        access = self._access.resolve(user_id, self._company_id)
        if not access.has_access:
            raise AccessDeniedError("User is not a member of this company")
        return access

    @staticmethod
    def _require_owner(conversation: schemas.Conversation, customer_id: UUID) -> None:
        if conversation.customer_id != customer_id:
            raise AccessDeniedError("Conversation belongs to another customer")

    def _require_reader(self, conversation: schemas.Conversation, user_id: UUID) -> None:
        if conversation.customer_id == user_id:
            return
        authorize(self._access, user_id, self._company_id, "can_claim")


__all__ = ["ConversationService", "delivery_status_for"]
