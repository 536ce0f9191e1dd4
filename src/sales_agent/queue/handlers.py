"""Per-type queue item handlers for conversation automation."""

from __future__ import annotations

import logging
from datetime import timedelta

from sales_agent.clients.base import MAX_FOLLOW_UP_HOURS, LlmClient, LlmReply, MessagingClient
from sales_agent.conversations.escalation import EscalationPolicy
from sales_agent.conversations.models import (
    TERMINAL_CONVERSATION_STATUSES,
    AuditTrigger,
    ConversationView,
    MessageDirection,
    RuleAction,
)
from sales_agent.conversations.repository import ConversationRepository
from sales_agent.conversations.rules import RuleMatch, match_rule
from sales_agent.errors import TerminalHandlerError
from sales_agent.queue.models import QueueItemCreate, QueueItemType, QueueItemView
from sales_agent.queue.payloads import (
    AnalyzeSentimentPayload,
    ProcessMessagePayload,
    QueuePayload,
    SendFollowUpPayload,
    payload_to_dict,
)
from sales_agent.queue.registry import HandlerRegistry, HandlerResult
from sales_agent.queue.repository import QueueRepository
from sales_agent.storage.common import utc_now

logger = logging.getLogger(__name__)

FOLLOW_UP_PRIORITY = 3
SENTIMENT_CONFIDENCE = 0.8
HANDOFF_MESSAGE = (
    "Gracias por tu paciencia. Un asesor de nuestro equipo continuará la conversación "
    "en breve."
)
FOLLOW_UP_MESSAGE = (
    "Hola, ¿pudiste revisar la información que te compartimos? "
    "Estoy aquí para ayudarte con tu compra."
)


class ConversationHandlers:
    """Runs the automated side of a conversation for each queue item type."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        conversations: ConversationRepository,
        queue: QueueRepository,
        llm: LlmClient,
        messaging: MessagingClient,
        policy: EscalationPolicy,
        agent_id: str = "sales-agent",
        follow_up_max_attempts: int = 3,
    ) -> None:
        self.conversations = conversations
        self.queue = queue
        self.llm = llm
        self.messaging = messaging
        self.policy = policy
        self.agent_id = agent_id
        self.follow_up_max_attempts = follow_up_max_attempts

    def process_message(self, payload: QueuePayload, item: QueueItemView) -> HandlerResult:
        """Rules first, then LLM draft + sentiment + escalation policy."""

        if not isinstance(payload, ProcessMessagePayload):
            raise TerminalHandlerError(f"process_message got {type(payload).__name__}")
        conversation = self._require_conversation(payload.conversation_id)
        if not conversation.accepts_automation:
            return _skipped(conversation)

        recipient = self._recipient(conversation)
        rule = match_rule(self.conversations.list_active_rules(), payload.content)
        if rule is not None:
            return self._apply_rule(
                conversation=conversation,
                recipient=recipient,
                rule=rule,
                message_id=payload.message_id,
            )

        reply = self.llm.draft_reply(
            conversation_id=conversation.conversation_id,
            message=payload.content,
        )
        sentiment = self.llm.analyze_sentiment(payload.content)
        self.conversations.add_sentiment(
            conversation_id=conversation.conversation_id,
            message_id=payload.message_id,
            sentiment=sentiment.label,
            score=sentiment.score,
            confidence=SENTIMENT_CONFIDENCE,
        )
        decision = self.policy.decide(
            confidence=reply.confidence,
            sentiment_score=sentiment.score,
            explicit_flag=reply.needs_human,
        )
        details: dict[str, object] = {
            "conversation_id": conversation.conversation_id,
            "confidence": reply.confidence,
            "sentiment": sentiment.label,
            "sentiment_score": sentiment.score,
        }

        if decision.escalate:
            escalated = self._hand_off(
                conversation=conversation,
                recipient=recipient,
                text=HANDOFF_MESSAGE,
                reason=decision.describe(),
                trigger=AuditTrigger.AUTOMATIC,
                confidence=reply.confidence,
                sentiment_score=sentiment.score,
            )
            self._mark_processed(payload.message_id)
            details["reason"] = decision.reason.value if decision.reason else None
            return HandlerResult(
                outcome="escalated" if escalated else "already_escalated",
                details=details,
            )

        # Everything that can fail on bad LLM output runs before the reply goes out.
        follow_up = self._follow_up_item(conversation, reply)
        self._send(conversation=conversation, recipient=recipient, text=reply.text, by_llm=True)
        self._mark_processed(payload.message_id)
        if follow_up is not None:
            details["follow_up_item_id"] = self.queue.enqueue_item(follow_up).item_id
        return HandlerResult(outcome="replied", details=details)

    def send_follow_up(self, payload: QueuePayload, item: QueueItemView) -> HandlerResult:
        if not isinstance(payload, SendFollowUpPayload):
            raise TerminalHandlerError(f"send_follow_up got {type(payload).__name__}")
        conversation = self._require_conversation(payload.conversation_id)
        if not conversation.accepts_automation:
            return _skipped(conversation)
        self._send(
            conversation=conversation,
            recipient=self._recipient(conversation),
            text=payload.message,
            by_llm=False,
        )
        return HandlerResult(
            outcome="sent",
            details={"conversation_id": conversation.conversation_id},
        )

    def analyze_sentiment(self, payload: QueuePayload, item: QueueItemView) -> HandlerResult:
        """Persist sentiment and escalate when the score alone warrants it."""

        if not isinstance(payload, AnalyzeSentimentPayload):
            raise TerminalHandlerError(f"analyze_sentiment got {type(payload).__name__}")
        conversation = self._require_conversation(payload.conversation_id)
        if conversation.status in TERMINAL_CONVERSATION_STATUSES:
            return _skipped(conversation)

        sentiment = self.llm.analyze_sentiment(payload.content)
        self.conversations.add_sentiment(
            conversation_id=conversation.conversation_id,
            message_id=payload.message_id,
            sentiment=sentiment.label,
            score=sentiment.score,
            confidence=SENTIMENT_CONFIDENCE,
        )
        details: dict[str, object] = {
            "conversation_id": conversation.conversation_id,
            "sentiment": sentiment.label,
            "sentiment_score": sentiment.score,
        }
        decision = self.policy.decide(confidence=None, sentiment_score=sentiment.score)
        if decision.escalate and conversation.accepts_automation:
            escalated = self._hand_off(
                conversation=conversation,
                recipient=self._recipient(conversation),
                text=HANDOFF_MESSAGE,
                reason=decision.describe(),
                trigger=AuditTrigger.AUTOMATIC,
                confidence=None,
                sentiment_score=sentiment.score,
            )
            return HandlerResult(
                outcome="escalated" if escalated else "already_escalated",
                details=details,
            )
        return HandlerResult(outcome="analyzed", details=details)

    def _apply_rule(
        self,
        *,
        conversation: ConversationView,
        recipient: str,
        rule: RuleMatch,
        message_id: str | None,
    ) -> HandlerResult:
        details: dict[str, object] = {
            "conversation_id": conversation.conversation_id,
            "rule": rule.rule_name,
            "matched_keyword": rule.matched_keyword,
        }
        if rule.action == RuleAction.ESCALATE:
            escalated = self._hand_off(
                conversation=conversation,
                recipient=recipient,
                text=rule.message,
                reason=f"rule:{rule.reason or rule.rule_name}",
                trigger=AuditTrigger.RULE,
                confidence=None,
                sentiment_score=None,
            )
            self._mark_processed(message_id)
            return HandlerResult(
                outcome="escalated_by_rule" if escalated else "already_escalated",
                details=details,
            )

        self._send(conversation=conversation, recipient=recipient, text=rule.message, by_llm=False)
        self._mark_processed(message_id)
        return HandlerResult(outcome="rule_response", details=details)

    def _hand_off(  # noqa: PLR0913
        self,
        *,
        conversation: ConversationView,
        recipient: str,
        text: str,
        reason: str,
        trigger: AuditTrigger,
        confidence: float | None,
        sentiment_score: float | None,
    ) -> bool:
        # Platform calls go first so a failed call leaves the conversation
        # active and the retried item redoes the whole hand-off.
        self.messaging.take_control(
            external_ticket_id=conversation.external_ticket_id,
            agent_id=self.agent_id,
        )
        self.messaging.send_message(recipient=recipient, text=text)
        escalated = self.conversations.escalate(
            conversation_id=conversation.conversation_id,
            reason=reason,
            trigger=trigger,
            confidence=confidence,
            sentiment_score=sentiment_score,
            actor=self.agent_id,
        )
        self.conversations.record_message(
            conversation_id=conversation.conversation_id,
            direction=MessageDirection.OUTBOUND,
            content=text,
        )
        return escalated

    def _send(
        self,
        *,
        conversation: ConversationView,
        recipient: str,
        text: str,
        by_llm: bool,
    ) -> None:
        result = self.messaging.send_message(recipient=recipient, text=text)
        self.conversations.record_message(
            conversation_id=conversation.conversation_id,
            direction=MessageDirection.OUTBOUND,
            content=text,
            processed_by_llm=by_llm,
            external_message_id=result.external_message_id,
        )

    def _follow_up_item(
        self,
        conversation: ConversationView,
        reply: LlmReply,
    ) -> QueueItemCreate | None:
        if not reply.follow_up_hours or reply.follow_up_hours <= 0:
            return None
        hours = min(reply.follow_up_hours, MAX_FOLLOW_UP_HOURS)
        return QueueItemCreate(
            item_type=QueueItemType.SEND_FOLLOW_UP,
            payload=payload_to_dict(
                SendFollowUpPayload(
                    conversation_id=conversation.conversation_id,
                    message=reply.follow_up_message or FOLLOW_UP_MESSAGE,
                ),
            ),
            priority=FOLLOW_UP_PRIORITY,
            max_attempts=self.follow_up_max_attempts,
            process_at=utc_now() + timedelta(hours=hours),
        )

    def _mark_processed(self, message_id: str | None) -> None:
        if message_id is not None:
            self.conversations.mark_message_processed(message_id=message_id)

    def _require_conversation(self, conversation_id: str) -> ConversationView:
        conversation = self.conversations.get_conversation(conversation_id=conversation_id)
        if conversation is None:
            raise TerminalHandlerError(f"Conversation not found: {conversation_id}")
        return conversation

    def _recipient(self, conversation: ConversationView) -> str:
        customer = self.conversations.get_customer(customer_id=conversation.customer_id)
        if customer is None:
            raise TerminalHandlerError(f"Customer not found: {conversation.customer_id}")
        return customer.phone or customer.external_id


def build_handler_registry(handlers: ConversationHandlers) -> HandlerRegistry:
    registry = HandlerRegistry()
    registry.register(QueueItemType.PROCESS_MESSAGE, handlers.process_message)
    registry.register(QueueItemType.SEND_FOLLOW_UP, handlers.send_follow_up)
    registry.register(QueueItemType.ANALYZE_SENTIMENT, handlers.analyze_sentiment)
    return registry


def _skipped(conversation: ConversationView) -> HandlerResult:
    reason = "human_control" if conversation.human_took_over else conversation.status.value
    logger.info(
        "Skipping automation for conversation %s (%s)",
        conversation.conversation_id,
        reason,
    )
    return HandlerResult(
        outcome="skipped",
        details={"conversation_id": conversation.conversation_id, "reason": reason},
    )
