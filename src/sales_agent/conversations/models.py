"""Domain models for customers, conversations and their escalation audit."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any


class ConversationStatus(str, Enum):
    """Conversation lifecycle states."""

    ACTIVE = "active"
    ESCALATED = "escalated"
    RESOLVED = "resolved"
    CLOSED = "closed"


class MessageDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class AuditEventType(str, Enum):
    """Kinds of entries in the append-only conversation audit trail."""

    ESCALATED = "escalated"
    TAKEN_OVER = "taken_over"
    RELEASED = "released"
    RESOLVED = "resolved"
    CLOSED = "closed"


class AuditTrigger(str, Enum):
    """What caused an audited transition."""

    AUTOMATIC = "automatic"
    RULE = "rule"
    MANUAL = "manual"
    WEBHOOK = "webhook"


class RuleAction(str, Enum):
    ESCALATE = "escalate"
    DIRECT_RESPONSE = "direct_response"


TERMINAL_CONVERSATION_STATUSES: frozenset[ConversationStatus] = frozenset(
    {ConversationStatus.RESOLVED, ConversationStatus.CLOSED},
)


@dataclass(slots=True)
class CustomerUpsert:
    """Customer identity as reported by the conversation platform."""

    external_id: str
    name: str | None = None
    email: str | None = None
    phone: str | None = None


@dataclass(slots=True)
class CustomerView:
    customer_id: str
    external_id: str
    name: str | None
    email: str | None
    phone: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class ConversationView:
    """Readable conversation view for handlers, CLI and HTTP logic."""

    conversation_id: str
    customer_id: str
    external_ticket_id: str
    channel: str
    status: ConversationStatus
    human_took_over: bool
    human_takeover_at: datetime | None
    assigned_to: str | None
    message_count: int
    resolved_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @property
    def accepts_automation(self) -> bool:
        """Whether the bot may still answer in this conversation."""

        return self.status not in TERMINAL_CONVERSATION_STATUSES and not self.human_took_over

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.conversation_id,
            "customer_id": self.customer_id,
            "external_ticket_id": self.external_ticket_id,
            "channel": self.channel,
            "status": self.status.value,
            "human_took_over": self.human_took_over,
            "human_takeover_at": (
                self.human_takeover_at.isoformat() if self.human_takeover_at else None
            ),
            "assigned_to": self.assigned_to,
            "message_count": self.message_count,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(slots=True)
class MessageView:
    message_id: str
    conversation_id: str
    direction: MessageDirection
    message_type: str
    content: str
    status: str
    processed_by_llm: bool
    external_message_id: str | None
    created_at: datetime


@dataclass(slots=True)
class SentimentView:
    sentiment_id: int
    conversation_id: str
    message_id: str | None
    sentiment: str
    score: float
    confidence: float
    created_at: datetime


@dataclass(slots=True)
class AuditRecordView:
    """One append-only audit entry for a conversation."""

    record_id: int
    conversation_id: str
    event_type: AuditEventType
    reason: str | None
    trigger: AuditTrigger
    status_from: ConversationStatus | None
    status_to: ConversationStatus | None
    confidence: float | None
    sentiment_score: float | None
    actor: str | None
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.record_id,
            "conversation_id": self.conversation_id,
            "event_type": self.event_type.value,
            "reason": self.reason,
            "trigger": self.trigger.value,
            "status_from": self.status_from.value if self.status_from else None,
            "status_to": self.status_to.value if self.status_to else None,
            "confidence": self.confidence,
            "sentiment_score": self.sentiment_score,
            "actor": self.actor,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(slots=True)
class BusinessRuleSpec:
    """Keyword rule definition used for seeding and matching."""

    name: str
    keywords: tuple[str, ...]
    action: RuleAction
    message: str
    reason: str | None = None
    priority: int = 0
    is_active: bool = True


@dataclass(slots=True)
class BusinessRuleView:
    rule_id: str
    name: str
    keywords: tuple[str, ...]
    action: RuleAction
    message: str
    reason: str | None
    priority: int
    is_active: bool
    created_at: datetime
