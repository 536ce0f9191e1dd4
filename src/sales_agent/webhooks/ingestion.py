"""Translate verified MyAlice webhook deliveries into conversation updates and queue items."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from sales_agent.conversations.models import (
    TERMINAL_CONVERSATION_STATUSES,
    AuditTrigger,
    CustomerUpsert,
    MessageDirection,
)
from sales_agent.conversations.repository import ConversationRepository
from sales_agent.errors import ValidationError
from sales_agent.queue.models import QueueItemCreate, QueueItemType
from sales_agent.queue.payloads import ProcessMessagePayload, payload_to_dict
from sales_agent.queue.repository import QueueRepository
from sales_agent.webhooks.signature import verify_signature

logger = logging.getLogger(__name__)

TICKET_CREATED = "ticket.created"
MESSAGE_RECEIVED = "message.received"
TICKET_RESOLVED = "ticket.resolved"
SUPPORTED_ACTIONS: tuple[str, ...] = (TICKET_CREATED, MESSAGE_RECEIVED, TICKET_RESOLVED)
WEBHOOK_ACTOR = "myalice"


@dataclass(slots=True)
class WebhookEvent:
    """One actionable event extracted from a delivery."""

    action: str
    ticket_id: str
    customer: CustomerUpsert
    channel: str = "whatsapp"
    content: str | None = None
    message_id: str | None = None
    message_type: str = "text"


@dataclass(slots=True)
class IngestionResult:
    accepted: int = 0
    ignored: int = 0
    item_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"accepted": self.accepted, "ignored": self.ignored, "item_ids": self.item_ids}


def parse_events(raw_body: bytes) -> tuple[list[WebhookEvent], int]:
    """Parse a delivery into events; returns `(events, ignored_count)`.

    A body is either a single event object or `{"events": [...]}`. Every event
    is validated before any is returned, so a bad event rejects the whole body.
    """

    try:
        body = json.loads(raw_body)
    except (UnicodeDecodeError, ValueError) as error:
        raise ValidationError(f"Webhook body is not valid JSON: {error}") from error
    if isinstance(body, dict) and "events" in body:
        raw_events = body["events"]
        if not isinstance(raw_events, list):
            raise ValidationError("Webhook field 'events' must be a list.")
    elif isinstance(body, dict):
        raw_events = [body]
    else:
        raise ValidationError("Webhook body must be a JSON object.")

    events: list[WebhookEvent] = []
    ignored = 0
    for index, raw in enumerate(raw_events):
        event = _parse_event(index, raw)
        if event is None:
            ignored += 1
            continue
        events.append(event)
    return events, ignored


class WebhookIngestor:
    """Verifies deliveries and turns them into durable work."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        conversations: ConversationRepository,
        queue: QueueRepository,
        secret: str | None,
        default_priority: int = 5,
        max_attempts: int = 3,
    ) -> None:
        self.conversations = conversations
        self.queue = queue
        self.secret = secret
        self.default_priority = default_priority
        self.max_attempts = max_attempts

    def ingest(self, raw_body: bytes, signature_header: str | None) -> IngestionResult:
        """Verify, validate, then apply every event of one delivery."""

        verify_signature(self.secret, raw_body, signature_header)
        events, ignored = parse_events(raw_body)
        result = IngestionResult(ignored=ignored)
        for event in events:
            result.item_ids.extend(self._apply(event))
            result.accepted += 1
        logger.info(
            "Webhook accepted: events=%d ignored=%d items=%d",
            result.accepted,
            result.ignored,
            len(result.item_ids),
        )
        return result

    def _apply(self, event: WebhookEvent) -> list[str]:
        if event.action == TICKET_RESOLVED:
            self._resolve(event)
            return []

        customer = self.conversations.upsert_customer(event.customer)
        conversation, created = self.conversations.get_or_create_conversation(
            customer_id=customer.customer_id,
            external_ticket_id=event.ticket_id,
            channel=event.channel,
        )
        if event.content is None:
            return []
        if event.action == TICKET_CREATED and not created:
            # Redelivered ticket.created; the opening text was already recorded.
            return []
        if event.message_id is not None:
            duplicate = self.conversations.find_message_by_external_id(
                conversation_id=conversation.conversation_id,
                external_message_id=event.message_id,
            )
            if duplicate is not None:
                logger.info("Skipping redelivered message %s", event.message_id)
                return []

        message = self.conversations.record_message(
            conversation_id=conversation.conversation_id,
            direction=MessageDirection.INBOUND,
            content=event.content,
            message_type=event.message_type,
            external_message_id=event.message_id,
        )
        if conversation.status in TERMINAL_CONVERSATION_STATUSES:
            logger.info(
                "Conversation %s is %s; message recorded without processing",
                conversation.conversation_id,
                conversation.status.value,
            )
            return []

        item = self.queue.enqueue_item(
            QueueItemCreate(
                item_type=QueueItemType.PROCESS_MESSAGE,
                payload=payload_to_dict(
                    ProcessMessagePayload(
                        conversation_id=conversation.conversation_id,
                        content=event.content,
                        message_id=message.message_id,
                    ),
                ),
                priority=self.default_priority,
                max_attempts=self.max_attempts,
            ),
        )
        return [item.item_id]

    def _resolve(self, event: WebhookEvent) -> None:
        conversation = self.conversations.get_conversation_by_ticket(
            external_ticket_id=event.ticket_id,
        )
        if conversation is None:
            logger.warning("ticket.resolved for unknown ticket %s", event.ticket_id)
            return
        if conversation.status in TERMINAL_CONVERSATION_STATUSES:
            return
        self.conversations.resolve(
            conversation_id=conversation.conversation_id,
            trigger=AuditTrigger.WEBHOOK,
            actor=WEBHOOK_ACTOR,
            reason="ticket_resolved",
        )


def _parse_event(index: int, raw: object) -> WebhookEvent | None:
    where = f"events[{index}]"
    if not isinstance(raw, dict):
        raise ValidationError(f"{where} must be a JSON object.")
    action = raw.get("action")
    if not isinstance(action, str) or not action.strip():
        raise ValidationError(f"{where}.action is required.")
    if action not in SUPPORTED_ACTIONS:
        logger.info("Ignoring webhook action %r", action)
        return None

    ticket = _require_object(raw, "ticket", where)
    customer = _require_object(raw, "customer", where)
    ticket_id = _require_id(ticket, f"{where}.ticket.id")
    customer_id = _require_id(customer, f"{where}.customer.id")

    content: str | None = None
    message_id: str | None = None
    message_type = "text"
    if action == MESSAGE_RECEIVED:
        message = _require_object(raw, "message", where)
        content = _optional_text(message.get("content"))
        if content is None:
            raise ValidationError(f"{where}.message.content is required.")
        message_id = _optional_id(message.get("id"))
        message_type = _optional_text(message.get("type")) or "text"
    elif action == TICKET_CREATED:
        content = _optional_text(ticket.get("conversation_text"))

    return WebhookEvent(
        action=action,
        ticket_id=ticket_id,
        customer=CustomerUpsert(
            external_id=customer_id,
            name=_optional_text(customer.get("name")),
            email=_optional_text(customer.get("email")),
            phone=_optional_text(customer.get("phone")),
        ),
        channel=_optional_text(ticket.get("channel")) or "whatsapp",
        content=content,
        message_id=message_id,
        message_type=message_type,
    )


def _require_object(raw: dict[str, Any], key: str, where: str) -> dict[str, Any]:
    value = raw.get(key)
    if not isinstance(value, dict):
        raise ValidationError(f"{where}.{key} is required.")
    return value


def _require_id(raw: dict[str, Any], where: str) -> str:
    value = _optional_id(raw.get("id"))
    if value is None:
        raise ValidationError(f"{where} is required.")
    return value


def _optional_id(value: object) -> str | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    return _optional_text(value)


def _optional_text(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None
