from __future__ import annotations

import json
from typing import Any

import allure
import pytest

from sales_agent.conversations.models import AuditTrigger, ConversationStatus
from sales_agent.conversations.repository import ConversationRepository
from sales_agent.errors import AuthError, ValidationError
from sales_agent.queue.models import QueueItemType
from sales_agent.queue.repository import QueueRepository
from sales_agent.webhooks.ingestion import IngestionResult, WebhookIngestor, parse_events
from sales_agent.webhooks.signature import sign_body, verify_signature

pytestmark = [
    allure.epic("Webhooks"),
    allure.feature("Signed Ingestion"),
]

SECRET = "test-secret"


def _message_event(
    content: str = "Hola, ¿cuánto cuesta?",
    *,
    ticket_id: str | int = "T-100",
    message_id: str | None = "M-1",
) -> dict[str, Any]:
    message: dict[str, Any] = {"content": content}
    if message_id is not None:
        message["id"] = message_id
    return {
        "action": "message.received",
        "ticket": {"id": ticket_id},
        "customer": {"id": "C-1", "name": "Ana", "phone": "+5215512345678"},
        "message": message,
    }


def _encode(body: object) -> bytes:
    return json.dumps(body).encode("utf-8")


@pytest.fixture()
def ingestor(
    conversation_repository: ConversationRepository,
    queue_repository: QueueRepository,
) -> WebhookIngestor:
    return WebhookIngestor(
        conversations=conversation_repository,
        queue=queue_repository,
        secret=SECRET,
    )


def _deliver(ingestor: WebhookIngestor, body: object) -> IngestionResult:
    raw = _encode(body)
    return ingestor.ingest(raw, sign_body(SECRET, raw))


def test_signature_round_trip_and_rejections() -> None:
    body = b'{"action": "ticket.created"}'
    header = sign_body(SECRET, body)

    verify_signature(SECRET, body, header)
    verify_signature(SECRET, body, header.upper().replace("SHA256=", "sha256="))
    with pytest.raises(AuthError, match="mismatch"):
        verify_signature(SECRET, body + b" ", header)
    with pytest.raises(AuthError, match="Missing"):
        verify_signature(SECRET, body, None)
    with pytest.raises(AuthError, match="Malformed"):
        verify_signature(SECRET, body, "md5=abc")
    with pytest.raises(AuthError, match="not configured"):
        verify_signature(None, body, header)


def test_invalid_signature_persists_nothing(
    ingestor: WebhookIngestor,
    queue_repository: QueueRepository,
    conversation_repository: ConversationRepository,
) -> None:
    raw = _encode(_message_event())

    with pytest.raises(AuthError):
        ingestor.ingest(raw, sign_body("other-secret", raw))

    assert queue_repository.count_items() == 0
    assert conversation_repository.list_conversations() == []


def test_invalid_event_rejects_whole_delivery(
    ingestor: WebhookIngestor,
    queue_repository: QueueRepository,
) -> None:
    body = {"events": [_message_event(), {"action": "message.received", "ticket": {"id": "T"}}]}

    with pytest.raises(ValidationError, match=r"events\[1\]\.customer is required"):
        _deliver(ingestor, body)

    assert queue_repository.count_items() == 0


def test_parse_events_reports_shape_errors() -> None:
    with pytest.raises(ValidationError, match="not valid JSON"):
        parse_events(b"{nope")
    with pytest.raises(ValidationError, match="must be a JSON object"):
        parse_events(b"[1, 2]")
    with pytest.raises(ValidationError, match="message.content is required"):
        parse_events(_encode(_message_event(content="   ")))


def test_message_received_records_message_and_enqueues(
    ingestor: WebhookIngestor,
    queue_repository: QueueRepository,
    conversation_repository: ConversationRepository,
) -> None:
    result = _deliver(ingestor, _message_event(ticket_id=100))

    assert result.accepted == 1
    assert result.ignored == 0
    assert len(result.item_ids) == 1
    item = queue_repository.get_item(item_id=result.item_ids[0])
    assert item is not None
    assert item.item_type == QueueItemType.PROCESS_MESSAGE.value
    conversation = conversation_repository.get_conversation_by_ticket(external_ticket_id="100")
    assert conversation is not None
    assert item.payload["conversation_id"] == conversation.conversation_id
    assert item.payload["content"] == "Hola, ¿cuánto cuesta?"
    messages = conversation_repository.list_messages(
        conversation_id=conversation.conversation_id,
    )
    assert item.payload["message_id"] == messages[0].message_id
    assert messages[0].external_message_id == "M-1"


def test_redelivered_message_is_not_enqueued_twice(
    ingestor: WebhookIngestor,
    queue_repository: QueueRepository,
) -> None:
    first = _deliver(ingestor, _message_event())
    second = _deliver(ingestor, _message_event())

    assert len(first.item_ids) == 1
    assert second.item_ids == []
    assert second.accepted == 1
    assert queue_repository.count_items() == 1


def test_ticket_created_with_text_enqueues_once(
    ingestor: WebhookIngestor,
    queue_repository: QueueRepository,
) -> None:
    event = {
        "action": "ticket.created",
        "ticket": {"id": "T-7", "conversation_text": "Busco un regalo", "channel": "whatsapp"},
        "customer": {"id": "C-7"},
    }

    first = _deliver(ingestor, event)
    again = _deliver(ingestor, event)

    assert len(first.item_ids) == 1
    assert again.item_ids == []
    assert queue_repository.count_items() == 1


def test_events_list_counts_unknown_actions_as_ignored(
    ingestor: WebhookIngestor,
    queue_repository: QueueRepository,
) -> None:
    body = {
        "events": [
            _message_event(message_id="M-1"),
            {"action": "agent.typing"},
            _message_event("¿Y el envío?", message_id="M-2"),
        ],
    }

    result = _deliver(ingestor, body)

    assert result.to_dict()["accepted"] == 2
    assert result.ignored == 1
    assert queue_repository.count_items() == 2


def test_ticket_resolved_closes_out_conversation(
    ingestor: WebhookIngestor,
    queue_repository: QueueRepository,
    conversation_repository: ConversationRepository,
) -> None:
    _deliver(ingestor, _message_event())
    resolved = {"action": "ticket.resolved", "ticket": {"id": "T-100"}, "customer": {"id": "C-1"}}

    result = _deliver(ingestor, resolved)
    late = _deliver(ingestor, _message_event("¿Sigue abierto?", message_id="M-9"))

    assert result.item_ids == []
    conversation = conversation_repository.get_conversation_by_ticket(external_ticket_id="T-100")
    assert conversation is not None
    assert conversation.status == ConversationStatus.RESOLVED
    audit = conversation_repository.list_audit(conversation_id=conversation.conversation_id)
    assert audit[-1].trigger == AuditTrigger.WEBHOOK
    # Late messages are kept for the record but not processed.
    assert late.item_ids == []
    assert conversation.message_count == 2
    assert queue_repository.count_items() == 1


def test_ticket_resolved_for_unknown_ticket_is_accepted(ingestor: WebhookIngestor) -> None:
    body = {"action": "ticket.resolved", "ticket": {"id": "nope"}, "customer": {"id": "C-1"}}

    result = _deliver(ingestor, body)

    assert result.accepted == 1
    assert result.item_ids == []
