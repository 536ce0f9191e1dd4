from __future__ import annotations

from collections.abc import Callable
from datetime import timedelta

import allure
import pytest

from sales_agent.clients.base import MAX_FOLLOW_UP_HOURS
from sales_agent.clients.echo import EchoLlmClient, RecordingMessagingClient
from sales_agent.conversations.escalation import EscalationPolicy
from sales_agent.conversations.models import (
    AuditTrigger,
    ConversationStatus,
    ConversationView,
    MessageDirection,
)
from sales_agent.conversations.repository import ConversationRepository
from sales_agent.errors import TerminalHandlerError
from sales_agent.queue.handlers import (
    FOLLOW_UP_MESSAGE,
    FOLLOW_UP_PRIORITY,
    HANDOFF_MESSAGE,
    ConversationHandlers,
    build_handler_registry,
)
from sales_agent.queue.models import QueueItemCreate, QueueItemStatus, QueueItemType
from sales_agent.queue.payloads import (
    AnalyzeSentimentPayload,
    ProcessMessagePayload,
    SendFollowUpPayload,
)
from sales_agent.queue.processor import QueueProcessor
from sales_agent.queue.registry import HandlerResult
from sales_agent.queue.repository import QueueRepository
from sales_agent.storage.common import utc_now

from conftest import seed_conversation

pytestmark = [
    allure.epic("Queue"),
    allure.feature("Conversation Handlers"),
]

PHONE = "+5215512345678"
HandlersFactory = Callable[..., ConversationHandlers]


@pytest.fixture()
def messaging() -> RecordingMessagingClient:
    return RecordingMessagingClient()


@pytest.fixture()
def make_handlers(
    conversation_repository: ConversationRepository,
    queue_repository: QueueRepository,
    messaging: RecordingMessagingClient,
) -> HandlersFactory:
    conversation_repository.seed_default_rules()

    def factory(llm: EchoLlmClient | None = None) -> ConversationHandlers:
        return ConversationHandlers(
            conversations=conversation_repository,
            queue=queue_repository,
            llm=llm or EchoLlmClient(),
            messaging=messaging,
            policy=EscalationPolicy(),
            agent_id="bot-agent",
        )

    return factory


def _process(
    handlers: ConversationHandlers,
    queue_repository: QueueRepository,
    conversation: ConversationView,
    content: str,
) -> HandlerResult:
    message = handlers.conversations.record_message(
        conversation_id=conversation.conversation_id,
        direction=MessageDirection.INBOUND,
        content=content,
    )
    payload = ProcessMessagePayload(
        conversation_id=conversation.conversation_id,
        content=content,
        message_id=message.message_id,
    )
    item = queue_repository.enqueue_item(
        QueueItemCreate(
            item_type=QueueItemType.PROCESS_MESSAGE,
            payload={"conversation_id": payload.conversation_id, "content": content},
        ),
    )
    return handlers.process_message(payload, item)


def test_plain_message_gets_llm_reply(
    make_handlers: HandlersFactory,
    conversation_repository: ConversationRepository,
    queue_repository: QueueRepository,
    messaging: RecordingMessagingClient,
) -> None:
    conversation = seed_conversation(conversation_repository)
    handlers = make_handlers()

    result = _process(handlers, queue_repository, conversation, "Quiero comprar dos cajas")

    assert result.outcome == "replied"
    assert messaging.sent == [(PHONE, "Recibido: Quiero comprar dos cajas")]
    assert messaging.taken == []
    messages = conversation_repository.list_messages(
        conversation_id=conversation.conversation_id,
    )
    outbound = [message for message in messages if message.direction == MessageDirection.OUTBOUND]
    assert len(outbound) == 1
    assert outbound[0].processed_by_llm
    assert outbound[0].external_message_id == "echo-1"
    sentiment = conversation_repository.list_sentiment(
        conversation_id=conversation.conversation_id,
    )
    assert [entry.sentiment for entry in sentiment] == ["neutral"]


def test_escalation_rule_hands_off_without_calling_llm(
    make_handlers: HandlersFactory,
    conversation_repository: ConversationRepository,
    queue_repository: QueueRepository,
    messaging: RecordingMessagingClient,
) -> None:
    conversation = seed_conversation(conversation_repository)
    llm = EchoLlmClient()
    handlers = make_handlers(llm)

    result = _process(handlers, queue_repository, conversation, "Es URGENTE, por favor")

    assert result.outcome == "escalated_by_rule"
    assert result.details["matched_keyword"] == "urgente"
    assert llm.calls == []
    assert messaging.taken == [("ticket-1", "bot-agent")]
    assert "especialista" in messaging.sent[0][1]
    stored = conversation_repository.get_conversation(
        conversation_id=conversation.conversation_id,
    )
    assert stored is not None
    assert stored.status == ConversationStatus.ESCALATED
    assert stored.human_took_over
    audit = conversation_repository.list_audit(conversation_id=conversation.conversation_id)
    assert audit[0].trigger == AuditTrigger.RULE
    assert audit[0].reason == "rule:urgent_keywords"


def test_direct_response_rule_answers_from_rule(
    make_handlers: HandlersFactory,
    conversation_repository: ConversationRepository,
    queue_repository: QueueRepository,
    messaging: RecordingMessagingClient,
) -> None:
    conversation = seed_conversation(conversation_repository)
    llm = EchoLlmClient()
    handlers = make_handlers(llm)

    result = _process(handlers, queue_repository, conversation, "¿Qué horarios tienen?")

    assert result.outcome == "rule_response"
    assert llm.calls == []
    assert "lunes a viernes" in messaging.sent[0][1]
    stored = conversation_repository.get_conversation(
        conversation_id=conversation.conversation_id,
    )
    assert stored is not None
    assert stored.status == ConversationStatus.ACTIVE


def test_low_confidence_reply_escalates(
    make_handlers: HandlersFactory,
    conversation_repository: ConversationRepository,
    queue_repository: QueueRepository,
    messaging: RecordingMessagingClient,
) -> None:
    conversation = seed_conversation(conversation_repository)
    handlers = make_handlers(EchoLlmClient(confidence=0.1))

    result = _process(handlers, queue_repository, conversation, "¿Tienen envíos a Monterrey?")

    assert result.outcome == "escalated"
    assert result.details["reason"] == "low_confidence"
    assert messaging.sent == [(PHONE, HANDOFF_MESSAGE)]
    audit = conversation_repository.list_audit(conversation_id=conversation.conversation_id)
    assert audit[0].trigger == AuditTrigger.AUTOMATIC
    assert audit[0].confidence == pytest.approx(0.1)


def test_negative_sentiment_escalates(
    make_handlers: HandlersFactory,
    conversation_repository: ConversationRepository,
    queue_repository: QueueRepository,
) -> None:
    conversation = seed_conversation(conversation_repository)
    handlers = make_handlers()

    result = _process(handlers, queue_repository, conversation, "Esto es horrible")

    assert result.outcome == "escalated"
    assert result.details["reason"] == "negative_sentiment"
    audit = conversation_repository.list_audit(conversation_id=conversation.conversation_id)
    assert audit[0].sentiment_score == pytest.approx(-0.9)


def test_explicit_human_request_escalates(
    make_handlers: HandlersFactory,
    conversation_repository: ConversationRepository,
    queue_repository: QueueRepository,
) -> None:
    conversation = seed_conversation(conversation_repository)
    handlers = make_handlers()

    result = _process(handlers, queue_repository, conversation, "Quiero hablar con un humano")

    assert result.outcome == "escalated"
    assert result.details["reason"] == "explicit_request"


def test_reply_with_follow_up_schedules_item(
    make_handlers: HandlersFactory,
    conversation_repository: ConversationRepository,
    queue_repository: QueueRepository,
) -> None:
    conversation = seed_conversation(conversation_repository)
    handlers = make_handlers(EchoLlmClient(follow_up_hours=24))

    result = _process(handlers, queue_repository, conversation, "Lo voy a pensar")

    follow_up = queue_repository.get_item(item_id=str(result.details["follow_up_item_id"]))
    assert follow_up is not None
    assert follow_up.item_type == QueueItemType.SEND_FOLLOW_UP.value
    assert follow_up.priority == FOLLOW_UP_PRIORITY
    assert follow_up.status == QueueItemStatus.PENDING
    assert follow_up.process_at > follow_up.created_at
    due_ids = {item.item_id for item in queue_repository.dequeue_batch(limit=10)}
    assert follow_up.item_id not in due_ids
    assert follow_up.payload["message"] == FOLLOW_UP_MESSAGE


def test_follow_up_uses_message_drafted_by_llm(
    make_handlers: HandlersFactory,
    conversation_repository: ConversationRepository,
    queue_repository: QueueRepository,
) -> None:
    conversation = seed_conversation(conversation_repository)
    llm = EchoLlmClient(follow_up_hours=2, follow_up_message="¿Te ayudo a completar tu pedido?")
    handlers = make_handlers(llm)

    result = _process(handlers, queue_repository, conversation, "Lo reviso en la tarde")

    follow_up = queue_repository.get_item(item_id=str(result.details["follow_up_item_id"]))
    assert follow_up is not None
    assert follow_up.payload["message"] == "¿Te ayudo a completar tu pedido?"


def test_out_of_range_follow_up_is_capped_and_reply_sent_once(
    make_handlers: HandlersFactory,
    conversation_repository: ConversationRepository,
    queue_repository: QueueRepository,
    messaging: RecordingMessagingClient,
) -> None:
    conversation = seed_conversation(conversation_repository)
    handlers = make_handlers(EchoLlmClient(follow_up_hours=100_000_000))
    processor = QueueProcessor(
        repository=queue_repository,
        registry=build_handler_registry(handlers),
        worker_id="worker-test",
        poll_interval_seconds=0,
    )
    queue_repository.enqueue_item(
        QueueItemCreate(
            item_type=QueueItemType.PROCESS_MESSAGE,
            payload={"conversation_id": conversation.conversation_id, "content": "hola"},
        ),
    )

    summaries = [processor.process_batch() for _ in range(3)]

    assert summaries[0].completed == 1
    assert summaries[0].retried == 0
    assert messaging.sent == [(PHONE, "Recibido: hola")]
    follow_ups = queue_repository.list_items(item_type=QueueItemType.SEND_FOLLOW_UP)
    assert len(follow_ups) == 1
    assert follow_ups[0].process_at <= utc_now() + timedelta(hours=MAX_FOLLOW_UP_HOURS)


def test_human_controlled_conversation_is_skipped(
    make_handlers: HandlersFactory,
    conversation_repository: ConversationRepository,
    queue_repository: QueueRepository,
    messaging: RecordingMessagingClient,
) -> None:
    conversation = seed_conversation(conversation_repository)
    conversation_repository.take_over(
        conversation_id=conversation.conversation_id,
        agent_id="agent-7",
    )
    llm = EchoLlmClient()
    handlers = make_handlers(llm)

    result = _process(handlers, queue_repository, conversation, "¿Siguen ahí?")

    assert result.outcome == "skipped"
    assert result.details["reason"] == "human_control"
    assert llm.calls == []
    assert messaging.sent == []


def test_follow_up_skips_resolved_conversation(
    make_handlers: HandlersFactory,
    conversation_repository: ConversationRepository,
    queue_repository: QueueRepository,
    messaging: RecordingMessagingClient,
) -> None:
    conversation = seed_conversation(conversation_repository)
    conversation_repository.resolve(conversation_id=conversation.conversation_id)
    handlers = make_handlers()
    item = queue_repository.enqueue_item(
        QueueItemCreate(
            item_type=QueueItemType.SEND_FOLLOW_UP,
            payload={"conversation_id": conversation.conversation_id, "message": "hola"},
        ),
    )

    result = handlers.send_follow_up(
        SendFollowUpPayload(conversation_id=conversation.conversation_id, message="hola"),
        item,
    )

    assert result.outcome == "skipped"
    assert result.details["reason"] == "resolved"
    assert messaging.sent == []


def test_follow_up_is_sent_to_active_conversation(
    make_handlers: HandlersFactory,
    conversation_repository: ConversationRepository,
    queue_repository: QueueRepository,
    messaging: RecordingMessagingClient,
) -> None:
    conversation = seed_conversation(conversation_repository, phone=None)
    handlers = make_handlers()
    item = queue_repository.enqueue_item(
        QueueItemCreate(
            item_type=QueueItemType.SEND_FOLLOW_UP,
            payload={"conversation_id": conversation.conversation_id, "message": "hola"},
        ),
    )

    result = handlers.send_follow_up(
        SendFollowUpPayload(conversation_id=conversation.conversation_id, message="hola"),
        item,
    )

    assert result.outcome == "sent"
    # Without a phone number the platform customer id is the recipient.
    assert messaging.sent == [("customer-ticket-1", "hola")]


def test_sentiment_analysis_stores_score_and_escalates_when_negative(
    make_handlers: HandlersFactory,
    conversation_repository: ConversationRepository,
    queue_repository: QueueRepository,
) -> None:
    conversation = seed_conversation(conversation_repository)
    handlers = make_handlers(EchoLlmClient(sentiment_score=-0.95))
    item = queue_repository.enqueue_item(
        QueueItemCreate(
            item_type=QueueItemType.ANALYZE_SENTIMENT,
            payload={"conversation_id": conversation.conversation_id, "content": "mal"},
        ),
    )

    result = handlers.analyze_sentiment(
        AnalyzeSentimentPayload(conversation_id=conversation.conversation_id, content="mal"),
        item,
    )

    assert result.outcome == "escalated"
    stored = conversation_repository.list_sentiment(
        conversation_id=conversation.conversation_id,
    )
    assert stored[0].score == pytest.approx(-0.95)
    assert stored[0].confidence == pytest.approx(0.8)


def test_missing_conversation_is_terminal(
    make_handlers: HandlersFactory,
    queue_repository: QueueRepository,
) -> None:
    handlers = make_handlers()
    item = queue_repository.enqueue_item(
        QueueItemCreate(
            item_type=QueueItemType.PROCESS_MESSAGE,
            payload={"conversation_id": "missing", "content": "hola"},
        ),
    )

    with pytest.raises(TerminalHandlerError, match="Conversation not found"):
        handlers.process_message(
            ProcessMessagePayload(conversation_id="missing", content="hola"),
            item,
        )


def test_registry_routes_every_item_type(make_handlers: HandlersFactory) -> None:
    registry = build_handler_registry(make_handlers())

    assert set(registry.registered_types()) == set(QueueItemType)
