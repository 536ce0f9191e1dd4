from __future__ import annotations

import allure
import pytest

from sales_agent.conversations.models import (
    AuditEventType,
    AuditTrigger,
    ConversationStatus,
    CustomerUpsert,
    MessageDirection,
)
from sales_agent.conversations.repository import ConversationRepository
from sales_agent.errors import NotFoundError, StateConflictError

from conftest import seed_conversation

pytestmark = [
    allure.epic("Conversations"),
    allure.feature("Persistence & Operator Actions"),
]


def test_upsert_customer_updates_only_provided_fields(
    conversation_repository: ConversationRepository,
) -> None:
    created = conversation_repository.upsert_customer(
        CustomerUpsert(external_id="cust-1", name="Ana", email="ana@example.com"),
    )
    updated = conversation_repository.upsert_customer(
        CustomerUpsert(external_id="cust-1", phone="+5215511111111"),
    )

    assert updated.customer_id == created.customer_id
    assert updated.name == "Ana"
    assert updated.email == "ana@example.com"
    assert updated.phone == "+5215511111111"


def test_get_or_create_conversation_is_keyed_by_ticket(
    conversation_repository: ConversationRepository,
) -> None:
    customer = conversation_repository.upsert_customer(CustomerUpsert(external_id="cust-1"))

    first, created = conversation_repository.get_or_create_conversation(
        customer_id=customer.customer_id,
        external_ticket_id="ticket-9",
    )
    again, created_again = conversation_repository.get_or_create_conversation(
        customer_id=customer.customer_id,
        external_ticket_id="ticket-9",
    )

    assert created
    assert not created_again
    assert again.conversation_id == first.conversation_id
    assert first.status == ConversationStatus.ACTIVE
    assert first.channel == "whatsapp"


def test_record_message_bumps_counter_and_defaults_status(
    conversation_repository: ConversationRepository,
) -> None:
    conversation = seed_conversation(conversation_repository)

    inbound = conversation_repository.record_message(
        conversation_id=conversation.conversation_id,
        direction=MessageDirection.INBOUND,
        content="hola",
        external_message_id="ext-1",
    )
    outbound = conversation_repository.record_message(
        conversation_id=conversation.conversation_id,
        direction=MessageDirection.OUTBOUND,
        content="¡Hola! ¿En qué te ayudo?",
        processed_by_llm=True,
    )

    assert inbound.status == "received"
    assert outbound.status == "sent"
    stored = conversation_repository.get_conversation(
        conversation_id=conversation.conversation_id,
    )
    assert stored is not None
    assert stored.message_count == 2
    found = conversation_repository.find_message_by_external_id(
        conversation_id=conversation.conversation_id,
        external_message_id="ext-1",
    )
    assert found is not None
    assert found.message_id == inbound.message_id


def test_record_message_for_missing_conversation_raises(
    conversation_repository: ConversationRepository,
) -> None:
    with pytest.raises(NotFoundError):
        conversation_repository.record_message(
            conversation_id="missing",
            direction=MessageDirection.INBOUND,
            content="hola",
        )


def test_sentiment_scores_are_clamped(conversation_repository: ConversationRepository) -> None:
    conversation = seed_conversation(conversation_repository)

    stored = conversation_repository.add_sentiment(
        conversation_id=conversation.conversation_id,
        message_id=None,
        sentiment="negative",
        score=-3.0,
        confidence=1.7,
    )

    assert stored.score == -1.0
    assert stored.confidence == 1.0
    assert len(conversation_repository.list_sentiment(
        conversation_id=conversation.conversation_id,
    )) == 1


def test_take_over_then_release_round_trip(
    conversation_repository: ConversationRepository,
) -> None:
    conversation = seed_conversation(conversation_repository)

    taken = conversation_repository.take_over(
        conversation_id=conversation.conversation_id,
        agent_id="agent-7",
    )
    released = conversation_repository.release(
        conversation_id=conversation.conversation_id,
        actor="agent-7",
    )

    assert taken.status == ConversationStatus.ESCALATED
    assert taken.human_took_over
    assert taken.assigned_to == "agent-7"
    assert released.status == ConversationStatus.ACTIVE
    assert not released.human_took_over
    assert released.assigned_to is None
    records = conversation_repository.list_audit(conversation_id=conversation.conversation_id)
    assert [record.event_type for record in records] == [
        AuditEventType.TAKEN_OVER,
        AuditEventType.RELEASED,
    ]
    assert all(record.trigger == AuditTrigger.MANUAL for record in records)


def test_release_requires_human_control(conversation_repository: ConversationRepository) -> None:
    conversation = seed_conversation(conversation_repository)

    with pytest.raises(StateConflictError, match="not under human control"):
        conversation_repository.release(conversation_id=conversation.conversation_id)


def test_resolve_and_close_are_idempotent(
    conversation_repository: ConversationRepository,
) -> None:
    conversation = seed_conversation(conversation_repository)

    resolved = conversation_repository.resolve(conversation_id=conversation.conversation_id)
    resolved_again = conversation_repository.resolve(conversation_id=conversation.conversation_id)
    closed = conversation_repository.close_conversation(
        conversation_id=conversation.conversation_id,
    )
    closed_again = conversation_repository.close_conversation(
        conversation_id=conversation.conversation_id,
    )

    assert resolved.status == ConversationStatus.RESOLVED
    assert resolved.resolved_at is not None
    assert resolved_again.status == ConversationStatus.RESOLVED
    assert closed.status == ConversationStatus.CLOSED
    assert closed_again.status == ConversationStatus.CLOSED
    records = conversation_repository.list_audit(conversation_id=conversation.conversation_id)
    assert [record.event_type for record in records] == [
        AuditEventType.RESOLVED,
        AuditEventType.CLOSED,
    ]


def test_closed_conversation_cannot_be_taken_over(
    conversation_repository: ConversationRepository,
) -> None:
    conversation = seed_conversation(conversation_repository)
    conversation_repository.close_conversation(conversation_id=conversation.conversation_id)

    with pytest.raises(StateConflictError):
        conversation_repository.take_over(
            conversation_id=conversation.conversation_id,
            agent_id="agent-7",
        )


def test_seed_default_rules_is_idempotent(
    conversation_repository: ConversationRepository,
) -> None:
    inserted = conversation_repository.seed_default_rules()
    inserted_again = conversation_repository.seed_default_rules()

    rules = conversation_repository.list_active_rules()
    assert inserted == 5
    assert inserted_again == 0
    assert [rule.priority for rule in rules] == [100, 95, 90, 45, 30]
