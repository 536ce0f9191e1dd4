"""Persistence for customers, conversations, messages, sentiment, rules and audit."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from sales_agent.conversations.models import (
    AuditEventType,
    AuditRecordView,
    AuditTrigger,
    BusinessRuleSpec,
    BusinessRuleView,
    ConversationStatus,
    ConversationView,
    CustomerUpsert,
    CustomerView,
    MessageDirection,
    MessageView,
    RuleAction,
    SentimentView,
)
from sales_agent.conversations.rules import DEFAULT_RULES
from sales_agent.errors import NotFoundError, StateConflictError
from sales_agent.storage.alembic_runner import upgrade_head
from sales_agent.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from sales_agent.storage.sqlmodel_models import (
    BusinessRule,
    Conversation,
    ConversationAuditRecord,
    Customer,
    Message,
    SentimentAnalysis,
)

logger = logging.getLogger(__name__)

_OPEN_STATUSES = (ConversationStatus.ACTIVE, ConversationStatus.ESCALATED)


class ConversationRepository:
    """Conversation persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def upsert_customer(self, customer: CustomerUpsert) -> CustomerView:
        """Insert a customer by external id or refresh the contact fields that were provided."""

        while True:
            now = to_db_datetime(utc_now())
            with Session(self.engine) as session:
                row = session.exec(
                    select(Customer).where(Customer.external_id == customer.external_id),
                ).one_or_none()
                if row is None:
                    row = Customer(
                        id=str(uuid4()),
                        external_id=customer.external_id,
                        name=customer.name,
                        email=customer.email,
                        phone=customer.phone,
                        created_at=now,
                        updated_at=now,
                    )
                else:
                    changed = False
                    for attribute in ("name", "email", "phone"):
                        value = getattr(customer, attribute)
                        if value is not None and getattr(row, attribute) != value:
                            setattr(row, attribute, value)
                            changed = True
                    if not changed:
                        return _to_customer_view(row)
                    row.updated_at = now
                session.add(row)
                try:
                    session.commit()
                except IntegrityError:
                    # Another writer inserted the same external id first.
                    session.rollback()
                    continue
                session.refresh(row)
                return _to_customer_view(row)

    def get_customer(self, *, customer_id: str) -> CustomerView | None:
        with Session(self.engine) as session:
            row = session.exec(select(Customer).where(Customer.id == customer_id)).one_or_none()
        return _to_customer_view(row) if row is not None else None

    def get_or_create_conversation(
        self,
        *,
        customer_id: str,
        external_ticket_id: str,
        channel: str = "whatsapp",
    ) -> tuple[ConversationView, bool]:
        """Return the conversation for a platform ticket, creating it when missing."""

        while True:
            existing = self.get_conversation_by_ticket(external_ticket_id=external_ticket_id)
            if existing is not None:
                return existing, False
            now = to_db_datetime(utc_now())
            with Session(self.engine) as session:
                row = Conversation(
                    id=str(uuid4()),
                    customer_id=customer_id,
                    external_ticket_id=external_ticket_id,
                    channel=channel,
                    status=ConversationStatus.ACTIVE.value,
                    human_took_over=False,
                    message_count=0,
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    continue
                session.refresh(row)
                logger.info(
                    "Created conversation %s for ticket %s",
                    row.id,
                    external_ticket_id,
                )
                return _to_conversation_view(row), True

    def get_conversation(self, *, conversation_id: str) -> ConversationView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Conversation).where(Conversation.id == conversation_id),
            ).one_or_none()
        return _to_conversation_view(row) if row is not None else None

    def get_conversation_by_ticket(self, *, external_ticket_id: str) -> ConversationView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Conversation).where(Conversation.external_ticket_id == external_ticket_id),
            ).one_or_none()
        return _to_conversation_view(row) if row is not None else None

    def list_conversations(
        self,
        *,
        status: ConversationStatus | None = None,
        limit: int = 50,
    ) -> list[ConversationView]:
        with Session(self.engine) as session:
            statement = (
                select(Conversation).order_by(col(Conversation.updated_at).desc()).limit(limit)
            )
            if status is not None:
                statement = statement.where(Conversation.status == status.value)
            rows = session.exec(statement).all()
        return [_to_conversation_view(row) for row in rows]

    def record_message(  # noqa: PLR0913
        self,
        *,
        conversation_id: str,
        direction: MessageDirection,
        content: str,
        message_type: str = "text",
        status: str | None = None,
        processed_by_llm: bool = False,
        external_message_id: str | None = None,
    ) -> MessageView:
        """Append a message and bump the conversation message counter."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Conversation)
                .where(col(Conversation.id) == conversation_id)
                .values(
                    message_count=col(Conversation.message_count) + 1,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise NotFoundError(f"Conversation not found: {conversation_id}")
            row = Message(
                id=str(uuid4()),
                conversation_id=conversation_id,
                direction=direction.value,
                message_type=message_type,
                content=content,
                status=status or ("received" if direction == MessageDirection.INBOUND else "sent"),
                processed_by_llm=processed_by_llm,
                external_message_id=external_message_id,
                created_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_message_view(row)

    def find_message_by_external_id(
        self,
        *,
        conversation_id: str,
        external_message_id: str,
    ) -> MessageView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Message).where(
                    Message.conversation_id == conversation_id,
                    Message.external_message_id == external_message_id,
                ),
            ).first()
        return _to_message_view(row) if row is not None else None

    def list_messages(self, *, conversation_id: str, limit: int = 50) -> list[MessageView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Message)
                .where(Message.conversation_id == conversation_id)
                .order_by(col(Message.created_at).asc())
                .limit(limit),
            ).all()
        return [_to_message_view(row) for row in rows]

    def mark_message_processed(self, *, message_id: str) -> None:
        with Session(self.engine) as session:
            session.exec(
                sa_update(Message)
                .where(col(Message.id) == message_id)
                .values(processed_by_llm=True, status="processed"),
            )
            session.commit()

    def add_sentiment(
        self,
        *,
        conversation_id: str,
        message_id: str | None,
        sentiment: str,
        score: float,
        confidence: float,
    ) -> SentimentView:
        """Persist one sentiment analysis; score is clamped into [-1, 1]."""

        with Session(self.engine) as session:
            row = SentimentAnalysis(
                conversation_id=conversation_id,
                message_id=message_id,
                sentiment=sentiment,
                score=max(-1.0, min(1.0, score)),
                confidence=max(0.0, min(1.0, confidence)),
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_sentiment_view(row)

    def list_sentiment(self, *, conversation_id: str) -> list[SentimentView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(SentimentAnalysis)
                .where(SentimentAnalysis.conversation_id == conversation_id)
                .order_by(col(SentimentAnalysis.created_at).asc()),
            ).all()
        return [_to_sentiment_view(row) for row in rows]

    def escalate(  # noqa: PLR0913
        self,
        *,
        conversation_id: str,
        reason: str,
        trigger: AuditTrigger = AuditTrigger.AUTOMATIC,
        confidence: float | None = None,
        sentiment_score: float | None = None,
        actor: str | None = None,
    ) -> bool:
        """Hand an active, bot-controlled conversation to a human.

        The update is conditional, so repeated escalation is a no-op that returns
        False and writes no audit record.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Conversation)
                .where(
                    col(Conversation.id) == conversation_id,
                    col(Conversation.status) == ConversationStatus.ACTIVE.value,
                    col(Conversation.human_took_over).is_(False),
                )
                .values(
                    status=ConversationStatus.ESCALATED.value,
                    human_took_over=True,
                    human_takeover_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_audit(
                session=session,
                conversation_id=conversation_id,
                event_type=AuditEventType.ESCALATED,
                reason=reason,
                trigger=trigger,
                status_from=ConversationStatus.ACTIVE,
                status_to=ConversationStatus.ESCALATED,
                confidence=confidence,
                sentiment_score=sentiment_score,
                actor=actor,
            )
            session.commit()
        logger.info("Conversation %s escalated: %s", conversation_id, reason)
        return True

    def take_over(
        self,
        *,
        conversation_id: str,
        agent_id: str,
        reason: str | None = None,
    ) -> ConversationView:
        """Operator takes manual control; the conversation becomes escalated and assigned."""

        now = to_db_datetime(utc_now())
        return self._transition(
            conversation_id=conversation_id,
            allowed_from=_OPEN_STATUSES,
            values={
                "status": ConversationStatus.ESCALATED.value,
                "human_took_over": True,
                "human_takeover_at": now,
                "assigned_to": agent_id,
                "updated_at": now,
            },
            status_to=ConversationStatus.ESCALATED,
            event_type=AuditEventType.TAKEN_OVER,
            trigger=AuditTrigger.MANUAL,
            reason=reason or "manual_takeover",
            actor=agent_id,
        )

    def release(
        self,
        *,
        conversation_id: str,
        actor: str | None = None,
        reason: str | None = None,
    ) -> ConversationView:
        """Hand control back to the bot and clear the assignment."""

        current = self._require_conversation(conversation_id)
        if not current.human_took_over:
            raise StateConflictError(
                f"Conversation {conversation_id} is not under human control.",
            )
        now = to_db_datetime(utc_now())
        return self._transition(
            conversation_id=conversation_id,
            allowed_from=_OPEN_STATUSES,
            values={
                "status": ConversationStatus.ACTIVE.value,
                "human_took_over": False,
                "human_takeover_at": None,
                "assigned_to": None,
                "updated_at": now,
            },
            status_to=ConversationStatus.ACTIVE,
            event_type=AuditEventType.RELEASED,
            trigger=AuditTrigger.MANUAL,
            reason=reason or "manual_release",
            actor=actor,
        )

    def resolve(
        self,
        *,
        conversation_id: str,
        trigger: AuditTrigger = AuditTrigger.MANUAL,
        actor: str | None = None,
        reason: str | None = None,
    ) -> ConversationView:
        """Mark resolved; resolving an already resolved conversation is a no-op."""

        current = self._require_conversation(conversation_id)
        if current.status == ConversationStatus.RESOLVED:
            return current
        now = to_db_datetime(utc_now())
        return self._transition(
            conversation_id=conversation_id,
            allowed_from=_OPEN_STATUSES,
            values={
                "status": ConversationStatus.RESOLVED.value,
                "human_took_over": False,
                "resolved_at": now,
                "updated_at": now,
            },
            status_to=ConversationStatus.RESOLVED,
            event_type=AuditEventType.RESOLVED,
            trigger=trigger,
            reason=reason,
            actor=actor,
        )

    def close_conversation(
        self,
        *,
        conversation_id: str,
        trigger: AuditTrigger = AuditTrigger.MANUAL,
        actor: str | None = None,
        reason: str | None = None,
    ) -> ConversationView:
        """Close for good; closing an already closed conversation is a no-op."""

        current = self._require_conversation(conversation_id)
        if current.status == ConversationStatus.CLOSED:
            return current
        now = to_db_datetime(utc_now())
        return self._transition(
            conversation_id=conversation_id,
            allowed_from=(*_OPEN_STATUSES, ConversationStatus.RESOLVED),
            values={
                "status": ConversationStatus.CLOSED.value,
                "human_took_over": False,
                "updated_at": now,
            },
            status_to=ConversationStatus.CLOSED,
            event_type=AuditEventType.CLOSED,
            trigger=trigger,
            reason=reason,
            actor=actor,
        )

    def list_audit(self, *, conversation_id: str) -> list[AuditRecordView]:
        """Return the audit trail of a conversation in insertion order."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(ConversationAuditRecord)
                .where(ConversationAuditRecord.conversation_id == conversation_id)
                .order_by(
                    col(ConversationAuditRecord.created_at).asc(),
                    col(ConversationAuditRecord.id).asc(),
                ),
            ).all()
        return [_to_audit_view(row) for row in rows]

    def seed_default_rules(self, rules: Iterable[BusinessRuleSpec] = DEFAULT_RULES) -> int:
        """Insert rules that do not exist yet (matched by name); returns inserted count."""

        inserted = 0
        with Session(self.engine) as session:
            existing = set(session.exec(select(BusinessRule.name)).all())
            for rule in rules:
                if rule.name in existing:
                    continue
                session.add(
                    BusinessRule(
                        id=str(uuid4()),
                        name=rule.name,
                        keywords_json=json.dumps(list(rule.keywords), ensure_ascii=False),
                        action=rule.action.value,
                        message=rule.message,
                        reason=rule.reason,
                        priority=rule.priority,
                        is_active=rule.is_active,
                        created_at=to_db_datetime(utc_now()),
                    ),
                )
                existing.add(rule.name)
                inserted += 1
            try:
                session.commit()
            except IntegrityError:
                # A concurrent seeder won; the rules exist either way.
                session.rollback()
                return 0
        return inserted

    def list_active_rules(self) -> list[BusinessRuleView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(BusinessRule)
                .where(col(BusinessRule.is_active).is_(True))
                .order_by(col(BusinessRule.priority).desc()),
            ).all()
        return [_to_rule_view(row) for row in rows]

    def _require_conversation(self, conversation_id: str) -> ConversationView:
        conversation = self.get_conversation(conversation_id=conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation not found: {conversation_id}")
        return conversation

    def _transition(  # noqa: PLR0913
        self,
        *,
        conversation_id: str,
        allowed_from: tuple[ConversationStatus, ...],
        values: dict[str, Any],
        status_to: ConversationStatus,
        event_type: AuditEventType,
        trigger: AuditTrigger,
        reason: str | None,
        actor: str | None,
    ) -> ConversationView:
        with Session(self.engine) as session:
            row = session.exec(
                select(Conversation).where(Conversation.id == conversation_id),
            ).one_or_none()
            if row is None:
                raise NotFoundError(f"Conversation not found: {conversation_id}")
            previous = ConversationStatus(row.status)
            if previous not in allowed_from:
                raise StateConflictError(
                    f"Conversation {conversation_id} cannot move from {previous.value} "
                    f"to {status_to.value}.",
                )
            result = session.exec(
                sa_update(Conversation)
                .where(
                    col(Conversation.id) == conversation_id,
                    col(Conversation.status) == previous.value,
                    col(Conversation.updated_at) == row.updated_at,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                raise StateConflictError(
                    "Conversation state changed concurrently; "
                    f"please retry command (conversation_id={conversation_id}).",
                )
            self._add_audit(
                session=session,
                conversation_id=conversation_id,
                event_type=event_type,
                reason=reason,
                trigger=trigger,
                status_from=previous,
                status_to=status_to,
                actor=actor,
            )
            session.commit()
            refreshed = session.exec(
                select(Conversation).where(Conversation.id == conversation_id),
            ).one()
            return _to_conversation_view(refreshed)

    def _add_audit(  # noqa: PLR0913
        self,
        *,
        session: Session,
        conversation_id: str,
        event_type: AuditEventType,
        reason: str | None,
        trigger: AuditTrigger,
        status_from: ConversationStatus | None,
        status_to: ConversationStatus | None,
        confidence: float | None = None,
        sentiment_score: float | None = None,
        actor: str | None = None,
    ) -> None:
        session.add(
            ConversationAuditRecord(
                conversation_id=conversation_id,
                event_type=event_type.value,
                reason=reason,
                trigger=trigger.value,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                confidence=confidence,
                sentiment_score=sentiment_score,
                actor=actor,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _to_customer_view(row: Customer) -> CustomerView:
    return CustomerView(
        customer_id=row.id,
        external_id=row.external_id,
        name=row.name,
        email=row.email,
        phone=row.phone,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_conversation_view(row: Conversation) -> ConversationView:
    return ConversationView(
        conversation_id=row.id,
        customer_id=row.customer_id,
        external_ticket_id=row.external_ticket_id,
        channel=row.channel,
        status=ConversationStatus(row.status),
        human_took_over=bool(row.human_took_over),
        human_takeover_at=optional_utc(row.human_takeover_at),
        assigned_to=row.assigned_to,
        message_count=row.message_count,
        resolved_at=optional_utc(row.resolved_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_message_view(row: Message) -> MessageView:
    return MessageView(
        message_id=row.id,
        conversation_id=row.conversation_id,
        direction=MessageDirection(row.direction),
        message_type=row.message_type,
        content=row.content,
        status=row.status,
        processed_by_llm=bool(row.processed_by_llm),
        external_message_id=row.external_message_id,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_sentiment_view(row: SentimentAnalysis) -> SentimentView:
    return SentimentView(
        sentiment_id=row.id or 0,
        conversation_id=row.conversation_id,
        message_id=row.message_id,
        sentiment=row.sentiment,
        score=row.score,
        confidence=row.confidence,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_audit_view(row: ConversationAuditRecord) -> AuditRecordView:
    return AuditRecordView(
        record_id=row.id or 0,
        conversation_id=row.conversation_id,
        event_type=AuditEventType(row.event_type),
        reason=row.reason,
        trigger=AuditTrigger(row.trigger),
        status_from=ConversationStatus(row.status_from) if row.status_from else None,
        status_to=ConversationStatus(row.status_to) if row.status_to else None,
        confidence=row.confidence,
        sentiment_score=row.sentiment_score,
        actor=row.actor,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_rule_view(row: BusinessRule) -> BusinessRuleView:
    keywords = json.loads(row.keywords_json) if row.keywords_json else []
    return BusinessRuleView(
        rule_id=row.id,
        name=row.name,
        keywords=tuple(str(keyword) for keyword in keywords),
        action=RuleAction(row.action),
        message=row.message,
        reason=row.reason,
        priority=row.priority,
        is_active=bool(row.is_active),
        created_at=to_utc_aware_datetime(row.created_at),
    )
