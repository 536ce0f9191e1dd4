"""SQLModel ORM tables for queue and conversation storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class QueueItem(SQLModel, table=True):
    __tablename__ = "queue_items"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_queue_items_dispatch", "status", "process_at", "priority", "created_at"),
    )

    id: str = Field(primary_key=True)
    item_type: str = Field(index=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    priority: int = Field(default=5)
    status: str = Field(index=True)
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=3)
    process_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    failure_class: str | None = Field(default=None, index=True)
    worker_id: str | None = Field(default=None)
    claimed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    processed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QueueItemEvent(SQLModel, table=True):
    __tablename__ = "queue_item_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_queue_item_events_item_time", "item_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    item_id: str = Field(
        sa_column=Column(
            ForeignKey("queue_items.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Customer(SQLModel, table=True):
    __tablename__ = "customers"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    external_id: str = Field(unique=True, index=True)
    name: str | None = None
    email: str | None = Field(default=None, index=True)
    phone: str | None = Field(default=None, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Conversation(SQLModel, table=True):
    __tablename__ = "conversations"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    customer_id: str = Field(
        sa_column=Column(
            ForeignKey("customers.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    external_ticket_id: str = Field(unique=True, index=True)
    channel: str = Field(default="whatsapp")
    status: str = Field(index=True)
    human_took_over: bool = Field(default=False)
    human_takeover_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    assigned_to: str | None = Field(default=None, index=True)
    message_count: int = Field(default=0)
    resolved_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Message(SQLModel, table=True):
    __tablename__ = "messages"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_messages_conversation_time", "conversation_id", "created_at"),)

    id: str = Field(primary_key=True)
    conversation_id: str = Field(
        sa_column=Column(
            ForeignKey("conversations.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    direction: str
    message_type: str = Field(default="text")
    content: str = Field(sa_column=Column(Text, nullable=False))
    status: str
    processed_by_llm: bool = Field(default=False)
    external_message_id: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SentimentAnalysis(SQLModel, table=True):
    __tablename__ = "sentiment_analyses"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    conversation_id: str = Field(
        sa_column=Column(
            ForeignKey("conversations.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    message_id: str | None = None
    sentiment: str
    score: float
    confidence: float
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ConversationAuditRecord(SQLModel, table=True):
    __tablename__ = "conversation_audit"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_conversation_audit_conversation_time", "conversation_id", "created_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    conversation_id: str = Field(
        sa_column=Column(
            ForeignKey("conversations.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str
    reason: str | None = Field(default=None, sa_column=Column(Text))
    trigger: str
    status_from: str | None = None
    status_to: str | None = None
    confidence: float | None = None
    sentiment_score: float | None = None
    actor: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class BusinessRule(SQLModel, table=True):
    __tablename__ = "business_rules"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    name: str = Field(unique=True)
    keywords_json: str = Field(sa_column=Column(Text, nullable=False))
    action: str
    message: str = Field(sa_column=Column(Text, nullable=False))
    reason: str | None = Field(default=None, sa_column=Column(Text))
    priority: int = Field(default=0, index=True)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
