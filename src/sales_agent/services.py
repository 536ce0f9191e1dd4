"""Wire repositories, capability clients and the processor from settings."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from sales_agent.clients.base import LlmClient, MessagingClient
from sales_agent.clients.factory import build_llm_client, build_messaging_client
from sales_agent.config import Settings
from sales_agent.conversations.escalation import EscalationPolicy
from sales_agent.conversations.models import ConversationView
from sales_agent.conversations.repository import ConversationRepository
from sales_agent.errors import HandlerError
from sales_agent.queue.handlers import ConversationHandlers, build_handler_registry
from sales_agent.queue.processor import QueueProcessor
from sales_agent.queue.repository import QueueRepository
from sales_agent.webhooks.ingestion import WebhookIngestor

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AgentServices:
    """Everything a request, a CLI command or a worker needs for one run."""

    settings: Settings
    queue: QueueRepository
    conversations: ConversationRepository
    llm: LlmClient
    messaging: MessagingClient

    @property
    def policy(self) -> EscalationPolicy:
        return EscalationPolicy(
            confidence_threshold=self.settings.escalation.confidence_threshold,
            sentiment_threshold=self.settings.escalation.sentiment_threshold,
        )

    def processor(self) -> QueueProcessor:
        handlers = ConversationHandlers(
            conversations=self.conversations,
            queue=self.queue,
            llm=self.llm,
            messaging=self.messaging,
            policy=self.policy,
            agent_id=self.settings.myalice.agent_id,
            follow_up_max_attempts=self.settings.queue.max_attempts,
        )
        queue_settings = self.settings.queue
        return QueueProcessor(
            repository=self.queue,
            registry=build_handler_registry(handlers),
            worker_id=queue_settings.worker_id,
            batch_size=queue_settings.batch_size,
            retry_base_ms=queue_settings.retry_base_ms,
            retry_max_seconds=queue_settings.retry_max_seconds,
            poll_interval_seconds=queue_settings.poll_interval_seconds,
        )

    def ingestor(self) -> WebhookIngestor:
        return WebhookIngestor(
            conversations=self.conversations,
            queue=self.queue,
            secret=self.settings.webhook.secret,
            default_priority=self.settings.queue.default_priority,
            max_attempts=self.settings.queue.max_attempts,
        )

    def operator(self) -> ConversationOperator:
        return ConversationOperator(conversations=self.conversations, messaging=self.messaging)

    def close(self) -> None:
        self.queue.close()
        self.conversations.close()
        for client in (self.llm, self.messaging):
            close = getattr(client, "close", None)
            if callable(close):
                close()


@dataclass(slots=True)
class OperatorActionResult:
    """Conversation after a manual action plus the platform sync outcome."""

    conversation: ConversationView
    platform_error: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "conversation": self.conversation.to_dict(),
            "platform_synced": self.platform_error is None,
            "platform_error": self.platform_error,
        }


class ConversationOperator:
    """Manual takeover and release that keep the platform in sync."""

    def __init__(
        self,
        *,
        conversations: ConversationRepository,
        messaging: MessagingClient,
    ) -> None:
        self.conversations = conversations
        self.messaging = messaging

    def take_over(
        self,
        *,
        conversation_id: str,
        agent_id: str,
        reason: str | None = None,
    ) -> OperatorActionResult:
        conversation = self.conversations.take_over(
            conversation_id=conversation_id,
            agent_id=agent_id,
            reason=reason,
        )
        try:
            self.messaging.take_control(
                external_ticket_id=conversation.external_ticket_id,
                agent_id=agent_id,
            )
        except HandlerError as error:
            logger.warning("Platform take control failed for %s: %s", conversation_id, error)
            return OperatorActionResult(conversation=conversation, platform_error=str(error))
        return OperatorActionResult(conversation=conversation)

    def release(
        self,
        *,
        conversation_id: str,
        actor: str | None = None,
        reason: str | None = None,
    ) -> OperatorActionResult:
        conversation = self.conversations.release(
            conversation_id=conversation_id,
            actor=actor,
            reason=reason,
        )
        try:
            self.messaging.release_control(external_ticket_id=conversation.external_ticket_id)
        except HandlerError as error:
            logger.warning("Platform release failed for %s: %s", conversation_id, error)
            return OperatorActionResult(conversation=conversation, platform_error=str(error))
        return OperatorActionResult(conversation=conversation)


def build_services(
    settings: Settings,
    *,
    llm: LlmClient | None = None,
    messaging: MessagingClient | None = None,
) -> AgentServices:
    """Open repositories (running migrations) and build capability clients."""

    queue = QueueRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    queue.init_schema()
    conversations = ConversationRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    return AgentServices(
        settings=settings,
        queue=queue,
        conversations=conversations,
        llm=llm if llm is not None else build_llm_client(settings),
        messaging=messaging if messaging is not None else build_messaging_client(settings),
    )


@contextmanager
def open_services(
    settings: Settings,
    *,
    llm: LlmClient | None = None,
    messaging: MessagingClient | None = None,
) -> Iterator[AgentServices]:
    services = build_services(settings, llm=llm, messaging=messaging)
    try:
        yield services
    finally:
        services.close()
