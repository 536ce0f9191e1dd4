"""Controllers for conversation operator CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from sales_agent.clients.factory import build_messaging_client
from sales_agent.config import Settings
from sales_agent.conversations.models import ConversationStatus, ConversationView
from sales_agent.conversations.repository import ConversationRepository
from sales_agent.services import ConversationOperator, OperatorActionResult


@dataclass(slots=True)
class ConversationListCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class ConversationActionCommand:
    """CLI input for takeover/release/resolve/close."""

    db_path: Path | None
    conversation_id: str
    actor: str | None = None
    reason: str | None = None


@dataclass(slots=True)
class ConversationAuditCommand:
    db_path: Path | None
    conversation_id: str


@dataclass(slots=True)
class SeedRulesCommand:
    db_path: Path | None


class ConversationCliController:
    """Coordinates operator actions on conversations."""

    def list_conversations(self, command: ConversationListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = _parse_status(command.status)
        with _repository(settings) as repository:
            conversations = repository.list_conversations(status=status, limit=command.limit)

        lines = [f"Conversations: {len(conversations)}"]
        lines.extend(f"  {_describe(conversation)}" for conversation in conversations)
        return lines

    def take_over(self, command: ConversationActionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        agent_id = command.actor or settings.myalice.agent_id
        with _operator(settings) as operator:
            result = operator.take_over(
                conversation_id=command.conversation_id,
                agent_id=agent_id,
                reason=command.reason,
            )
        return _action_lines("Taken over", result)

    def release(self, command: ConversationActionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _operator(settings) as operator:
            result = operator.release(
                conversation_id=command.conversation_id,
                actor=command.actor,
                reason=command.reason,
            )
        return _action_lines("Released", result)

    def resolve(self, command: ConversationActionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            conversation = repository.resolve(
                conversation_id=command.conversation_id,
                actor=command.actor,
                reason=command.reason,
            )
        return [f"Resolved: {_describe(conversation)}"]

    def close(self, command: ConversationActionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            conversation = repository.close_conversation(
                conversation_id=command.conversation_id,
                actor=command.actor,
                reason=command.reason,
            )
        return [f"Closed: {_describe(conversation)}"]

    def audit(self, command: ConversationAuditCommand) -> list[str]:
        """Print the escalation audit trail of one conversation."""

        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            conversation = repository.get_conversation(conversation_id=command.conversation_id)
            records = repository.list_audit(conversation_id=command.conversation_id)
        if conversation is None:
            return [f"Conversation not found: {command.conversation_id}"]

        lines = [_describe(conversation), f"Audit records: {len(records)}"]
        for record in records:
            status_from = record.status_from.value if record.status_from else "-"
            status_to = record.status_to.value if record.status_to else "-"
            lines.append(
                f"  {record.created_at.isoformat()} {record.event_type.value} "
                f"{status_from} -> {status_to} trigger={record.trigger.value} "
                f"reason={record.reason or '-'} actor={record.actor or '-'}",
            )
        return lines

    def seed_rules(self, command: SeedRulesCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            inserted = repository.seed_default_rules()
            active = repository.list_active_rules()
        return [f"Business rules seeded: inserted={inserted} active={len(active)}"]


def _describe(conversation: ConversationView) -> str:
    return (
        f"{conversation.conversation_id} ticket={conversation.external_ticket_id} "
        f"status={conversation.status.value} human={conversation.human_took_over} "
        f"assigned_to={conversation.assigned_to or '-'} messages={conversation.message_count}"
    )


def _action_lines(label: str, result: OperatorActionResult) -> list[str]:
    lines = [f"{label}: {_describe(result.conversation)}"]
    if result.platform_error is not None:
        lines.append(f"Platform sync failed: {result.platform_error}")
    return lines


def _parse_status(value: str | None) -> ConversationStatus | None:
    if value is None:
        return None
    try:
        return ConversationStatus(value)
    except ValueError as error:
        allowed = ", ".join(status.value for status in ConversationStatus)
        raise ValueError(f"Unknown status {value!r}. Expected one of: {allowed}.") from error


@contextmanager
def _repository(settings: Settings) -> Iterator[ConversationRepository]:
    repository = ConversationRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _operator(settings: Settings) -> Iterator[ConversationOperator]:
    messaging = build_messaging_client(settings)
    with _repository(settings) as repository:
        try:
            yield ConversationOperator(conversations=repository, messaging=messaging)
        finally:
            close = getattr(messaging, "close", None)
            if callable(close):
                close()
