"""Controllers for queue CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from sales_agent.config import Settings
from sales_agent.queue.models import QueueItemCreate, QueueItemStatus, QueueItemType
from sales_agent.queue.repository import QueueRepository
from sales_agent.services import open_services
from sales_agent.storage.common import utc_now


@dataclass(slots=True)
class QueueWorkerCommand:
    """CLI input for processor execution."""

    db_path: Path | None
    once: bool
    max_batches: int | None
    max_idle_polls: int = 1


@dataclass(slots=True)
class QueueEnqueueCommand:
    """CLI input for manual enqueue."""

    db_path: Path | None
    item_type: str
    payload_json: str
    priority: int | None
    max_attempts: int | None
    delay_seconds: int


@dataclass(slots=True)
class QueueListCommand:
    db_path: Path | None
    status: str | None
    item_type: str | None
    limit: int


@dataclass(slots=True)
class QueueItemCommand:
    """CLI input for single-item inspect/retry operations."""

    db_path: Path | None
    item_id: str


@dataclass(slots=True)
class QueueStatsCommand:
    db_path: Path | None


@dataclass(slots=True)
class QueuePurgeCommand:
    """CLI input for retention cleanup."""

    db_path: Path | None
    older_than_days: int | None


class QueueCliController:
    """Coordinates worker, enqueue and inspection CLI operations."""

    def run_worker(self, command: QueueWorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_queue()
        settings.validate_for_integrations()
        with open_services(settings) as services:
            processor = services.processor()
            summary = (
                processor.process_batch()
                if command.once
                else processor.run_loop(
                    max_batches=command.max_batches,
                    max_idle_polls=command.max_idle_polls,
                )
            )

        return [
            "Worker summary: "
            f"dequeued={summary.dequeued} claimed={summary.claimed} "
            f"completed={summary.completed} retried={summary.retried} "
            f"failed={summary.failed} skipped={summary.skipped} "
            f"errors={summary.errors} idle_polls={summary.idle_polls}",
        ]

    def enqueue(self, command: QueueEnqueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        item_type = _parse_item_type(command.item_type)
        try:
            payload = json.loads(command.payload_json)
        except ValueError as error:
            raise ValueError(f"Payload is not valid JSON: {error}") from error
        if not isinstance(payload, dict):
            raise ValueError("Payload must be a JSON object.")

        process_at = utc_now() + timedelta(seconds=max(0, command.delay_seconds))
        with _repository(settings) as repository:
            item = repository.enqueue_item(
                QueueItemCreate(
                    item_type=item_type,
                    payload=payload,
                    priority=(
                        command.priority
                        if command.priority is not None
                        else settings.queue.default_priority
                    ),
                    max_attempts=command.max_attempts or settings.queue.max_attempts,
                    process_at=process_at,
                ),
            )

        return [
            "Item enqueued: "
            f"item_id={item.item_id} type={item.item_type} priority={item.priority} "
            f"process_at={item.process_at.isoformat()}",
        ]

    def list_items(self, command: QueueListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = _parse_status(command.status)
        item_type = _parse_item_type(command.item_type) if command.item_type else None
        with _repository(settings) as repository:
            items = repository.list_items(
                status=status,
                item_type=item_type,
                limit=command.limit,
            )

        lines = [f"Items: {len(items)}"]
        for item in items:
            lines.append(
                f"  {item.item_id} type={item.item_type} status={item.status.value} "
                f"priority={item.priority} attempts={item.attempts}/{item.max_attempts} "
                f"process_at={item.process_at.isoformat()}",
            )
        return lines

    def inspect_item(self, command: QueueItemCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_item_details(item_id=command.item_id)
        if details is None:
            return [f"Item not found: {command.item_id}"]

        item = details.item
        lines = [
            f"Item: {item.item_id}",
            f"Type: {item.item_type}",
            f"Status: {item.status.value}",
            f"Priority: {item.priority}",
            f"Attempts: {item.attempts}/{item.max_attempts}",
            f"Process at: {item.process_at.isoformat()}",
            f"Failure class: {item.failure_class.value if item.failure_class else '-'}",
            f"Error: {item.last_error or '-'}",
            f"Payload: {json.dumps(item.payload, ensure_ascii=False, sort_keys=True)}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def retry_item(self, command: QueueItemCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            item = repository.retry_item(item_id=command.item_id)
        return [f"Item re-queued: item_id={item.item_id} status={item.status.value}"]

    def stats(self, command: QueueStatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            stats = repository.stats()

        lines = [f"Queue stats at {stats.checked_at.isoformat()} (total={stats.total})"]
        lines.append("By status:")
        lines.extend(f"  {status}: {count}" for status, count in stats.by_status.items())
        lines.append("By type:")
        lines.extend(f"  {item_type}: {count}" for item_type, count in stats.by_type.items())
        return lines

    def purge(self, command: QueuePurgeCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        days = (
            command.older_than_days
            if command.older_than_days is not None
            else settings.queue.retention_days
        )
        cutoff = utc_now() - timedelta(days=max(0, days))
        with _repository(settings) as repository:
            deleted = repository.purge_finished_items(older_than=cutoff)
        return [f"Purged {deleted} finished item(s) older than {days} day(s)."]


def _parse_status(value: str | None) -> QueueItemStatus | None:
    if value is None:
        return None
    try:
        return QueueItemStatus(value)
    except ValueError as error:
        allowed = ", ".join(status.value for status in QueueItemStatus)
        raise ValueError(f"Unknown status {value!r}. Expected one of: {allowed}.") from error


def _parse_item_type(value: str) -> QueueItemType:
    try:
        return QueueItemType(value)
    except ValueError as error:
        allowed = ", ".join(item_type.value for item_type in QueueItemType)
        raise ValueError(f"Unknown item type {value!r}. Expected one of: {allowed}.") from error


@contextmanager
def _repository(settings: Settings) -> Iterator[QueueRepository]:
    repository = QueueRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
