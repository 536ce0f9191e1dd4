from __future__ import annotations

import threading
import time
from datetime import timedelta
from pathlib import Path

import allure
import pytest

from sales_agent.errors import NotFoundError, PayloadValidationError, StateConflictError
from sales_agent.queue.models import (
    FailureClass,
    QueueItemCreate,
    QueueItemStatus,
    QueueItemType,
)
from sales_agent.queue.repository import QueueRepository
from sales_agent.storage.common import utc_now

pytestmark = [
    allure.epic("Message Queue"),
    allure.feature("Persistence & Claiming"),
]


def _enqueue(
    repository: QueueRepository,
    *,
    priority: int = 5,
    max_attempts: int = 3,
    content: str = "hola",
    process_at=None,
):
    return repository.enqueue_item(
        QueueItemCreate(
            item_type=QueueItemType.PROCESS_MESSAGE,
            payload={"conversation_id": "conv-1", "content": content},
            priority=priority,
            max_attempts=max_attempts,
            process_at=process_at,
        ),
    )


def _fail(repository: QueueRepository, item_id: str) -> None:
    claimed = repository.claim_item(item_id=item_id, worker_id="w1")
    assert claimed is not None
    assert repository.fail_item(
        item_id=item_id,
        failure_class=FailureClass.TERMINAL,
        error="boom",
    )


def test_enqueue_persists_pending_item_with_zero_attempts(
    queue_repository: QueueRepository,
) -> None:
    item = _enqueue(queue_repository, priority=7)

    assert item.status == QueueItemStatus.PENDING
    assert item.attempts == 0
    assert item.priority == 7
    assert item.payload == {"conversation_id": "conv-1", "content": "hola"}
    assert queue_repository.count_items(status=QueueItemStatus.PENDING) == 1


def test_enqueue_rejects_invalid_payload(queue_repository: QueueRepository) -> None:
    with pytest.raises(PayloadValidationError, match="process_message.content"):
        queue_repository.enqueue_item(
            QueueItemCreate(
                item_type=QueueItemType.PROCESS_MESSAGE,
                payload={"conversation_id": "conv-1", "content": "  "},
            ),
        )
    assert queue_repository.count_items() == 0


def test_dequeue_orders_by_priority_then_age(queue_repository: QueueRepository) -> None:
    first = _enqueue(queue_repository, priority=5, content="first")
    time.sleep(0.01)
    low = _enqueue(queue_repository, priority=1, content="low")
    time.sleep(0.01)
    second = _enqueue(queue_repository, priority=5, content="second")

    batch = queue_repository.dequeue_batch(limit=10)

    assert [item.item_id for item in batch] == [first.item_id, second.item_id, low.item_id]


def test_dequeue_skips_future_items_and_respects_limit(queue_repository: QueueRepository) -> None:
    _enqueue(queue_repository, process_at=utc_now() + timedelta(hours=1))
    due = [_enqueue(queue_repository) for _ in range(3)]

    batch = queue_repository.dequeue_batch(limit=2)

    assert len(batch) == 2
    assert {item.item_id for item in batch} <= {item.item_id for item in due}


def test_claim_increments_attempts_and_records_worker(queue_repository: QueueRepository) -> None:
    item = _enqueue(queue_repository)

    claimed = queue_repository.claim_item(item_id=item.item_id, worker_id="worker-a")

    assert claimed is not None
    assert claimed.status == QueueItemStatus.PROCESSING
    assert claimed.attempts == 1
    assert claimed.worker_id == "worker-a"
    assert queue_repository.claim_item(item_id=item.item_id, worker_id="worker-b") is None


def test_concurrent_claims_have_exactly_one_winner(db_path: Path) -> None:
    setup = QueueRepository(db_path)
    setup.init_schema()
    item = _enqueue(setup)
    setup.close()

    results: list[object] = []
    lock = threading.Lock()
    barrier = threading.Barrier(4)

    def _claim(worker_id: str) -> None:
        repository = QueueRepository(db_path)
        try:
            barrier.wait()
            claimed = repository.claim_item(item_id=item.item_id, worker_id=worker_id)
            with lock:
                results.append(claimed)
        finally:
            repository.close()

    threads = [threading.Thread(target=_claim, args=(f"w{index}",)) for index in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    winners = [result for result in results if result is not None]
    assert len(results) == 4
    assert len(winners) == 1

    check = QueueRepository(db_path)
    stored = check.get_item(item_id=item.item_id)
    check.close()
    assert stored is not None
    assert stored.attempts == 1


def test_schedule_retry_returns_item_to_pending_in_the_future(
    queue_repository: QueueRepository,
) -> None:
    item = _enqueue(queue_repository)
    queue_repository.claim_item(item_id=item.item_id, worker_id="w1")
    retry_at = utc_now() + timedelta(seconds=30)

    assert queue_repository.schedule_retry(
        item_id=item.item_id,
        process_at=retry_at,
        failure_class=FailureClass.TRANSIENT,
        error="timeout",
    )

    stored = queue_repository.get_item(item_id=item.item_id)
    assert stored is not None
    assert stored.status == QueueItemStatus.PENDING
    assert stored.last_error == "timeout"
    assert stored.failure_class == FailureClass.TRANSIENT
    assert stored.worker_id is None
    assert queue_repository.dequeue_batch(limit=10) == []


def test_schedule_retry_refuses_when_attempts_are_exhausted(
    queue_repository: QueueRepository,
) -> None:
    item = _enqueue(queue_repository, max_attempts=1)
    queue_repository.claim_item(item_id=item.item_id, worker_id="w1")

    assert not queue_repository.schedule_retry(
        item_id=item.item_id,
        process_at=utc_now(),
        failure_class=FailureClass.TRANSIENT,
        error="timeout",
    )
    stored = queue_repository.get_item(item_id=item.item_id)
    assert stored is not None
    assert stored.status == QueueItemStatus.PROCESSING


def test_complete_is_idempotent(queue_repository: QueueRepository) -> None:
    item = _enqueue(queue_repository)
    queue_repository.claim_item(item_id=item.item_id, worker_id="w1")

    assert queue_repository.complete_item(item_id=item.item_id, outcome={"outcome": "ok"})
    assert not queue_repository.complete_item(item_id=item.item_id)

    stored = queue_repository.get_item(item_id=item.item_id)
    assert stored is not None
    assert stored.status == QueueItemStatus.COMPLETED
    assert stored.processed_at is not None


def test_manual_retry_resets_attempt_budget(queue_repository: QueueRepository) -> None:
    item = _enqueue(queue_repository)
    _fail(queue_repository, item.item_id)

    retried = queue_repository.retry_item(item_id=item.item_id)

    assert retried.status == QueueItemStatus.PENDING
    assert retried.attempts == 0
    assert retried.processed_at is None
    details = queue_repository.get_item_details(item_id=item.item_id)
    assert details is not None
    assert [event.event_type for event in details.events] == [
        "enqueued",
        "claimed",
        "failed",
        "manual_retry",
    ]
    assert details.events[-1].details == {"previous_attempts": 1}


def test_manual_retry_rejects_missing_and_non_failed_items(
    queue_repository: QueueRepository,
) -> None:
    item = _enqueue(queue_repository)

    with pytest.raises(NotFoundError):
        queue_repository.retry_item(item_id="missing")
    with pytest.raises(StateConflictError, match="Only failed items"):
        queue_repository.retry_item(item_id=item.item_id)


def test_stats_counts_by_status_and_type(queue_repository: QueueRepository) -> None:
    _enqueue(queue_repository)
    failed = _enqueue(queue_repository)
    _fail(queue_repository, failed.item_id)
    queue_repository.enqueue_item(
        QueueItemCreate(
            item_type=QueueItemType.SEND_FOLLOW_UP,
            payload={"conversation_id": "conv-1", "message": "¿Seguimos?"},
        ),
    )

    stats = queue_repository.stats()

    assert stats.by_status == {"pending": 2, "processing": 0, "completed": 0, "failed": 1}
    assert stats.by_type == {"process_message": 2, "send_follow_up": 1, "analyze_sentiment": 0}
    assert stats.total == 3


def test_purge_deletes_only_finished_items_older_than_cutoff(
    queue_repository: QueueRepository,
) -> None:
    pending = _enqueue(queue_repository)
    failed = _enqueue(queue_repository)
    _fail(queue_repository, failed.item_id)

    assert queue_repository.purge_finished_items(older_than=utc_now() - timedelta(days=1)) == 0
    assert queue_repository.purge_finished_items(older_than=utc_now() + timedelta(seconds=1)) == 1

    assert queue_repository.get_item(item_id=failed.item_id) is None
    assert queue_repository.get_item(item_id=pending.item_id) is not None
