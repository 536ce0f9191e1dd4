"""Passive queue processor: dequeue, claim, dispatch, apply retry policy."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import NamedTuple

from sales_agent.queue.failure_classifier import classify_handler_failure
from sales_agent.queue.models import QueueItemView
from sales_agent.queue.registry import HandlerRegistry
from sales_agent.queue.repository import QueueRepository
from sales_agent.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_RETRY_BASE_MS = 1_000
DEFAULT_RETRY_MAX_SECONDS = 3_600


@dataclass(slots=True)
class ProcessorRunSummary:
    """Aggregate processor counters for CLI and HTTP reporting."""

    dequeued: int = 0
    claimed: int = 0
    skipped: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    errors: int = 0
    idle_polls: int = 0
    batches: int = 0

    def merge(self, other: ProcessorRunSummary) -> None:
        self.dequeued += other.dequeued
        self.claimed += other.claimed
        self.skipped += other.skipped
        self.completed += other.completed
        self.retried += other.retried
        self.failed += other.failed
        self.errors += other.errors
        self.idle_polls += other.idle_polls
        self.batches += other.batches

    def to_dict(self) -> dict[str, int]:
        return {
            "dequeued": self.dequeued,
            "claimed": self.claimed,
            "skipped": self.skipped,
            "completed": self.completed,
            "retried": self.retried,
            "failed": self.failed,
            "errors": self.errors,
            "idle_polls": self.idle_polls,
            "batches": self.batches,
        }


class RetryOutcome(NamedTuple):
    retried: bool
    failed: bool


def compute_backoff_delay(
    attempts: int,
    *,
    base_ms: int = DEFAULT_RETRY_BASE_MS,
    max_seconds: int = DEFAULT_RETRY_MAX_SECONDS,
) -> timedelta:
    """Delay before the next attempt: 2^attempts * base, capped at max_seconds."""

    cap_ms = max_seconds * 1000
    exponent = max(attempts, 0)
    # 2^64 ms is far beyond any sane cap
    if exponent >= 64:  # noqa: PLR2004
        return timedelta(milliseconds=cap_ms)
    return timedelta(milliseconds=min((2**exponent) * base_ms, cap_ms))


class QueueProcessor:
    """Processes bounded batches of due queue items with at-least-once semantics."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: QueueRepository,
        registry: HandlerRegistry,
        worker_id: str,
        batch_size: int = 10,
        retry_base_ms: int = DEFAULT_RETRY_BASE_MS,
        retry_max_seconds: int = DEFAULT_RETRY_MAX_SECONDS,
        poll_interval_seconds: float = 5.0,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.worker_id = worker_id
        self.batch_size = batch_size
        self.retry_base_ms = retry_base_ms
        self.retry_max_seconds = retry_max_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    def process_batch(self) -> ProcessorRunSummary:
        """Dequeue up to batch_size due items and process each one."""

        summary = ProcessorRunSummary(batches=1)
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        items = self.repository.dequeue_batch(limit=self.batch_size)
        summary.dequeued = len(items)
        if not items:
            summary.idle_polls = 1
            return summary

        for candidate in items:
            try:
                self._process_item(candidate, summary)
            except Exception:  # noqa: BLE001
                summary.errors += 1
                logger.exception(
                    "Unexpected error while processing queue item %s",
                    candidate.item_id,
                )
        return summary

    def run_loop(
        self,
        *,
        max_batches: int | None = None,
        max_idle_polls: int = 1,
    ) -> ProcessorRunSummary:
        """Poll process_batch until idle, max_batches reached or a stop signal arrives.

        Args:
            max_batches: Stop after this many non-idle batches (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting.
        """

        aggregate = ProcessorRunSummary()
        consecutive_idle = 0
        non_idle_batches = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return aggregate
                if max_batches is not None and non_idle_batches >= max_batches:
                    return aggregate

                summary = self.process_batch()
                aggregate.merge(summary)

                if summary.dequeued == 0:
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue

                consecutive_idle = 0
                non_idle_batches += 1
                if summary.dequeued < self.batch_size and self.poll_interval_seconds > 0:
                    self._sleep_with_stop(self.poll_interval_seconds)

    def request_stop(self, *, reason: str = "requested") -> None:
        """Finish the in-flight batch and stop the loop."""

        self._stop_requested = True
        self._stop_signal_name = reason
        logger.info("Queue processor %s stopping (%s)", self.worker_id, reason)

    def _process_item(self, candidate: QueueItemView, summary: ProcessorRunSummary) -> None:
        item = self.repository.claim_item(item_id=candidate.item_id, worker_id=self.worker_id)
        if item is None:
            summary.skipped += 1
            logger.debug("Queue item %s claimed by another worker", candidate.item_id)
            return
        summary.claimed += 1

        try:
            result = self.registry.dispatch(item)
        except Exception as error:  # noqa: BLE001
            outcome = self._handle_retry_or_fail(item=item, error=error)
            if outcome.retried:
                summary.retried += 1
            elif outcome.failed:
                summary.failed += 1
            return

        if self.repository.complete_item(item_id=item.item_id, outcome=result.to_event_details()):
            summary.completed += 1
            logger.info(
                "Queue item %s (%s) completed on attempt %d: %s",
                item.item_id,
                item.item_type,
                item.attempts,
                result.outcome,
            )

    def _handle_retry_or_fail(self, *, item: QueueItemView, error: Exception) -> RetryOutcome:
        classification = classify_handler_failure(error)
        details = classification.to_event_details(item_type=item.item_type, attempt=item.attempts)
        error_summary = f"{classification.reason_code}: {error}"
        retries_left = item.attempts < item.max_attempts

        if retries_left and classification.retryable:
            delay = compute_backoff_delay(
                item.attempts,
                base_ms=self.retry_base_ms,
                max_seconds=self.retry_max_seconds,
            )
            logger.warning(
                "Queue item %s attempt %d/%d failed (%s), retrying in %.1fs: %s",
                item.item_id,
                item.attempts,
                item.max_attempts,
                classification.failure_class.value,
                delay.total_seconds(),
                error,
            )
            retried = self.repository.schedule_retry(
                item_id=item.item_id,
                process_at=utc_now() + delay,
                failure_class=classification.failure_class,
                error=error_summary,
                details=details,
            )
            return RetryOutcome(retried=retried, failed=False)

        logger.error(
            "Queue item %s attempt %d/%d failed terminally (%s): %s",
            item.item_id,
            item.attempts,
            item.max_attempts,
            classification.failure_class.value,
            error,
        )
        failed = self.repository.fail_item(
            item_id=item.item_id,
            failure_class=classification.failure_class,
            error=error_summary,
            details=details,
        )
        return RetryOutcome(retried=False, failed=failed)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(reason=name)

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            installed = False
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
