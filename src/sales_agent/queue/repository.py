"""Persistent queue repository backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from sales_agent.errors import NotFoundError, StateConflictError
from sales_agent.queue.models import (
    FINISHED_STATUSES,
    FailureClass,
    QueueItemCreate,
    QueueItemDetails,
    QueueItemEventView,
    QueueItemStatus,
    QueueItemType,
    QueueItemView,
    QueueStats,
)
from sales_agent.queue.payloads import parse_payload, payload_to_dict
from sales_agent.storage.alembic_runner import upgrade_head
from sales_agent.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json_object,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from sales_agent.storage.sqlmodel_models import QueueItem, QueueItemEvent

logger = logging.getLogger(__name__)


class QueueRepository:
    """Queue persistence facade with compare-and-swap status transitions."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def enqueue_item(self, payload: QueueItemCreate) -> QueueItemView:
        """Validate the payload against its type schema and persist a pending item."""

        parsed = parse_payload(payload.item_type.value, payload.payload)
        if payload.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {payload.max_attempts}")

        now = utc_now()
        item_id = payload.item_id or str(uuid4())
        with Session(self.engine) as session:
            row = QueueItem(
                id=item_id,
                item_type=payload.item_type.value,
                payload_json=json.dumps(
                    payload_to_dict(parsed),
                    ensure_ascii=False,
                    sort_keys=True,
                ),
                priority=payload.priority,
                status=QueueItemStatus.PENDING.value,
                attempts=0,
                max_attempts=payload.max_attempts,
                process_at=to_db_datetime(payload.process_at or now),
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            self._add_event(
                session=session,
                item_id=item_id,
                event_type="enqueued",
                status_from=None,
                status_to=QueueItemStatus.PENDING,
                details={
                    "item_type": payload.item_type.value,
                    "priority": payload.priority,
                    "max_attempts": payload.max_attempts,
                },
            )
            session.commit()
            session.refresh(row)
            logger.debug("Enqueued %s item %s", payload.item_type.value, item_id)
            return _to_item_view(row)

    def dequeue_batch(self, *, limit: int, now: datetime | None = None) -> list[QueueItemView]:
        """Return up to `limit` due pending items, highest priority first, oldest first."""

        cutoff = to_db_datetime(now or utc_now())
        with Session(self.engine) as session:
            rows = session.exec(
                select(QueueItem)
                .where(
                    QueueItem.status == QueueItemStatus.PENDING.value,
                    col(QueueItem.process_at) <= cutoff,
                )
                .order_by(
                    col(QueueItem.priority).desc(),
                    col(QueueItem.created_at).asc(),
                )
                .limit(max(0, limit)),
            ).all()
        return [_to_item_view(row) for row in rows]

    def claim_item(self, *, item_id: str, worker_id: str) -> QueueItemView | None:
        """Atomically move a due pending item to processing; None if another worker won."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueItem)
                .where(
                    col(QueueItem.id) == item_id,
                    col(QueueItem.status) == QueueItemStatus.PENDING.value,
                    col(QueueItem.process_at) <= to_db_datetime(now),
                )
                .values(
                    status=QueueItemStatus.PROCESSING.value,
                    attempts=col(QueueItem.attempts) + 1,
                    worker_id=worker_id,
                    claimed_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None

            claimed = session.exec(select(QueueItem).where(QueueItem.id == item_id)).one()
            self._add_event(
                session=session,
                item_id=item_id,
                event_type="claimed",
                status_from=QueueItemStatus.PENDING,
                status_to=QueueItemStatus.PROCESSING,
                details={"worker_id": worker_id, "attempt": claimed.attempts},
            )
            session.commit()
            session.refresh(claimed)
            return _to_item_view(claimed)

    def complete_item(self, *, item_id: str, outcome: dict[str, object] | None = None) -> bool:
        """Mark a processing item as completed."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueItem)
                .where(
                    col(QueueItem.id) == item_id,
                    col(QueueItem.status) == QueueItemStatus.PROCESSING.value,
                )
                .values(
                    status=QueueItemStatus.COMPLETED.value,
                    processed_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                item_id=item_id,
                event_type="completed",
                status_from=QueueItemStatus.PROCESSING,
                status_to=QueueItemStatus.COMPLETED,
                details=outcome or {},
            )
            session.commit()
            return True

    def schedule_retry(
        self,
        *,
        item_id: str,
        process_at: datetime,
        failure_class: FailureClass,
        error: str,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Requeue a processing item so it becomes visible again at `process_at`."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueItem)
                .where(
                    col(QueueItem.id) == item_id,
                    col(QueueItem.status) == QueueItemStatus.PROCESSING.value,
                    col(QueueItem.attempts) < col(QueueItem.max_attempts),
                )
                .values(
                    status=QueueItemStatus.PENDING.value,
                    process_at=to_db_datetime(process_at),
                    last_error=error,
                    failure_class=failure_class.value,
                    worker_id=None,
                    claimed_at=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            event_details: dict[str, object] = {
                "process_at": to_utc_aware_datetime(process_at).isoformat(),
                "failure_class": failure_class.value,
                "error": error,
            }
            if details:
                event_details.update(details)
            self._add_event(
                session=session,
                item_id=item_id,
                event_type="retry_scheduled",
                status_from=QueueItemStatus.PROCESSING,
                status_to=QueueItemStatus.PENDING,
                details=event_details,
            )
            session.commit()
            return True

    def fail_item(
        self,
        *,
        item_id: str,
        failure_class: FailureClass,
        error: str,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Mark a processing item as terminally failed."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueItem)
                .where(
                    col(QueueItem.id) == item_id,
                    col(QueueItem.status) == QueueItemStatus.PROCESSING.value,
                )
                .values(
                    status=QueueItemStatus.FAILED.value,
                    last_error=error,
                    failure_class=failure_class.value,
                    processed_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            event_details: dict[str, object] = {
                "failure_class": failure_class.value,
                "error": error,
            }
            if details:
                event_details.update(details)
            self._add_event(
                session=session,
                item_id=item_id,
                event_type="failed",
                status_from=QueueItemStatus.PROCESSING,
                status_to=QueueItemStatus.FAILED,
                details=event_details,
            )
            session.commit()
            return True

    def retry_item(self, *, item_id: str) -> QueueItemView:
        """Manual operator retry: failed item goes back to pending with a fresh attempt budget."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.exec(select(QueueItem).where(QueueItem.id == item_id)).one_or_none()
            if row is None:
                raise NotFoundError(f"Queue item not found: {item_id}")
            if row.status != QueueItemStatus.FAILED.value:
                raise StateConflictError(
                    f"Only failed items can be retried manually, got {row.status}.",
                )

            previous_attempts = row.attempts
            result = session.exec(
                sa_update(QueueItem)
                .where(
                    col(QueueItem.id) == item_id,
                    col(QueueItem.status) == QueueItemStatus.FAILED.value,
                )
                .values(
                    status=QueueItemStatus.PENDING.value,
                    attempts=0,
                    process_at=to_db_datetime(now),
                    processed_at=None,
                    worker_id=None,
                    claimed_at=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise StateConflictError(
                    "Queue item state changed concurrently while retrying; "
                    f"please retry command (item_id={item_id}).",
                )
            self._add_event(
                session=session,
                item_id=item_id,
                event_type="manual_retry",
                status_from=QueueItemStatus.FAILED,
                status_to=QueueItemStatus.PENDING,
                details={"previous_attempts": previous_attempts},
            )
            session.commit()
            refreshed = session.exec(select(QueueItem).where(QueueItem.id == item_id)).one()
            return _to_item_view(refreshed)

    def get_item(self, *, item_id: str) -> QueueItemView | None:
        with Session(self.engine) as session:
            row = session.exec(select(QueueItem).where(QueueItem.id == item_id)).one_or_none()
        return _to_item_view(row) if row is not None else None

    def list_items(
        self,
        *,
        status: QueueItemStatus | None = None,
        item_type: QueueItemType | None = None,
        limit: int = 50,
    ) -> list[QueueItemView]:
        """List recent items, optionally filtered by status and type."""

        with Session(self.engine) as session:
            statement = select(QueueItem).order_by(col(QueueItem.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(QueueItem.status == status.value)
            if item_type is not None:
                statement = statement.where(QueueItem.item_type == item_type.value)
            rows = session.exec(statement).all()
        return [_to_item_view(row) for row in rows]

    def count_items(self, *, status: QueueItemStatus | None = None) -> int:
        with Session(self.engine) as session:
            statement = select(func.count()).select_from(QueueItem)
            if status is not None:
                statement = statement.where(QueueItem.status == status.value)
            return int(session.exec(statement).one())

    def get_item_details(self, *, item_id: str) -> QueueItemDetails | None:
        """Return item details with event stream."""

        with Session(self.engine) as session:
            row = session.exec(select(QueueItem).where(QueueItem.id == item_id)).one_or_none()
            if row is None:
                return None
            event_rows = session.exec(
                select(QueueItemEvent)
                .where(QueueItemEvent.item_id == item_id)
                .order_by(col(QueueItemEvent.created_at).asc(), col(QueueItemEvent.id).asc()),
            ).all()

        events = [
            QueueItemEventView(
                event_id=event.id or 0,
                item_id=event.item_id,
                event_type=event.event_type,
                status_from=(
                    QueueItemStatus(event.status_from) if event.status_from is not None else None
                ),
                status_to=QueueItemStatus(event.status_to) if event.status_to is not None else None,
                created_at=to_utc_aware_datetime(event.created_at),
                details=load_json_object(event.details_json),
            )
            for event in event_rows
        ]
        return QueueItemDetails(item=_to_item_view(row), events=events)

    def stats(self) -> QueueStats:
        """Count items grouped by status and by type."""

        with Session(self.engine) as session:
            status_rows = session.exec(
                select(QueueItem.status, func.count()).group_by(QueueItem.status),
            ).all()
            type_rows = session.exec(
                select(QueueItem.item_type, func.count()).group_by(QueueItem.item_type),
            ).all()

        by_status = {status.value: 0 for status in QueueItemStatus}
        for status, count in status_rows:
            by_status[str(status)] = int(count)
        by_type = {item_type.value: 0 for item_type in QueueItemType}
        for item_type, count in type_rows:
            by_type[str(item_type)] = int(count)
        return QueueStats(by_status=by_status, by_type=by_type, checked_at=utc_now())

    def purge_finished_items(self, *, older_than: datetime) -> int:
        """Delete completed/failed items processed before `older_than`; events cascade."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(QueueItem).where(
                    col(QueueItem.status).in_([status.value for status in FINISHED_STATUSES]),
                    col(QueueItem.processed_at) < to_db_datetime(older_than),
                ),
            )
            session.commit()
            purged = int(result.rowcount or 0)
        if purged:
            logger.info("Purged %d finished queue items older than %s", purged, older_than)
        return purged

    def _add_event(
        self,
        *,
        session: Session,
        item_id: str,
        event_type: str,
        status_from: QueueItemStatus | None,
        status_to: QueueItemStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            QueueItemEvent(
                item_id=item_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=dump_json(details),
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _to_item_view(row: QueueItem) -> QueueItemView:
    return QueueItemView(
        item_id=row.id,
        item_type=row.item_type,
        payload=load_json_object(row.payload_json),
        priority=row.priority,
        status=QueueItemStatus(row.status),
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        process_at=to_utc_aware_datetime(row.process_at),
        last_error=row.last_error,
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        worker_id=row.worker_id,
        claimed_at=optional_utc(row.claimed_at),
        processed_at=optional_utc(row.processed_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
