"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from sales_agent.conversations.models import ConversationView, CustomerUpsert
from sales_agent.conversations.repository import ConversationRepository
from sales_agent.queue.repository import QueueRepository


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "sales_agent.db"


@pytest.fixture()
def queue_repository(db_path: Path) -> Iterator[QueueRepository]:
    repository = QueueRepository(db_path)
    repository.init_schema()
    yield repository
    repository.close()


@pytest.fixture()
def conversation_repository(
    db_path: Path,
    queue_repository: QueueRepository,
) -> Iterator[ConversationRepository]:
    """Shares the database (and migrations) with `queue_repository`."""

    repository = ConversationRepository(db_path)
    yield repository
    repository.close()


@pytest.fixture()
def sales_agent_env(monkeypatch: pytest.MonkeyPatch, db_path: Path) -> Path:
    """Point Settings.from_env at a temp DB with echo/recording clients."""

    for name in ("SALES_AGENT_LLM_PROVIDER", "MYALICE_API_KEY", "MYALICE_CHANNEL_ID"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("SALES_AGENT_DB_PATH", str(db_path))
    monkeypatch.setenv("SALES_AGENT_WEBHOOK_SECRET", "test-secret")
    monkeypatch.setenv("SALES_AGENT_QUEUE_POLL_INTERVAL_SECONDS", "0")
    return db_path


def seed_conversation(
    repository: ConversationRepository,
    *,
    ticket_id: str = "ticket-1",
    phone: str | None = "+5215512345678",
) -> ConversationView:
    customer = repository.upsert_customer(
        CustomerUpsert(external_id=f"customer-{ticket_id}", name="Ana", phone=phone),
    )
    conversation, _ = repository.get_or_create_conversation(
        customer_id=customer.customer_id,
        external_ticket_id=ticket_id,
    )
    return conversation
