from __future__ import annotations

import json
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import allure
import pytest
from fastapi.testclient import TestClient
from httpx import Response

from sales_agent.clients.echo import EchoLlmClient, RecordingMessagingClient
from sales_agent.config import Settings, WebhookSettings
from sales_agent.http.app import create_app
from sales_agent.queue.models import QueueItemCreate, QueueItemType
from sales_agent.webhooks.signature import SIGNATURE_HEADER, sign_body

pytestmark = [
    allure.epic("HTTP API"),
    allure.feature("Webhook & Operator Endpoints"),
]

SECRET = "http-secret"


@pytest.fixture()
def messaging() -> RecordingMessagingClient:
    return RecordingMessagingClient()


@pytest.fixture()
def client(db_path: Path, messaging: RecordingMessagingClient) -> Iterator[TestClient]:
    settings = Settings(db_path=db_path, webhook=WebhookSettings(secret=SECRET))
    app = create_app(settings, llm=EchoLlmClient(), messaging=messaging)
    with TestClient(app) as test_client:
        yield test_client


def _post_webhook(client: TestClient, body: dict[str, Any], secret: str = SECRET) -> Response:
    raw = json.dumps(body).encode("utf-8")
    return client.post(
        "/webhooks/myalice",
        content=raw,
        headers={SIGNATURE_HEADER: sign_body(secret, raw), "Content-Type": "application/json"},
    )


def _message_event(content: str = "¿Tienen la talla M?") -> dict[str, Any]:
    return {
        "action": "message.received",
        "ticket": {"id": "T-1"},
        "customer": {"id": "C-1", "phone": "+5215512345678"},
        "message": {"id": "M-1", "content": content},
    }


def _conversation_id(client: TestClient) -> str:
    items = client.get("/queue/items").json()["items"]
    return items[0]["payload"]["conversation_id"]


def test_health_reports_queue_counts(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["queue"]["pending"] == 0


def test_signed_webhook_is_accepted(client: TestClient) -> None:
    response = _post_webhook(client, _message_event())

    assert response.status_code == 202
    body = response.json()
    assert body["accepted"] == 1
    assert len(body["item_ids"]) == 1
    stats = client.get("/queue/stats").json()
    assert stats["by_status"]["pending"] == 1
    assert stats["by_type"]["process_message"] == 1
    assert stats["total"] == 1


def test_bad_signature_is_rejected_without_side_effects(client: TestClient) -> None:
    response = _post_webhook(client, _message_event(), secret="wrong")

    assert response.status_code == 401
    assert "mismatch" in response.json()["detail"]
    assert client.get("/queue/stats").json()["total"] == 0


def test_malformed_event_is_bad_request(client: TestClient) -> None:
    response = _post_webhook(client, {"action": "message.received", "ticket": {"id": "T-1"}})

    assert response.status_code == 400
    assert client.get("/queue/stats").json()["total"] == 0


def test_process_endpoint_drains_queue_and_replies(
    client: TestClient,
    messaging: RecordingMessagingClient,
) -> None:
    _post_webhook(client, _message_event())

    summary = client.post("/queue/process").json()

    assert summary["completed"] == 1
    assert messaging.sent == [("+5215512345678", "Recibido: ¿Tienen la talla M?")]
    item_id = client.get("/queue/items", params={"status": "completed"}).json()["items"][0]["id"]
    details = client.get(f"/queue/items/{item_id}").json()
    assert details["status"] == "completed"
    assert [event["type"] for event in details["events"]] == ["enqueued", "claimed", "completed"]


def test_retry_endpoint_status_codes(client: TestClient) -> None:
    services = client.app.state.services
    item = services.queue.enqueue_item(
        QueueItemCreate(
            item_type=QueueItemType.PROCESS_MESSAGE,
            payload={"conversation_id": "missing", "content": "hola"},
        ),
    )

    pending_retry = client.post(f"/queue/items/{item.item_id}/retry")
    client.post("/queue/process")
    failed = client.get(f"/queue/items/{item.item_id}").json()
    retried = client.post(f"/queue/items/{item.item_id}/retry")

    assert pending_retry.status_code == 409
    assert failed["status"] == "failed"
    assert failed["failure_class"] == "terminal"
    assert retried.status_code == 200
    assert retried.json()["status"] == "pending"
    assert retried.json()["attempts"] == 0
    assert client.post("/queue/items/unknown/retry").status_code == 404
    assert client.get("/queue/items/unknown").status_code == 404


def test_takeover_release_and_audit(
    client: TestClient,
    messaging: RecordingMessagingClient,
) -> None:
    _post_webhook(client, _message_event())
    conversation_id = _conversation_id(client)

    taken = client.post(
        f"/conversations/{conversation_id}/takeover",
        json={"agent_id": "agent-7", "reason": "vip"},
    )
    released = client.post(f"/conversations/{conversation_id}/release")
    audit = client.get(f"/conversations/{conversation_id}/audit").json()

    assert taken.status_code == 200
    assert taken.json()["conversation"]["status"] == "escalated"
    assert taken.json()["conversation"]["assigned_to"] == "agent-7"
    assert taken.json()["platform_synced"] is True
    assert released.json()["conversation"]["status"] == "active"
    assert messaging.taken == [("T-1", "agent-7")]
    assert messaging.released == ["T-1"]
    assert [record["event_type"] for record in audit["records"]] == ["taken_over", "released"]
    assert audit["records"][0]["reason"] == "vip"


def test_release_without_takeover_conflicts(client: TestClient) -> None:
    _post_webhook(client, _message_event())
    conversation_id = _conversation_id(client)

    response = client.post(f"/conversations/{conversation_id}/release")

    assert response.status_code == 409


def test_unknown_conversation_is_not_found(client: TestClient) -> None:
    assert client.get("/conversations/missing").status_code == 404
    assert client.get("/conversations/missing/audit").status_code == 404
    assert client.post("/conversations/missing/takeover").status_code == 404


def test_purge_reports_window(client: TestClient) -> None:
    response = client.post("/queue/purge", params={"older_than_days": 0})

    assert response.status_code == 200
    assert response.json() == {"purged": 0, "older_than_days": 0}
