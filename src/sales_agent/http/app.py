"""FastAPI surface: webhook intake, queue trigger and operator endpoints."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any

from fastapi import FastAPI, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from sales_agent import __version__
from sales_agent.clients.base import LlmClient, MessagingClient
from sales_agent.config import Settings
from sales_agent.errors import AuthError, NotFoundError, StateConflictError, ValidationError
from sales_agent.queue.models import QueueItemStatus, QueueItemType
from sales_agent.services import build_services
from sales_agent.storage.common import utc_now
from sales_agent.webhooks.signature import SIGNATURE_HEADER

logger = logging.getLogger(__name__)


class TakeoverRequest(BaseModel):
    agent_id: str | None = None
    reason: str | None = None


class ReleaseRequest(BaseModel):
    actor: str | None = None
    reason: str | None = None


def create_app(
    settings: Settings | None = None,
    *,
    llm: LlmClient | None = None,
    messaging: MessagingClient | None = None,
) -> FastAPI:
    """Build the application with its own repositories and clients."""

    settings = settings or Settings.from_env()
    settings.validate_for_queue()
    services = build_services(settings, llm=llm, messaging=messaging)
    processor = services.processor()
    ingestor = services.ingestor()
    operator = services.operator()

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        services.close()

    app = FastAPI(title="sales-agent", version=__version__, lifespan=lifespan)
    app.state.services = services
    _register_error_handlers(app)

    @app.get("/health")
    def health() -> dict[str, Any]:
        stats = services.queue.stats()
        return {
            "status": "ok",
            "version": __version__,
            "queue": stats.by_status,
            "checked_at": stats.checked_at.isoformat(),
        }

    @app.post("/webhooks/myalice", status_code=status.HTTP_202_ACCEPTED)
    async def myalice_webhook(request: Request) -> dict[str, Any]:
        body = await request.body()
        result = await run_in_threadpool(
            ingestor.ingest,
            body,
            request.headers.get(SIGNATURE_HEADER),
        )
        return result.to_dict()

    @app.post("/queue/process")
    def process_queue() -> dict[str, int]:
        return processor.process_batch().to_dict()

    @app.get("/queue/stats")
    def queue_stats() -> dict[str, Any]:
        stats = services.queue.stats()
        return {
            "by_status": stats.by_status,
            "by_type": stats.by_type,
            "total": stats.total,
            "checked_at": stats.checked_at.isoformat(),
        }

    @app.get("/queue/items")
    def list_items(
        status_filter: QueueItemStatus | None = Query(default=None, alias="status"),
        item_type: QueueItemType | None = Query(default=None, alias="type"),
        limit: int = Query(default=50, ge=1, le=500),
    ) -> dict[str, Any]:
        items = services.queue.list_items(status=status_filter, item_type=item_type, limit=limit)
        return {"items": [item.to_dict() for item in items]}

    @app.get("/queue/items/{item_id}")
    def get_item(item_id: str) -> dict[str, Any]:
        details = services.queue.get_item_details(item_id=item_id)
        if details is None:
            raise NotFoundError(f"Queue item not found: {item_id}")
        return {
            **details.item.to_dict(),
            "events": [
                {
                    "type": event.event_type,
                    "status_from": event.status_from.value if event.status_from else None,
                    "status_to": event.status_to.value if event.status_to else None,
                    "details": event.details,
                    "created_at": event.created_at.isoformat(),
                }
                for event in details.events
            ],
        }

    @app.post("/queue/items/{item_id}/retry")
    def retry_item(item_id: str) -> dict[str, Any]:
        return services.queue.retry_item(item_id=item_id).to_dict()

    @app.post("/queue/purge")
    def purge_items(older_than_days: int | None = Query(default=None, ge=0)) -> dict[str, Any]:
        days = older_than_days if older_than_days is not None else settings.queue.retention_days
        purged = services.queue.purge_finished_items(older_than=utc_now() - timedelta(days=days))
        return {"purged": purged, "older_than_days": days}

    @app.get("/conversations/{conversation_id}")
    def get_conversation(conversation_id: str) -> dict[str, Any]:
        conversation = services.conversations.get_conversation(conversation_id=conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation not found: {conversation_id}")
        return conversation.to_dict()

    @app.post("/conversations/{conversation_id}/takeover")
    def take_over(conversation_id: str, body: TakeoverRequest | None = None) -> dict[str, Any]:
        body = body or TakeoverRequest()
        result = operator.take_over(
            conversation_id=conversation_id,
            agent_id=body.agent_id or settings.myalice.agent_id,
            reason=body.reason,
        )
        return result.to_dict()

    @app.post("/conversations/{conversation_id}/release")
    def release(conversation_id: str, body: ReleaseRequest | None = None) -> dict[str, Any]:
        body = body or ReleaseRequest()
        result = operator.release(
            conversation_id=conversation_id,
            actor=body.actor,
            reason=body.reason,
        )
        return result.to_dict()

    @app.get("/conversations/{conversation_id}/audit")
    def conversation_audit(conversation_id: str) -> dict[str, Any]:
        if services.conversations.get_conversation(conversation_id=conversation_id) is None:
            raise NotFoundError(f"Conversation not found: {conversation_id}")
        records = services.conversations.list_audit(conversation_id=conversation_id)
        return {
            "conversation_id": conversation_id,
            "records": [record.to_dict() for record in records],
        }

    return app


def _register_error_handlers(app: FastAPI) -> None:
    mapping: tuple[tuple[type[Exception], int], ...] = (
        (AuthError, status.HTTP_401_UNAUTHORIZED),
        (ValidationError, status.HTTP_400_BAD_REQUEST),
        (NotFoundError, status.HTTP_404_NOT_FOUND),
        (StateConflictError, status.HTTP_409_CONFLICT),
    )
    for error_type, status_code in mapping:
        app.add_exception_handler(error_type, _error_responder(status_code))


def _error_responder(
    status_code: int,
) -> Callable[[Request, Exception], Awaitable[JSONResponse]]:
    async def respond(request: Request, error: Exception) -> JSONResponse:
        logger.warning(
            "%s %s rejected with %d: %s",
            request.method,
            request.url.path,
            status_code,
            error,
        )
        return JSONResponse(status_code=status_code, content={"detail": str(error)})

    return respond
