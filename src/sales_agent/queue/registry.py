"""Dispatch table from queue item type to handler callable."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from sales_agent.errors import TerminalHandlerError
from sales_agent.queue.models import QueueItemType, QueueItemView
from sales_agent.queue.payloads import QueuePayload, parse_payload


@dataclass(slots=True)
class HandlerResult:
    """Outcome of a successful handler run, stored with the completion event."""

    outcome: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_event_details(self) -> dict[str, object]:
        return {"outcome": self.outcome, **self.details}


Handler = Callable[[QueuePayload, QueueItemView], HandlerResult]


class HandlerRegistry:
    """Routes claimed items to the handler registered for their type."""

    def __init__(self) -> None:
        self._handlers: dict[QueueItemType, Handler] = {}

    def register(self, item_type: QueueItemType, handler: Handler) -> None:
        self._handlers[item_type] = handler

    def registered_types(self) -> tuple[QueueItemType, ...]:
        return tuple(self._handlers)

    def dispatch(self, item: QueueItemView) -> HandlerResult:
        """Parse the payload for the item type and run its handler.

        Raises PayloadValidationError for unknown types or malformed payloads and
        TerminalHandlerError when no handler is registered for a known type.
        """

        payload = parse_payload(item.item_type, item.payload)
        handler = self._handlers.get(QueueItemType(item.item_type))
        if handler is None:
            raise TerminalHandlerError(f"No handler registered for {item.item_type}")
        return handler(payload, item)
