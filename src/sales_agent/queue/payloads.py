"""Per-type payload schemas for queue items, validated at enqueue and dispatch time."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from sales_agent.errors import PayloadValidationError
from sales_agent.queue.models import QueueItemType


@dataclass(slots=True)
class ProcessMessagePayload:
    """Inbound customer message awaiting an automated answer."""

    conversation_id: str
    content: str
    message_id: str | None = None


@dataclass(slots=True)
class SendFollowUpPayload:
    """Scheduled outbound message for a conversation."""

    conversation_id: str
    message: str


@dataclass(slots=True)
class AnalyzeSentimentPayload:
    """Standalone sentiment analysis request."""

    conversation_id: str
    content: str
    message_id: str | None = None


QueuePayload = ProcessMessagePayload | SendFollowUpPayload | AnalyzeSentimentPayload


def parse_payload(item_type: str, raw: Any) -> QueuePayload:
    """Validate a raw payload against the schema of its item type."""

    try:
        resolved_type = QueueItemType(item_type)
    except ValueError as error:
        raise PayloadValidationError(f"Unknown queue item type: {item_type!r}") from error

    if not isinstance(raw, dict):
        raise PayloadValidationError(f"{resolved_type.value} payload must be a JSON object")

    if resolved_type == QueueItemType.PROCESS_MESSAGE:
        return ProcessMessagePayload(
            conversation_id=_required_str(raw, "conversation_id", resolved_type),
            content=_required_str(raw, "content", resolved_type),
            message_id=_optional_str(raw, "message_id", resolved_type),
        )
    if resolved_type == QueueItemType.SEND_FOLLOW_UP:
        return SendFollowUpPayload(
            conversation_id=_required_str(raw, "conversation_id", resolved_type),
            message=_required_str(raw, "message", resolved_type),
        )
    return AnalyzeSentimentPayload(
        conversation_id=_required_str(raw, "conversation_id", resolved_type),
        content=_required_str(raw, "content", resolved_type),
        message_id=_optional_str(raw, "message_id", resolved_type),
    )


def payload_to_dict(payload: QueuePayload) -> dict[str, Any]:
    """Serialize payload dropping unset optional fields."""

    return {key: value for key, value in asdict(payload).items() if value is not None}


def _required_str(raw: dict[str, Any], key: str, item_type: QueueItemType) -> str:
    value = raw.get(key)
    if not isinstance(value, str) or not value.strip():
        raise PayloadValidationError(
            f"{item_type.value}.{key} must be a non-empty string",
        )
    return value


def _optional_str(raw: dict[str, Any], key: str, item_type: QueueItemType) -> str | None:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise PayloadValidationError(f"{item_type.value}.{key} must be a string")
    return value
