"""MyAlice conversation platform client: outbound messages and control handoff."""

from __future__ import annotations

import logging
import re
from typing import Any
from urllib.parse import quote

import httpx

from sales_agent.clients.base import SendResult
from sales_agent.clients.errors import raise_for_http_error, translate_transport_error

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.myalice.ai"
DEFAULT_TIMEOUT_SECONDS = 15.0


class MyAliceClient:
    """Thin httpx wrapper over the MyAlice REST API."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        api_key: str,
        channel_id: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.channel_id = channel_id
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    def send_message(self, *, recipient: str, text: str) -> SendResult:
        body = self._post(
            "/messages/text",
            {
                "channel_id": self.channel_id,
                "to": normalize_phone_number(recipient),
                "message": text,
            },
            context=f"send message to {recipient}",
        )
        message_id = body.get("message_id") or body.get("id")
        return SendResult(external_message_id=str(message_id) if message_id else None)

    def take_control(self, *, external_ticket_id: str, agent_id: str) -> None:
        self._post(
            _control_path(external_ticket_id),
            {"agent_id": agent_id, "action": "take_control"},
            context=f"take control of {external_ticket_id}",
        )

    def release_control(self, *, external_ticket_id: str) -> None:
        self._post(
            _control_path(external_ticket_id),
            {"action": "release_control"},
            context=f"release control of {external_ticket_id}",
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> MyAliceClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _post(self, path: str, payload: dict[str, Any], *, context: str) -> dict[str, Any]:
        try:
            response = self._client.post(path, json=payload)
        except httpx.HTTPError as error:
            logger.warning("MyAlice request failed (%s): %s", context, error)
            raise translate_transport_error(error, context=f"myalice {context}") from error
        raise_for_http_error(response, context=f"myalice {context}")
        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}


def normalize_phone_number(value: str) -> str:
    """Keep digits and a leading plus; non-phone identifiers pass through unchanged."""

    stripped = value.strip()
    digits = re.sub(r"[^\d]", "", stripped)
    if len(digits) < 7:  # noqa: PLR2004
        return stripped
    return f"+{digits}" if stripped.startswith("+") else digits


def _control_path(external_ticket_id: str) -> str:
    return f"/conversations/{quote(external_ticket_id, safe='')}/control"
