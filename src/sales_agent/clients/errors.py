"""Map httpx failures onto handler retry classes."""

from __future__ import annotations

import httpx

from sales_agent.errors import TerminalHandlerError, TransientHandlerError

_MAX_BODY_PREVIEW = 200


def translate_transport_error(error: httpx.HTTPError, *, context: str) -> TransientHandlerError:
    """Connection failures and timeouts are always worth another attempt."""

    if isinstance(error, httpx.TimeoutException):
        return TransientHandlerError(f"{context}: timeout")
    return TransientHandlerError(f"{context}: {type(error).__name__}: {error}")


def raise_for_http_error(response: httpx.Response, *, context: str) -> None:
    """Raise transient for 429/5xx and terminal for any other non-2xx status."""

    if response.is_success:
        return
    preview = response.text[:_MAX_BODY_PREVIEW] if response.content else ""
    message = f"{context}: HTTP {response.status_code} {preview}".rstrip()
    if response.status_code == httpx.codes.TOO_MANY_REQUESTS or response.is_server_error:
        raise TransientHandlerError(message)
    raise TerminalHandlerError(message)
