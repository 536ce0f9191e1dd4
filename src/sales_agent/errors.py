"""Exception hierarchy shared by ingestion, queue processing and operator actions."""

from __future__ import annotations


class SalesAgentError(Exception):
    """Base error for the sales agent package."""


class AuthError(SalesAgentError):
    """Inbound request failed signature verification."""


class ValidationError(SalesAgentError):
    """Inbound data is missing required fields or is malformed."""


class PayloadValidationError(ValidationError):
    """Queue item payload does not match the schema of its item type."""


class HandlerError(SalesAgentError):
    """Base error raised by queue item handlers."""


class TransientHandlerError(HandlerError):
    """A dependency is temporarily unavailable; the item may be retried."""


class TerminalHandlerError(HandlerError):
    """The item can never succeed; retrying is pointless."""


class NotFoundError(SalesAgentError):
    """Requested entity does not exist."""


class StateConflictError(SalesAgentError):
    """Entity is not in a state that allows the requested transition."""
