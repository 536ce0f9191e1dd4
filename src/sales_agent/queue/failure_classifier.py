"""Deterministic handler failure classification for processor retry policy."""

from __future__ import annotations

from dataclasses import dataclass

import httpx

from sales_agent.errors import (
    PayloadValidationError,
    TerminalHandlerError,
    TransientHandlerError,
)
from sales_agent.queue.models import FailureClass

HANDLER_FAILURE_CLASSIFIER_VERSION = 1

_RATE_LIMIT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "please retry",
    "try again later",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "connection refused",
    "network error",
    "timed out",
    "database is locked",
)


@dataclass(slots=True)
class HandlerFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    @property
    def retryable(self) -> bool:
        return self.failure_class.retryable

    def to_event_details(self, *, item_type: str, attempt: int) -> dict[str, object]:
        """Serialize classifier diagnostics for queue item events."""

        return {
            "classifier_version": HANDLER_FAILURE_CLASSIFIER_VERSION,
            "item_type": item_type,
            "attempt": attempt,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_handler_failure(error: BaseException) -> HandlerFailureClassification:  # noqa: PLR0911
    """Classify a handler exception into a deterministic retry class."""

    if isinstance(error, PayloadValidationError):
        return HandlerFailureClassification(
            failure_class=FailureClass.PAYLOAD_INVALID,
            reason_code="payload_invalid",
            matched_rule="payload_validation",
            matched_pattern=None,
        )
    if isinstance(error, TerminalHandlerError):
        return HandlerFailureClassification(
            failure_class=FailureClass.TERMINAL,
            reason_code="handler_terminal",
            matched_rule="explicit_terminal",
            matched_pattern=None,
        )
    if isinstance(error, TransientHandlerError):
        return HandlerFailureClassification(
            failure_class=FailureClass.TRANSIENT,
            reason_code="handler_transient",
            matched_rule="explicit_transient",
            matched_pattern=None,
        )
    if isinstance(error, httpx.HTTPStatusError):
        status_code = error.response.status_code
        if status_code == httpx.codes.TOO_MANY_REQUESTS or status_code >= 500:  # noqa: PLR2004
            return HandlerFailureClassification(
                failure_class=FailureClass.TRANSIENT,
                reason_code=f"http_{status_code}",
                matched_rule="http_status_transient",
                matched_pattern=None,
            )
        return HandlerFailureClassification(
            failure_class=FailureClass.TERMINAL,
            reason_code=f"http_{status_code}",
            matched_rule="http_status_non_retryable",
            matched_pattern=None,
        )
    if isinstance(error, httpx.TransportError):
        return HandlerFailureClassification(
            failure_class=FailureClass.TRANSIENT,
            reason_code="http_transport",
            matched_rule="http_transport_transient",
            matched_pattern=None,
        )

    haystack = str(error).lower()
    pattern = _first_match(haystack, _RATE_LIMIT_TRANSIENT_PATTERNS)
    if pattern is not None:
        return HandlerFailureClassification(
            failure_class=FailureClass.TRANSIENT,
            reason_code="rate_limit_transient",
            matched_rule="rate_limit_transient",
            matched_pattern=pattern,
        )
    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None:
        return HandlerFailureClassification(
            failure_class=FailureClass.TRANSIENT,
            reason_code="generic_transient",
            matched_rule="generic_transient",
            matched_pattern=pattern,
        )

    return HandlerFailureClassification(
        failure_class=FailureClass.UNKNOWN,
        reason_code=f"unhandled_{type(error).__name__}",
        matched_rule="fallback_unknown",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
