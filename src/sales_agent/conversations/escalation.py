"""Escalation policy: decide from confidence and sentiment whether a human takes over."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

DEFAULT_CONFIDENCE_THRESHOLD = 0.3
DEFAULT_SENTIMENT_THRESHOLD = -0.7


class EscalationReason(str, Enum):
    """Machine-readable reason recorded in the audit trail."""

    EXPLICIT_REQUEST = "explicit_request"
    LOW_CONFIDENCE = "low_confidence"
    NEGATIVE_SENTIMENT = "negative_sentiment"


@dataclass(slots=True, frozen=True)
class EscalationDecision:
    escalate: bool
    reason: EscalationReason | None
    confidence: float | None
    sentiment_score: float | None

    def describe(self) -> str:
        if self.reason is None:
            return "no escalation"
        if self.reason == EscalationReason.LOW_CONFIDENCE:
            return f"low_confidence: {self.confidence:.2f}"
        if self.reason == EscalationReason.NEGATIVE_SENTIMENT:
            return f"negative_sentiment: {self.sentiment_score:.2f}"
        return self.reason.value


@dataclass(slots=True, frozen=True)
class EscalationPolicy:
    """Thresholds are strict: a value equal to the threshold does not escalate."""

    confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD
    sentiment_threshold: float = DEFAULT_SENTIMENT_THRESHOLD

    def should_escalate(
        self,
        confidence: float | None,
        sentiment_score: float | None,
        explicit_flag: bool = False,
    ) -> bool:
        return self.decide(
            confidence=confidence,
            sentiment_score=sentiment_score,
            explicit_flag=explicit_flag,
        ).escalate

    def decide(
        self,
        *,
        confidence: float | None,
        sentiment_score: float | None,
        explicit_flag: bool = False,
    ) -> EscalationDecision:
        """Evaluate signals in order: explicit request, confidence, sentiment.

        A missing signal (None) never triggers escalation on its own.
        """

        reason: EscalationReason | None = None
        if explicit_flag:
            reason = EscalationReason.EXPLICIT_REQUEST
        elif confidence is not None and confidence < self.confidence_threshold:
            reason = EscalationReason.LOW_CONFIDENCE
        elif sentiment_score is not None and sentiment_score < self.sentiment_threshold:
            reason = EscalationReason.NEGATIVE_SENTIMENT
        return EscalationDecision(
            escalate=reason is not None,
            reason=reason,
            confidence=confidence,
            sentiment_score=sentiment_score,
        )
