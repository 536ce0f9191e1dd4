"""Deterministic in-process clients for local runs and integration tests."""

from __future__ import annotations

from dataclasses import dataclass, field

from sales_agent.clients.base import LlmReply, SendResult, SentimentResult

_NEGATIVE_MARKERS: tuple[str, ...] = (
    "terrible",
    "pésimo",
    "pesimo",
    "horrible",
    "awful",
    "furioso",
    "angry",
)
_POSITIVE_MARKERS: tuple[str, ...] = ("gracias", "excelente", "great", "thanks", "perfecto")
_HUMAN_MARKERS: tuple[str, ...] = ("humano", "human", "agente", "agent", "persona")


class EchoLlmClient:
    """Echoes the customer message back with keyword-driven signals.

    Confidence and sentiment can be pinned for tests; otherwise they are derived
    from simple marker words so local runs exercise every escalation path.
    """

    def __init__(
        self,
        *,
        confidence: float = 0.9,
        sentiment_score: float | None = None,
        needs_human: bool | None = None,
        follow_up_hours: int | None = None,
        follow_up_message: str | None = None,
    ) -> None:
        self.confidence = confidence
        self.sentiment_score = sentiment_score
        self.needs_human = needs_human
        self.follow_up_hours = follow_up_hours
        self.follow_up_message = follow_up_message
        self.calls: list[tuple[str, str]] = []

    def draft_reply(self, *, conversation_id: str, message: str) -> LlmReply:
        self.calls.append(("draft_reply", message))
        lowered = message.lower()
        needs_human = (
            self.needs_human
            if self.needs_human is not None
            else any(marker in lowered for marker in _HUMAN_MARKERS)
        )
        return LlmReply(
            text=f"Recibido: {message.strip()}",
            confidence=self.confidence,
            needs_human=needs_human,
            follow_up_hours=self.follow_up_hours,
            follow_up_message=self.follow_up_message,
        )

    def analyze_sentiment(self, text: str) -> SentimentResult:
        self.calls.append(("analyze_sentiment", text))
        if self.sentiment_score is not None:
            score = self.sentiment_score
            return SentimentResult(label=_label_for(score), score=score)
        lowered = text.lower()
        if any(marker in lowered for marker in _NEGATIVE_MARKERS):
            return SentimentResult(label="negative", score=-0.9)
        if any(marker in lowered for marker in _POSITIVE_MARKERS):
            return SentimentResult(label="positive", score=0.8)
        return SentimentResult(label="neutral", score=0.0)


@dataclass(slots=True)
class RecordingMessagingClient:
    """Keeps every outbound call in memory instead of talking to the platform."""

    sent: list[tuple[str, str]] = field(default_factory=list)
    taken: list[tuple[str, str]] = field(default_factory=list)
    released: list[str] = field(default_factory=list)

    def send_message(self, *, recipient: str, text: str) -> SendResult:
        self.sent.append((recipient, text))
        return SendResult(external_message_id=f"echo-{len(self.sent)}")

    def take_control(self, *, external_ticket_id: str, agent_id: str) -> None:
        self.taken.append((external_ticket_id, agent_id))

    def release_control(self, *, external_ticket_id: str) -> None:
        self.released.append(external_ticket_id)


def _label_for(score: float) -> str:
    if score > 0.2:  # noqa: PLR2004
        return "positive"
    if score < -0.2:  # noqa: PLR2004
        return "negative"
    return "neutral"
