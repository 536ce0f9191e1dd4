"""Capability interfaces for the LLM provider and the messaging platform."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

MAX_FOLLOW_UP_HOURS = 720


@dataclass(slots=True, frozen=True)
class LlmReply:
    """Drafted answer plus the signals the escalation policy consumes."""

    text: str
    confidence: float
    needs_human: bool = False
    follow_up_hours: int | None = None
    follow_up_message: str | None = None


@dataclass(slots=True, frozen=True)
class SentimentResult:
    label: str
    score: float


@dataclass(slots=True, frozen=True)
class SendResult:
    external_message_id: str | None = None


class LlmClient(Protocol):
    """Text completion and sentiment scoring."""

    def draft_reply(self, *, conversation_id: str, message: str) -> LlmReply: ...

    def analyze_sentiment(self, text: str) -> SentimentResult: ...


class MessagingClient(Protocol):
    """Outbound messaging and conversation control on the platform."""

    def send_message(self, *, recipient: str, text: str) -> SendResult: ...

    def take_control(self, *, external_ticket_id: str, agent_id: str) -> None: ...

    def release_control(self, *, external_ticket_id: str) -> None: ...
