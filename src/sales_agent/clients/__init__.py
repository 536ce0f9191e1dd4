"""Capability clients: LLM replies/sentiment and the messaging platform."""

from sales_agent.clients.base import (
    LlmClient,
    LlmReply,
    MessagingClient,
    SendResult,
    SentimentResult,
)

__all__ = [
    "LlmClient",
    "LlmReply",
    "MessagingClient",
    "SendResult",
    "SentimentResult",
]
