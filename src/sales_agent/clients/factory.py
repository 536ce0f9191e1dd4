"""Build capability clients from settings."""

from __future__ import annotations

import logging

from sales_agent.clients.base import LlmClient, MessagingClient
from sales_agent.clients.echo import EchoLlmClient, RecordingMessagingClient
from sales_agent.clients.llm import ChatCompletionLlmClient
from sales_agent.clients.myalice import MyAliceClient
from sales_agent.config import Settings

logger = logging.getLogger(__name__)


def build_llm_client(settings: Settings) -> LlmClient:
    if settings.llm.provider == "echo":
        return EchoLlmClient()
    if not settings.llm.api_key:
        raise ValueError(
            f"SALES_AGENT_LLM_API_KEY is required for provider {settings.llm.provider!r}.",
        )
    return ChatCompletionLlmClient(
        provider=settings.llm.provider,
        api_key=settings.llm.api_key,
        model=settings.llm.model,
        base_url=settings.llm.base_url,
        timeout_seconds=settings.llm.timeout_seconds,
    )


def build_messaging_client(settings: Settings) -> MessagingClient:
    if not settings.myalice.api_key or not settings.myalice.channel_id:
        logger.warning("MYALICE_API_KEY/MYALICE_CHANNEL_ID not set; outbound messages are recorded")
        return RecordingMessagingClient()
    return MyAliceClient(
        api_key=settings.myalice.api_key,
        channel_id=settings.myalice.channel_id,
        base_url=settings.myalice.base_url,
    )
