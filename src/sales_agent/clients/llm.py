"""OpenAI-compatible chat completion client for the supported LLM providers."""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass
from typing import Any

import httpx

from sales_agent.clients.base import MAX_FOLLOW_UP_HOURS, LlmReply, SentimentResult
from sales_agent.clients.errors import raise_for_http_error, translate_transport_error
from sales_agent.errors import TransientHandlerError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
FALLBACK_CONFIDENCE = 0.6

REPLY_SYSTEM_PROMPT = (
    "Eres un agente de ventas de productos médicos. Responde con amabilidad y precisión. "
    "Responde en formato JSON con esta estructura: "
    '{"message": "mensaje para el cliente", "needsHumanIntervention": boolean, '
    '"confidence": número entre 0 y 1, "followUpHours": entero opcional, '
    '"followUpMessage": texto opcional}'
)
SENTIMENT_SYSTEM_PROMPT = (
    'Analiza el sentimiento del siguiente texto. Responde solo con "positive", '
    '"negative" o "neutral" seguido de un score entre -1.0 y 1.0.'
)


@dataclass(slots=True, frozen=True)
class ProviderProfile:
    base_url: str
    default_model: str


PROVIDER_PROFILES: dict[str, ProviderProfile] = {
    "openai": ProviderProfile("https://api.openai.com/v1", "gpt-4.1-mini"),
    "deepseek": ProviderProfile("https://api.deepseek.com/v1", "deepseek-chat"),
    "gemini": ProviderProfile(
        "https://generativelanguage.googleapis.com/v1beta/openai",
        "gemini-2.0-flash",
    ),
    "claude": ProviderProfile("https://api.anthropic.com/v1", "claude-3-5-haiku-latest"),
    "abacus": ProviderProfile("https://apps.abacus.ai/v1", "gpt-4.1-mini"),
}

_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


class ChatCompletionLlmClient:
    """Drafts replies and scores sentiment through a `/chat/completions` endpoint."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        provider: str,
        api_key: str,
        model: str | None = None,
        base_url: str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        profile = PROVIDER_PROFILES.get(provider)
        if profile is None:
            raise ValueError(f"Unsupported LLM provider: {provider!r}")
        self.provider = provider
        self.model = model or profile.default_model
        self._client = httpx.Client(
            base_url=(base_url or profile.base_url).rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    def draft_reply(self, *, conversation_id: str, message: str) -> LlmReply:
        content = self._complete(
            [
                {"role": "system", "content": REPLY_SYSTEM_PROMPT},
                {"role": "user", "content": message},
            ],
            context=f"draft reply for conversation {conversation_id}",
        )
        return parse_reply(content)

    def analyze_sentiment(self, text: str) -> SentimentResult:
        content = self._complete(
            [
                {"role": "system", "content": SENTIMENT_SYSTEM_PROMPT},
                {"role": "user", "content": text},
            ],
            context="sentiment analysis",
        )
        return parse_sentiment(content)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> ChatCompletionLlmClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _complete(self, messages: list[dict[str, str]], *, context: str) -> str:
        try:
            response = self._client.post(
                "/chat/completions",
                json={
                    "model": self.model,
                    "messages": messages,
                    "temperature": 0.7,
                    "max_tokens": 1000,
                },
            )
        except httpx.HTTPError as error:
            raise translate_transport_error(error, context=f"{self.provider} {context}") from error
        raise_for_http_error(response, context=f"{self.provider} {context}")

        try:
            body: Any = response.json()
            content = body["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as error:
            raise TransientHandlerError(
                f"{self.provider} {context}: malformed completion response",
            ) from error
        if not isinstance(content, str):
            raise TransientHandlerError(f"{self.provider} {context}: completion has no text")
        return content


def parse_reply(content: str) -> LlmReply:
    """Parse the JSON reply contract; plain text falls back to a medium-confidence answer."""

    match = _JSON_OBJECT_RE.search(content)
    if match is not None:
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict) and isinstance(parsed.get("message"), str):
            return LlmReply(
                text=parsed["message"],
                confidence=_clamp(_as_float(parsed.get("confidence"), 0.8), 0.0, 1.0),
                needs_human=bool(parsed.get("needsHumanIntervention", False)),
                follow_up_hours=_as_follow_up_hours(parsed.get("followUpHours")),
                follow_up_message=_as_text(parsed.get("followUpMessage")),
            )
        logger.debug("LLM reply JSON did not match the reply contract")
    return LlmReply(text=content.strip(), confidence=FALLBACK_CONFIDENCE)


def parse_sentiment(content: str) -> SentimentResult:
    """Parse `<label> <score>`; anything unparseable is neutral 0.0."""

    tokens = content.strip().split()
    if not tokens:
        return SentimentResult(label="neutral", score=0.0)
    label = tokens[0].strip(".,:;\"'").lower()
    if label not in {"positive", "negative", "neutral"}:
        label = "neutral"
    score = _as_float(tokens[1], 0.0) if len(tokens) > 1 else 0.0
    return SentimentResult(label=label, score=_clamp(score, -1.0, 1.0))


def _as_float(value: object, default: float) -> float:
    """Coerce numbers and numeric strings; NaN and infinities fall back to `default`."""

    if isinstance(value, bool) or not isinstance(value, int | float | str):
        return default
    try:
        number = float(value)
    except (OverflowError, ValueError):
        return default
    return number if math.isfinite(number) else default


def _as_follow_up_hours(value: object) -> int | None:
    """Positive whole hours up to MAX_FOLLOW_UP_HOURS; anything else means no follow-up."""

    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    hours = int(value)
    return hours if 0 < hours <= MAX_FOLLOW_UP_HOURS else None


def _as_text(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))
