"""Runtime configuration for the queue, escalation policy and integrations."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

SUPPORTED_LLM_PROVIDERS: tuple[str, ...] = (
    "echo",
    "openai",
    "deepseek",
    "gemini",
    "claude",
    "abacus",
)


@dataclass(slots=True)
class QueueSettings:
    """Queue processor and retention settings."""

    batch_size: int = 10
    max_attempts: int = 3
    default_priority: int = 5
    retry_base_ms: int = 1_000
    retry_max_seconds: int = 3_600
    poll_interval_seconds: float = 5.0
    retention_days: int = 7
    worker_id: str = field(default_factory=lambda: f"{socket.gethostname()}:{os.getpid()}")


@dataclass(slots=True)
class EscalationSettings:
    """Thresholds that hand a conversation over to a human."""

    confidence_threshold: float = 0.3
    sentiment_threshold: float = -0.7


@dataclass(slots=True)
class WebhookSettings:
    """Inbound webhook verification settings."""

    secret: str | None = None


@dataclass(slots=True)
class LlmSettings:
    """LLM provider client settings."""

    provider: str = "echo"
    api_key: str | None = None
    model: str | None = None
    base_url: str | None = None
    timeout_seconds: float = 30.0


@dataclass(slots=True)
class MyAliceSettings:
    """Conversation platform client settings."""

    api_key: str | None = None
    base_url: str = "https://api.myalice.ai"
    channel_id: str | None = None
    agent_id: str = "sales-agent"


@dataclass(slots=True)
class HttpSettings:
    """HTTP server bind settings."""

    host: str = "127.0.0.1"
    port: int = 8000


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".sales_agent.db")
    sqlite_busy_timeout_ms: int = 5_000
    queue: QueueSettings = field(default_factory=QueueSettings)
    escalation: EscalationSettings = field(default_factory=EscalationSettings)
    webhook: WebhookSettings = field(default_factory=WebhookSettings)
    llm: LlmSettings = field(default_factory=LlmSettings)
    myalice: MyAliceSettings = field(default_factory=MyAliceSettings)
    http: HttpSettings = field(default_factory=HttpSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        default_queue = QueueSettings()
        return cls(
            db_path=db_path or Path(os.getenv("SALES_AGENT_DB_PATH", ".sales_agent.db")),
            sqlite_busy_timeout_ms=int(os.getenv("SALES_AGENT_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            queue=QueueSettings(
                batch_size=int(os.getenv("SALES_AGENT_QUEUE_BATCH_SIZE", "10")),
                max_attempts=int(os.getenv("SALES_AGENT_QUEUE_MAX_ATTEMPTS", "3")),
                default_priority=int(os.getenv("SALES_AGENT_QUEUE_DEFAULT_PRIORITY", "5")),
                retry_base_ms=int(os.getenv("SALES_AGENT_QUEUE_RETRY_BASE_MS", "1000")),
                retry_max_seconds=int(os.getenv("SALES_AGENT_QUEUE_RETRY_MAX_SECONDS", "3600")),
                poll_interval_seconds=float(
                    os.getenv("SALES_AGENT_QUEUE_POLL_INTERVAL_SECONDS", "5"),
                ),
                retention_days=int(os.getenv("SALES_AGENT_QUEUE_RETENTION_DAYS", "7")),
                worker_id=os.getenv("SALES_AGENT_WORKER_ID", default_queue.worker_id),
            ),
            escalation=EscalationSettings(
                confidence_threshold=float(
                    os.getenv("SALES_AGENT_ESCALATION_CONFIDENCE_THRESHOLD", "0.3"),
                ),
                sentiment_threshold=float(
                    os.getenv("SALES_AGENT_ESCALATION_SENTIMENT_THRESHOLD", "-0.7"),
                ),
            ),
            webhook=WebhookSettings(
                secret=_env_optional(
                    "SALES_AGENT_WEBHOOK_SECRET",
                    _env_optional("MYALICE_WEBHOOK_SECRET", None),
                ),
            ),
            llm=LlmSettings(
                provider=os.getenv("SALES_AGENT_LLM_PROVIDER", "echo").strip().lower(),
                api_key=_env_optional("SALES_AGENT_LLM_API_KEY", None),
                model=_env_optional("SALES_AGENT_LLM_MODEL", None),
                base_url=_env_optional("SALES_AGENT_LLM_BASE_URL", None),
                timeout_seconds=float(os.getenv("SALES_AGENT_LLM_TIMEOUT_SECONDS", "30")),
            ),
            myalice=MyAliceSettings(
                api_key=_env_optional("MYALICE_API_KEY", None),
                base_url=os.getenv("MYALICE_BASE_URL", "https://api.myalice.ai"),
                channel_id=_env_optional("MYALICE_CHANNEL_ID", None),
                agent_id=os.getenv("MYALICE_AGENT_ID", "sales-agent"),
            ),
            http=HttpSettings(
                host=os.getenv("SALES_AGENT_HTTP_HOST", "127.0.0.1"),
                port=int(os.getenv("SALES_AGENT_HTTP_PORT", "8000")),
            ),
        )

    def validate_for_queue(self) -> None:
        """Raise configuration error if queue knobs are out of range."""

        if self.queue.batch_size <= 0:
            raise ValueError("SALES_AGENT_QUEUE_BATCH_SIZE must be > 0.")
        if self.queue.max_attempts <= 0:
            raise ValueError("SALES_AGENT_QUEUE_MAX_ATTEMPTS must be > 0.")
        if self.queue.retry_base_ms < 0:
            raise ValueError("SALES_AGENT_QUEUE_RETRY_BASE_MS must be >= 0.")
        if self.queue.retry_max_seconds <= 0:
            raise ValueError("SALES_AGENT_QUEUE_RETRY_MAX_SECONDS must be > 0.")
        if self.queue.poll_interval_seconds < 0:
            raise ValueError("SALES_AGENT_QUEUE_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.queue.retention_days < 0:
            raise ValueError("SALES_AGENT_QUEUE_RETENTION_DAYS must be >= 0.")
        if not 0.0 <= self.escalation.confidence_threshold <= 1.0:
            raise ValueError(
                "SALES_AGENT_ESCALATION_CONFIDENCE_THRESHOLD must be within [0, 1].",
            )
        if not -1.0 <= self.escalation.sentiment_threshold <= 1.0:
            raise ValueError(
                "SALES_AGENT_ESCALATION_SENTIMENT_THRESHOLD must be within [-1, 1].",
            )

    def validate_for_webhook(self) -> None:
        """Raise configuration error if the webhook secret is missing."""

        if not self.webhook.secret:
            raise ValueError(
                "Webhook secret is required. "
                "Set SALES_AGENT_WEBHOOK_SECRET or MYALICE_WEBHOOK_SECRET.",
            )

    def validate_for_integrations(self) -> None:
        """Raise configuration error if the configured LLM/messaging clients are unusable."""

        if self.llm.provider not in SUPPORTED_LLM_PROVIDERS:
            raise ValueError(
                f"Unsupported SALES_AGENT_LLM_PROVIDER: {self.llm.provider!r}. "
                f"Expected one of: {', '.join(SUPPORTED_LLM_PROVIDERS)}.",
            )
        if self.llm.provider != "echo" and not self.llm.api_key:
            raise ValueError(
                f"SALES_AGENT_LLM_API_KEY is required for provider {self.llm.provider!r}.",
            )
        if self.llm.timeout_seconds <= 0:
            raise ValueError("SALES_AGENT_LLM_TIMEOUT_SECONDS must be > 0.")
        if self.llm.base_url:
            _validate_http_url("SALES_AGENT_LLM_BASE_URL", self.llm.base_url)
        if self.myalice.api_key:
            _validate_http_url("MYALICE_BASE_URL", self.myalice.base_url)
            if not self.myalice.channel_id:
                raise ValueError("MYALICE_CHANNEL_ID is required when MYALICE_API_KEY is set.")


def _validate_http_url(name: str, value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {name}: {value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_optional(name: str, default: str | None) -> str | None:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip()
    return normalized or default
