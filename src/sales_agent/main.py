"""CLI entrypoint for sales-agent."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from sales_agent import __version__
from sales_agent.config import Settings
from sales_agent.conversations.controllers import (
    ConversationActionCommand,
    ConversationAuditCommand,
    ConversationCliController,
    ConversationListCommand,
    SeedRulesCommand,
)
from sales_agent.errors import SalesAgentError
from sales_agent.queue.controllers import (
    QueueCliController,
    QueueEnqueueCommand,
    QueueItemCommand,
    QueueListCommand,
    QueuePurgeCommand,
    QueueStatsCommand,
    QueueWorkerCommand,
)

click.rich_click.USE_MARKDOWN = True
QUEUE_CONTROLLER = QueueCliController()
CONVERSATION_CONTROLLER = ConversationCliController()

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
QUEUE_STATUSES = ["pending", "processing", "completed", "failed"]
QUEUE_ITEM_TYPES = ["process_message", "send_follow_up", "analyze_sentiment"]
CONVERSATION_STATUSES = ["active", "escalated", "resolved", "closed"]

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="sales-agent")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for stderr output.",
)
def sales_agent(log_level: str) -> None:
    """Sales conversation agent CLI.

    Webhooks feed a durable queue; the **worker** drains it with retries and
    escalates conversations to humans when the bot should step aside.
    """

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)


@sales_agent.group()
def queue() -> None:
    """Queue processing and inspection commands."""


@queue.command("worker")
@db_path_option
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Process one batch or loop until idle.",
)
@click.option(
    "--max-batches",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for non-idle batches in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Consecutive empty polls before the loop exits.",
)
def queue_worker(
    db_path: Path | None,
    once: bool,
    max_batches: int | None,
    max_idle_polls: int,
) -> None:
    """Run the queue processor."""

    _run(
        lambda: QUEUE_CONTROLLER.run_worker(
            QueueWorkerCommand(
                db_path=db_path,
                once=once,
                max_batches=max_batches,
                max_idle_polls=max_idle_polls,
            ),
        ),
    )


@queue.command("enqueue")
@db_path_option
@click.option(
    "--type",
    "item_type",
    type=click.Choice(QUEUE_ITEM_TYPES),
    required=True,
    help="Queue item type.",
)
@click.option("--payload", "payload_json", required=True, help="Payload as a JSON object.")
@click.option("--priority", type=click.IntRange(min=0), default=None, help="Higher runs first.")
@click.option("--max-attempts", type=click.IntRange(min=1), default=None)
@click.option(
    "--delay-seconds",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Schedule the item this many seconds in the future.",
)
def queue_enqueue(  # noqa: PLR0913
    db_path: Path | None,
    item_type: str,
    payload_json: str,
    priority: int | None,
    max_attempts: int | None,
    delay_seconds: int,
) -> None:
    """Enqueue one item manually."""

    _run(
        lambda: QUEUE_CONTROLLER.enqueue(
            QueueEnqueueCommand(
                db_path=db_path,
                item_type=item_type,
                payload_json=payload_json,
                priority=priority,
                max_attempts=max_attempts,
                delay_seconds=delay_seconds,
            ),
        ),
    )


@queue.command("items")
@db_path_option
@click.option("--status", type=click.Choice(QUEUE_STATUSES), default=None)
@click.option("--type", "item_type", type=click.Choice(QUEUE_ITEM_TYPES), default=None)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
)
def queue_items(
    db_path: Path | None,
    status: str | None,
    item_type: str | None,
    limit: int,
) -> None:
    """List recent queue items."""

    _run(
        lambda: QUEUE_CONTROLLER.list_items(
            QueueListCommand(db_path=db_path, status=status, item_type=item_type, limit=limit),
        ),
    )


@queue.command("inspect")
@db_path_option
@click.argument("item_id")
def queue_inspect(db_path: Path | None, item_id: str) -> None:
    """Show one item with its event history."""

    _run(lambda: QUEUE_CONTROLLER.inspect_item(QueueItemCommand(db_path=db_path, item_id=item_id)))


@queue.command("retry")
@db_path_option
@click.argument("item_id")
def queue_retry(db_path: Path | None, item_id: str) -> None:
    """Re-queue a failed item with a fresh attempt budget."""

    _run(lambda: QUEUE_CONTROLLER.retry_item(QueueItemCommand(db_path=db_path, item_id=item_id)))


@queue.command("stats")
@db_path_option
def queue_stats(db_path: Path | None) -> None:
    """Show item counts by status and type."""

    _run(lambda: QUEUE_CONTROLLER.stats(QueueStatsCommand(db_path=db_path)))


@queue.command("purge")
@db_path_option
@click.option(
    "--older-than-days",
    type=click.IntRange(min=0),
    default=None,
    help="Retention window; defaults to SALES_AGENT_QUEUE_RETENTION_DAYS.",
)
def queue_purge(db_path: Path | None, older_than_days: int | None) -> None:
    """Delete completed and failed items past retention."""

    _run(
        lambda: QUEUE_CONTROLLER.purge(
            QueuePurgeCommand(db_path=db_path, older_than_days=older_than_days),
        ),
    )


@sales_agent.group()
def conversations() -> None:
    """Conversation operator commands."""


@conversations.command("list")
@db_path_option
@click.option("--status", type=click.Choice(CONVERSATION_STATUSES), default=None)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
)
def conversations_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recently updated conversations."""

    _run(
        lambda: CONVERSATION_CONTROLLER.list_conversations(
            ConversationListCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@conversations.command("takeover")
@db_path_option
@click.argument("conversation_id")
@click.option("--agent", "actor", default=None, help="Agent id; defaults to MYALICE_AGENT_ID.")
@click.option("--reason", default=None)
def conversations_takeover(
    db_path: Path | None,
    conversation_id: str,
    actor: str | None,
    reason: str | None,
) -> None:
    """Assign a conversation to a human agent."""

    _run(
        lambda: CONVERSATION_CONTROLLER.take_over(
            ConversationActionCommand(
                db_path=db_path,
                conversation_id=conversation_id,
                actor=actor,
                reason=reason,
            ),
        ),
    )


@conversations.command("release")
@db_path_option
@click.argument("conversation_id")
@click.option("--actor", default=None)
@click.option("--reason", default=None)
def conversations_release(
    db_path: Path | None,
    conversation_id: str,
    actor: str | None,
    reason: str | None,
) -> None:
    """Hand a conversation back to the bot."""

    _run(
        lambda: CONVERSATION_CONTROLLER.release(
            ConversationActionCommand(
                db_path=db_path,
                conversation_id=conversation_id,
                actor=actor,
                reason=reason,
            ),
        ),
    )


@conversations.command("resolve")
@db_path_option
@click.argument("conversation_id")
@click.option("--actor", default=None)
@click.option("--reason", default=None)
def conversations_resolve(
    db_path: Path | None,
    conversation_id: str,
    actor: str | None,
    reason: str | None,
) -> None:
    """Mark a conversation resolved."""

    _run(
        lambda: CONVERSATION_CONTROLLER.resolve(
            ConversationActionCommand(
                db_path=db_path,
                conversation_id=conversation_id,
                actor=actor,
                reason=reason,
            ),
        ),
    )


@conversations.command("close")
@db_path_option
@click.argument("conversation_id")
@click.option("--actor", default=None)
@click.option("--reason", default=None)
def conversations_close(
    db_path: Path | None,
    conversation_id: str,
    actor: str | None,
    reason: str | None,
) -> None:
    """Close a conversation for good."""

    _run(
        lambda: CONVERSATION_CONTROLLER.close(
            ConversationActionCommand(
                db_path=db_path,
                conversation_id=conversation_id,
                actor=actor,
                reason=reason,
            ),
        ),
    )


@conversations.command("audit")
@db_path_option
@click.argument("conversation_id")
def conversations_audit(db_path: Path | None, conversation_id: str) -> None:
    """Show the escalation audit trail."""

    _run(
        lambda: CONVERSATION_CONTROLLER.audit(
            ConversationAuditCommand(db_path=db_path, conversation_id=conversation_id),
        ),
    )


@conversations.command("seed-rules")
@db_path_option
def conversations_seed_rules(db_path: Path | None) -> None:
    """Insert the default business rules that are missing."""

    _run(lambda: CONVERSATION_CONTROLLER.seed_rules(SeedRulesCommand(db_path=db_path)))


@sales_agent.command("serve")
@db_path_option
@click.option("--host", default=None, help="Bind host; defaults to SALES_AGENT_HTTP_HOST.")
@click.option("--port", type=click.IntRange(min=1, max=65535), default=None)
def serve(db_path: Path | None, host: str | None, port: int | None) -> None:
    """Run the HTTP API (webhook intake and operator endpoints)."""

    import uvicorn  # noqa: PLC0415

    from sales_agent.http.app import create_app  # noqa: PLC0415

    settings = Settings.from_env(db_path=db_path)
    try:
        settings.validate_for_webhook()
        settings.validate_for_integrations()
        app = create_app(settings)
    except (SalesAgentError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    uvicorn.run(
        app,
        host=host or settings.http.host,
        port=port or settings.http.port,
        log_level=logging.getLevelName(logging.getLogger().level).lower(),
    )


def _run(call: Callable[[], list[str]]) -> None:
    try:
        lines = call()
    except (SalesAgentError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    sales_agent()
