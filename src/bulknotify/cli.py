"""Command line interface for bulknotify."""
from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from typing import Optional

import click
from dateutil import parser as date_parser
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .config import Settings, load_settings
from .db import create_engine_from_config, create_session_factory, init_db
from .exceptions import DispatchError
from .logging import setup_logging
from .models import Channel, Priority
from .schemas import RecipientFilter
from .service import BulkNotificationService, create_service

console = Console()


class _State:
    def __init__(self, settings: Settings):
        self.settings = settings
        self._service: Optional[BulkNotificationService] = None

    @property
    def service(self) -> BulkNotificationService:
        if self._service is None:
            self._service = create_service(self.settings)
        return self._service


pass_state = click.make_pass_decorator(_State)


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = date_parser.parse(value)
    except (ValueError, OverflowError) as exc:
        raise click.BadParameter(f"Unrecognised date: {value}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _parse_vars(items: tuple[str, ...]) -> dict[str, str]:
    variables: dict[str, str] = {}
    for item in items:
        if "=" not in item:
            raise click.BadParameter("Variables must be in key=value format", param_hint="--var")
        key, value = item.split("=", 1)
        variables[key.strip()] = value
    return variables


def _build_filter(options: dict) -> Optional[RecipientFilter]:
    values = {
        "role": options["role"],
        "is_verified": options["verified"],
        "created_after": _parse_datetime(options["created_after"]),
        "created_before": _parse_datetime(options["created_before"]),
        "last_login_after": _parse_datetime(options["last_login_after"]),
        "last_login_before": _parse_datetime(options["last_login_before"]),
        "has_listings": options["has_listings"],
        "category_ids": list(options["category_id"]) or None,
        "specific_ids": list(options["user_id"]) or None,
    }
    populated = {key: value for key, value in values.items() if value is not None}
    if not populated:
        return None
    return RecipientFilter(**populated)


def task_options(func):
    """Options shared by every ``enqueue`` subcommand."""
    options = [
        click.option("--creator-id", type=int, required=True, help="Id of the user creating the task"),
        click.option("--role", help="Only users with this role"),
        click.option("--verified/--unverified", default=None, help="Filter on verification flag"),
        click.option("--created-after", help="Users created strictly after this date"),
        click.option("--created-before", help="Users created strictly before this date"),
        click.option("--last-login-after", help="Users last seen strictly after this date"),
        click.option("--last-login-before", help="Users last seen strictly before this date"),
        click.option("--has-listings/--no-listings", default=None, help="Filter on having listings"),
        click.option("--category-id", type=int, multiple=True, help="Users interested in this category"),
        click.option("--user-id", type=int, multiple=True, help="Restrict to these user ids"),
        click.option("--template", "template_name", help="Named template to render instead of the body"),
        click.option("--var", "variables", multiple=True, help="Template variable as key=value"),
        click.option(
            "--priority",
            type=click.Choice([p.value for p in Priority], case_sensitive=False),
            default=Priority.NORMAL.value,
            show_default=True,
        ),
        click.option("--sender-id", type=int, help="Sender shown to recipients"),
        click.option("--campaign-id", type=int, help="Campaign the task belongs to"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _enqueue(state: _State, channel: Channel, body: str, subject: Optional[str], options: dict) -> None:
    try:
        task_id = state.service.enqueue(
            channel,
            body,
            options["creator_id"],
            subject=subject,
            recipient_filter=_build_filter(options),
            template_name=options["template_name"],
            template_variables=_parse_vars(options["variables"]) or None,
            sender_id=options["sender_id"],
            campaign_id=options["campaign_id"],
            priority=Priority(options["priority"].upper()),
        )
    except DispatchError as exc:
        console.print(f"[red]Enqueue failed: {exc.message}[/red]")
        sys.exit(1)
    console.print(f"Enqueued {channel.value} task [bold]{task_id}[/bold]")


@click.group()
@click.option("--config", "config_file", type=click.Path(), help="Config file path (YAML/JSON)")
@click.option("--env-file", type=click.Path(), help=".env file path")
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.version_option(__version__, prog_name="bulknotify")
@click.pass_context
def main(ctx: click.Context, config_file: Optional[str], env_file: Optional[str], debug: bool):
    """Bulk notification dispatch for email, SMS and push."""
    try:
        settings = load_settings(env_file=env_file, config_file=config_file)
    except DispatchError as exc:
        console.print(f"[red]Configuration error: {exc.message}[/red]")
        sys.exit(1)

    logging_config = settings.logging
    if debug or settings.debug:
        logging_config = logging_config.model_copy(update={"level": "DEBUG"})
    setup_logging(logging_config)
    ctx.obj = _State(settings)


@main.command("init-db")
@pass_state
def init_db_command(state: _State):
    """Create the task and queue tables."""
    engine = create_engine_from_config(state.settings.database)
    init_db(engine)
    console.print(f"[green]Database initialised at {state.settings.database.url}[/green]")


@main.command()
@click.option("--max-messages", type=int, help="Stop after handling this many messages")
@click.option("--idle-timeout", type=float, help="Stop after this many seconds without a message")
@pass_state
def worker(state: _State, max_messages: Optional[int], idle_timeout: Optional[float]):
    """Consume and process bulk notification tasks."""
    dispatch = state.settings.dispatch
    console.print(
        Panel.fit(
            f"Queue: {dispatch.queue_name} ({state.settings.queue.backend})\n"
            f"Batch size: {dispatch.batch_size}\n"
            f"Batch interval: {dispatch.batch_interval_ms} ms",
            title="bulknotify worker",
        )
    )
    try:
        handled = state.service.run_worker(max_messages=max_messages, idle_timeout=idle_timeout)
    except KeyboardInterrupt:  # pragma: no cover - interactive stop
        console.print("[yellow]Worker interrupted; shutting down[/yellow]")
        return
    except DispatchError as exc:
        console.print(f"[red]Worker stopped: {exc.message}[/red]")
        sys.exit(1)
    console.print(f"Handled {handled} messages")


@main.group()
def enqueue():
    """Enqueue a bulk notification task."""


@enqueue.command("email")
@click.option("--subject", required=True, help="Subject line (may contain {{placeholders}})")
@click.option("--body", default="", help="Body text or HTML (may contain {{placeholders}})")
@task_options
@pass_state
def enqueue_email(state: _State, subject: str, body: str, **options):
    """Send an email to every matching user."""
    _enqueue(state, Channel.EMAIL, body, subject, options)


@enqueue.command("sms")
@click.option("--body", default="", help="Message text (may contain {{placeholders}})")
@task_options
@pass_state
def enqueue_sms(state: _State, body: str, **options):
    """Send a text message to every matching user."""
    _enqueue(state, Channel.SMS, body, None, options)


@enqueue.command("push")
@click.option("--title", help="Notification title")
@click.option("--body", default="", help="Notification text (may contain {{placeholders}})")
@task_options
@pass_state
def enqueue_push(state: _State, title: Optional[str], body: str, **options):
    """Send a push notification to every device of every matching user."""
    _enqueue(state, Channel.PUSH, body, title, options)


@main.command()
@click.argument("task_id")
@click.option("--json", "as_json", is_flag=True, help="Print the status as JSON")
@pass_state
def status(state: _State, task_id: str, as_json: bool):
    """Show the status of a task."""
    view = state.service.get_task_status(task_id)
    if view is None:
        console.print(f"[red]Task {task_id} not found[/red]")
        sys.exit(1)

    if as_json:
        console.print_json(data=view.to_dict())
        return

    table = Table(title=f"Task {task_id}")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    for key, value in view.to_dict().items():
        table.add_row(key, "-" if value is None else str(value))
    console.print(table)


@main.command()
@click.argument("task_id")
@pass_state
def cancel(state: _State, task_id: str):
    """Cancel a pending or running task."""
    if state.service.cancel_task(task_id):
        console.print(f"Task [bold]{task_id}[/bold] cancelled")
    else:
        console.print(f"[yellow]Task {task_id} is unknown or already finished[/yellow]")
        sys.exit(1)


@main.command()
@pass_state
def active(state: _State):
    """List pending and running tasks."""
    tasks = state.service.list_active_tasks()
    if not tasks:
        console.print("No active tasks")
        return

    table = Table(title="Active Tasks")
    table.add_column("ID", style="cyan")
    table.add_column("Channel", justify="center")
    table.add_column("Status", justify="center")
    table.add_column("Sent", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Started at")
    for task in tasks:
        table.add_row(
            task.id,
            task.channel.value,
            task.status.value,
            str(task.total_sent),
            str(task.total_failed),
            task.started_at.isoformat() if task.started_at else "-",
        )
    console.print(table)


@main.command()
@click.option("--stale-after", type=int, help="Minutes without progress (default from config)")
@pass_state
def reconcile(state: _State, stale_after: Optional[int]):
    """Fail stuck tasks and republish tasks that never left PENDING."""
    window = timedelta(minutes=stale_after) if stale_after else None
    report = state.service.reconcile(window)
    console.print(f"Failed {len(report.failed)} stale tasks, republished {len(report.requeued)}")
    for task_id in report.failed:
        console.print(f"  [red]failed[/red] {task_id}")
    for task_id in report.requeued:
        console.print(f"  [green]requeued[/green] {task_id}")


if __name__ == "__main__":
    main()
