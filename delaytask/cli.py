import json
import time
from pathlib import Path
from typing import List, Optional

import typer
from rich import print
from rich.console import Console
from rich.table import Table

from .client import TaskClient
from .config import Settings, load_settings
from .errors import StoreConnectionError, TaskValidationError
from .handlers import load_handler_modules, parse_handler_ref, registry
from .logs import setup_logging
from .models import TaskStatus
from .storage import Storage
from .worker import start_workers

app = typer.Typer(help="delaytask - delayed task scheduler with buckets, priority lanes and retries.")

# Sub-app so CLI supports commands like:
#   delaytask worker start --bucket-count 8
worker_app = typer.Typer()
app.add_typer(worker_app, name="worker")

HandlersOption = typer.Option(None, "--handlers", "-H", help="Module(s) that register task handlers")


def _settings(**overrides) -> Settings:
    return load_settings(**overrides)


def _storage(settings: Settings) -> Storage:
    try:
        return Storage.from_settings(settings)
    except StoreConnectionError as e:
        print(f"[red]{e}[/red]")
        raise typer.Exit(1)


def _client(settings: Settings) -> TaskClient:
    return TaskClient(_storage(settings), registry, priorities=settings.priorities)


def _parse_status(value: Optional[str]) -> Optional[TaskStatus]:
    if value is None:
        return None
    try:
        return TaskStatus[value.upper()]
    except KeyError:
        raise typer.BadParameter(f"unknown status {value!r}; use one of {', '.join(s.name.lower() for s in TaskStatus)}")


# -----------------------------
# Worker controls
# -----------------------------
@app.command("start")
def start(
    bucket_count: Optional[int] = typer.Option(None, "--bucket-count", help="Number of bucket worker processes"),
    queue_count: Optional[int] = typer.Option(None, "--queue-count", help="Number of queue worker processes"),
    handlers: Optional[List[str]] = HandlersOption,
    log_file: Optional[str] = typer.Option(None, "--log-file", help="Also log to this file"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Logging level"),
    reset_shutdown: bool = typer.Option(True, help="Set shutdown=false before start"),
):
    """Start bucket and queue worker processes."""
    settings = _settings(bucket_count=bucket_count, queue_count=queue_count, log_file=log_file, log_level=log_level)
    setup_logging(settings.log_level, settings.log_file)
    storage = _storage(settings)
    running = storage.list_workers()
    if running:
        print(f"[red]already running[/red] ({len(running)} worker(s) registered). Run `delaytask stop` first.")
        raise typer.Exit(1)
    if reset_shutdown:
        storage.config_set("shutdown", "false")
    print(
        f"Starting {settings.bucket_count} bucket worker(s) and "
        f"{settings.queue_count} queue worker(s). Ctrl+C to stop."
    )
    start_workers(settings, handlers or [])


@app.command("stop")
def stop(timeout: Optional[float] = typer.Option(None, "--timeout", help="Seconds to wait for workers to exit")):
    """Signal workers to stop gracefully and wait for them to exit."""
    settings = _settings(stop_timeout=timeout)
    storage = _storage(settings)
    storage.config_set("shutdown", "true")
    print("[yellow]Set shutdown=true. Waiting for workers to exit ...[/yellow]")
    deadline = time.monotonic() + settings.stop_timeout
    while storage.list_workers():
        if time.monotonic() >= deadline:
            print("[red]process stop fail.[/red]")
            raise typer.Exit(1)
        time.sleep(0.1)
    print("[green]process stop success.[/green]")


@worker_app.command("start")
def worker_start_cmd(
    bucket_count: Optional[int] = typer.Option(None, "--bucket-count", help="Number of bucket worker processes"),
    queue_count: Optional[int] = typer.Option(None, "--queue-count", help="Number of queue worker processes"),
    handlers: Optional[List[str]] = HandlersOption,
):
    """Start worker processes (alias for `delaytask start`)."""
    start(bucket_count=bucket_count, queue_count=queue_count, handlers=handlers, log_file=None, log_level=None, reset_shutdown=True)


@worker_app.command("stop")
def worker_stop_cmd():
    """Stop running workers gracefully (alias for `delaytask stop`)."""
    stop(timeout=None)


# -----------------------------
# Tasks
# -----------------------------
@app.command()
def add(
    payload: Optional[str] = typer.Argument(
        None,
        help=(
            "Task JSON e.g. '{\"topic\":\"order\",\"id\":\"42\",\"url\":\"example.com/hook\"}'. "
            "Optional if you use --topic/--id or --json-file."
        ),
    ),
    json_file: Optional[str] = typer.Option(None, "--json-file", help="Read JSON payload from a file"),
    topic: Optional[str] = typer.Option(None, "--topic", help="Task topic"),
    id: Optional[str] = typer.Option(None, "--id", help="Task id within the topic"),
    url: Optional[str] = typer.Option(None, "--url", help="URL to request when the task runs"),
    method: Optional[str] = typer.Option(None, "--method", help="GET or POST"),
    call: Optional[str] = typer.Option(None, "--call", help="Registered handler, as handler:action"),
    callback: Optional[str] = typer.Option(None, "--callback", help="Handler run after success, as handler:action"),
    params: Optional[str] = typer.Option(None, "--params", help="JSON object passed to the task"),
    intervals: Optional[str] = typer.Option(None, "--intervals", help="Retry intervals in seconds, e.g. 5,10,20"),
    persistent: Optional[bool] = typer.Option(None, "--persistent/--no-persistent", help="Repeat the last interval forever"),
    priority: Optional[int] = typer.Option(None, "--priority", help="Priority lane"),
    due_time: Optional[int] = typer.Option(None, "--due-time", help="Unix time to run at"),
    handlers: Optional[List[str]] = HandlersOption,
):
    """Add a delayed task."""
    if json_file:
        payload = Path(json_file).read_text(encoding="utf-8").strip()

    data = {}
    if payload:
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            raise typer.BadParameter(f"Invalid JSON: {e.msg}")
        if not isinstance(data, dict):
            raise typer.BadParameter("Task JSON must be an object.")

    try:
        options = {
            "topic": topic,
            "id": id,
            "url": url,
            "method": method,
            "call": parse_handler_ref(call) if call else None,
            "callback": parse_handler_ref(callback) if callback else None,
            "params": json.loads(params) if params else None,
            "intervals": intervals,
            "persistent": persistent,
            "priority": priority,
            "due_time": due_time,
        }
    except (ValueError, json.JSONDecodeError) as e:
        raise typer.BadParameter(str(e))
    data.update({k: v for k, v in options.items() if v is not None})

    load_handler_modules(handlers or [])
    client = _client(_settings())
    try:
        task = client.add(data)
    except TaskValidationError as e:
        raise typer.BadParameter(str(e))
    print(f"[green]Added[/green] task [bold]{task.key}[/bold] due at {task.due_time}")


@app.command("del")
def delete(
    topic: str = typer.Argument(..., help="Task topic"),
    id: str = typer.Argument(..., help="Task id"),
    hard: bool = typer.Option(False, "--hard", help="Remove the record instead of marking it deleted"),
):
    """Delete a task (soft by default)."""
    _client(_settings()).delete(topic, id, soft_delete=not hard)
    print(f"[yellow]{'Removed' if hard else 'Deleted'}[/yellow] task [bold]{topic}:{id}[/bold]")


@app.command()
def get(topic: str = typer.Argument(...), id: str = typer.Argument(...)):
    """Show one task record."""
    task = _client(_settings()).get(topic, id)
    if task is None:
        print(f"[red]Not found:[/red] {topic}:{id}")
        raise typer.Exit(1)
    Console().print_json(task.to_json())


@app.command("list")
def list_tasks(status: Optional[str] = typer.Option(None, "--status", help="Filter by status (delay, ok, fail, deleted)")):
    """List tasks, optionally by status."""
    wanted = _parse_status(status)
    storage = _storage(_settings())
    t = Table(title=f"Tasks{'' if not status else f' ({status})'}")
    for c in ["key", "status", "priority", "attempts", "due_time", "last_run_time", "create_time", "target"]:
        t.add_column(c)
    tasks = sorted(storage.iter_tasks(), key=lambda task: task.create_time)
    for task in tasks:
        if wanted is not None and task.status != wanted:
            continue
        t.add_row(
            task.key,
            task.status.name.lower(),
            str(task.priority),
            str(task.rule.attempt_count),
            str(task.due_time),
            task.last_run_time,
            task.create_time,
            task.url or ":".join(task.call),
        )
    Console().print(t)


# -----------------------------
# Status & config
# -----------------------------
@app.command()
def status():
    """Show bucket sizes, lane lengths and active workers."""
    settings = _settings()
    storage = _storage(settings)
    console = Console()

    bt = Table(title="Buckets")
    bt.add_column("bucket")
    bt.add_column("tasks")
    for index in range(settings.bucket_count):
        bt.add_row(str(index), str(storage.bucket_size(index)))
    console.print(bt)

    qt = Table(title="Priority lanes")
    qt.add_column("priority")
    qt.add_column("quota")
    qt.add_column("queued")
    for priority in sorted(settings.queue_quotas, reverse=True):
        qt.add_row(str(priority), str(settings.queue_quotas[priority]), str(storage.queue_length(priority)))
    console.print(qt)

    wt = Table(title="Active Workers")
    wt.add_column("worker_id")
    wt.add_column("kind")
    wt.add_column("pid")
    wt.add_column("started_at")
    for w in storage.list_workers():
        wt.add_row(w["id"], w["kind"], str(w["pid"]), w["started_at"])
    console.print(wt)


@app.command("config")
def config_cmd():
    """Print the effective settings (DELAYTASK_* environment variables)."""
    settings = _settings()
    t = Table(title="Settings")
    t.add_column("key")
    t.add_column("value")
    for key, value in settings.model_dump().items():
        if key == "redis_password" and value:
            value = "***"
        t.add_row(key, str(value))
    Console().print(t)
