import json
import logging

import click

from .api import serve
from .config import JOB_MODULES
from .db import set_config
from .errors import JobQueueError, NotFound
from .jobs import load_job_modules, registry
from .models import DEFAULT_PROFILE, Status, Task
from .queue import SqliteQueue
from .utils import parse_params
from .worker import start_workers

LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"


@click.group(help="jobqueue: task queue worker and control CLI", invoke_without_command=True)
@click.option("--db", "db_path", envvar="JOBQUEUE_DB", default=None, help="SQLite database file")
@click.option("--jobs", "job_modules", multiple=True, help="Module to import for job registration")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx, db_path, job_modules, verbose):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
    )
    try:
        load_job_modules(list(JOB_MODULES) + list(job_modules))
    except ImportError as e:
        raise click.ClickException(f"Cannot load jobs: {e}")
    ctx.obj = SqliteQueue(db_path)
    ctx.call_on_close(ctx.obj.close)

    # Running with no command starts the workers
    if ctx.invoked_subcommand is None:
        ctx.invoke(consume)


# ---------- Workers ----------
@cli.command("consume", help="Run workers until interrupted (default command)")
@click.option("--count", type=int, default=1, show_default=True, help="Number of worker threads")
@click.option("--profile", "profiles", multiple=True, help="Only consume these profiles")
@click.option("--timeout", type=float, default=None, help="Per-task timeout in seconds (0 = none)")
@click.pass_obj
def consume(queue, count=1, profiles=(), timeout=None):
    if timeout is None:
        timeout = float(queue.config()["timeout_seconds"])
    click.secho(f"Starting {count} worker(s). Press Ctrl+C to stop…", fg="cyan")
    start_workers(queue, registry, count=count, profiles=profiles, timeout=timeout or None)
    click.secho("Workers stopped.", fg="yellow")


# ---------- Tasks ----------
@cli.command("enqueue", help="Add a new task to the queue")
@click.argument("job")
@click.option("--profile", default=DEFAULT_PROFILE, show_default=True, help="Queue lane")
@click.option("--param", "params", multiple=True, help="Parameter as key=value (value may be JSON)")
@click.option("--tag", "tags", multiple=True, help="Tag (repeatable)")
@click.pass_obj
def enqueue_cmd(queue, job, profile, params, tags):
    try:
        if job not in registry:
            raise ValueError(f"Job '{job}' is not registered (known: {', '.join(registry.names())}).")
        task = Task.create(profile, job, parse_params(params), tags)
        queue.enqueue(task)
    except (ValueError, TypeError) as e:
        raise click.ClickException(str(e))
    click.secho(f"Enqueued {task.identifier} -> {task.job_name} (profile={task.profile})", fg="green")


@cli.command("show", help="Show a task information")
@click.argument("identifier")
@click.pass_obj
def show_cmd(queue, identifier):
    try:
        task = queue.find(identifier)
        error = queue.error_of(identifier)
        claimed = queue.claimed_by(identifier) if task.status == Status.WAITING else None
    except JobQueueError as e:
        raise click.ClickException(str(e))
    format_task_block(task, error, claimed)


def format_task_block(task: Task, error=None, claimed=None):
    rows = [
        ("identifier", task.identifier),
        ("status", task.status.value),
        ("profile", str(task.profile)),
        ("job", task.human_job_name),
        ("date", task.format_created_at()),
    ]
    for label, value in rows:
        click.echo(f"{label:>10}: {value}")
    click.echo(f"{'parameters':>10}:")
    for key, value in sorted(task.parameters.items()):
        click.echo(f"{'':>12}{key}: {json.dumps(value)}")
    click.echo(f"{'tags':>10}: {', '.join(sorted(task.tags))}")
    if error:
        click.secho(f"{'error':>10}: {error}", fg="red")
    if claimed:
        # claimed but not started yet; a stale claim is cleared by `retry`
        click.secho(f"{'claimed':>10}: {claimed}", fg="yellow")


@cli.command("list")
@click.option("--status", type=click.Choice([s.value for s in Status]), default=None)
@click.option("--profile", default=None)
@click.option("--tag", default=None)
@click.pass_obj
def list_cmd(queue, status, profile, tag):
    tasks = queue.list(status=status, profile=profile, tag=tag)
    if not tasks:
        click.echo("No tasks.")
        return

    for t in tasks:
        click.echo(
            f"{t.identifier} | {t.status.value:<9} | {str(t.profile):<10} | {t.human_job_name:<16} "
            f"| {t.format_created_at()} | tags={','.join(sorted(t.tags))}"
        )


@cli.command("status")
@click.pass_obj
def status_cmd(queue):
    click.echo(json.dumps(queue.counts(), indent=2))


@cli.command("retry", help="Put a failed task back in the queue, or release a stale claim")
@click.argument("identifier")
@click.pass_obj
def retry_cmd(queue, identifier):
    try:
        queue.requeue(identifier, max_retries=int(float(queue.config()["max_retries"])))
    except (NotFound, ValueError) as e:
        raise click.ClickException(str(e))
    click.secho(f"Re-queued task {identifier}.", fg="green")


# ---------- HTTP ----------
@cli.command("serve", help="Serve the JSON control plane")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8080, type=int, show_default=True)
@click.pass_obj
def serve_cmd(queue, host, port):
    click.secho(f"Listening on http://{host}:{port}", fg="cyan")
    serve(queue, registry, host=host, port=port)


# ---------- Config ----------
@cli.group("config", help="Configuration")
def config_group():
    pass


@config_group.command("get")
@click.pass_obj
def config_get(queue):
    click.echo(json.dumps(queue.config(), indent=2))


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_obj
def config_set_cmd(queue, key, value):
    try:
        set_config(queue.conn, key, value)
    except ValueError as e:
        raise click.ClickException(str(e))
    click.secho(f"Config updated: {key}={value}", fg="green")


def main():
    cli()
