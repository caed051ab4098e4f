import click
import importlib
import json
import logging
import signal
import threading
import time
from datetime import datetime, timedelta, timezone
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from ..config.settings import CONFIG_PATH, get_value, load_config, save_config, set_value
from ..handlers.builtin import default_registry
from ..handlers.registry import enqueue_job
from ..models.job import EnqueueOptions, JobStatus
from ..storage.base import StorageError
from ..storage.database import Storage
from ..workers.alerts import check_worker_health, evaluate
from ..workers.manager import WorkerManager

console = Console()


def fail(message: str):
    console.print(f"[red]{message}[/red]")
    raise SystemExit(1)


def get_storage(ctx) -> Storage:
    obj = ctx.obj
    if obj.get("storage") is None:
        config = obj["config"]
        obj["storage"] = Storage(db_path=obj["db_path"], url=None if obj["db_path"] else config.database_url)
    return obj["storage"]


def load_registry(setup: str = None):
    """Built-in handlers plus an optional ``module:function`` registration hook"""
    registry = default_registry()
    if setup:
        module_name, _, func_name = setup.partition(":")
        if not func_name:
            raise click.BadParameter("expected module:function", param_hint="--setup")
        hook = getattr(importlib.import_module(module_name), func_name)
        hook(registry)
    return registry


@click.group()
@click.option('--config', 'config_path', default=CONFIG_PATH, show_default=True,
              help='Path of the JSON configuration file')
@click.option('--db', 'db_path', default=None, help='SQLite database file (overrides database_url)')
@click.pass_context
def cli(ctx, config_path, db_path):
    """jobpool - background job workers with a scaling pool"""
    try:
        config = load_config(config_path)
    except (ValueError, OSError) as e:
        fail(f"Error loading configuration: {e}")
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(name)s: %(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )
    ctx.obj = {"config": config, "config_path": config_path, "db_path": db_path, "storage": None}


@cli.command()
@click.argument('job_type')
@click.argument('payload_json', default='{}')
@click.option('--queue', default='default', show_default=True, help='Queue to put the job on')
@click.option('--max-attempts', type=int, default=None, help='Override the handler max attempts')
@click.option('--delay', type=float, default=None, help='Seconds before the job becomes claimable')
@click.option('--id', 'job_id', default=None, help='Explicit job id')
@click.option('--setup', default=None, help='module:function registering extra handlers')
@click.pass_context
def enqueue(ctx, job_type, payload_json, queue, max_attempts, delay, job_id, setup):
    """Add a new job to a queue"""
    try:
        payload = json.loads(payload_json)
        if not isinstance(payload, dict):
            raise ValueError("Payload must be a JSON object")

        job_id = enqueue_job(
            get_storage(ctx), load_registry(setup), queue, job_type, payload,
            EnqueueOptions(max_attempts=max_attempts, delay=delay, job_id=job_id),
        )
        console.print(f"[green]Job {job_id} enqueued on '{queue}'[/green]")
    except (ValueError, StorageError) as e:
        fail(f"Error enqueueing job: {e}")


@cli.group()
def worker():
    """Run worker processes"""
    pass


@worker.command('start')
@click.option('--count', default=1, show_default=True, help='Number of workers to start')
@click.option('--queue', 'queues', multiple=True, help='Queue to poll, in priority order (repeatable)')
@click.option('--autoscale/--no-autoscale', default=True, show_default=True,
              help='Scale the pool to queue depth')
@click.option('--run-for', type=float, default=None, help='Drain and exit after this many seconds')
@click.option('--setup', default=None, help='module:function registering extra handlers')
@click.pass_context
def worker_start(ctx, count, queues, autoscale, run_for, setup):
    """Start workers and supervise them until interrupted"""
    config = ctx.obj["config"]
    if queues:
        config = config.model_copy(update={"queues": list(queues)})

    try:
        registry = load_registry(setup)
        registry.freeze()
        manager = WorkerManager(get_storage(ctx), registry, config)
    except (ImportError, AttributeError, StorageError) as e:
        fail(f"Error starting workers: {e}")

    stop_event = threading.Event()

    def handle_shutdown(signum, frame):
        console.print("\nShutting down workers gracefully...")
        stop_event.set()

    previous = signal.signal(signal.SIGTERM, handle_shutdown)
    timer = threading.Timer(run_for, stop_event.set) if run_for else None
    try:
        manager.start_workers(count)
        console.print(f"[green]Started {count} worker(s) on {', '.join(config.queues)}[/green]")
        if timer:
            timer.start()
        manager.run(stop_event, autoscale=autoscale)
    except KeyboardInterrupt:
        console.print("\nShutting down workers gracefully...")
        manager.stop_all()
    finally:
        if timer:
            timer.cancel()
        signal.signal(signal.SIGTERM, previous)

    stats = manager.get_stats()
    console.print(
        f"Workers stopped. Processed: {stats['total_processed']}, "
        f"succeeded: {stats['total_succeeded']}, failed: {stats['total_failed']}"
    )


@cli.command()
@click.option('--queue', default=None, help='Only count jobs of this queue')
@click.pass_context
def status(ctx, queue):
    """Show summary of all job states, live workers and alerts"""
    config = ctx.obj["config"]
    try:
        storage = get_storage(ctx)
        stats = storage.queue_stats(queue)
        heartbeats = storage.list_heartbeats()
        found = evaluate(storage, config.alerts, [queue] if queue else config.queues)
    except StorageError as e:
        fail(f"Error getting status: {e}")

    table = Table(title="Queue Status")
    table.add_column("State", style="cyan")
    table.add_column("Count", style="magenta")
    for state in JobStatus:
        table.add_row(state.value, str(stats[state.value]))
    console.print(table)

    console.print(f"Average processing time: [blue]{stats['avg_processing_time']:.2f}s[/blue]")
    now = time.time()
    live = [
        hb for hb in heartbeats
        if hb.is_healthy(config.worker.heartbeat_interval, config.worker.max_memory, now)
    ]
    console.print(f"\nLive Workers: [green]{len(live)}[/green]")

    found += check_worker_health(len(live), len(heartbeats), config.alerts)
    if not found:
        console.print("No alerts")
    for alert in found:
        color = "red" if alert.is_critical else "yellow"
        console.print(f"[{color}]{alert.level.upper()}: {alert.message}[/{color}]")


@cli.command('list')
@click.option('--state', type=click.Choice([s.value for s in JobStatus]),
              help='Filter jobs by state')
@click.option('--queue', default=None, help='Filter jobs by queue')
@click.option('--limit', type=int, default=None, help='Maximum number of jobs to show')
@click.pass_context
def list_jobs(ctx, state, queue, limit):
    """List jobs by state"""
    try:
        jobs = get_storage(ctx).list_jobs(
            status=JobStatus(state) if state else None, queue=queue, limit=limit
        )
    except StorageError as e:
        fail(f"Error listing jobs: {e}")

    if not jobs:
        console.print("[yellow]No jobs found[/yellow]")
        return

    table = Table(title=f"Jobs {f'in {state} state' if state else ''}")
    table.add_column("ID", style="cyan")
    table.add_column("Queue", style="magenta")
    table.add_column("Type", style="magenta")
    table.add_column("State", style="green")
    table.add_column("Attempts", style="yellow")
    table.add_column("Scheduled At", style="blue")
    table.add_column("Error", style="red")

    for job in jobs:
        error = job.error or ""
        table.add_row(
            job.id,
            job.queue,
            job.type,
            job.status.value,
            f"{job.attempts}/{job.max_attempts}",
            job.scheduled_at.strftime("%Y-%m-%d %H:%M:%S"),
            error[:50] + "..." if len(error) > 50 else error,
        )

    console.print(table)


@cli.command()
@click.pass_context
def workers(ctx):
    """Show worker heartbeats and health"""
    config = ctx.obj["config"]
    try:
        heartbeats = get_storage(ctx).list_heartbeats()
    except StorageError as e:
        fail(f"Error listing workers: {e}")

    if not heartbeats:
        console.print("[yellow]No live workers[/yellow]")
        return

    table = Table(title="Workers")
    table.add_column("Worker", style="cyan")
    table.add_column("Queues", style="magenta")
    table.add_column("Last Heartbeat", style="blue")
    table.add_column("Memory (MB)", style="yellow")
    table.add_column("Processed", style="green")
    table.add_column("Current Job")
    table.add_column("Health")

    now = datetime.now(timezone.utc).timestamp()
    for hb in heartbeats:
        healthy = hb.is_healthy(config.worker.heartbeat_interval, config.worker.max_memory, now)
        table.add_row(
            hb.worker_id,
            ", ".join(hb.queues),
            hb.received_at.strftime("%Y-%m-%d %H:%M:%S"),
            f"{hb.memory_usage / 1024 / 1024:.1f}",
            str(hb.jobs_processed),
            hb.current_job or "",
            "[green]healthy[/green]" if healthy else "[red]unhealthy[/red]",
        )
    console.print(table)


@cli.command()
@click.argument('job_id')
@click.pass_context
def retry(ctx, job_id):
    """Re-queue a permanently failed job as a new job"""
    try:
        new_id = get_storage(ctx).retry_failed(job_id)
    except StorageError as e:
        fail(f"Error retrying job: {e}")

    if new_id is None:
        fail(f"Job {job_id} not found or not failed (or already re-queued)")
    console.print(f"[green]Job {job_id} re-queued as {new_id}[/green]")


@cli.command('retry-failed')
@click.option('--queue', default=None, help='Only re-queue failed jobs of this queue')
@click.option('--limit', type=int, default=50, show_default=True, help='Maximum number of jobs to re-queue')
@click.pass_context
def retry_failed(ctx, queue, limit):
    """Re-queue failed jobs in bulk"""
    try:
        new_ids = get_storage(ctx).retry_failed_jobs(queue, limit)
    except StorageError as e:
        fail(f"Error retrying jobs: {e}")
    console.print(f"[green]Re-queued {len(new_ids)} job(s)[/green]")


@cli.command()
@click.argument('job_id')
@click.pass_context
def cancel(ctx, job_id):
    """Cancel a job that has not started yet"""
    try:
        cancelled = get_storage(ctx).cancel(job_id)
    except StorageError as e:
        fail(f"Error cancelling job: {e}")

    if not cancelled:
        fail(f"Job {job_id} not found or not waiting to run")
    console.print(f"[green]Job {job_id} cancelled[/green]")


@cli.command()
@click.option('--queue', default=None, help='Only clear this queue')
@click.confirmation_option(prompt='Delete all jobs that are not running?')
@click.pass_context
def clear(ctx, queue):
    """Delete every job that is not running"""
    try:
        removed = get_storage(ctx).clear(queue)
    except StorageError as e:
        fail(f"Error clearing jobs: {e}")
    console.print(f"[green]Removed {removed} job(s)[/green]")


@cli.command()
@click.pass_context
def reclaim(ctx):
    """Recover running jobs whose worker stopped heartbeating"""
    config = ctx.obj["config"]
    try:
        storage = get_storage(ctx)
        now = time.time()
        live = [
            hb.worker_id for hb in storage.list_heartbeats()
            if hb.is_healthy(config.worker.heartbeat_interval, config.worker.max_memory, now)
        ]
        reclaimed = storage.reclaim_expired(timedelta(seconds=config.lease_seconds()), live)
    except StorageError as e:
        fail(f"Error reclaiming jobs: {e}")

    console.print(f"[green]Reclaimed {len(reclaimed)} job(s)[/green]")
    for job_id in reclaimed:
        console.print(f"  {job_id}")


@cli.command()
@click.option('--days', type=float, default=7, show_default=True,
              help='Delete finished jobs older than this')
@click.pass_context
def cleanup(ctx, days):
    """Delete completed and failed jobs past retention"""
    try:
        removed = get_storage(ctx).cleanup(timedelta(days=days))
    except StorageError as e:
        fail(f"Error cleaning up: {e}")
    console.print(f"[green]Removed {removed} job(s)[/green]")


@cli.group()
def config():
    """Manage configuration"""
    pass


@config.command('get')
@click.argument('key', required=False)
@click.pass_context
def config_get(ctx, key):
    """Get a configuration value (all values without KEY)"""
    current = ctx.obj["config"]
    if not key:
        console.print_json(current.model_dump_json())
        return
    try:
        console.print(f"{key}: {json.dumps(get_value(current, key))}")
    except KeyError:
        fail(f"Configuration key '{key}' not found")


@config.command('set')
@click.argument('key')
@click.argument('value')
@click.pass_context
def config_set(ctx, key, value):
    """Set a configuration value"""
    try:
        updated = set_value(ctx.obj["config"], key, value)
    except KeyError:
        fail(f"Configuration key '{key}' not found")
    except ValueError as e:
        fail(str(e))

    save_config(updated, ctx.obj["config_path"])
    ctx.obj["config"] = updated
    console.print(f"[green]Set {key} to {json.dumps(get_value(updated, key))}[/green]")


def main():
    cli()


if __name__ == '__main__':
    main()
