import asyncio
import json
import logging
import sys

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from ..config.settings import coerce_value, execution_defaults, load_config, save_config
from ..models.cost import estimate_cost
from ..models.errors import BatchError
from ..models.job import ItemStatus, JobStatus
from ..storage.database import Storage
from ..workers.lifecycle import JobController
from ..workers.processors import PROCESSORS

console = Console()


def fail(message):
    console.print(message, style="red", markup=False)
    sys.exit(1)


def truncate(text, width=50):
    if not text:
        return ""
    return text[:width] + "..." if len(text) > width else text


def fmt_time(value):
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


class AppContext:
    """Lazily built store and controller shared by the commands of one invocation"""

    def __init__(self, db_path=None):
        self.db_path = db_path
        self._storage = None
        self._controller = None

    @property
    def config(self):
        return load_config()

    @property
    def storage(self):
        if self._storage is None:
            self._storage = Storage(self.db_path or self.config.get("db-path"))
        return self._storage

    @property
    def controller(self):
        if self._controller is None:
            config = self.config
            self._controller = JobController(
                self.storage,
                lease_seconds=config["lease-seconds"],
                pause_poll_interval=config["pause-poll-interval"],
                defaults=execution_defaults(config),
            )
        return self._controller


@click.group()
@click.option('--db', 'db_path', default=None, help='Path to the job database')
@click.option('--verbose', '-v', is_flag=True, help='Log engine activity')
@click.pass_context
def cli(ctx, db_path, verbose):
    """tunebatch - batch content-generation job runner"""
    if verbose:
        logging.basicConfig(level=logging.INFO, format="%(message)s", handlers=[RichHandler(console=console)])
    ctx.obj = AppContext(db_path)


@cli.command()
@click.argument('name')
@click.option('--type', 'job_type', required=True, help='Job type, e.g. generation or validation')
@click.option('--items', 'items_file', required=True, type=click.File('r'),
              help='JSON array of item inputs, or one JSON value per line')
@click.option('--concurrency', type=int, help='Parallel workers')
@click.option('--retry-attempts', type=int, help='Extra attempts after the first')
@click.option('--retry-delay-ms', type=int, help='Base backoff between attempts')
@click.option('--delay-between-items', type=int, help='Pause between items, in ms')
@click.option('--stop-on-error/--no-stop-on-error', default=None, help='Abort on the first failed item')
@click.pass_obj
def create(app, name, job_type, items_file, concurrency, retry_attempts, retry_delay_ms,
           delay_between_items, stop_on_error):
    """Create a pending job from a file of item inputs"""
    raw = items_file.read()
    try:
        stripped = raw.strip()
        if stripped.startswith('['):
            items = json.loads(stripped)
        else:
            items = [json.loads(line) for line in raw.splitlines() if line.strip()]
    except ValueError as e:
        fail(f"Could not parse items: {e}")

    overrides = {
        "concurrency": concurrency,
        "retry_attempts": retry_attempts,
        "retry_delay_ms": retry_delay_ms,
        "delay_between_items": delay_between_items,
        "stop_on_error": stop_on_error,
    }
    overrides = {k: v for k, v in overrides.items() if v is not None}

    try:
        job, created = app.controller.create_job(name, job_type, items, overrides)
    except BatchError as e:
        fail(f"Error creating job: {e}")

    console.print(f"[green]Job {job.id} created with {len(created)} items "
                  f"(estimated cost {job.estimated_cost})[/green]")


@cli.command()
@click.argument('job_id')
@click.option('--processor', type=click.Choice(sorted(PROCESSORS)), default='echo', help='Item processor to use')
@click.option('--concurrency', type=int, help='Override the stored concurrency for this run')
@click.pass_obj
def run(app, job_id, processor, concurrency):
    """Run a pending job to completion"""
    overrides = {"concurrency": concurrency} if concurrency is not None else None
    tuning = app.config.get("tuning")

    def show_progress(progress):
        console.print(
            f"[cyan]{progress.current_item or progress.status.value}[/cyan] "
            f"{progress.processed + progress.failed}/{progress.total} "
            f"([green]{progress.processed} ok[/green], [red]{progress.failed} failed[/red])"
        )

    try:
        result = asyncio.run(app.controller.start(
            job_id, PROCESSORS[processor](), tuning_context=tuning,
            config_overrides=overrides, progress_callback=show_progress,
        ))
    except BatchError as e:
        fail(f"Error running job: {e}")

    color = "green" if result.job.status == JobStatus.COMPLETED else "red"
    summary = result.summary
    console.print(
        f"[{color}]Job {job_id} {result.job.status.value}: {summary.completed} completed, "
        f"{summary.failed} failed, {summary.skipped} skipped in {summary.total_processing_time_ms} ms[/{color}]"
    )


@cli.command()
@click.argument('job_id')
@click.pass_obj
def pause(app, job_id):
    """Stop a running job from claiming new items"""
    try:
        app.controller.pause(job_id)
    except BatchError as e:
        fail(f"Error pausing job: {e}")
    console.print(f"[green]Job {job_id} paused[/green]")


@cli.command()
@click.argument('job_id')
@click.pass_obj
def resume(app, job_id):
    """Resume a paused job"""
    try:
        job = app.controller.resume(job_id)
    except BatchError as e:
        fail(f"Error resuming job: {e}")
    if job.status == JobStatus.PENDING:
        console.print(f"[yellow]Job {job_id} requeued; run it again to continue[/yellow]")
    else:
        console.print(f"[green]Job {job_id} resumed[/green]")


@cli.command()
@click.argument('job_id')
@click.pass_obj
def cancel(app, job_id):
    """Cancel a running or paused job"""
    try:
        app.controller.cancel(job_id)
    except BatchError as e:
        fail(f"Error cancelling job: {e}")
    console.print(f"[green]Job {job_id} cancelled[/green]")


@cli.command()
@click.pass_obj
def status(app):
    """Show job counts by status"""
    try:
        stats = app.storage.get_job_stats()
    except BatchError as e:
        fail(f"Error getting status: {e}")

    table = Table(title="Batch Jobs")
    table.add_column("Status", style="cyan")
    table.add_column("Count", style="magenta")
    for state, count in stats["by_status"].items():
        table.add_row(state, str(count))
    console.print(table)
    console.print(f"\nTotal jobs: [green]{stats['total']}[/green]")


@cli.command('list')
@click.option('--status', 'state', type=click.Choice([s.value for s in JobStatus]), help='Filter jobs by status')
@click.option('--type', 'job_type', help='Filter jobs by type')
@click.option('--limit', default=50, help='Maximum number of jobs to show')
@click.option('--offset', default=0, help='Number of jobs to skip')
@click.pass_obj
def list_jobs(app, state, job_type, limit, offset):
    """List jobs, newest first"""
    try:
        jobs, total = app.storage.list_jobs(
            status=JobStatus(state) if state else None, job_type=job_type, limit=limit, offset=offset,
        )
    except BatchError as e:
        fail(f"Error listing jobs: {e}")

    if not jobs:
        console.print("[yellow]No jobs found[/yellow]")
        return

    table = Table(title=f"Jobs ({len(jobs)} of {total})")
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="magenta")
    table.add_column("Type")
    table.add_column("Status", style="green")
    table.add_column("Progress", style="yellow")
    table.add_column("Created At", style="blue")
    for job in jobs:
        table.add_row(
            job.id,
            escape(truncate(job.name)),
            job.type,
            job.status.value + (" (cancelled)" if job.is_cancelled else ""),
            f"{job.processed_items}+{job.failed_items}/{job.total_items}",
            fmt_time(job.created_at),
        )
    console.print(table)


@cli.command()
@click.argument('job_id')
@click.option('--status', 'state', type=click.Choice([s.value for s in ItemStatus]), help='Only show items in this status')
@click.pass_obj
def show(app, job_id, state):
    """Show one job and its items"""
    try:
        job, _ = app.storage.get_job(job_id)
        items, _ = app.storage.list_items(job_id, status=ItemStatus(state) if state else None)
    except BatchError as e:
        fail(f"Error showing job: {e}")

    console.print(f"[bold]{escape(job.name)}[/bold] ({escape(job.type)}) [cyan]{job.status.value}[/cyan]")
    console.print(f"Processed {job.processed_items}, failed {job.failed_items}, total {job.total_items}")
    console.print(f"Estimated cost {job.estimated_cost}, actual cost {job.actual_cost}")
    console.print(f"Started {fmt_time(job.started_at)}, completed {fmt_time(job.completed_at)}")
    for line in job.error_log:
        console.print(line, style="red", markup=False)

    table = Table(title="Items")
    table.add_column("#", style="cyan")
    table.add_column("Status", style="green")
    table.add_column("Time (ms)", style="yellow")
    table.add_column("Error", style="red")
    for item in items:
        table.add_row(
            str(item.sequence_number),
            item.status.value,
            str(item.processing_time_ms) if item.processing_time_ms is not None else "-",
            escape(truncate(item.error_message)),
        )
    console.print(table)


@cli.command()
@click.argument('job_type')
@click.argument('item_count', type=int)
def estimate(job_type, item_count):
    """Estimate the cost of a job"""
    try:
        result = estimate_cost(job_type, item_count)
    except BatchError as e:
        fail(str(e))
    console.print(f"{job_type} x {item_count}: [green]{result.estimated_cost:.2f}[/green] "
                  f"({result.cost_breakdown['cost_per_item']} per item)")


@cli.command()
@click.pass_obj
def recover(app):
    """Requeue jobs left running or paused by a runner that went away"""
    try:
        recovered = app.controller.recover_stale_jobs()
    except BatchError as e:
        fail(f"Error recovering jobs: {e}")
    if not recovered:
        console.print("[yellow]No stale jobs[/yellow]")
        return
    for job_id in recovered:
        console.print(f"[green]Job {job_id} requeued[/green]")


@cli.command()
@click.argument('job_id')
@click.pass_obj
def delete(app, job_id):
    """Delete a job and its items"""
    try:
        job = app.storage.get_job_record(job_id)
        if job.status == JobStatus.RUNNING:
            fail(f"Job {job_id} is running; cancel it first")
        app.storage.delete_job(job_id)
    except BatchError as e:
        fail(f"Error deleting job: {e}")
    console.print(f"[green]Job {job_id} deleted[/green]")


@cli.group()
def config():
    """Manage configuration"""
    pass


@config.command('get')
@click.argument('key')
def config_get(key):
    """Get a configuration value"""
    value = load_config().get(key)
    if value is None:
        console.print(f"[yellow]Configuration key '{key}' not found[/yellow]")
    else:
        console.print(f"{key}: {json.dumps(value)}")


@config.command('set')
@click.argument('key')
@click.argument('value')
def config_set(key, value):
    """Set a configuration value"""
    current = load_config()
    current[key] = coerce_value(value)
    save_config(current)
    console.print(f"[green]Set {key} to {current[key]}[/green]")


if __name__ == '__main__':
    cli()
