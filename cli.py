# cli.py
import logging
import time

import click

from errors import JobNotFound, SchedulerError
from models import STATUSES
from publisher import LoggingPublisher
from settings import Settings
from storage import Storage
from submission import SubmissionGate

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


@click.group()
@click.option("--db", "db_path", default="postpup.db", envvar="POSTPUP_DB", show_default=True, help="SQLite job database")
@click.option("--log-level", default="INFO", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
@click.pass_context
def cli(ctx, db_path, log_level):
    """postpup - schedule social posts for later publication"""
    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    ctx.obj = {"db_path": db_path}


def open_store(ctx):
    store = Storage(ctx.obj["db_path"])
    ctx.call_on_close(store.close)
    return store


def fmt_job(job):
    rr = job.repeat_rule or "-"
    return (f"{job.id} | draft={job.draft_reference} | status={job.status} | at={job.scheduled_at_utc} "
            f"| tz={job.time_zone} | repeat={rr} | attempts={job.attempts}/{job.max_retries}")


# ---------------- Schedule ----------------
@cli.command()
@click.option("--draft", "draft_reference", required=True, help="Draft to publish")
@click.option("--at", "scheduled_at", required=True, help="UTC instant, e.g. 2025-01-01T00:00:00Z")
@click.option("--tz", "time_zone", default="UTC", show_default=True, help="Originating time zone (display only)")
@click.option("--repeat", "repeat_rule", default=None, help="'every 1 day' or a cron expression")
@click.pass_context
def schedule(ctx, draft_reference, scheduled_at, time_zone, repeat_rule):
    """Schedule a draft for publication"""
    store = open_store(ctx)
    gate = SubmissionGate(store, Settings.load(store))
    try:
        result = gate.submit(draft_reference, scheduled_at, time_zone, repeat_rule)
    except SchedulerError as e:
        raise click.ClickException(f"{type(e).__name__}: {e}")
    if "jobId" in result:
        click.echo(f"✅ Job {result['jobId']} {result['status']}.")
    else:
        click.echo(f"⏸ {result['status']}: nothing enqueued.")


# ---------------- List Jobs ----------------
@cli.command(name="list")
@click.option("--status", default=None, type=click.Choice(STATUSES), help="Filter jobs by status")
@click.pass_context
def list_jobs(ctx, status):
    """List scheduled jobs"""
    jobs = open_store(ctx).list_jobs(status=status)
    if not jobs:
        click.echo("No jobs found.")
        return
    for job in jobs:
        click.echo(fmt_job(job))


# ---------------- Status ----------------
@cli.command()
@click.pass_context
def status(ctx):
    """Show summary of job statuses"""
    counts = open_store(ctx).counts_by_status()
    click.echo("📊 Job Status Summary:")
    for name in STATUSES:
        click.echo(f"  {name}: {counts[name]}")


@cli.command()
@click.argument("job_id")
@click.pass_context
def show(ctx, job_id):
    """Show details of a single job"""
    try:
        job = open_store(ctx).get(job_id)
    except JobNotFound as e:
        raise click.ClickException(str(e))
    click.echo(f"🔎 Job {job.id}")
    for key, value in job.to_dict().items():
        if key != "id":
            click.echo(f"  {key}: {value if value is not None else '-'}")


@cli.command()
@click.argument("job_id")
@click.pass_context
def cancel(ctx, job_id):
    """Cancel a job (no-op if it already finished)"""
    try:
        job = open_store(ctx).cancel(job_id)
    except JobNotFound as e:
        raise click.ClickException(str(e))
    click.echo(f"🛑 Job {job.id} is {job.status}.")


# ---------------- Worker ----------------
@cli.command()
@click.option("--count", default=None, type=int, help="Number of workers to start (uses config if set)")
@click.option("--lease-seconds", default=None, type=int, help="Lease duration to prevent double-claims (uses config if set)")
@click.option("--backoff-base", default=None, type=int, help="Exponential backoff base for retries (uses config if set)")
@click.option("--poll-interval", default=None, type=float, help="Idle polling interval in seconds (uses config if set)")
@click.pass_context
def worker(ctx, count, lease_seconds, backoff_base, poll_interval):
    """Start workers that publish due posts; Ctrl+C drains and stops them"""
    from worker import WorkerPool

    with Storage(ctx.obj["db_path"]) as store:
        settings = Settings.load(store)
        if lease_seconds is not None:
            settings.lease_seconds = lease_seconds
        if backoff_base is not None:
            settings.backoff_base = backoff_base
        if poll_interval is not None:
            settings.poll_interval = poll_interval

        with WorkerPool(store, LoggingPublisher(), settings, count=count) as pool:
            click.echo(f"🚀 {pool.count} worker(s) running. Press Ctrl+C to stop workers gracefully.")
            try:
                while True:
                    time.sleep(0.5)
            except KeyboardInterrupt:
                click.echo("\n🛑 Stopping workers ...")
    click.echo("✅ Workers stopped cleanly.")


# ---------------- Config management ----------------
@cli.group()
def config():
    """Runtime configuration for workers and defaults"""
    pass


@config.command("set")
@click.argument("key", type=click.Choice(Settings.keys()))
@click.argument("value")
@click.pass_context
def config_set(ctx, key, value):
    """Set a config key to a value"""
    open_store(ctx).set_config(key, value)
    click.echo(f"🛠️ Config '{key}' set to '{value}'.")


@config.command("get")
@click.argument("key")
@click.pass_context
def config_get(ctx, key):
    """Get a config key, falling back to the effective setting"""
    store = open_store(ctx)
    value = store.get_config(key)
    if value is not None:
        click.echo(f"{key}={value}")
    elif key in Settings.keys():
        click.echo(f"{key}={getattr(Settings.load(store), key)} (default)")
    else:
        click.echo(f"{key} not set")


@config.command("list")
@click.pass_context
def config_list(ctx):
    """List all config keys"""
    rows = open_store(ctx).list_config()
    if not rows:
        click.echo("No config keys set.")
        return
    for row in rows:
        click.echo(f"{row['key']}={row['value']} (updated_at={row['updated_at']})")


# ---------------- Rescue operations ----------------
@cli.group()
def rescue():
    """Recovery tools for stuck jobs"""
    pass


@rescue.command("leases")
@click.pass_context
def rescue_leases(ctx):
    """Return jobs with expired leases to pending"""
    ids = open_store(ctx).release_expired()
    if not ids:
        click.echo("No expired leases found.")
        return
    click.echo(f"🔧 Cleared leases and returned {len(ids)} job(s) to pending: {', '.join(ids)}")


# ---------------- HTTP ----------------
@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=5000, type=int, show_default=True)
@click.pass_context
def serve(ctx, host, port):
    """Run the HTTP API"""
    import uvicorn

    from dashboard import create_app

    with Storage(ctx.obj["db_path"]) as store:
        app = create_app(store, SubmissionGate(store, Settings.load(store)))
        uvicorn.run(app, host=host, port=port)


# ---------------- Entrypoint ----------------
if __name__ == "__main__":
    cli()
