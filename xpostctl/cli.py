"""CLI interface for xpostctl."""

import asyncio
import importlib
import json
import logging
import sys
from datetime import datetime
from typing import Optional, Tuple
import click
from pydantic import ValidationError as PydanticValidationError
from .automation import AutomationFactory, dry_run_factory
from .channels import ENTRY_URLS
from .errors import XPostError
from .models import ALL_CHANNELS, Article, PublishAction
from .orchestrator import Orchestrator
from .protocol import JobBroadcast, StartJobRequest
from .runtime import ClientInbox, LocalRuntime, is_settled
from .settings import get_settings
from .storage import JobStore

CLIENT_HANDLE = "cli"

# Global store instance
_store: Optional[JobStore] = None


def get_store() -> JobStore:
    """Get or create store instance."""
    global _store
    if _store is None:
        _store = JobStore(get_settings().data_dir)
    return _store


def _fmt_time(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


def _load_factory(target: Optional[str], delay: float) -> AutomationFactory:
    """Resolve --automation 'package.module:callable' or fall back to a dry run."""
    if not target:
        return dry_run_factory(delay)
    module_name, _, attr = target.partition(":")
    if not attr:
        raise click.BadParameter("expected 'module:callable'", param_hint="--automation")
    try:
        return getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise click.BadParameter(str(e), param_hint="--automation") from e


def _echo_broadcast(message: JobBroadcast) -> None:
    click.echo(f"\n[{message.job_id[:8]} rev {message.revision}]")
    for channel_id in message.channels:
        state = message.state[channel_id]
        line = f"  {channel_id.value:<20} {state.status.value:<13} {state.stage.value:<15}"
        if state.user_message:
            line += f" {state.user_message}"
        click.echo(line)
    if message.stopped_at:
        click.echo(f"  stopped at {_fmt_time(message.stopped_at)}")


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Log at INFO level")
def cli(verbose: bool):
    """xpostctl - Cross-post one article to many platforms"""
    level = logging.INFO if verbose else get_settings().log_level.upper()
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@cli.command()
@click.argument("article_json")
@click.option("--action", type=click.Choice([a.value for a in PublishAction]), default="draft", show_default=True)
@click.option("--channel", "-c", "channels", multiple=True, type=click.Choice([c.value for c in ALL_CHANNELS]),
              help="Channel to publish to (repeatable, default: all)")
@click.option("--focus", type=click.Choice([c.value for c in ALL_CHANNELS]), help="Channel opened in the foreground")
@click.option("--automation", help="Automation factory as 'module:callable' (default: dry run)")
@click.option("--delay", default=0.1, help="Per-stage delay of the dry run, in seconds")
@click.option("--timeout", default=300.0, help="Stop the job if it has not settled after this many seconds")
def publish(article_json: str, action: str, channels: Tuple[str, ...], focus: Optional[str],
            automation: Optional[str], delay: float, timeout: float):
    """Run a publish job in this process and print every broadcast.

    Example:
        xpostctl publish '{"title":"T","contentHtml":"<p>x</p>","sourceUrl":"https://x"}' -c csdn -c sspai
    """
    try:
        article = Article.model_validate(json.loads(article_json))
    except json.JSONDecodeError as e:
        click.echo(f"✗ Invalid JSON: {e}", err=True)
        sys.exit(1)
    except PydanticValidationError as e:
        click.echo(f"✗ Invalid article: {e}", err=True)
        sys.exit(1)

    request = StartJobRequest(
        action=PublishAction(action),
        focus_channel=focus,
        channels=list(channels),
        article=article,
    )
    factory = _load_factory(automation, delay)

    try:
        job_id, final = asyncio.run(_run_job(get_store(), request, factory, timeout))
    except XPostError as e:
        click.echo(f"✗ Error: {e}", err=True)
        sys.exit(1)

    if final is None or final.stopped_at:
        click.echo(f"\n✗ Job {job_id} stopped before settling", err=True)
        sys.exit(1)
    click.echo(f"\n✓ Job {job_id} settled")


async def _run_job(store: JobStore, request: StartJobRequest, factory: AutomationFactory,
                   timeout: float, sweep_interval: float = 600.0) -> Tuple[str, Optional[JobBroadcast]]:
    inbox = ClientInbox()
    runtime = LocalRuntime(factory, poll_interval=store.get_config().stop_poll_interval)
    orchestrator = Orchestrator(store, runtime, runtime, inbox)
    dispatcher = runtime.attach(orchestrator)
    await orchestrator.sweep()

    response = await dispatcher.handle(request, sender=CLIENT_HANDLE)
    if not response.success:
        raise XPostError(response.error)
    job_id = response.job_id

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    final = inbox.latest.get(job_id)
    housekeeping = asyncio.create_task(orchestrator.housekeeping(sweep_interval))
    try:
        while final is None or not is_settled(final):
            remaining = deadline - loop.time()
            if remaining <= 0:
                click.echo(f"\nJob {job_id} did not settle within {timeout}s, stopping it", err=True)
                await orchestrator.request_stop(job_id)
                final = inbox.latest.get(job_id)
                break
            try:
                message = await asyncio.wait_for(inbox.queue.get(), remaining)
            except asyncio.TimeoutError:
                continue
            _echo_broadcast(message)
            final = inbox.latest.get(job_id)
    finally:
        housekeeping.cancel()
        await runtime.close()
    return job_id, final


@cli.command()
def status():
    """Show stored job and channel statistics.

    Example:
        xpostctl status
    """
    store = get_store()
    stats = store.get_stats()
    config = store.get_config()

    click.echo("\n" + "=" * 50)
    click.echo("xpostctl Status")
    click.echo("=" * 50)
    click.echo(f"Jobs:            {stats['jobs']}")
    click.echo(f"  Stopped:       {stats['stopped']}")
    click.echo("Channels:")
    click.echo(f"  Not started:   {stats['not_started']}")
    click.echo(f"  Running:       {stats['running']}")
    click.echo(f"  Success:       {stats['success']}")
    click.echo(f"  Failed:        {stats['failed']}")
    click.echo(f"  Waiting user:  {stats['waiting_user']}")
    click.echo("\nConfiguration:")
    click.echo(f"  Job TTL:       {config.job_ttl_seconds}s")
    click.echo(f"  Max jobs:      {config.max_jobs}")
    click.echo("=" * 50 + "\n")


@cli.command(name="list")
@click.option("--limit", default=10, help="Maximum jobs to display")
def list_jobs(limit: int):
    """List stored jobs, newest first.

    Example:
        xpostctl list --limit 20
    """
    jobs = get_store().list_jobs()[:limit]

    if not jobs:
        click.echo("No jobs found")
        return

    click.echo(f"\n{'ID':<34} {'Action':<8} {'Channels':<9} {'Created':<20} {'Stopped':<20}")
    click.echo("-" * 94)
    for job in jobs:
        click.echo(
            f"{job.job_id:<34} {job.action.value:<8} {len(job.channels):<9} "
            f"{_fmt_time(job.created_at):<20} {_fmt_time(job.stopped_at):<20}"
        )
    click.echo()


@cli.command()
@click.argument("job_id")
def show(job_id: str):
    """Show a job and the state of each of its channels.

    Example:
        xpostctl show 3f2c...
    """
    store = get_store()
    try:
        job = store.get_job(job_id)
        states = store.get_state(job_id)
    except XPostError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)

    click.echo(f"\nJob:      {job.job_id}")
    click.echo(f"Title:    {job.article.title}")
    click.echo(f"Action:   {job.action.value}")
    click.echo(f"Created:  {_fmt_time(job.created_at)}")
    click.echo(f"Stopped:  {_fmt_time(job.stopped_at)}")
    click.echo(f"\n{'Channel':<20} {'Status':<13} {'Stage':<15} {'Message'}")
    click.echo("-" * 70)
    for channel_id in job.channels:
        state = states.get(channel_id)
        if state is None:
            continue
        click.echo(
            f"{channel_id.value:<20} {state.status.value:<13} {state.stage.value:<15} {state.user_message or ''}"
        )
        if state.user_suggestion:
            click.echo(f"{'':<50}→ {state.user_suggestion}")
    click.echo()


@cli.command()
@click.argument("job_id")
def stop(job_id: str):
    """Stop a job. Workers of this job that are no longer reachable are logged.

    Example:
        xpostctl stop 3f2c...
    """
    store = get_store()
    runtime = LocalRuntime(dry_run_factory())
    orchestrator = Orchestrator(store, runtime, runtime)
    runtime.attach(orchestrator)

    try:
        stopped = asyncio.run(orchestrator.request_stop(job_id))
    except XPostError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)

    if stopped:
        click.echo(f"✓ Job {job_id} stopped")
    else:
        click.echo(f"✓ Job {job_id} was already stopped")


@cli.command()
def sweep():
    """Remove jobs older than the configured TTL.

    Example:
        xpostctl sweep
    """
    removed = get_store().sweep()
    click.echo(f"✓ Removed {removed} expired job(s)")


@cli.command()
def channels():
    """List supported channels and their entry pages."""
    for channel_id in ALL_CHANNELS:
        click.echo(f"{channel_id.value:<20} {ENTRY_URLS[channel_id]}")


@cli.group()
def config():
    """Manage configuration"""
    pass


@config.command(name="show")
def config_show():
    """Show current configuration.

    Example:
        xpostctl config show
    """
    cfg = get_store().get_config()

    click.echo("\nCurrent Configuration:")
    click.echo(f"  job-ttl:            {cfg.job_ttl_seconds} seconds")
    click.echo(f"  max-jobs:           {cfg.max_jobs}")
    click.echo(f"  stop-poll-interval: {cfg.stop_poll_interval} seconds")
    click.echo()


@config.command(name="set")
@click.argument("key")
@click.argument("value")
def config_set(key: str, value: str):
    """Set a configuration value.

    Example:
        xpostctl config set max-jobs 50
        xpostctl config set job-ttl 3600
    """
    store = get_store()
    cfg = store.get_config()

    try:
        if key == "job-ttl":
            cfg.job_ttl_seconds = int(value)
        elif key == "max-jobs":
            cfg.max_jobs = int(value)
        elif key == "stop-poll-interval":
            cfg.stop_poll_interval = float(value)
        else:
            click.echo(f"✗ Unknown config key: {key}", err=True)
            sys.exit(1)

        cfg = cfg.model_validate(cfg.model_dump())
        store.set_config(cfg)
        click.echo(f"✓ Configuration updated: {key} = {value}")
    except ValueError as e:
        click.echo(f"✗ Invalid value: {e}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    cli()
