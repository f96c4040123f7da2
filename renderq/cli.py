"""CLI interface for renderq."""

import sys
import threading
from typing import Optional
import click
from pydantic import ValidationError
from .errors import ConfigurationError, JobNotFoundError, QueueBusyError
from .events import JobFinished, JobProgress, JobStarted
from .history import HistoryStore
from .models import ALL_COMPS, Config, EmailSettings, JobSpec, JobStatus
from .notify import RenderNotifier, SmtpMailer
from .queue import RenderQueue
from .settings import Settings, configure_logging
from .storage import JsonFileStore
from .utils import format_duration, format_eta

CONFIG_KEY = "config"
EMAIL_KEY = "email_settings"

_CONFIG_FIELDS = {
    "renderer-path": "renderer_path",
    "estimate-frames": "estimate_frames",
    "history-limit": "history_limit",
    "output-log-limit": "output_log_limit",
}

_EMAIL_FIELDS = {
    "enabled": "enabled",
    "smtp": "smtp",
    "port": "port",
    "username": "username",
    "password": "password",
    "from": "sender",
    "to": "to",
}


class App:
    """Everything a command needs, wired from one data directory."""

    def __init__(self, data_dir: str):
        self.store = JsonFileStore(data_dir)

    def get_config(self) -> Config:
        return Config(**(self.store.get(CONFIG_KEY, {}) or {}))

    def set_config(self, config: Config) -> None:
        self.store.set(CONFIG_KEY, config.model_dump())

    def get_email_settings(self) -> EmailSettings:
        return EmailSettings(**(self.store.get(EMAIL_KEY, {}) or {}))

    def set_email_settings(self, settings: EmailSettings) -> None:
        self.store.set(EMAIL_KEY, settings.model_dump())

    def notifier(self) -> RenderNotifier:
        return RenderNotifier(
            remote=SmtpMailer(self.get_email_settings()),
            email_settings=self.get_email_settings,
        )

    def queue(self) -> RenderQueue:
        config = self.get_config()
        queue = RenderQueue(
            self.store,
            config=config,
            history=HistoryStore(self.store, limit=config.history_limit),
            notifier=self.notifier(),
        )
        queue.restore()
        return queue


pass_app = click.make_pass_decorator(App)


def _update_model(model, fields, key: str, value: str):
    if key not in fields:
        raise click.BadParameter(f"Unknown key: {key}. Choose from {', '.join(fields)}")
    data = model.model_dump()
    data[fields[key]] = value
    try:
        return type(model)(**data)
    except ValidationError as e:
        raise click.BadParameter(e.errors()[0]["msg"], param_hint=key)


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Log at INFO level")
@click.pass_context
def cli(ctx, verbose: bool):
    """renderq - Background render queue for aerender"""
    settings = Settings()
    configure_logging("INFO" if verbose else settings.log_level)
    ctx.obj = App(settings.data_dir)


@cli.command()
@click.argument("projects", nargs=-1, required=True)
@click.option("--name", help="Display name (defaults to the file name)")
@click.option("--comp", default=ALL_COMPS, show_default=True, help="Composition to render")
@click.option("--output", default="", help="Output file path")
@click.option("--render-settings", default="", help="Render settings template")
@click.option("--output-module", default="", help="Output module template")
@pass_app
def add(app: App, projects, name: Optional[str], comp: str, output: str, render_settings: str, output_module: str):
    """Add project files to the queue.

    Example:
        renderq add shot010.aep shot020.aep --comp Main
    """
    queue = app.queue()
    for path in projects:
        job_id = queue.enqueue(JobSpec(
            path=path,
            name=name,
            comp=comp,
            output=output,
            render_settings=render_settings,
            output_module=output_module,
        ))
        job = queue.get(job_id)
        estimate = f" (estimated {format_duration(job.estimate)})" if job.estimate is not None else ""
        click.echo(f"✓ Job {job_id} enqueued: {job.name}{estimate}")


@cli.command("list")
@click.option("--status", type=click.Choice([s.value for s in JobStatus]), help="Filter by status")
@click.option("--limit", default=20, help="Maximum jobs to display")
@pass_app
def list_jobs(app: App, status: Optional[str], limit: int):
    """List queued jobs.

    Example:
        renderq list --status pending
    """
    jobs = app.queue().jobs()
    if status:
        jobs = [job for job in jobs if job.status.value == status]
    jobs = jobs[:limit]

    if not jobs:
        click.echo("No jobs found")
        return

    click.echo(f"\n{'ID':<14} {'Status':<11} {'Progress':<9} {'Name':<30} {'Info':<30}")
    click.echo("-" * 96)
    for job in jobs:
        if job.status is JobStatus.COMPLETED:
            info = f"{format_duration(job.duration)}, {job.frames} frames"
        elif job.status is JobStatus.ERROR:
            info = (job.error or "")[:30]
        elif job.status is JobStatus.PENDING and job.estimate is not None:
            info = f"est. {format_duration(job.estimate)}"
        else:
            info = ""
        click.echo(f"{job.id:<14} {job.status.value:<11} {str(job.progress) + '%':<9} {job.name[:30]:<30} {info:<30}")
    click.echo()


@cli.command()
@click.argument("job_id")
@pass_app
def remove(app: App, job_id: str):
    """Remove a job from the queue, cancelling it if it is rendering."""
    queue = app.queue()
    try:
        job = queue.require(job_id)
    except JobNotFoundError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)
    queue.remove(job.id)
    click.echo(f"✓ Job {job_id} removed")


@cli.command()
@click.argument("job_id")
@pass_app
def show(app: App, job_id: str):
    """Show details of one job."""
    try:
        job = app.queue().require(job_id)
    except JobNotFoundError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)

    click.echo(f"\nJob {job.id}")
    click.echo(f"  Name:       {job.name}")
    click.echo(f"  Project:    {job.project.path}")
    click.echo(f"  Comp:       {job.options.comp}")
    if job.options.output:
        click.echo(f"  Output:     {job.options.output}")
    click.echo(f"  Status:     {job.status.value}")
    click.echo(f"  Progress:   {job.progress}%")
    if job.total_frames:
        click.echo(f"  Frame:      {job.current_frame}/{job.total_frames}")
    if job.status is JobStatus.RENDERING:
        click.echo(f"  ETA:        {format_eta(job.eta)}")
    if job.estimate is not None:
        click.echo(f"  Estimate:   {format_duration(job.estimate)}")
    if job.duration is not None:
        click.echo(f"  Duration:   {format_duration(job.duration)}")
    if job.status is JobStatus.COMPLETED:
        click.echo(f"  Frames:     {job.frames}")
    if job.error:
        click.echo(f"  Error:      {job.error}")
    if job.details:
        click.echo("  Details:")
        for line in job.details.rstrip().splitlines():
            click.echo(f"    {line}")
    click.echo()


@cli.command()
@click.option("--all", "clear_all", is_flag=True, help="Remove every job, not only finished ones")
@pass_app
def clear(app: App, clear_all: bool):
    """Remove finished jobs from the queue."""
    queue = app.queue()
    if clear_all:
        queue.clear()
        click.echo("✓ Queue cleared")
    else:
        click.echo(f"✓ Removed {queue.clear_finished()} finished job(s)")


@cli.command()
@pass_app
def start(app: App):
    """Render every pending job, one at a time.

    Press Ctrl-C to cancel the current render and stop.
    """
    queue = app.queue()
    names = {job.id: job.name for job in queue.jobs()}
    last_percent = {}

    def name_of(job_id):
        job = queue.get(job_id)
        return job.name if job else names.get(job_id, job_id)

    def on_update(event):
        if isinstance(event, JobStarted):
            click.echo(f"▶ Rendering {name_of(event.job_id)}")
        elif isinstance(event, JobProgress):
            if last_percent.get(event.job_id) != event.percent:
                last_percent[event.job_id] = event.percent
                frames = f" frame {event.current_frame}/{event.total_frames}" if event.total_frames else ""
                click.echo(f"  {event.percent:>3}%{frames}  {format_eta(event.eta)}")
        elif isinstance(event, JobFinished):
            name = name_of(event.job_id)
            if event.status is JobStatus.COMPLETED:
                click.echo(f"✓ {name} finished in {format_duration(event.duration)}")
            elif event.status is JobStatus.CANCELLED:
                click.echo(f"✗ {name} cancelled")
            else:
                click.echo(f"✗ {name}: {event.error}", err=True)

    queue.subscribe(on_update)
    outcome = {}

    def run():
        try:
            outcome["summary"] = queue.start_all()
        except (ConfigurationError, QueueBusyError) as e:
            outcome["error"] = e

    worker = threading.Thread(target=run, name="renderq-run")
    worker.start()
    try:
        while worker.is_alive():
            worker.join(timeout=0.5)
            # pick up adds and removes from other terminals, publish progress
            queue.persist()
    except KeyboardInterrupt:
        click.echo("\nStopping render queue...")
        queue.stop_all()
        worker.join()
    finally:
        queue.supervisor.cancel_all()

    if "error" in outcome:
        click.echo(f"✗ {outcome['error']}", err=True)
        sys.exit(1)

    summary = outcome["summary"]
    if not summary.rendered:
        click.echo("No pending jobs")
        return
    click.echo(
        f"\nRendered {summary.rendered} job(s) in {format_duration(summary.total_seconds)}: "
        f"{summary.succeeded} ok, {summary.failed} failed, {summary.cancelled} cancelled "
        f"({summary.success_rate}% success)"
    )


@cli.command()
@pass_app
def status(app: App):
    """Show queue status and statistics."""
    stats = app.queue().stats()
    config = app.get_config()

    click.echo("\n" + "=" * 50)
    click.echo("renderq Status")
    click.echo("=" * 50)
    click.echo(f"Total Jobs:     {stats['total']}")
    click.echo(f"  Pending:      {stats['pending']}")
    click.echo(f"  Rendering:    {stats['rendering']}")
    click.echo(f"  Completed:    {stats['completed']}")
    click.echo(f"  Error:        {stats['error']}")
    click.echo(f"  Cancelled:    {stats['cancelled']}")
    click.echo("\nConfiguration:")
    click.echo(f"  Renderer:     {config.renderer_path}")
    click.echo("=" * 50 + "\n")


@cli.command()
@click.argument("name")
@click.option("--frames", type=int, help="Frame count (defaults to estimate-frames)")
@pass_app
def estimate(app: App, name: str, frames: Optional[int]):
    """Estimate render time for a project from past renders."""
    config = app.get_config()
    history = HistoryStore(app.store, limit=config.history_limit)
    seconds = history.estimate(name, frames or config.estimate_frames)
    if seconds is None:
        click.echo(f"No render history for {name}")
    else:
        click.echo(f"{name}: ~{format_duration(seconds)} for {frames or config.estimate_frames} frames")


@cli.command()
@click.argument("name")
@pass_app
def history(app: App, name: str):
    """Show past render times for a project."""
    records = HistoryStore(app.store).records(name)
    if not records:
        click.echo(f"No render history for {name}")
        return
    click.echo(f"\n{'Finished':<20} {'Duration':<12} {'Frames':<8} {'Per frame':<10}")
    click.echo("-" * 52)
    for r in records:
        click.echo(
            f"{r.timestamp.strftime('%Y-%m-%d %H:%M:%S'):<20} {format_duration(r.duration):<12} "
            f"{r.frame_count:<8} {r.duration / r.frame_count:<10.2f}"
        )
    click.echo()


@cli.group()
def config():
    """Manage configuration"""
    pass


@config.command("show")
@pass_app
def config_show(app: App):
    """Show current configuration."""
    cfg = app.get_config()
    click.echo("\nCurrent Configuration:")
    for key, field in _CONFIG_FIELDS.items():
        click.echo(f"  {key + ':':<18} {getattr(cfg, field)}")
    click.echo()


@config.command("set")
@click.argument("key")
@click.argument("value")
@pass_app
def config_set(app: App, key: str, value: str):
    """Set a configuration value.

    Example:
        renderq config set renderer-path "/opt/ae/aerender"
    """
    app.set_config(_update_model(app.get_config(), _CONFIG_FIELDS, key, value))
    click.echo(f"✓ Configuration updated: {key} = {value}")


@cli.group()
def email():
    """Manage email notifications"""
    pass


@email.command("show")
@pass_app
def email_show(app: App):
    """Show email settings."""
    settings = app.get_email_settings()
    click.echo("\nEmail Settings:")
    for key, field in _EMAIL_FIELDS.items():
        value = getattr(settings, field)
        if field == "password" and value:
            value = "********"
        click.echo(f"  {key + ':':<10} {value}")
    click.echo()


@email.command("set")
@click.argument("key")
@click.argument("value")
@pass_app
def email_set(app: App, key: str, value: str):
    """Set an email setting.

    Example:
        renderq email set smtp smtp.example.com
        renderq email set enabled true
    """
    app.set_email_settings(_update_model(app.get_email_settings(), _EMAIL_FIELDS, key, value))
    click.echo(f"✓ Email setting updated: {key}")


@email.command("test")
@pass_app
def email_test(app: App):
    """Send a test email."""
    result = app.notifier().send_test()
    if result.success:
        click.echo("✓ Test email sent")
    else:
        click.echo(f"✗ Email test failed: {result.error}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    cli()
