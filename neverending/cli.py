import click
from pathlib import Path

from rich.console import Console
from rich.table import Table

from . import __version__
from .config import Config
from .errors import NeverendingError
from .models import Checkpoint, CharacterConnection, FeatureFlags, Pacing, Tone, WorkStatus
from .state_machine import WorkStateMachine
from .utils.logger import setup_logger
from .utils.progress import watch_work

console = Console()


def _machine(ctx: click.Context) -> WorkStateMachine:
    if "machine" not in ctx.obj:
        ctx.obj["machine"] = WorkStateMachine.from_config(ctx.obj["config"])
    return ctx.obj["machine"]


def _print_status(status: WorkStatus):
    table = Table(show_header=False, box=None)
    table.add_row("work", status.work_id)
    table.add_row("lifecycle", status.lifecycle.value)
    table.add_row("step", status.step.value)
    if status.checkpoint:
        table.add_row("checkpoint", status.checkpoint.value)
    if status.batch_start:
        table.add_row(
            "batch",
            f"{status.batch_start}-{status.batch_end} "
            f"({status.chapters_completed_in_batch}/{status.batch_end - status.batch_start + 1} done)",
        )
    table.add_row("chapters", str(status.chapters_generated))
    if status.failure_reason:
        table.add_row("failure", f"[red]{status.failure_reason}[/red]")
    console.print(table)


def _follow(ctx: click.Context, status: WorkStatus, detach: bool) -> WorkStatus:
    if detach or not status.step.is_generating:
        return status
    machine = _machine(ctx)
    return watch_work(
        lambda: machine.get_status(status.work_id),
        lambda: machine.is_running(status.work_id),
    )


@click.group()
@click.option('--config', '-c', type=click.Path(), default='config.yaml',
              help='Path to configuration file')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose logging')
@click.pass_context
def cli(ctx: click.Context, config: str, verbose: bool):
    """Neverending - serialized fiction, twelve chapters at a time."""
    ctx.ensure_object(dict)

    config_path = Path(config)
    if "config" not in ctx.obj:
        ctx.obj['config'] = Config.from_yaml(config_path) if config_path.exists() else Config()

    log_level = "DEBUG" if verbose else ctx.obj['config'].log_level
    logger = setup_logger(log_level, ctx.obj['config'].log_file)
    ctx.obj['logger'] = logger

    logger.debug(f"Neverending v{__version__}")
    if config_path.exists():
        logger.debug(f"Config loaded from: {config_path}")


@cli.command()
@click.option('--premise', '-p', required=True, help='Story premise')
@click.option('--title', '-t', default='', help='Working title')
@click.option('--reader', 'reader_id', default=None, help='Reader id, for learned preferences')
@click.option('--no-ledger', is_flag=True, help='Disable the character ledger')
@click.option('--no-voice-review', is_flag=True, help='Disable voice review and repair')
@click.option('--no-preferences', is_flag=True, help='Disable learned reader preferences')
@click.option('--no-corrections', is_flag=True, help='Disable checkpoint course corrections')
@click.pass_context
def create(ctx: click.Context, premise: str, title: str, reader_id: str, no_ledger: bool,
           no_voice_review: bool, no_preferences: bool, no_corrections: bool):
    """Create a new work."""
    flags = FeatureFlags(
        character_ledger=not no_ledger,
        voice_review=not no_voice_review,
        adaptive_preferences=not no_preferences,
        course_corrections=not no_corrections,
    )
    try:
        work = _machine(ctx).create_work(premise, title=title, reader_id=reader_id, flags=flags)
    except NeverendingError as e:
        raise click.ClickException(str(e))
    click.echo(work.id)


@cli.command()
@click.argument('work_id')
@click.option('--detach', is_flag=True, help='Return immediately instead of following the batch')
@click.pass_context
def start(ctx: click.Context, work_id: str, detach: bool):
    """Start generating chapters 1-3."""
    try:
        status = _follow(ctx, _machine(ctx).trigger_initial(work_id), detach)
    except NeverendingError as e:
        raise click.ClickException(str(e))
    _print_status(status)


@cli.command()
@click.argument('work_id')
@click.option('--checkpoint', type=click.Choice([c.value for c in Checkpoint]), required=True)
@click.option('--pacing', type=click.Choice([p.value for p in Pacing]), required=True)
@click.option('--tone', type=click.Choice([t.value for t in Tone]), required=True)
@click.option('--character', type=click.Choice([c.value for c in CharacterConnection]), required=True)
@click.option('--notes', default=None, help='Free-text note for the writer')
@click.option('--detach', is_flag=True, help='Return immediately instead of following the batch')
@click.pass_context
def feedback(ctx: click.Context, work_id: str, checkpoint: str, pacing: str, tone: str,
             character: str, notes: str, detach: bool):
    """Submit checkpoint feedback and start the next batch."""
    try:
        status = _machine(ctx).submit_feedback(work_id, checkpoint, pacing, tone, character, notes)
        status = _follow(ctx, status, detach)
    except NeverendingError as e:
        raise click.ClickException(str(e))
    _print_status(status)


@cli.command()
@click.argument('work_id')
@click.pass_context
def status(ctx: click.Context, work_id: str):
    """Show where a work is."""
    try:
        _print_status(_machine(ctx).get_status(work_id))
    except NeverendingError as e:
        raise click.ClickException(str(e))


@cli.command()
@click.argument('work_id')
@click.option('--full', is_flag=True, help='Print chapter text')
@click.pass_context
def chapters(ctx: click.Context, work_id: str, full: bool):
    """List the persisted chapters of a work."""
    machine = _machine(ctx)
    try:
        machine.store.get_work(work_id)
    except NeverendingError as e:
        raise click.ClickException(str(e))

    items = machine.store.list_chapters(work_id)
    if full:
        for ch in items:
            click.echo(f"\n# Chapter {ch.number}: {ch.title}\n")
            click.echo(ch.content)
        return

    table = Table("#", "title", "words", "score", "regens", "repaired")
    for ch in items:
        score = f"{ch.quality_review.weighted_score:.2f}" if ch.quality_review else "-"
        table.add_row(
            str(ch.number), ch.title, str(ch.word_count), score,
            str(ch.regeneration_count), "yes" if ch.repair_applied else "",
        )
    console.print(table)


@cli.command()
@click.option('--wait/--no-wait', default=True, help='Follow resumed batches until they stop')
@click.pass_context
def resume(ctx: click.Context, wait: bool):
    """Relaunch batches interrupted by a restart."""
    machine = _machine(ctx)
    resumed = machine.resume_interrupted()
    logger = ctx.obj['logger']
    if not resumed:
        logger.info("Nothing to resume")
        return
    logger.info(f"Resumed {len(resumed)} works: {', '.join(resumed)}")
    if wait:
        for work_id in resumed:
            machine.wait(work_id)
            _print_status(machine.get_status(work_id))


@cli.command()
@click.option('--host', default='127.0.0.1', help='Bind address')
@click.option('--port', default=8000, type=int, help='Bind port')
@click.pass_context
def serve(ctx: click.Context, host: str, port: int):
    """Run the HTTP API."""
    import uvicorn

    from .api import create_app

    uvicorn.run(create_app(_machine(ctx)), host=host, port=port)


def main():
    cli()


if __name__ == '__main__':
    main()
