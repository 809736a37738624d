from pathlib import Path

import click
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table
from rich.text import Text

from .engine import BackupEngine
from .models import EngineConfig, OperationResult, OperationStatus

console = Console()

DEFAULT_HOME = Path.home() / ".reposaver"


def open_engine(ctx, watch: bool = False, sink=None) -> BackupEngine:
    config = EngineConfig.from_home(ctx.obj["home"])
    engine = BackupEngine(config, sink=sink, watch=watch)
    engine.initialize_engine()
    return engine


def run_operation(description: str, submit) -> OperationResult:
    with Progress(
        SpinnerColumn(), TextColumn("[progress.description]{task.description}"), console=console
    ) as progress:
        task = progress.add_task(description, total=None)
        result = submit().result()
        progress.update(task, description="Done" if result.ok else "Failed")

    if result.ok:
        console.print(f"✅ {result.message}")
    elif result.status == OperationStatus.FAILED:
        console.print(f"❌ [bold red]{result.message}[/bold red]")
        raise click.ClickException(result.message)
    else:
        console.print(f"ℹ️  {result.message}")
    return result


@click.group()
@click.option(
    "--home",
    default=str(DEFAULT_HOME),
    envvar="REPOSAVER_HOME",
    help="Directory holding settings.json and the Backups archive",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.pass_context
def cli(ctx, home, verbose):
    if verbose:
        logger.add(lambda msg: console.print(msg, style="dim"))

    ctx.ensure_object(dict)
    ctx.obj["home"] = Path(home).expanduser()


@cli.command()
@click.pass_context
def daemon(ctx):
    """Watch the save folder and back up every change"""
    from .main import run_daemon_mode
    from .publisher import LoggingSink

    engine = open_engine(ctx, watch=True, sink=LoggingSink())
    run_daemon_mode(engine)


@cli.command()
@click.pass_context
def status(ctx):
    engine = open_engine(ctx)
    try:
        settings = engine.get_settings()
        categories = engine.get_state()
    finally:
        engine.shutdown()

    info_text = Text()
    info_text.append(f"Save folder: {settings.repo_save_path or '(not set)'}\n", style="bold cyan")
    info_text.append(f"Archive: {engine.config.archive_root}\n", style="cyan")
    info_text.append(f"Generations kept: {settings.max_generations}\n", style="green")
    info_text.append(f"Theme: {settings.theme}", style="dim")
    console.print(Panel(info_text, title="RepoSaver", expand=False))

    if not categories:
        console.print("No save folders found")
        return

    table = Table(title="Save folders")
    table.add_column("Name", style="cyan")
    table.add_column("Source", justify="center")
    table.add_column("Snapshots", justify="right")
    table.add_column("Latest", style="magenta")
    table.add_column("Memo", style="white")

    for state in categories:
        source = "✅" if state.source_exists else "❌"
        if state.degraded:
            source += " ⚠️"
        table.add_row(
            state.name,
            source,
            str(len(state.snapshots)),
            state.latest or "-",
            state.memo or "-",
        )

    console.print(table)


@cli.command()
@click.argument("category")
@click.pass_context
def history(ctx, category):
    engine = open_engine(ctx)
    try:
        state = engine.publisher.get_category(category)
    finally:
        engine.shutdown()

    if state is None or not state.snapshots:
        console.print(f"No backups found for '{category}'")
        return

    table = Table(title=f"Backups of {category}")
    table.add_column("Timestamp", style="cyan")
    table.add_column("Date", style="magenta")
    table.add_column("Trigger", style="green")
    table.add_column("State")

    for snap in state.snapshots:
        table.add_row(
            snap.timestamp,
            snap.created_at.strftime("%Y-%m-%d %H:%M:%S") if snap.created_at else "-",
            "auto" if snap.is_auto else "manual",
            "[red]corrupted[/red]" if snap.corrupted else "ok",
        )

    console.print(table)


@cli.command()
@click.argument("category")
@click.pass_context
def backup(ctx, category):
    engine = open_engine(ctx)
    try:
        run_operation(f"Backing up {category}...", lambda: engine.request_backup(category))
    finally:
        engine.shutdown()


@cli.command()
@click.argument("category")
@click.argument("timestamp")
@click.confirmation_option(prompt="The current save folder will be replaced. Continue?")
@click.pass_context
def restore(ctx, category, timestamp):
    engine = open_engine(ctx)
    try:
        run_operation(
            f"Restoring {category} to {timestamp}...",
            lambda: engine.request_restore(category, timestamp),
        )
    finally:
        engine.shutdown()


@cli.command()
@click.argument("category")
@click.argument("timestamp", required=False)
@click.confirmation_option(prompt="Deleted backups cannot be recovered. Continue?")
@click.pass_context
def delete(ctx, category, timestamp):
    """Delete one backup, or every backup of CATEGORY when no TIMESTAMP is given"""
    engine = open_engine(ctx)
    try:
        if timestamp:
            run_operation(
                f"Deleting {category}/{timestamp}...",
                lambda: engine.delete_snapshot(category, timestamp),
            )
        else:
            run_operation(
                f"Deleting all backups of {category}...", lambda: engine.delete_category(category)
            )
    finally:
        engine.shutdown()


@cli.command()
@click.argument("category")
@click.argument("text")
@click.pass_context
def memo(ctx, category, text):
    engine = open_engine(ctx)
    try:
        run_operation(f"Saving memo for {category}...", lambda: engine.set_memo(category, text))
    finally:
        engine.shutdown()


@cli.command()
@click.option("--path", "repo_path", help="Save folder whose subfolders are backed up")
@click.option("--max-generations", type=int, help="Backups kept per folder (1-100)")
@click.option("--theme", help="UI theme passed through to front ends")
@click.pass_context
def settings(ctx, repo_path, max_generations, theme):
    engine = open_engine(ctx)
    try:
        current = engine.get_settings()
        if repo_path is not None or max_generations is not None or theme is not None:
            current = engine.update_settings(
                repo_path if repo_path is not None else current.repo_save_path,
                max_generations,
                theme,
            )
            engine.scheduler.wait_idle()
            console.print("✅ Settings saved")
    finally:
        engine.shutdown()

    console.print(f"📁 Save folder: {current.repo_save_path or '(not set)'}")
    console.print(f"🗂️  Generations kept: {current.max_generations}")
    console.print(f"🎨 Theme: {current.theme}")


if __name__ == "__main__":
    cli()
