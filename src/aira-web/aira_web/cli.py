"""
Operator commands: run startup migrations out of band and inspect the audit log.
"""

import asyncio
import importlib
from typing import Callable, Optional

import typer
from rich import box
from rich.console import Console
from rich.table import Table

from aira_common.constants import MIGRATION_SKIP_SENTINEL

from aira_web.config import FrameworkConfig
from aira_web.database import build_engine
from aira_web.exceptions import MigrationAlreadyRunning, MigrationError
from aira_web.framework import Framework
from aira_web.migration.storage import DatabaseMigrationStorage

SETUP_ENVVAR = "AIRA_MIGRATIONS_SETUP"

EXIT_FAILED = 1
EXIT_CONTENTION = 2

app = typer.Typer(
    help="Startup migration commands.",
    no_args_is_help=True,
)
console = Console()


def load_setup(target: str) -> Callable[[Framework], None]:
    """Resolve 'package.module:function' to the callable registering migrations."""
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise typer.BadParameter(f"expected 'module:function', got {target!r}")
    module = importlib.import_module(module_name)
    try:
        return getattr(module, attr)
    except AttributeError:
        raise typer.BadParameter(f"{module_name} has no attribute {attr!r}")


def _styled_outcome(success: bool, logs: str) -> str:
    if not success:
        return "[red]failed[/red]"
    if logs == MIGRATION_SKIP_SENTINEL:
        return "[dim]skipped[/dim]"
    return "[green]applied[/green]"


def _first_line(logs: str) -> str:
    if not logs or logs == MIGRATION_SKIP_SENTINEL:
        return ""
    return logs.splitlines()[0]


@app.command("run", help="Run pending migrations once")
def run(
    setup: str = typer.Option(
        ...,
        "--setup",
        help="module:function called with the Framework to register migrations and models",
        envvar=SETUP_ENVVAR,
    ),
):
    setup_fn = load_setup(setup)
    framework = Framework(FrameworkConfig())
    setup_fn(framework)

    async def _run():
        try:
            return await framework.start()
        finally:
            await framework.engine.dispose()

    try:
        result = asyncio.run(_run())
    except MigrationAlreadyRunning as exc:
        typer.echo(f"{exc}", err=True)
        raise typer.Exit(EXIT_CONTENTION)
    except MigrationError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(EXIT_FAILED)

    typer.echo(
        f"{len(result.applied)} applied, {len(result.skipped)} skipped, "
        f"{len(result.already_applied)} already applied"
    )


@app.command("history", help="Show the migration audit log")
def history(
    namespace: Optional[str] = typer.Option(
        None, "--namespace", "-n", help="Only show records for this namespace"
    ),
):
    config = FrameworkConfig()
    engine = build_engine(config)
    storage = DatabaseMigrationStorage(engine, table_prefix=config.table_prefix)

    async def _run():
        try:
            return await storage.list_records(namespace)
        finally:
            await engine.dispose()

    records = asyncio.run(_run())
    if not records:
        typer.echo("No migration records.")
        return

    table = Table(box=box.SIMPLE)
    table.add_column("Applied at")
    table.add_column("Namespace")
    table.add_column("Migration")
    table.add_column("Outcome")
    table.add_column("Logs", overflow="fold")
    for record in records:
        logs = record.logs or ""
        table.add_row(
            record.applied_at.strftime("%Y-%m-%d %H:%M:%S") if record.applied_at else "-",
            record.namespace,
            record.migration,
            _styled_outcome(record.success, logs),
            _first_line(logs),
        )
    console.print(table)


def main():
    app()


if __name__ == "__main__":
    main()
