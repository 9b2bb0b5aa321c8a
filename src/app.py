"""Composition root and the ``opendb`` command line.

``create_app`` wires settings, stores, the connection manager, the executor
and the schema cache together; ``App.shutdown`` tears them down again. The
Typer app on top runs scripts against saved connections and renders the
results with Rich.
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import typer
from rich.console import Console
from rich.table import Table
from rich.text import Text

from db.connection import ConnectionManager, ProviderFactory
from db.editor import DataEditor
from db.errors import DatabaseError
from db.executor import BatchResult, QueryExecutor
from db.schema_cache import SchemaCache
from models.types import QueryResult
from utils.log import configure_logging
from utils.settings import CONFIG_DIR, load_settings
from utils.storage import JsonSecretStore, JsonStateStore, SecretStore, StateStore

logger = logging.getLogger(__name__)

STATE_FILE = "state.json"
SECRETS_FILE = "secrets.json"


@dataclass
class App:
    """Everything wired together. Build it with create_app, end it with shutdown."""

    settings: Dict[str, Any]
    manager: ConnectionManager
    executor: QueryExecutor
    schema_cache: SchemaCache

    def new_editor(self, connection_id: str) -> DataEditor:
        return DataEditor(self.manager, connection_id)

    async def shutdown(self) -> None:
        self.schema_cache.close()
        await self.manager.disconnect_all()
        logger.info("Shut down")


def create_app(
    config_dir: Optional[Path] = None,
    settings: Optional[Dict[str, Any]] = None,
    state_store: Optional[StateStore] = None,
    secret_store: Optional[SecretStore] = None,
    provider_factory: Optional[ProviderFactory] = None,
    configure_logs: bool = False,
) -> App:
    base = Path(config_dir) if config_dir else CONFIG_DIR
    if settings is None:
        settings = load_settings(base / "settings.json")
    if configure_logs:
        configure_logging(settings.get("log_level", "INFO"), base / "logs")

    state_store = state_store if state_store is not None else JsonStateStore(base / STATE_FILE)
    secret_store = secret_store if secret_store is not None else JsonSecretStore(base / SECRETS_FILE)

    manager = ConnectionManager(state_store, secret_store, provider_factory=provider_factory, settings=settings)
    executor = QueryExecutor(manager, state_store, settings)
    cache = SchemaCache(
        manager,
        ttl_seconds=settings.get("schema_cache_ttl_seconds", 300),
        max_tables=settings.get("schema_cache_max_tables", 50),
    )
    logger.info("Loaded %d connections", len(manager.get_all_connections()))
    return App(settings=settings, manager=manager, executor=executor, schema_cache=cache)


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------

cli = typer.Typer(
    name="opendb",
    help="Run SQL and document-store scripts against saved connections.",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)

CONFIG_DIR_OPTION = typer.Option(
    None,
    "--config-dir",
    help="Folder holding settings.json, state.json and secrets.json.",
    envvar="OPENDB_CONFIG_DIR",
)


def _find_connection(app: App, name: str) -> Optional[str]:
    wanted = name.lower()
    for config in app.manager.get_all_connections():
        if config.name.lower() == wanted or config.id == name:
            return config.id
    return None


def _render_rows(result: QueryResult) -> Table:
    if result.fields:
        columns = [f.name for f in result.fields]
    else:
        columns = list(result.rows[0].keys()) if result.rows else []
    table = Table(show_lines=False, pad_edge=True, expand=False)
    for name in columns:
        table.add_column(name)
    for row in result.rows:
        table.add_row(*[Text("NULL", style="dim") if row.get(c) is None else Text(str(row.get(c))) for c in columns])
    return table


def _render_batch(batch: BatchResult) -> None:
    for item in batch.results:
        result = item.result
        console.print(item.query, style="bold", markup=False, highlight=False)
        if result.error:
            console.print(f"Error: {result.error}", style="red", markup=False)
        elif result.rows is not None:
            if result.rows:
                console.print(_render_rows(result))
            console.print(f"[dim]{result.row_count} rows ({result.execution_time:g}ms)[/dim]")
        else:
            console.print(f"[dim]{result.row_count} rows affected ({result.execution_time:g}ms)[/dim]")
    if batch.cancelled:
        console.print("[yellow]Execution cancelled[/yellow]")
    style = "red" if batch.has_errors else "green"
    console.print(f"[{style}]{batch.summary()}[/{style}]")


async def _run_script(
    script: str,
    connection: Optional[str],
    database: Optional[str],
    config_dir: Optional[Path],
) -> int:
    app = create_app(config_dir=config_dir, configure_logs=True)
    try:
        connection_id = None
        if connection:
            connection_id = _find_connection(app, connection)
            if connection_id is None:
                err_console.print(f"Unknown connection: {connection}", style="red", markup=False)
                return 2
            try:
                await app.manager.connect(connection_id)
            except Exception as e:
                logger.error("Could not connect %s: %s", connection, e)
                err_console.print(f"Could not connect {connection}: {e}", style="red", markup=False)
                return 2
        else:
            # directives pick among whatever connects
            for config in app.manager.get_all_connections():
                try:
                    await app.manager.connect(config.id)
                except Exception as e:
                    logger.error("Could not connect %s: %s", config.name, e)
                    err_console.print(f"Could not connect {config.name}: {e}", style="yellow", markup=False)

        try:
            batch = await app.executor.execute_script(script, connection_id, database)
        except DatabaseError as e:
            err_console.print(str(e), style="red", markup=False)
            return 2
        _render_batch(batch)
        return 1 if batch.has_errors else 0
    finally:
        await app.shutdown()


@cli.command()
def run(
    script: Optional[Path] = typer.Argument(
        None,
        help="Path of the script to execute.",
        exists=True,
        file_okay=True,
        dir_okay=False,
        resolve_path=True,
    ),
    execute: Optional[str] = typer.Option(
        None,
        "--execute",
        "-e",
        help="Script text to execute instead of a file.",
    ),
    connection: Optional[str] = typer.Option(
        None,
        "--connection",
        "-c",
        help="Connection name or id; defaults to the script's directives.",
    ),
    database: Optional[str] = typer.Option(
        None,
        "--database",
        "-d",
        help="Database to run against.",
    ),
    config_dir: Optional[Path] = CONFIG_DIR_OPTION,
) -> None:
    """Execute a script and print each statement's result."""
    if (script is None) == (execute is None):
        err_console.print("[red]Give either a script path or --execute, not both.[/red]")
        raise typer.Exit(code=2)
    try:
        text = execute if execute is not None else script.read_text(encoding="utf-8")
    except OSError as exc:
        err_console.print(f"Failed to read script: {exc}", style="red", markup=False)
        raise typer.Exit(code=2) from exc

    code = asyncio.run(_run_script(text, connection, database, config_dir))
    if code:
        raise typer.Exit(code=code)


@cli.command("connections")
def list_connections(config_dir: Optional[Path] = CONFIG_DIR_OPTION) -> None:
    """List saved connections."""
    app = create_app(config_dir=config_dir)
    configs = app.manager.get_all_connections()
    app.schema_cache.close()
    if not configs:
        console.print("[dim]No saved connections.[/dim]")
        return

    table = Table(title="Connections", show_lines=False, pad_edge=True, expand=False)
    table.add_column("Name", style="bold")
    table.add_column("Type")
    table.add_column("Host")
    table.add_column("Database")
    table.add_column("Id", style="dim")
    for config in configs:
        table.add_row(config.name, config.type.value, f"{config.host}:{config.port}", config.database or "", config.id)
    console.print(table)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
