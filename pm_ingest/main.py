from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Optional

import typer

from pm_ingest.config import ConfigError, get_settings, load_settings
from pm_ingest.handler import ProcessRuntime
from pm_ingest.reporter import print_result
from pm_ingest.stages.persist import ensure_schema
from pm_ingest.utils.deadline import Deadline
from pm_ingest.utils.logging import configure_logging

app = typer.Typer(help="Scheduled external-data ingest: local operator commands.")


def _mask_url(url: str) -> str:
    if "@" not in url:
        return url
    scheme, _, rest = url.partition("://")
    host = rest.split("@", 1)[1]
    return f"{scheme}://***@{host}"


def _settings_or_exit():
    try:
        return get_settings()
    except ConfigError as exc:
        typer.echo(f"Configuration error: {exc}", err=True)
        raise typer.Exit(code=2) from exc


@app.command()
def info() -> None:
    """
    Show effective configuration values.
    """
    settings = _settings_or_exit()
    typer.echo(
        f"DB={_mask_url(settings.database_url)} table={settings.target_table} "
        f"pool=({settings.db_pool_min_size},{settings.db_pool_max_size}) sslmode={settings.db_sslmode} | "
        f"API={settings.endpoint} key=*** | "
        f"budget={settings.invocation_timeout_ms}ms margin={settings.deadline_safety_margin_ms}ms "
        f"attempts={settings.fetch_max_attempts}"
    )


@app.command()
def invoke(
    event: Optional[Path] = typer.Option(
        None,
        "--event",
        "-e",
        exists=True,
        dir_okay=False,
        help="JSON file with the trigger event (default: an empty scheduled event).",
    ),
    remaining_ms: Optional[int] = typer.Option(
        None,
        "--remaining-ms",
        help="Simulate the runtime's remaining execution time.",
    ),
    trace: bool = typer.Option(False, "--trace", help="Print per-stage durations to stderr."),
) -> None:
    """
    Run one invocation locally and print the runtime response.
    """
    settings = _settings_or_exit()
    configure_logging(level=settings.log_level, json_logs=settings.log_json)
    payload = json.loads(event.read_text(encoding="utf-8")) if event else {"source": "cli"}

    runtime = ProcessRuntime(settings)
    try:
        result = runtime.invoke(payload, remaining_ms=remaining_ms)
    finally:
        runtime.close()

    if trace:
        print_result(result)
    typer.echo(json.dumps(result.to_response()))
    if not result.ok:
        raise typer.Exit(code=1)


@app.command("init-db")
def init_db(
    table: Optional[str] = typer.Option(None, "--table", "-t", help="Override TARGET_TABLE."),
) -> None:
    """
    Create the target table if it does not exist.
    """
    try:
        settings = load_settings(target_table=table) if table else get_settings()
    except ConfigError as exc:
        typer.echo(f"Configuration error: {exc}", err=True)
        raise typer.Exit(code=2) from exc
    configure_logging(level=settings.log_level, json_logs=settings.log_json)

    runtime = ProcessRuntime(settings)

    async def _create() -> None:
        async with runtime.pool_manager.connection(Deadline.after_ms(30_000)) as conn:
            await ensure_schema(conn, settings.table_parts)

    try:
        runtime.loop.run_until_complete(_create())
    finally:
        runtime.close()
    typer.echo(f"Table {settings.target_table} ready.")


def main() -> None:
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)


if __name__ == "__main__":
    main()
