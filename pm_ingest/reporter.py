from __future__ import annotations

from typing import Optional

from rich import box
from rich.console import Console
from rich.table import Table

from pm_ingest.domain.models import InvocationResult

STAGE_ORDER = ("event", "pool", "fetch", "transform", "persist")


def print_result(result: InvocationResult, console: Optional[Console] = None) -> None:
    """
    Render one invocation as a rich table of stage durations.

    Stages that never ran are listed as skipped; the failing stage is marked
    with the error kind.
    """
    console = console or Console(stderr=True)

    status = "[bold green]ok[/bold green]" if result.ok else f"[bold red]error[/bold red] ({result.kind})"
    table = Table(
        title=f"Invocation {status}",
        box=box.ROUNDED,
        caption=result.detail or (f"row {result.row_id} {result.outcome}" if result.row_id else None),
    )
    table.add_column("Stage", style="cyan", no_wrap=True)
    table.add_column("Duration (ms)", justify="right", style="green")
    table.add_column("Result", style="magenta")

    for stage in STAGE_ORDER:
        duration = result.durations_ms.get(stage)
        if duration is None:
            table.add_row(stage, "-", "[dim]skipped[/dim]")
        elif not result.ok and stage == result.stage:
            table.add_row(stage, f"{duration:,.1f}", f"[red]{result.kind}[/red]")
        else:
            table.add_row(stage, f"{duration:,.1f}", "ok")

    total = sum(result.durations_ms.values())
    table.add_row("[bold]total[/bold]", f"[bold]{total:,.1f}[/bold]", "")
    console.print(table)


__all__ = ["print_result"]
