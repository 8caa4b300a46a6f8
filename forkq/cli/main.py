"""forkq CLI — run shell commands through a bounded priority queue.

`forkq run "cmd one" "cmd two" --limit 2` forks one child per command,
runs at most two at a time and prints a result table when all are done.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from forkq import __version__
from forkq.config import settings
from forkq.process import ProcessHandle, Queue
from forkq.types import ProcessStatus

console = Console()

app = typer.Typer(
    name="forkq",
    help="forkq -- fork-based process orchestration.",
    no_args_is_help=True,
)


@app.callback()
def main(
    log_level: str = typer.Option(settings.log_level, "--log-level", help="Python logging level"),
):
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(process)d %(name)s %(levelname)s %(message)s",
    )


def shell_workload(command: str):
    """Workload that replaces the child with ``/bin/sh -c command``."""

    def _run(process: ProcessHandle) -> int:
        sys.stdout.flush()
        sys.stderr.flush()
        os.execv("/bin/sh", ["/bin/sh", "-c", command])

    _run.__name__ = command
    return _run


@app.command("run")
def run(
    commands: List[str] = typer.Argument(help="Shell commands, one per process"),
    limit: int = typer.Option(0, "--limit", "-n", help="Max concurrent processes (0 = unbounded)"),
    priority: Optional[List[int]] = typer.Option(
        None, "--priority", "-p", help="Priority per command, in order (higher runs first)"
    ),
):
    """Run shell commands in forked children and report their exit status."""
    priorities = list(priority or [])
    if len(priorities) > len(commands):
        raise typer.BadParameter("more priorities than commands", param_hint="--priority")
    priorities += [0] * (len(commands) - len(priorities))

    queue = Queue(limit)
    jobs = [queue.insert(shell_workload(cmd), prio) for cmd, prio in zip(commands, priorities)]
    queue.start(block=True)

    table = Table(title="Processes")
    table.add_column("PID", style="cyan", justify="right")
    table.add_column("Command", style="white")
    table.add_column("Priority", justify="right")
    table.add_column("Status")
    table.add_column("Exit", justify="right", style="yellow")

    for job, prio in zip(jobs, priorities):
        style = {
            ProcessStatus.FINISHED: "green",
            ProcessStatus.FAILURE: "bold red",
            ProcessStatus.KILLED: "yellow",
        }.get(job.status, "white")
        table.add_row(
            str(job.pid),
            job.name,
            str(prio),
            f"[{style}]{job.status.value}[/{style}]",
            str(job.exit_code),
        )

    console.print(table)
    if any(job.status is not ProcessStatus.FINISHED for job in jobs):
        raise typer.Exit(code=1)


@app.command("config")
def config():
    """Show effective settings (FORKQ_* environment variables)."""
    table = Table(title="Settings")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="white")
    for key, value in settings.model_dump().items():
        table.add_row(key, str(value))
    console.print(table)


@app.command("version")
def version():
    """Show forkq version."""
    console.print(f"forkq {__version__}")


if __name__ == "__main__":
    app()
