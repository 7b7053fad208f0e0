# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/dcforge/observers/console.py
from __future__ import annotations

import typer

from .events import BaseEvent, PhaseRunTransitioned, PlanAborted, WaiterTimedOut

_COLORS = {
    "Succeeded": typer.colors.GREEN,
    "Failed": typer.colors.RED,
    "Skipped": typer.colors.YELLOW,
}


class ConsoleObserver:
    """Compact one-line-per-event output for interactive runs."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose

    def notify(self, event: BaseEvent) -> None:
        d = event.dict()
        k = event.__class__.__name__

        if isinstance(event, PhaseRunTransitioned):
            if not self.verbose and event.to_state not in _COLORS and event.to_state != "Running":
                return
            line = f"[{d['ts']}] {event.host:<12} {event.phase:<28} {event.from_state} -> {event.to_state}"
            if event.error:
                line += f" ({event.error})"
            typer.secho(line, fg=_COLORS.get(event.to_state))
            return

        if isinstance(event, (PlanAborted, WaiterTimedOut)):
            typer.secho(f"[{d['ts']}] {k} " + ", ".join(
                f"{x}={y}" for x, y in d.items() if x not in ("ts", "run_id", "env", "context")
            ), fg=typer.colors.RED)
            return

        if not self.verbose:
            return
        typer.echo(f"[{d['ts']}] {k} run={d['run_id']} env={d['env']} ctx={d['context']} data={{"
                   + ", ".join(f"{x}={y}" for x, y in d.items() if x not in ('ts', 'run_id', 'env', 'context')) + "}")
