# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/dcforge/cli/app.py
from __future__ import annotations

import signal
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional

import typer

from dcforge.bootstrap.registry import build_actions, build_teardown_actions
from dcforge.config.loader import load_config
from dcforge.config.models import DeploymentConfig

from dcforge.deploy.errors import ConfigError, GraphConfigurationError, LedgerCorruptError
from dcforge.deploy.executor import ActionExecutor
from dcforge.deploy.ledger import DeploymentLedger, PlanSnapshot
from dcforge.deploy.models import Host, PhaseRun
from dcforge.deploy.phases import TEARDOWN, VALIDATE, build_ad_graph, resolve_phase_selection
from dcforge.deploy.prober import ReadinessProber
from dcforge.deploy.registry import HostRegistry
from dcforge.deploy.retry import RetryPolicy
from dcforge.deploy.scheduler import EXIT_CONFIG, EXIT_OK, DeploymentReport, Orchestrator
from dcforge.deploy.teardown import build_teardown_graph, run_teardown
from dcforge.utils.execution import ExecutionContext

from dcforge.logging.log import init_logging
from dcforge.observers.console import ConsoleObserver
from dcforge.observers.dispatcher import EventBus
from dcforge.observers.logger import LoggerObserver
from dcforge.observers.jsonfile import JsonFileObserver
from dcforge.observers.events import new_ctx


# ------------------------------------------------------------------------------
# CLI setup
# ------------------------------------------------------------------------------

app = typer.Typer(help="dcforge: Active Directory domain controller deployment on Proxmox")


class Runtime:
    """Everything one command invocation shares: config, logging, event bus, inventory."""

    def __init__(self, cfg: DeploymentConfig, *, debug: bool, dry_run: bool = False):
        self.cfg = cfg
        self.logger, self.run_id, self.log_path = init_logging(verbose=debug)
        events_path = (
            Path(cfg.orchestrator.events_path)
            if cfg.orchestrator.events_path
            else self.log_path.parent / f"{self.run_id}.jsonl"
        )
        self.bus = EventBus(observers=[
            ConsoleObserver(verbose=debug),
            LoggerObserver(self.logger),
            JsonFileObserver(events_path),
        ])
        self.run_ctx = new_ctx(env=cfg.environment, context=cfg.proxmox.node, run_id=self.run_id)
        self.ctx = ExecutionContext(dry_run=dry_run, run_id=self.run_id, env=cfg.environment)
        self.registry = HostRegistry()
        self.prober = ReadinessProber(
            interval=cfg.orchestrator.probe_interval_seconds, bus=self.bus, run_ctx=self.run_ctx
        )

    def register_hosts(self) -> None:
        for dc in self.cfg.controllers():
            self.registry.register(
                Host(name=dc.name, role=dc.role, address=dc.ip, vars={"vmid": dc.vmid, "ip": dc.ip})
            )

    def executor(self) -> ActionExecutor:
        return ActionExecutor(
            self.registry,
            self.prober,
            ctx=self.ctx,
            settings=self.cfg,
            bus=self.bus,
            run_ctx=self.run_ctx,
        )

    def banner(self, title: str) -> None:
        typer.echo("")
        typer.secho(title, bold=True)
        typer.echo(f"  Run ID   : {self.run_id}")
        typer.echo(f"  Logs     : {self.log_path}")
        typer.echo("")


# ------------------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------------------

def _fail_config(message: str) -> None:
    typer.secho(f"Configuration error: {message}", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=EXIT_CONFIG)


def _load(config: str) -> DeploymentConfig:
    try:
        return load_config(config)
    except ConfigError as e:
        _fail_config(str(e))


def _ledger_path(cfg: DeploymentConfig, override: Optional[Path], suffix: str = "") -> Path:
    path = Path(override) if override else Path(cfg.orchestrator.ledger_path)
    if suffix:
        path = path.with_name(f"{path.stem}-{suffix}{path.suffix}")
    return path


def _open_ledger(path: Path, *, resume: bool) -> DeploymentLedger:
    """Fresh runs start a new ledger; the previous one is kept beside it."""
    if path.exists() and not resume:
        ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
        rotated = path.with_name(f"{path.stem}.{ts}{path.suffix}")
        path.rename(rotated)
        typer.echo(f"Previous ledger moved to {rotated}")
    try:
        return DeploymentLedger(path)
    except LedgerCorruptError as e:
        _fail_config(str(e))


@contextmanager
def _cancel_on_sigint(orch: Orchestrator):
    """First Ctrl-C stops dispatching; in-flight actions finish."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def handler(signum, frame):
        typer.secho("\nCancelling: waiting for in-flight actions...", fg=typer.colors.YELLOW, err=True)
        orch.cancel()

    previous = signal.signal(signal.SIGINT, handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def print_runs(runs: Iterable[PhaseRun]) -> None:
    typer.echo(f"{'HOST':<12} {'PHASE':<28} {'STATUS':<10} {'ATTEMPTS':>8}  ERROR")
    for r in runs:
        color = {
            "Succeeded": typer.colors.GREEN,
            "Failed": typer.colors.RED,
            "Skipped": typer.colors.YELLOW,
        }.get(r.status.value)
        typer.secho(
            f"{r.host:<12} {r.phase:<28} {r.status.value:<10} {r.attempts:>8}  {r.error or ''}".rstrip(),
            fg=color,
        )


def print_report(report: DeploymentReport) -> None:
    typer.echo("")
    print_runs(report.runs)
    typer.echo("")
    if report.cancelled:
        typer.secho("Deployment cancelled", fg=typer.colors.YELLOW, bold=True)
    elif report.aborted:
        typer.secho(f"Deployment aborted: {report.abort_reason}", fg=typer.colors.RED, bold=True)
    typer.secho(report.summary(), bold=True)


def _deploy(
    config: str,
    *,
    only: Optional[List[str]] = None,
    resume: bool = False,
    ledger: Optional[Path] = None,
    forks: Optional[int] = None,
    debug: bool = False,
    dry_run: bool = False,
    ledger_suffix: str = "",
    title: str = "dcforge deployment",
) -> None:
    cfg = _load(config)
    rt = Runtime(cfg, debug=debug, dry_run=dry_run)
    rt.banner(title)

    try:
        graph = build_ad_graph(build_actions(cfg), cfg, bus=rt.bus, run_ctx=rt.run_ctx)
        if only is not None:
            only = resolve_phase_selection(",".join(only), graph)
    except GraphConfigurationError as e:
        _fail_config(str(e))

    if dry_run:
        plan_ledger = DeploymentLedger()
    else:
        plan_ledger = _open_ledger(_ledger_path(cfg, ledger, ledger_suffix), resume=resume)
    snapshot: Optional[PlanSnapshot] = plan_ledger.snapshot() if resume else None

    rt.register_hosts()
    executor = rt.executor()
    try:
        orch = Orchestrator(
            graph,
            rt.registry,
            executor,
            ledger=plan_ledger,
            concurrency=forks or cfg.orchestrator.forks,
            bus=rt.bus,
            run_ctx=rt.run_ctx,
        )
        if snapshot is not None:
            orch.resume_from(snapshot)
        with _cancel_on_sigint(orch):
            report = orch.run(only=only)
    except GraphConfigurationError as e:
        _fail_config(str(e))
    finally:
        executor.close()

    if dry_run:
        typer.echo("Dispatch order:")
        for i, (host, phase) in enumerate(report.dispatch_order, 1):
            typer.echo(f"  {i:>3}. {host:<12} {phase}")
    print_report(report)
    raise typer.Exit(code=report.exit_code)


# ------------------------------------------------------------------------------
# Commands
# ------------------------------------------------------------------------------

ConfigArg = typer.Argument(..., help="Deployment definition YAML")


@app.command("run-all")
def run_all(
    config: str = ConfigArg,
    resume: bool = typer.Option(False, "--resume", help="Continue from the ledger of an interrupted run"),
    ledger: Optional[Path] = typer.Option(None, "--ledger", help="Ledger file (default from config)"),
    forks: Optional[int] = typer.Option(None, "--forks", min=1, help="Concurrent leaf actions"),
    debug: bool = typer.Option(False, "--debug"),
):
    """Provision and configure every domain controller."""
    _deploy(config, resume=resume, ledger=ledger, forks=forks, debug=debug, title="dcforge run-all")


@app.command("run-phase")
def run_phase(
    config: str = ConfigArg,
    phases: str = typer.Argument(..., help="Comma separated phase names"),
    ledger: Optional[Path] = typer.Option(None, "--ledger"),
    forks: Optional[int] = typer.Option(None, "--forks", min=1),
    debug: bool = typer.Option(False, "--debug"),
):
    """Run only the named phases; the others are treated as already done."""
    _deploy(config, only=phases.split(","), ledger=ledger, forks=forks, debug=debug,
            ledger_suffix="phases", title=f"dcforge run-phase {phases}")


@app.command("validate-only")
def validate_only(
    config: str = ConfigArg,
    ledger: Optional[Path] = typer.Option(None, "--ledger"),
    debug: bool = typer.Option(False, "--debug"),
):
    """Check NTDS, DNS and domain reachability on every domain controller."""
    _deploy(config, only=[VALIDATE], ledger=ledger, debug=debug, ledger_suffix="phases",
            title="dcforge validate-only")


@app.command("dry-run")
def dry_run(
    config: str = ConfigArg,
    debug: bool = typer.Option(False, "--debug"),
):
    """Walk the whole plan without touching any host."""
    _deploy(config, dry_run=True, debug=debug, title="dcforge dry-run")


@app.command()
def teardown(
    config: str = ConfigArg,
    force: bool = typer.Option(False, "--force", help="Do not ask for confirmation"),
    ledger: Optional[Path] = typer.Option(None, "--ledger"),
    forks: Optional[int] = typer.Option(None, "--forks", min=1),
    debug: bool = typer.Option(False, "--debug"),
):
    """Stop and delete every domain controller VM."""
    cfg = _load(config)
    if not force:
        typer.secho("This will destroy all domain controller VMs!", fg=typer.colors.YELLOW)
        if not typer.confirm("Are you sure?", default=False):
            typer.echo("Cleanup cancelled.")
            raise typer.Exit(code=EXIT_OK)

    rt = Runtime(cfg, debug=debug)
    rt.banner("dcforge teardown")
    actions = build_teardown_actions(cfg)
    override = cfg.phases.get(TEARDOWN)
    retry = RetryPolicy.from_spec(override.retry) if override and override.retry else RetryPolicy()
    graph = build_teardown_graph(actions["stop"], actions["delete"], retry, bus=rt.bus, run_ctx=rt.run_ctx)

    rt.register_hosts()
    executor = rt.executor()
    try:
        report = run_teardown(
            rt.registry,
            graph,
            executor,
            ledger=_open_ledger(_ledger_path(cfg, ledger, "teardown"), resume=False),
            concurrency=forks or cfg.orchestrator.forks,
            bus=rt.bus,
            run_ctx=rt.run_ctx,
        )
    finally:
        executor.close()
    print_report(report)
    raise typer.Exit(code=report.exit_code)


@app.command()
def status(
    config: str = ConfigArg,
    ledger: Optional[Path] = typer.Option(None, "--ledger"),
):
    """Show the plan state recorded in the ledger."""
    cfg = _load(config)
    path = _ledger_path(cfg, ledger)
    try:
        snap = DeploymentLedger.load(path).snapshot()
    except FileNotFoundError:
        _fail_config(f"no ledger at {path}")
    except LedgerCorruptError as e:
        _fail_config(str(e))

    typer.echo(f"Ledger : {path}")
    typer.echo(f"Run ID : {snap.run_id}")
    typer.echo("")
    order = {name: i for i, name in enumerate(snap.phases)}
    hosts = {name: h.order for name, h in snap.hosts.items()}
    keys = sorted(snap.runs, key=lambda k: (hosts.get(k[0], 0), order.get(k[1], 0)))
    print_runs(
        PhaseRun(host=h, phase=p, status=s.status, attempts=s.attempts, error=s.error)
        for h, p in keys
        for s in [snap.runs[(h, p)]]
    )
    typer.echo("")
    counts = snap.counts()
    typer.secho(" ".join(f"{k.upper()}={v}" for k, v in counts.items() if v), bold=True)


@app.command("check-config")
def check_config(config: str = ConfigArg):
    """Validate the configuration and the phase graph without running anything."""
    cfg = _load(config)
    try:
        graph = build_ad_graph({}, cfg)
    except GraphConfigurationError as e:
        _fail_config(str(e))

    typer.secho(f"Configuration OK ({cfg.environment})", fg=typer.colors.GREEN, bold=True)
    typer.echo(f"  Domain  : {cfg.domain.name} ({cfg.domain.netbios_name})")
    typer.echo(f"  Proxmox : {cfg.proxmox.api_url} node={cfg.proxmox.node}")
    for dc in cfg.controllers():
        typer.echo(f"  {dc.name:<12} vmid={dc.vmid:<6} ip={dc.ip:<16} role={dc.role.value}")
    typer.echo("  Plan    : " + " -> ".join(graph.names()))


if __name__ == "__main__":
    app()
