# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/dcforge/deploy/scheduler.py

from __future__ import annotations

import concurrent.futures
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Set

from .errors import DependencyUnmetError, GraphConfigurationError
from .executor import ActionExecutor
from .graph import SAME_HOST, Phase, PhaseGraph
from .ledger import DeploymentLedger, PlanSnapshot
from .models import (
    AbortScope,
    Host,
    Outcome,
    PhaseRun,
    PhaseRunTransition,
    RunKey,
    RunStatus,
    role_rank,
    utcnow,
)
from .registry import HostRegistry

# Observer bits
from ..observers.dispatcher import EventBus
from ..observers.events import (
    DeploySummary,
    HostRegistered,
    PhaseRunTransitioned,
    PlanAborted,
    new_ctx,
    stamp,
)

log = logging.getLogger("dcforge")

DIRECTORY_SERVICE_CLASS = "directory-service"

# exit codes shared with the CLI
EXIT_OK = 0
EXIT_ABORTED = 1
EXIT_PARTIAL = 2
EXIT_CONFIG = 3

# PhaseRun.note values
NOTE_CREATED = "created"
NOTE_DESELECTED = "deselected"
NOTE_RETRY = "retry"
NOTE_HOST_ABORT = "host-abort"
NOTE_PLAN_ABORT = "plan-abort"
NOTE_DEPENDENCY_FAILED = "dependency-failed"
NOTE_OPTIONAL = "optional-failure"
NOTE_CANCELLED = "cancelled"
NOTE_RESUMED = "resumed"

_S = RunStatus
_ALLOWED = {
    _S.PENDING: {_S.PENDING, _S.READY, _S.SKIPPED},
    _S.READY: {_S.RUNNING, _S.SKIPPED},
    _S.RUNNING: {_S.SUCCEEDED, _S.FAILED},
    _S.FAILED: {_S.READY, _S.SKIPPED},
    _S.SUCCEEDED: set(),
    _S.SKIPPED: set(),
}


@dataclass
class DeploymentReport:
    runs: List[PhaseRun] = field(default_factory=list)
    aborted: bool = False
    abort_reason: Optional[str] = None
    cancelled: bool = False
    dispatch_order: List[RunKey] = field(default_factory=list)

    def run_for(self, host: str, phase: str) -> Optional[PhaseRun]:
        return next((r for r in self.runs if r.host == host and r.phase == phase), None)

    def counts(self) -> Dict[str, int]:
        return {
            "succeeded": sum(1 for r in self.runs if r.status is _S.SUCCEEDED),
            "skipped": sum(1 for r in self.runs if r.status is _S.SKIPPED),
            "failed": sum(1 for r in self.runs if r.status is _S.FAILED),
        }

    def summary(self) -> str:
        c = self.counts()
        return f"SUCCEEDED={c['succeeded']} SKIPPED={c['skipped']} FAILED={c['failed']}"

    @property
    def warnings(self) -> List[PhaseRun]:
        """Runs that did not complete for a reason other than deselection."""
        return [
            r for r in self.runs
            if r.status is _S.FAILED or (r.status is _S.SKIPPED and r.note != NOTE_DESELECTED)
        ]

    @property
    def exit_code(self) -> int:
        if self.aborted or self.cancelled:
            return EXIT_ABORTED
        if self.warnings:
            return EXIT_PARTIAL
        return EXIT_OK


class Orchestrator:
    """
    Walks the PhaseGraph against the HostRegistry.

    One scheduler loop (the thread calling ``run``) owns every state change
    decision; workers from a bounded pool execute leaf actions and report
    back under the same condition variable. Every transition is appended to
    the ledger before it is applied.
    """

    def __init__(
        self,
        graph: PhaseGraph,
        registry: HostRegistry,
        executor: ActionExecutor,
        *,
        ledger: Optional[DeploymentLedger] = None,
        concurrency: int = 10,
        global_abort_classes: Sequence[str] = (DIRECTORY_SERVICE_CLASS,),
        bus: Optional[EventBus] = None,
        run_ctx: Optional[Dict] = None,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.graph = graph
        self.registry = registry
        self.executor = executor
        self.ledger = ledger or DeploymentLedger()
        self.concurrency = concurrency
        self.global_abort_classes: Set[str] = set(global_abort_classes)
        self._bus = bus
        self._ctx = run_ctx or new_ctx(env=executor.ctx.env, context=None, run_id=executor.ctx.run_id)

        for phase in graph.phases():
            if phase.optional and self.effective_scope(phase) is AbortScope.GLOBAL:
                raise GraphConfigurationError(
                    f"Phase '{phase.name}' cannot be optional: its failures abort the plan"
                )

        self._cond = threading.Condition(threading.RLock())
        self._runs: Dict[RunKey, PhaseRun] = {}
        self._by_phase: Dict[str, List[RunKey]] = {n: [] for n in graph.names()}
        self._hosts: Dict[str, Host] = {}
        self._running: Set[RunKey] = set()
        self._class_slots: Dict[str, RunKey] = {}
        self._selected: Optional[Set[str]] = None
        self._dispatch_order: List[RunKey] = []
        self._aborted = False
        self._abort_reason: Optional[str] = None
        self._cancelled = False
        self._stop = executor.cancel_event

        self.ledger.record_plan(self._ctx["run_id"], graph.names())
        registry.subscribe(self._on_host)
        for host in registry.list():
            self._on_host(host, True)

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------
    def effective_scope(self, phase: Phase) -> AbortScope:
        if phase.abort_scope is AbortScope.GLOBAL:
            return AbortScope.GLOBAL
        if phase.serialization_class and phase.serialization_class in self.global_abort_classes:
            return AbortScope.GLOBAL
        return AbortScope.HOST

    def run(self, only: Optional[Iterable[str]] = None) -> DeploymentReport:
        """
        Drive every PhaseRun to a terminal state. ``only`` restricts the run
        to the named phases; the rest are Skipped and count as satisfied.
        """
        if only is not None:
            selected = set(only)
            for name in selected:
                self.graph.get(name)
            self._selected = selected

        pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix="dcforge-worker"
        )
        try:
            with self._cond:
                for run in list(self._runs.values()):
                    self._apply_selection(run)
                while True:
                    if not self._stopping():
                        self._promote()
                        self._dispatch(pool)
                    if not self._running:
                        break
                    self._cond.wait()
                self._finalize()
        finally:
            pool.shutdown(wait=True)

        report = self._report()
        c = report.counts()
        self._emit(DeploySummary(succeeded=c["succeeded"], skipped=c["skipped"], failed=c["failed"],
                                 aborted=report.aborted or report.cancelled, **stamp(self._ctx)))
        log.info("deployment finished: %s", report.summary())
        return report

    def cancel(self) -> None:
        """Stop dispatching; in-flight actions are left to finish."""
        with self._cond:
            if not self._cancelled:
                log.warning("cancellation requested; waiting for in-flight actions")
                self._cancelled = True
                self._stop.set()
                self._emit(PlanAborted(scope="cancelled", host=None, phase=None, **stamp(self._ctx)))
            self._cond.notify_all()

    def resume_from(self, snapshot: PlanSnapshot) -> None:
        """
        Restore hosts and completed work from a ledger snapshot. Succeeded
        runs stay done; everything else starts again from Pending with a
        fresh attempt budget.
        """
        with self._cond:
            for h in sorted(snapshot.hosts.values(), key=lambda h: h.order):
                self.registry.register(Host(name=h.name, role=h.role, address=h.address, vars=dict(h.vars)))
            restored = 0
            for key, state in snapshot.runs.items():
                run = self._runs.get(key)
                if run is None or state.status is not _S.SUCCEEDED or run.status is not _S.PENDING:
                    continue
                self._transition(run, _S.SUCCEEDED, attempt=state.attempts, note=NOTE_RESUMED, force=True)
                restored += 1
            log.info("resumed from ledger: %d completed run(s) restored", restored)

    def runs(self) -> List[PhaseRun]:
        with self._cond:
            return [PhaseRun(**vars(r)) for r in self._ordered(self._runs.values())]

    def snapshot(self) -> PlanSnapshot:
        return self.ledger.snapshot()

    # ------------------------------------------------------------------
    # registry listener
    # ------------------------------------------------------------------
    def _on_host(self, host: Host, created: bool) -> None:
        with self._cond:
            known = host.name in self._hosts
            self._hosts[host.name] = host
            self.ledger.record_host(host)
            if created and not known:
                self._emit(HostRegistered(host=host.name, role=host.role.value if host.role else None,
                                          address=host.address, **stamp(self._ctx)))
            for phase in self.graph.applicable(host.role):
                key = (host.name, phase.name)
                if key in self._runs:
                    continue
                run = PhaseRun(host=host.name, phase=phase.name)
                self.ledger.record(PhaseRunTransition(host.name, phase.name, _S.PENDING, _S.PENDING,
                                                      note=NOTE_CREATED))
                self._runs[key] = run
                self._by_phase[phase.name].append(key)
                self.registry.set_phase_status(host.name, phase.name, _S.PENDING)
                self._apply_selection(run)
            self._cond.notify_all()

    # ------------------------------------------------------------------
    # scheduling (caller holds self._cond)
    # ------------------------------------------------------------------
    def _stopping(self) -> bool:
        return self._aborted or self._cancelled

    def _idle(self, run: PhaseRun) -> bool:
        """Not started and not owned by a worker (a run in retry backoff is Ready)."""
        return run.status.not_started and run.key not in self._running

    def _apply_selection(self, run: PhaseRun) -> None:
        if self._selected is not None and run.phase not in self._selected and run.status is _S.PENDING:
            self._transition(run, _S.SKIPPED, note=NOTE_DESELECTED)

    def _dependency_runs(self, run: PhaseRun) -> Iterator[PhaseRun]:
        host = self._hosts[run.host]
        for dep in self.graph.get(run.phase).dependencies:
            if self.graph.resolve_scope(dep, host.role) == SAME_HOST:
                other = self._runs.get((run.host, dep.phase))
                if other is not None:
                    yield other
            else:
                for key in self._by_phase[dep.phase]:
                    yield self._runs[key]

    def _require_dependencies(self, run: PhaseRun) -> None:
        waiting = [d.key for d in self._dependency_runs(run) if not d.status.satisfies_dependency]
        if waiting:
            raise DependencyUnmetError(run.host, run.phase, waiting)

    def _promote(self) -> None:
        for run in self._ordered(self._runs.values()):
            if run.status is not _S.PENDING:
                continue
            failed = next((d for d in self._dependency_runs(run) if d.status is _S.FAILED), None)
            if failed is not None:
                self._skip_blocked(run, failed)
                if self._stopping():
                    return
                continue
            try:
                self._require_dependencies(run)
            except DependencyUnmetError as e:
                log.debug("%s", e)
                continue
            self._transition(run, _S.READY)

    def _priority(self, run: PhaseRun):
        host = self._hosts[run.host]
        return (role_rank(host.role), host.order, self.graph.index_of(run.phase))

    def _ordered(self, runs: Iterable[PhaseRun]) -> List[PhaseRun]:
        return sorted(runs, key=self._priority)

    def _dispatch(self, pool: concurrent.futures.ThreadPoolExecutor) -> None:
        ready = [r for r in self._runs.values() if r.status is _S.READY and r.key not in self._running]
        for run in self._ordered(ready):
            if len(self._running) >= self.concurrency:
                return
            klass = self.graph.serialization_class_of(run.phase)
            if klass and klass in self._class_slots:
                continue    # waits for the class slot
            try:
                # hosts registered after promotion can add cross-host prerequisites
                self._require_dependencies(run)
            except DependencyUnmetError as e:
                log.debug("%s", e)
                continue
            self._transition(run, _S.RUNNING, attempt=run.attempts + 1)
            self._running.add(run.key)
            if klass:
                self._class_slots[klass] = run.key
            self._dispatch_order.append(run.key)
            pool.submit(self._work, run.key)

    # ------------------------------------------------------------------
    # worker side
    # ------------------------------------------------------------------
    def _work(self, key: RunKey) -> None:
        host_id, phase_name = key
        phase = self.graph.get(phase_name)
        run = self._runs[key]

        def before_attempt(attempt: int) -> None:
            if attempt > 1:
                with self._cond:
                    self._transition(run, _S.RUNNING, attempt=attempt)

        def on_attempt(attempt: int, outcome: Outcome, delay: Optional[float]) -> None:
            if delay is None:
                return
            with self._cond:
                self._transition(run, _S.FAILED, attempt=attempt, error=outcome.error, note=NOTE_RETRY)
                self._transition(run, _S.READY, attempt=attempt, note=f"{NOTE_RETRY} in {delay:.1f}s")

        try:
            outcome = self.executor.execute(host_id, phase, on_attempt=on_attempt,
                                            before_attempt=before_attempt)
        except Exception as exc:
            log.exception("%s/%s: executor error", host_id, phase_name)
            outcome = Outcome.fatal(f"executor error: {exc}", run.attempts)

        with self._cond:
            self._running.discard(key)
            klass = phase.serialization_class
            if klass and self._class_slots.get(klass) == key:
                del self._class_slots[klass]
            self._complete(run, phase, outcome)
            self._cond.notify_all()

    def _complete(self, run: PhaseRun, phase: Phase, outcome: Outcome) -> None:
        if outcome.ok:
            self._transition(run, _S.SUCCEEDED, attempt=outcome.attempts or run.attempts)
            return

        if run.status is _S.READY:
            self._transition(run, _S.SKIPPED, note=NOTE_PLAN_ABORT if self._aborted else NOTE_CANCELLED,
                             error="stopped before retry")
            return

        self._transition(run, _S.FAILED, attempt=outcome.attempts or run.attempts, error=outcome.error)
        if self._cancelled:
            return

        if phase.optional:
            log.warning("%s/%s failed but is optional: %s", run.host, run.phase, outcome.error)
            self._transition(run, _S.SKIPPED, error=outcome.error, note=NOTE_OPTIONAL)
            return

        reason = f"{run.host}/{run.phase} failed: {outcome.error}"
        if self.effective_scope(phase) is AbortScope.GLOBAL:
            self._abort_global(reason, run.host, run.phase)
        else:
            self._abort_host(run.host, reason, run.phase)

    # ------------------------------------------------------------------
    # abort handling
    # ------------------------------------------------------------------
    def _skip_blocked(self, run: PhaseRun, failed: PhaseRun) -> None:
        reason = f"{failed.host}/{failed.phase} failed"
        if self.effective_scope(self.graph.get(run.phase)) is AbortScope.GLOBAL:
            self._abort_global(f"{run.host}/{run.phase} cannot run: {reason}", run.host, run.phase)
            return
        self._transition(run, _S.SKIPPED, error=reason, note=NOTE_DEPENDENCY_FAILED)

    def _remote_dependents(self, run: PhaseRun) -> List[PhaseRun]:
        """Runs on other hosts that have not started and wait on ``run``."""
        found = []
        for phase in self.graph.dependents_of(run.phase):
            for key in self._by_phase[phase.name]:
                other = self._runs[key]
                if other.host == run.host or not other.status.not_started:
                    continue
                if any(d is run for d in self._dependency_runs(other)):
                    found.append(other)
        return found

    def _abort_host(self, host: str, reason: str, phase: Optional[str] = None) -> None:
        victims = [r for r in self._runs.values() if r.host == host and self._idle(r)]
        critical = [r.phase for r in self._ordered(victims) if self._remote_dependents(r)]
        if critical:
            # other hosts wait on these runs
            self._abort_global(f"{reason}; {host} cannot reach {', '.join(critical)}", host, phase)
            return
        log.warning("aborting remaining phases on %s: %s", host, reason)
        self._emit(PlanAborted(scope=AbortScope.HOST.value, host=host, phase=phase, error=reason,
                               **stamp(self._ctx)))
        for r in self._ordered(victims):
            self._transition(r, _S.SKIPPED, error=reason, note=NOTE_HOST_ABORT)

    def _abort_global(self, reason: str, host: Optional[str] = None, phase: Optional[str] = None) -> None:
        if self._aborted:
            return
        log.error("aborting plan: %s", reason)
        self._aborted = True
        self._abort_reason = reason
        self._stop.set()
        self._emit(PlanAborted(scope=AbortScope.GLOBAL.value, host=host, phase=phase, error=reason,
                               **stamp(self._ctx)))
        for r in self._ordered(self._runs.values()):
            if self._idle(r):
                self._transition(r, _S.SKIPPED, error=reason, note=NOTE_PLAN_ABORT)

    def _finalize(self) -> None:
        note = NOTE_CANCELLED if self._cancelled else NOTE_PLAN_ABORT
        for r in self._ordered(self._runs.values()):
            if self._idle(r):
                self._transition(r, _S.SKIPPED, error=self._abort_reason, note=note)

    # ------------------------------------------------------------------
    # state changes
    # ------------------------------------------------------------------
    def _transition(
        self,
        run: PhaseRun,
        to: RunStatus,
        *,
        attempt: Optional[int] = None,
        error: Optional[str] = None,
        note: Optional[str] = None,
        force: bool = False,
    ) -> None:
        with self._cond:
            frm = run.status
            if not force and to not in _ALLOWED[frm]:
                raise RuntimeError(f"illegal transition {run.host}/{run.phase}: {frm.value} -> {to.value}")
            attempts = run.attempts if attempt is None else attempt

            # durable first, then acted upon
            self.ledger.record(PhaseRunTransition(run.host, run.phase, frm, to,
                                                  attempt=attempts, error=error, note=note))

            now = utcnow()
            run.status = to
            run.attempts = attempts
            run.note = note
            if to is _S.RUNNING and run.started_at is None:
                run.started_at = now
            if to in (_S.SUCCEEDED, _S.FAILED, _S.SKIPPED):
                run.finished_at = now
            if to in (_S.FAILED, _S.SKIPPED):
                run.error = error
            elif to is _S.SUCCEEDED:
                run.error = None

            self.registry.set_phase_status(run.host, run.phase, to)
            self._emit(PhaseRunTransitioned(host=run.host, phase=run.phase, from_state=frm.value,
                                            to_state=to.value, attempt=attempts, error=error,
                                            **stamp(self._ctx)))

    def _report(self) -> DeploymentReport:
        with self._cond:
            return DeploymentReport(
                runs=self.runs(),
                aborted=self._aborted,
                abort_reason=self._abort_reason,
                cancelled=self._cancelled,
                dispatch_order=list(self._dispatch_order),
            )

    def _emit(self, event) -> None:
        if self._bus:
            self._bus.emit(event)
