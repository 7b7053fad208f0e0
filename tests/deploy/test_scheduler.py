import json
import threading
import time

import pytest

from dcforge.deploy.errors import FatalActionError, GraphConfigurationError, TransientActionError
from dcforge.deploy.executor import ActionExecutor
from dcforge.deploy.graph import Phase, PhaseGraph
from dcforge.deploy.ledger import DeploymentLedger
from dcforge.deploy.models import AbortScope, Host, Role, RunStatus as S
from dcforge.deploy.phases import PHASE_NAMES, build_ad_graph
from dcforge.deploy.prober import ReadinessProber
from dcforge.deploy.registry import HostRegistry
from dcforge.deploy.scheduler import _ALLOWED, DIRECTORY_SERVICE_CLASS, Orchestrator
from dcforge.observers.dispatcher import EventBus
from dcforge.observers.events import DeploySummary, PlanAborted


class Capture:
    def __init__(self): self.events = []
    def notify(self, ev): self.events.append(ev)


class Recorder:
    """Leaf actions that record calls and per-class concurrency."""

    def __init__(self, fail=None, hook=None):
        self.lock = threading.Lock()
        self.calls = []
        self.fail = fail or {}
        self.hook = hook or {}
        self.active = {}
        self.max_active = {}

    def action(self, name):
        def run(hctx):
            key = (hctx.host.name, name)
            klass = hctx.phase.serialization_class
            with self.lock:
                self.calls.append(key)
                if klass:
                    self.active[klass] = self.active.get(klass, 0) + 1
                    self.max_active[klass] = max(self.max_active.get(klass, 0), self.active[klass])
            try:
                time.sleep(0.005)
                if key in self.hook:
                    self.hook[key](hctx)
                if key in self.fail:
                    raise self.fail[key]
            finally:
                if klass:
                    with self.lock:
                        self.active[klass] -= 1
        run.__name__ = name
        return run

    def actions(self):
        return {n: self.action(n) for n in PHASE_NAMES}


def _hosts(*extra):
    return [Host("dc-01", Role.PRIMARY, address="10.0.0.10"),
            Host("dc-02", Role.ADDITIONAL, address="10.0.0.11"),
            *extra]


def _orchestrator(rec, hosts=None, *, ledger=None, registry=None, prober=None, bus=None, concurrency=10):
    reg = registry or HostRegistry()
    for h in hosts if hosts is not None else _hosts():
        reg.register(h)
    ex = ActionExecutor(reg, prober or ReadinessProber(0, sleep=lambda s: None), sleep=lambda s: None)
    return Orchestrator(build_ad_graph(rec.actions()), reg, ex, ledger=ledger or DeploymentLedger(),
                        concurrency=concurrency, bus=bus)


def _transitions(ledger, host, phase):
    return [r for r in ledger.transitions() if r["host"] == host and r["phase"] == phase]


def _position(ledger, host, phase, to):
    for i, r in enumerate(ledger.transitions()):
        if r["host"] == host and r["phase"] == phase and r["to"] == to:
            return i
    return None


# ----------------------------------------------------------------------
# happy path
# ----------------------------------------------------------------------
def test_all_phases_succeed_on_two_controllers():
    rec = Recorder()
    cap = Capture()
    ledger = DeploymentLedger()
    orch = _orchestrator(rec, ledger=ledger, bus=EventBus([cap]))
    report = orch.run()

    assert report.exit_code == 0
    assert report.summary() == "SUCCEEDED=16 SKIPPED=0 FAILED=0"
    assert all(r.status is S.SUCCEEDED for r in report.runs)
    assert report.run_for("dc-01", "join-domain") is None
    assert report.run_for("dc-02", "create-forest") is None
    assert len(rec.calls) == 16
    summary = next(e for e in cap.events if isinstance(e, DeploySummary))
    assert summary.succeeded == 16 and not summary.aborted


def test_every_recorded_transition_is_legal():
    rec = Recorder()
    ledger = DeploymentLedger()
    _orchestrator(rec, ledger=ledger).run()
    for r in ledger.transitions():
        frm, to = S(r["from"]), S(r["to"])
        assert to in _ALLOWED[frm], r


def test_directory_service_class_never_runs_twice_at_once():
    rec = Recorder()
    hosts = _hosts(Host("dc-03", Role.ADDITIONAL, address="10.0.0.12"),
                   Host("dc-04", Role.ADDITIONAL, address="10.0.0.13"))
    report = _orchestrator(rec, hosts).run()
    assert report.exit_code == 0
    assert rec.max_active[DIRECTORY_SERVICE_CLASS] == 1


def test_join_domain_starts_only_after_forest_exists():
    rec = Recorder()
    ledger = DeploymentLedger()
    _orchestrator(rec, _hosts(Host("dc-03", Role.ADDITIONAL)), ledger=ledger).run()
    forest_done = _position(ledger, "dc-01", "create-forest", "Succeeded")
    for host in ("dc-02", "dc-03"):
        assert _position(ledger, host, "join-domain", "Running") > forest_done
        assert _position(ledger, host, "join-domain", "Running") > _position(ledger, host, "base-configure", "Succeeded")


def test_primary_goes_first_regardless_of_registration_order():
    rec = Recorder()
    hosts = [Host("dc-02", Role.ADDITIONAL), Host("dc-01", Role.PRIMARY)]
    report = _orchestrator(rec, hosts, concurrency=1).run()
    assert report.dispatch_order[0] == ("dc-01", "provision")
    assert [h for h, _ in report.dispatch_order[:8]] == ["dc-01"] * 8


def test_host_registered_mid_run_gets_its_phases():
    registry = HostRegistry()

    def add_host(hctx):
        hctx.registry.register(Host("dc-03", Role.ADDITIONAL, address="10.0.0.12"))

    rec = Recorder(hook={("dc-01", "provision"): add_host})
    report = _orchestrator(rec, registry=registry).run()
    assert report.exit_code == 0
    assert report.run_for("dc-03", "join-domain").status is S.SUCCEEDED
    assert ("dc-03", "validate") in rec.calls


# ----------------------------------------------------------------------
# failures and aborts
# ----------------------------------------------------------------------
def test_forest_failure_aborts_plan_and_no_join_is_attempted():
    rec = Recorder(fail={("dc-01", "create-forest"): FatalActionError("DSRM password rejected")})
    cap = Capture()
    report = _orchestrator(rec, bus=EventBus([cap])).run()

    assert report.aborted
    assert report.exit_code == 1
    assert "create-forest" in report.abort_reason
    assert report.run_for("dc-01", "create-forest").status is S.FAILED
    assert report.run_for("dc-02", "join-domain").status is S.SKIPPED
    assert report.run_for("dc-02", "join-domain").note == "plan-abort"
    assert ("dc-02", "join-domain") not in report.dispatch_order
    assert ("dc-02", "join-domain") not in rec.calls
    aborted = [e for e in cap.events if isinstance(e, PlanAborted)]
    assert aborted[0].scope == "global" and aborted[0].phase == "create-forest"


def test_additional_failure_before_join_only_skips_that_host():
    rec = Recorder(fail={("dc-02", "base-configure"): FatalActionError("rename failed")})
    report = _orchestrator(rec).run()
    assert not report.aborted
    assert report.exit_code == 2
    assert report.run_for("dc-02", "join-domain").status is S.SKIPPED
    assert report.run_for("dc-02", "join-domain").note == "host-abort"
    assert report.run_for("dc-01", "validate").status is S.SUCCEEDED


def test_failed_clone_of_one_additional_leaves_the_others_running():
    rec = Recorder(fail={("dc-03", "provision"): FatalActionError("clone failed")})
    cap = Capture()
    report = _orchestrator(rec, _hosts(Host("dc-03", Role.ADDITIONAL, address="10.0.0.12")),
                           bus=EventBus([cap])).run()
    assert not report.aborted
    assert report.exit_code == 2
    assert report.run_for("dc-03", "provision").status is S.FAILED
    assert all(r.status is S.SKIPPED and r.note == "host-abort"
               for r in report.runs if r.host == "dc-03" and r.phase != "provision")
    assert all(r.status is S.SUCCEEDED for r in report.runs if r.host != "dc-03")
    aborted = [e for e in cap.events if isinstance(e, PlanAborted)]
    assert [(e.scope, e.host) for e in aborted] == [("host", "dc-03")]


def test_primary_failure_before_forest_aborts_the_plan():
    rec = Recorder(fail={("dc-01", "base-configure"): FatalActionError("rename failed")})
    report = _orchestrator(rec).run()
    assert report.aborted
    assert report.exit_code == 1
    assert report.run_for("dc-01", "create-forest").note == "plan-abort"
    assert report.run_for("dc-02", "join-domain").status is S.SKIPPED
    assert ("dc-02", "join-domain") not in rec.calls
    assert "create-forest" in report.abort_reason


def test_host_scoped_failure_only_skips_that_host():
    rec = Recorder(fail={("dc-02", "configure-dns"): FatalActionError("forwarder rejected")})
    report = _orchestrator(rec).run()
    assert not report.aborted
    assert report.exit_code == 2
    assert report.run_for("dc-02", "configure-dns").status is S.FAILED
    assert report.run_for("dc-02", "validate").status is S.SKIPPED
    assert report.run_for("dc-02", "validate").note == "host-abort"
    assert report.run_for("dc-01", "validate").status is S.SUCCEEDED


def test_optional_monitoring_failure_is_a_warning():
    rec = Recorder(fail={("dc-02", "configure-monitoring"): FatalActionError("task scheduler busy")})
    report = _orchestrator(rec).run()
    run = report.run_for("dc-02", "configure-monitoring")
    assert run.status is S.SKIPPED
    assert run.note == "optional-failure"
    assert run.error == "task scheduler busy"
    assert report.run_for("dc-02", "validate").status is S.SUCCEEDED
    assert not report.aborted
    assert report.exit_code == 2
    assert report.warnings == [run]


def test_optional_phase_cannot_abort_the_plan():
    reg = HostRegistry()
    graph = PhaseGraph([Phase("x", optional=True, abort_scope=AbortScope.GLOBAL)])
    with pytest.raises(GraphConfigurationError):
        Orchestrator(graph, reg, ActionExecutor(reg))


# ----------------------------------------------------------------------
# retries
# ----------------------------------------------------------------------
class FakeClock:
    def __init__(self): self.now = 0.0
    def __call__(self): return self.now
    def sleep(self, s): self.now += s


def test_probe_timeouts_are_retried_until_host_comes_up():
    clock = FakeClock()
    polls = {"n": 0}

    def probe(address):
        polls["n"] += 1
        return polls["n"] > 6

    def wait(hctx):
        hctx.prober.require_ready(hctx.host.address, probe, timeout=10)

    rec = Recorder(hook={("dc-01", "await-connectivity"): wait})
    ledger = DeploymentLedger()
    report = _orchestrator(rec, [Host("dc-01", Role.PRIMARY, address="10.0.0.10")], ledger=ledger,
                           prober=ReadinessProber(5.0, clock=clock, sleep=clock.sleep)).run()

    assert report.exit_code == 0
    run = report.run_for("dc-01", "await-connectivity")
    assert run.status is S.SUCCEEDED
    assert run.attempts == 3
    assert [r["to"] for r in _transitions(ledger, "dc-01", "await-connectivity")] == [
        "Pending", "Ready",
        "Running", "Failed", "Ready",
        "Running", "Failed", "Ready",
        "Running", "Succeeded",
    ]


def test_retries_exhausted_fail_the_run():
    rec = Recorder(fail={("dc-02", "configure-dns"): TransientActionError("DNS server not ready")})
    report = _orchestrator(rec).run()
    run = report.run_for("dc-02", "configure-dns")
    assert run.status is S.FAILED
    assert run.attempts == 3
    assert rec.calls.count(("dc-02", "configure-dns")) == 3


# ----------------------------------------------------------------------
# selection, cancellation, resume
# ----------------------------------------------------------------------
def test_only_selected_phases_run():
    rec = Recorder()
    report = _orchestrator(rec).run(only=["provision"])
    assert sorted(rec.calls) == [("dc-01", "provision"), ("dc-02", "provision")]
    assert report.run_for("dc-01", "validate").note == "deselected"
    assert report.exit_code == 0


def test_cancel_stops_dispatching_new_work():
    holder = {}
    rec = Recorder(hook={("dc-01", "provision"): lambda hctx: holder["orch"].cancel()})
    orch = _orchestrator(rec, [Host("dc-01", Role.PRIMARY)])
    holder["orch"] = orch
    report = orch.run()
    assert report.cancelled
    assert report.exit_code == 1
    assert report.run_for("dc-01", "provision").status is S.SUCCEEDED
    assert report.run_for("dc-01", "await-connectivity").status is S.SKIPPED
    assert report.run_for("dc-01", "await-connectivity").note == "cancelled"
    assert rec.calls == [("dc-01", "provision")]


def test_resume_reruns_only_unfinished_work(tmp_path):
    path = tmp_path / "ledger.jsonl"
    first = Recorder(fail={("dc-02", "configure-dns"): FatalActionError("forwarder rejected")})
    report = _orchestrator(first, ledger=DeploymentLedger(path)).run()
    assert report.exit_code == 2

    ledger = DeploymentLedger(path)
    snapshot = ledger.snapshot()
    second = Recorder()
    registry = HostRegistry()
    ex = ActionExecutor(registry, ReadinessProber(0, sleep=lambda s: None), sleep=lambda s: None)
    orch = Orchestrator(build_ad_graph(second.actions()), registry, ex, ledger=ledger)
    orch.resume_from(snapshot)
    report = orch.run()

    assert report.exit_code == 0
    assert ("dc-02", "configure-dns") in second.calls
    assert ("dc-02", "validate") in second.calls
    assert {h for h, _ in second.calls} == {"dc-02"}
    assert {p for _, p in second.calls} <= {"configure-dns", "configure-monitoring", "validate"}
    assert report.run_for("dc-01", "create-forest").note == "resumed"
    assert [h.name for h in registry.list()] == ["dc-01", "dc-02"]

    # a third pass over the now complete ledger does nothing
    third = Recorder()
    ledger = DeploymentLedger(path)
    snapshot = ledger.snapshot()
    registry = HostRegistry()
    ex = ActionExecutor(registry, ReadinessProber(0, sleep=lambda s: None), sleep=lambda s: None)
    orch = Orchestrator(build_ad_graph(third.actions()), registry, ex, ledger=ledger)
    orch.resume_from(snapshot)
    assert orch.run().exit_code == 0
    assert third.calls == []


class CheckThenAct:
    """Leaf actions that apply their effect once, however often they are called."""

    def __init__(self):
        self.lock = threading.Lock()
        self.calls = []
        self.applied = {}

    def action(self, name):
        def run(hctx):
            key = (hctx.host.name, name)
            with self.lock:
                self.calls.append(key)
                if key not in self.applied:
                    self.applied[key] = 1
        run.__name__ = name
        return run

    def actions(self):
        return {n: self.action(n) for n in PHASE_NAMES}


def test_resume_after_lost_success_record_does_not_repeat_effects(tmp_path):
    path = tmp_path / "ledger.jsonl"
    leaf = CheckThenAct()
    registry = HostRegistry()
    for h in _hosts():
        registry.register(h)
    ex = ActionExecutor(registry, ReadinessProber(0, sleep=lambda s: None), sleep=lambda s: None)
    assert Orchestrator(build_ad_graph(leaf.actions()), registry, ex,
                        ledger=DeploymentLedger(path)).run().exit_code == 0
    effects = dict(leaf.applied)

    # the action finished but the process died before its success was recorded
    lines = path.read_text(encoding="utf-8").splitlines(keepends=True)
    cut = next(i for i, line in enumerate(lines)
               if json.loads(line).get("host") == "dc-02"
               and json.loads(line).get("phase") == "validate"
               and json.loads(line).get("to") == "Succeeded")
    path.write_text("".join(lines[:cut]), encoding="utf-8")

    ledger = DeploymentLedger(path)
    snapshot = ledger.snapshot()
    assert snapshot.status_of("dc-02", "validate") is S.RUNNING
    registry = HostRegistry()
    ex = ActionExecutor(registry, ReadinessProber(0, sleep=lambda s: None), sleep=lambda s: None)
    orch = Orchestrator(build_ad_graph(leaf.actions()), registry, ex, ledger=ledger)
    orch.resume_from(snapshot)
    report = orch.run()

    assert report.exit_code == 0
    assert leaf.calls.count(("dc-02", "validate")) == 2
    assert leaf.applied == effects
    assert all(count == 1 for count in leaf.applied.values())
    assert report.run_for("dc-02", "validate").status is S.SUCCEEDED
