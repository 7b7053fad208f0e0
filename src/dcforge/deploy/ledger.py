# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/dcforge/deploy/ledger.py

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .errors import LedgerCorruptError
from .models import Host, PhaseRunTransition, Role, RunKey, RunStatus, utcnow
from ..utils.serialize import to_jsonable

log = logging.getLogger("dcforge")

PLAN = "plan"
HOST = "host"
TRANSITION = "transition"


@dataclass
class RunState:
    status: RunStatus
    attempts: int = 0
    error: Optional[str] = None
    note: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass
class PlanSnapshot:
    """Plan state reconstructed from ledger records."""
    run_id: Optional[str] = None
    phases: List[str] = field(default_factory=list)
    hosts: Dict[str, Host] = field(default_factory=dict)
    runs: Dict[RunKey, RunState] = field(default_factory=dict)

    def status_of(self, host: str, phase: str) -> Optional[RunStatus]:
        state = self.runs.get((host, phase))
        return state.status if state else None

    def counts(self) -> Dict[str, int]:
        out: Dict[str, int] = {s.value: 0 for s in RunStatus}
        for state in self.runs.values():
            out[state.status.value] += 1
        return out


def _host_from_record(rec: Dict[str, Any]) -> Host:
    role = rec.get("role")
    return Host(
        name=rec["host"],
        role=Role(role) if role else None,
        address=rec.get("address"),
        order=rec.get("order", -1),
        vars=dict(rec.get("vars") or {}),
    )


def replay(records: Iterable[Dict[str, Any]]) -> PlanSnapshot:
    """Fold a record stream into a PlanSnapshot."""
    snap = PlanSnapshot()
    for rec in records:
        kind = rec.get("kind")
        if kind == PLAN:
            # a new plan (fresh or resumed) re-records everything it keeps
            snap.run_id = rec.get("run_id")
            snap.phases = list(rec.get("phases") or [])
            snap.runs = {}
            for host in snap.hosts.values():
                host.phase_status = {}
                host.current_phase = None
        elif kind == HOST:
            host = _host_from_record(rec)
            prev = snap.hosts.get(host.name)
            if prev is not None and host.order < 0:
                host.order = prev.order
            snap.hosts[host.name] = host
        elif kind == TRANSITION:
            key = (rec["host"], rec["phase"])
            to_state = RunStatus(rec["to"])
            prev = snap.runs.get(key)
            if prev is not None and rec.get("from") and prev.status.value != rec["from"]:
                log.warning("ledger: %s/%s recorded %s -> %s but replay state is %s",
                            key[0], key[1], rec["from"], rec["to"], prev.status.value)
            state = prev or RunState(status=to_state)
            state.status = to_state
            state.attempts = int(rec.get("attempt") or 0)
            state.error = rec.get("error") if to_state in (RunStatus.FAILED, RunStatus.SKIPPED) else None
            state.note = rec.get("note")
            state.updated_at = rec.get("ts")
            snap.runs[key] = state
            host = snap.hosts.get(key[0])
            if host is not None:
                host.phase_status[key[1]] = to_state
                host.current_phase = key[1]
        else:
            raise LedgerCorruptError(f"Unknown ledger record kind: {kind!r}")
    return snap


class DeploymentLedger:
    """
    Append-only transition log.

    With ``path`` the log is a JSON Lines file; each record is flushed and
    fsynced before ``record`` returns, so anything the scheduler acts on is
    already durable. Without ``path`` the ledger lives in memory (tests,
    dry runs). Opening an existing file loads its history.
    """

    def __init__(self, path: Optional[str | Path] = None, *, fsync: bool = True):
        self.path = Path(path) if path else None
        self._fsync = fsync
        self._lock = threading.Lock()
        self._records: List[Dict[str, Any]] = []
        if self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            if self.path.exists():
                self._records = self._read(self.path)

    @classmethod
    def load(cls, path: str | Path) -> "DeploymentLedger":
        if not Path(path).is_file():
            raise FileNotFoundError(f"Ledger not found: {path}")
        return cls(path)

    # ------------------------------------------------------------------
    # writers
    # ------------------------------------------------------------------
    def record(self, transition: PhaseRunTransition) -> None:
        rec = {
            "kind": TRANSITION,
            "host": transition.host,
            "phase": transition.phase,
            "from": transition.from_state.value,
            "to": transition.to_state.value,
            "attempt": transition.attempt,
            "ts": transition.ts,
            "error": transition.error,
            "note": transition.note,
        }
        self._append(rec)

    def record_host(self, host: Host) -> None:
        self._append({
            "kind": HOST,
            "host": host.name,
            "role": host.role.value if host.role else None,
            "address": host.address,
            "order": host.order,
            "vars": to_jsonable(host.vars),
            "ts": utcnow(),
        })

    def record_plan(self, run_id: Optional[str], phases: List[str]) -> None:
        self._append({"kind": PLAN, "run_id": run_id, "phases": list(phases), "ts": utcnow()})

    # ------------------------------------------------------------------
    # readers
    # ------------------------------------------------------------------
    def records(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(r) for r in self._records]

    def transitions(self) -> List[Dict[str, Any]]:
        return [r for r in self.records() if r["kind"] == TRANSITION]

    def snapshot(self) -> PlanSnapshot:
        return replay(self.records())

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------
    def _append(self, rec: Dict[str, Any]) -> None:
        with self._lock:
            if self.path is not None:
                line = json.dumps(rec, sort_keys=True)
                with self.path.open("a", encoding="utf-8") as f:
                    f.write(line + "\n")
                    f.flush()
                    if self._fsync:
                        os.fsync(f.fileno())
            self._records.append(rec)

    @staticmethod
    def _read(path: Path) -> List[Dict[str, Any]]:
        lines = path.read_text(encoding="utf-8").splitlines()
        out: List[Dict[str, Any]] = []
        for i, line in enumerate(lines):
            if not line.strip():
                continue
            try:
                out.append(json.loads(line))
            except json.JSONDecodeError as e:
                if i == len(lines) - 1:
                    # torn write from a crash; the transition was never acted on
                    log.warning("ledger %s: ignoring incomplete last record", path)
                    continue
                raise LedgerCorruptError(f"{path}:{i + 1}: {e}") from e
        return out
