# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/dcforge/observers/events.py

from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import List, Dict, Any, Optional
from datetime import datetime, timezone
import uuid


# ---------------------------------------------------------------------
# Base context and helper
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BaseEvent:
    ts: str           # ISO timestamp
    run_id: str       # correlates all events in a single deploy invocation
    env: str          # lab/staging/prod
    context: Optional[str]  # proxmox node the plan targets

    def dict(self) -> Dict[str, Any]:
        return asdict(self)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def new_ctx(env: str, context: Optional[str], run_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "ts": _now(),
        "run_id": run_id or str(uuid.uuid4()),
        "env": env,
        "context": context,
    }


def stamp(ctx: Dict[str, Any]) -> Dict[str, Any]:
    """Same run context, fresh timestamp."""
    return {**ctx, "ts": _now()}


# ---------------------------------------------------------------------
# Phase graph
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class PlanComputed(BaseEvent):
    order: List[str]

@dataclass(frozen=True)
class PlanFailed(BaseEvent):
    error: str


# ---------------------------------------------------------------------
# Inventory
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class HostRegistered(BaseEvent):
    host: str
    role: Optional[str]
    address: Optional[str]


# ---------------------------------------------------------------------
# PhaseRun lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class PhaseRunTransitioned(BaseEvent):
    host: str
    phase: str
    from_state: str
    to_state: str
    attempt: int = 0
    error: Optional[str] = None

@dataclass(frozen=True)
class PhaseAttempt(BaseEvent):
    host: str
    phase: str
    attempt: int
    outcome: str        # "success" | "transient" | "fatal"
    duration_ms: int
    error: Optional[str] = None
    retry_in_s: Optional[float] = None


# ---------------------------------------------------------------------
# Readiness prober
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class WaiterStarted(BaseEvent):
    address: str
    probe: str
    timeout_s: float

@dataclass(frozen=True)
class WaiterSucceeded(BaseEvent):
    address: str
    probe: str
    polls: int

@dataclass(frozen=True)
class WaiterTimedOut(BaseEvent):
    address: str
    probe: str
    timeout_s: float
    polls: int


# ---------------------------------------------------------------------
# Abort & Summary
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class PlanAborted(BaseEvent):
    scope: str          # "host" | "global" | "cancelled"
    host: Optional[str]
    phase: Optional[str]
    error: Optional[str] = None

@dataclass(frozen=True)
class DeploySummary(BaseEvent):
    succeeded: int
    skipped: int
    failed: int
    aborted: bool = False
