# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/dcforge/deploy/models.py

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional, Tuple

from ..utils.execution import ExecutionContext

if TYPE_CHECKING:
    from .graph import Phase
    from .prober import ReadinessProber
    from .registry import HostRegistry


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class Role(str, Enum):
    PRIMARY = "primary"
    ADDITIONAL = "additional"


class RunStatus(str, Enum):
    PENDING = "Pending"
    READY = "Ready"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    SKIPPED = "Skipped"

    @property
    def satisfies_dependency(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.SKIPPED)

    @property
    def not_started(self) -> bool:
        return self in (RunStatus.PENDING, RunStatus.READY)


class AbortScope(str, Enum):
    HOST = "host"
    GLOBAL = "global"


def role_rank(role: Optional[Role]) -> int:
    """Dispatch priority: the primary establishes shared state, so it goes first."""
    if role is Role.PRIMARY:
        return 0
    if role is Role.ADDITIONAL:
        return 1
    return 2


@dataclass
class Host:
    """
    One machine under management. ``name`` is the natural key and HostID.
    """
    name: str
    role: Optional[Role] = None
    address: Optional[str] = None
    order: int = -1                                   # assigned by the registry
    vars: Dict[str, Any] = field(default_factory=dict)  # vmid, credentials refs, ...
    current_phase: Optional[str] = None
    phase_status: Dict[str, RunStatus] = field(default_factory=dict)

    @property
    def host_id(self) -> str:
        return self.name


RunKey = Tuple[str, str]   # (host, phase)


@dataclass
class PhaseRun:
    host: str
    phase: str
    status: RunStatus = RunStatus.PENDING
    attempts: int = 0
    error: Optional[str] = None
    note: Optional[str] = None
    created_at: str = field(default_factory=utcnow)
    started_at: Optional[str] = None
    finished_at: Optional[str] = None

    @property
    def key(self) -> RunKey:
        return (self.host, self.phase)


@dataclass(frozen=True)
class PhaseRunTransition:
    host: str
    phase: str
    from_state: RunStatus
    to_state: RunStatus
    ts: str = field(default_factory=utcnow)
    attempt: int = 0
    error: Optional[str] = None
    note: Optional[str] = None


@dataclass(frozen=True)
class Outcome:
    kind: str                   # "success" | "transient" | "fatal"
    error: Optional[str] = None
    attempts: int = 0

    @classmethod
    def success(cls, attempts: int = 0) -> "Outcome":
        return cls("success", None, attempts)

    @classmethod
    def transient(cls, error: str, attempts: int = 0) -> "Outcome":
        return cls("transient", error, attempts)

    @classmethod
    def fatal(cls, error: str, attempts: int = 0) -> "Outcome":
        return cls("fatal", error, attempts)

    @property
    def ok(self) -> bool:
        return self.kind == "success"


@dataclass
class HostContext:
    """
    What a leaf action gets when it is dispatched.
    """
    host: Host
    phase: "Phase"
    attempt: int
    registry: "HostRegistry"
    prober: "ReadinessProber"
    ctx: ExecutionContext = field(default_factory=ExecutionContext)
    settings: Any = None
