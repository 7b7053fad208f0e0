# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/dcforge/deploy/prober.py

from __future__ import annotations

import logging
import socket
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional

from .errors import TransientActionError
from ..observers.dispatcher import EventBus
from ..observers.events import WaiterStarted, WaiterSucceeded, WaiterTimedOut, new_ctx, stamp

log = logging.getLogger("dcforge")

Probe = Callable[[str], bool]


class ProbeStatus(str, Enum):
    SUCCEEDED = "Succeeded"
    TIMED_OUT = "TimedOut"


@dataclass(frozen=True)
class ProbeResult:
    status: ProbeStatus
    polls: int
    elapsed: float

    @property
    def ok(self) -> bool:
        return self.status is ProbeStatus.SUCCEEDED


def tcp_probe(port: int, connect_timeout: float = 3.0) -> Probe:
    """Probe that succeeds once ``address:port`` accepts a TCP connection."""

    def _probe(address: str) -> bool:
        with socket.create_connection((address, port), timeout=connect_timeout):
            return True

    _probe.__name__ = f"tcp/{port}"
    return _probe


def _probe_name(probe: Probe) -> str:
    return getattr(probe, "__name__", repr(probe))


class ReadinessProber:
    """
    Poll-until-ready-or-timeout. Replaces fixed sleeps after boots and
    reboots with a bounded, observable wait.
    """

    def __init__(
        self,
        interval: float = 5.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        bus: Optional[EventBus] = None,
        run_ctx: Optional[Dict] = None,
    ):
        if interval < 0:
            raise ValueError("interval must be >= 0")
        self.interval = interval
        self._clock = clock
        self._sleep = sleep
        self._bus = bus
        self._ctx = run_ctx or new_ctx(env="lab", context=None)

    def await_ready(self, address: str, probe: Probe, timeout: float) -> ProbeResult:
        name = _probe_name(probe)
        start = self._clock()
        deadline = start + max(timeout, 0.0)
        polls = 0
        self._emit(WaiterStarted(address=address, probe=name, timeout_s=timeout, **stamp(self._ctx)))

        while True:
            polls += 1
            try:
                ready = bool(probe(address))
            except Exception as exc:
                log.debug("probe %s on %s not ready: %s", name, address, exc)
                ready = False

            now = self._clock()
            if ready:
                log.debug("%s ready via %s after %d poll(s)", address, name, polls)
                self._emit(WaiterSucceeded(address=address, probe=name, polls=polls, **stamp(self._ctx)))
                return ProbeResult(ProbeStatus.SUCCEEDED, polls, now - start)

            remaining = deadline - now
            if remaining <= 0:
                log.info("%s not ready via %s within %.0fs (%d poll(s))", address, name, timeout, polls)
                self._emit(WaiterTimedOut(address=address, probe=name, timeout_s=timeout,
                                          polls=polls, **stamp(self._ctx)))
                return ProbeResult(ProbeStatus.TIMED_OUT, polls, now - start)

            self._sleep(min(self.interval, remaining))

    def require_ready(self, address: Optional[str], probe: Probe, timeout: float) -> ProbeResult:
        """
        Like await_ready, but a timeout raises TransientActionError so the
        calling phase's RetryPolicy decides how often to try again.
        """
        if not address:
            raise TransientActionError("host has no address yet")
        result = self.await_ready(address, probe, timeout)
        if not result.ok:
            raise TransientActionError(
                f"{address} not ready ({_probe_name(probe)}) after {timeout:.0f}s"
            )
        return result

    def _emit(self, event) -> None:
        if self._bus:
            self._bus.emit(event)
