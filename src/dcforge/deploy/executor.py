# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/dcforge/deploy/executor.py

from __future__ import annotations

import concurrent.futures
import logging
import random
import threading
import time
from typing import Any, Callable, Dict, Optional

from .errors import TRANSIENT
from .graph import Phase
from .models import HostContext, Outcome
from .prober import ReadinessProber
from .registry import HostRegistry
from ..utils.execution import ExecutionContext

# Observer bits
from ..observers.dispatcher import EventBus
from ..observers.events import PhaseAttempt, new_ctx, stamp

log = logging.getLogger("dcforge")

# on_attempt(attempt, outcome, retry_delay) -- retry_delay is None when no retry follows
AttemptCallback = Callable[[int, Outcome, Optional[float]], None]

CANCELLED = "cancelled before retry"


def _to_outcome(result: Any, attempt: int) -> Outcome:
    if result is None or result is True:
        return Outcome.success(attempt)
    if isinstance(result, Outcome):
        return Outcome(result.kind, result.error, attempt)
    if result is False:
        return Outcome.fatal("leaf action reported failure", attempt)
    # anything else is treated as an informational return value
    return Outcome.success(attempt)


class ActionExecutor:
    """
    Runs one phase's leaf action against one host. Knows nothing about
    forests or VMs: it only manages timing, retries and outcome
    classification using the phase's RetryPolicy.
    """

    def __init__(
        self,
        registry: HostRegistry,
        prober: Optional[ReadinessProber] = None,
        *,
        ctx: Optional[ExecutionContext] = None,
        settings: Any = None,
        rng: Optional[random.Random] = None,
        sleep: Optional[Callable[[float], None]] = None,
        cancel_event: Optional[threading.Event] = None,
        bus: Optional[EventBus] = None,
        run_ctx: Optional[Dict] = None,
        max_attempt_threads: int = 32,
    ):
        self.registry = registry
        self.prober = prober or ReadinessProber()
        self.ctx = ctx or ExecutionContext()
        self.settings = settings
        self.cancel_event = cancel_event or threading.Event()
        self._rng = rng or random.Random()
        self._sleep = sleep or self._interruptible_sleep
        self._bus = bus
        self._run_ctx = run_ctx or new_ctx(env=self.ctx.env, context=None, run_id=self.ctx.run_id)
        self._pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_attempt_threads, thread_name_prefix="dcforge-action"
        )

    # ------------------------------------------------------------------
    # single attempt
    # ------------------------------------------------------------------
    def attempt(self, host_id: str, phase: Phase, attempt: int) -> Outcome:
        host = self.registry.get(host_id)
        hctx = HostContext(
            host=host,
            phase=phase,
            attempt=attempt,
            registry=self.registry,
            prober=self.prober,
            ctx=self.ctx,
            settings=self.settings,
        )
        t0 = time.monotonic()

        if self.ctx.dry_run:
            log.info("[dry-run] %s/%s: would run %s", host_id, phase.name,
                     getattr(phase.action, "__name__", "leaf action"))
            outcome = Outcome.success(attempt)
        elif phase.action is None:
            outcome = Outcome.fatal(f"phase '{phase.name}' has no leaf action", attempt)
        else:
            outcome = self._invoke(phase, hctx, attempt)

        duration_ms = int((time.monotonic() - t0) * 1000)
        log.debug("%s/%s attempt %d -> %s (%dms)", host_id, phase.name, attempt, outcome.kind, duration_ms)
        return outcome

    def _invoke(self, phase: Phase, hctx: HostContext, attempt: int) -> Outcome:
        policy = phase.retry
        try:
            if policy.attempt_timeout is None:
                result = phase.action(hctx)
            else:
                future = self._pool.submit(phase.action, hctx)
                try:
                    result = future.result(timeout=policy.attempt_timeout)
                except concurrent.futures.TimeoutError:
                    # the action keeps running in its thread; remote state is
                    # left to settle rather than being interrupted mid-change
                    raise TimeoutError(
                        f"attempt exceeded {policy.attempt_timeout:g}s"
                    ) from None
        except Exception as exc:
            kind = policy.classify_exception(exc)
            message = str(exc) or exc.__class__.__name__
            if kind == TRANSIENT:
                return Outcome.transient(message, attempt)
            log.debug("%s/%s fatal error", hctx.host.name, phase.name, exc_info=True)
            return Outcome.fatal(message, attempt)
        return _to_outcome(result, attempt)

    # ------------------------------------------------------------------
    # retry loop
    # ------------------------------------------------------------------
    def execute(
        self,
        host_id: str,
        phase: Phase,
        on_attempt: Optional[AttemptCallback] = None,
        before_attempt: Optional[Callable[[int], None]] = None,
    ) -> Outcome:
        """
        Attempt until success, a fatal outcome, or max_attempts. Returns the
        final Outcome with ``attempts`` set to the number of invocations.
        """
        policy = phase.retry
        attempt = 0
        while True:
            attempt += 1
            if before_attempt:
                before_attempt(attempt)
            t0 = time.monotonic()
            outcome = self.attempt(host_id, phase, attempt)

            delay: Optional[float] = None
            if (
                outcome.kind == TRANSIENT
                and policy.allows_another(attempt)
                and not self.cancel_event.is_set()
            ):
                delay = policy.delay_for(attempt, self._rng)

            self._emit_attempt(host_id, phase, attempt, outcome, t0, delay)
            if on_attempt:
                on_attempt(attempt, outcome, delay)

            if outcome.ok or outcome.kind != TRANSIENT:
                return outcome
            if delay is None:
                if self.cancel_event.is_set() and policy.allows_another(attempt):
                    return Outcome.fatal(CANCELLED, attempt)
                log.warning("%s/%s: giving up after %d attempt(s): %s",
                            host_id, phase.name, attempt, outcome.error)
                return outcome

            log.info("%s/%s: transient failure (%s); retry %d/%d in %.1fs",
                     host_id, phase.name, outcome.error, attempt + 1, policy.max_attempts, delay)
            self._sleep(delay)
            if self.cancel_event.is_set():
                return Outcome.fatal(CANCELLED, attempt)

    def close(self) -> None:
        # timed-out attempts may still be running; do not block on them
        self._pool.shutdown(wait=False)

    def _interruptible_sleep(self, seconds: float) -> None:
        self.cancel_event.wait(seconds)

    def _emit_attempt(self, host_id, phase, attempt, outcome, t0, delay) -> None:
        if not self._bus:
            return
        self._bus.emit(PhaseAttempt(
            host=host_id,
            phase=phase.name,
            attempt=attempt,
            outcome=outcome.kind,
            duration_ms=int((time.monotonic() - t0) * 1000),
            error=outcome.error,
            retry_in_s=delay,
            **stamp(self._run_ctx),
        ))
