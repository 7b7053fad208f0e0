# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/dcforge/deploy/retry.py

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional

from .errors import FATAL, TRANSIENT, classify_error

if TYPE_CHECKING:
    from ..config.models import RetrySpec


@dataclass(frozen=True)
class RetryPolicy:
    """
    Per-phase retry configuration consulted by the ActionExecutor.

    max_attempts: total attempts, including the first one
    backoff_*: delay before attempt n+1 is base * multiplier**(n-1), capped
    jitter: fraction of the delay randomised in both directions
    attempt_timeout: hard per-attempt limit in seconds (None = unbounded)
    timeout_is_fatal: classify an attempt timeout as fatal instead of transient
    classify: exception -> "transient" | "fatal"
    """

    max_attempts: int = 3
    backoff_base: float = 5.0
    backoff_multiplier: float = 2.0
    backoff_cap: float = 300.0
    jitter: float = 0.1
    attempt_timeout: Optional[float] = None
    timeout_is_fatal: bool = False
    classify: Callable[[BaseException], str] = classify_error

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.backoff_base < 0 or self.backoff_cap < 0:
            raise ValueError("backoff values must be >= 0")
        if not 0 <= self.jitter <= 1:
            raise ValueError("jitter must be within [0, 1]")

    def delay_for(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Backoff to wait after a failed ``attempt`` (1-based)."""
        raw = self.backoff_base * (self.backoff_multiplier ** max(attempt - 1, 0))
        if self.jitter:
            r = (rng or random).uniform(1 - self.jitter, 1 + self.jitter)
            raw *= r
        return max(0.0, min(raw, self.backoff_cap))

    def classify_exception(self, exc: BaseException) -> str:
        if isinstance(exc, TimeoutError):
            return FATAL if self.timeout_is_fatal else TRANSIENT
        kind = self.classify(exc)
        return TRANSIENT if kind == TRANSIENT else FATAL

    def allows_another(self, attempt: int) -> bool:
        return attempt < self.max_attempts

    @classmethod
    def from_spec(cls, spec: "RetrySpec") -> "RetryPolicy":
        return cls(
            max_attempts=spec.max_attempts,
            backoff_base=spec.backoff_base_seconds,
            backoff_multiplier=spec.backoff_multiplier,
            backoff_cap=spec.backoff_cap_seconds,
            jitter=spec.jitter,
            attempt_timeout=spec.attempt_timeout_seconds,
            timeout_is_fatal=spec.timeout_is_fatal,
        )


NO_RETRY = RetryPolicy(max_attempts=1, backoff_base=0.0, jitter=0.0)
