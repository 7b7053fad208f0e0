# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/dcforge/observers/logger.py
from __future__ import annotations

import logging

from .events import BaseEvent, PhaseAttempt, PlanAborted, WaiterTimedOut


class LoggerObserver:
    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def notify(self, event: BaseEvent) -> None:
        d = event.dict()
        etype = event.__class__.__name__
        msg = ", ".join(f"{k}={v}" for k, v in d.items() if k not in ("ts",))

        if isinstance(event, PlanAborted) or isinstance(event, WaiterTimedOut):
            self.logger.warning(f"[EVENT] {etype}: {msg}")
        elif isinstance(event, PhaseAttempt) and event.outcome != "success":
            self.logger.warning(f"[EVENT] {etype}: {msg}")
        else:
            self.logger.info(f"[EVENT] {etype}: {msg}")
