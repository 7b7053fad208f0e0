# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/dcforge/observers/dispatcher.py
from __future__ import annotations

import logging
import threading
from typing import List, Optional

from .events import BaseEvent

log = logging.getLogger("dcforge")


class EventBus:
    def __init__(self, observers: Optional[List] = None):
        self._observers = observers or []
        self._lock = threading.Lock()

    def emit(self, event: BaseEvent) -> None:
        # workers emit concurrently; observers write files and stdout
        with self._lock:
            for ob in self._observers:
                try:
                    ob.notify(event)
                except Exception:
                    # observers must not break deploys
                    log.debug("observer %r failed on %s", ob, type(event).__name__, exc_info=True)
