# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/dcforge/deploy/registry.py

from __future__ import annotations

import copy
import logging
import threading
from dataclasses import fields
from typing import Callable, Dict, List, Optional

from .models import Host, Role, RunStatus

log = logging.getLogger("dcforge")

# listener(host, created) -- created is False for updates
RegistryListener = Callable[[Host, bool], None]

_MUTABLE_FIELDS = {f.name for f in fields(Host)} - {"name", "order"}


class HostRegistry:
    """
    Dynamic inventory of target hosts.

    Single-writer: every mutation happens under one lock; readers get
    copies. Listeners run after the lock is released and receive a copy of
    the host as it was right after the change.
    """

    def __init__(self) -> None:
        self._hosts: Dict[str, Host] = {}
        self._lock = threading.RLock()
        self._listeners: List[RegistryListener] = []
        self._next_order = 0

    def subscribe(self, listener: RegistryListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def register(self, host: Host) -> str:
        """
        Add ``host`` or, when its name is already known, update its
        attributes in place. Returns the HostID.
        """
        with self._lock:
            existing = self._hosts.get(host.name)
            if existing is not None:
                existing.role = host.role
                if host.address is not None:
                    existing.address = host.address
                existing.vars.update(host.vars)
                log.debug("host %s re-registered; attributes updated", host.name)
                created, snapshot = False, copy.deepcopy(existing)
            else:
                stored = copy.deepcopy(host)
                stored.order = self._next_order
                self._next_order += 1
                self._hosts[stored.name] = stored
                log.debug("host %s registered (role=%s, order=%d)", stored.name,
                          stored.role.value if stored.role else None, stored.order)
                created, snapshot = True, copy.deepcopy(stored)
            listeners = list(self._listeners)

        self._notify(listeners, snapshot, created)
        return snapshot.host_id

    def update(self, host_id: str, **changes) -> Host:
        unknown = set(changes) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update host field(s): {', '.join(sorted(unknown))}")
        with self._lock:
            host = self._hosts.get(host_id)
            if host is None:
                raise KeyError(f"Unknown host '{host_id}'")
            for k, v in changes.items():
                setattr(host, k, v)
            snapshot = copy.deepcopy(host)
            listeners = list(self._listeners)

        self._notify(listeners, snapshot, False)
        return snapshot

    def set_phase_status(self, host_id: str, phase: str, status: RunStatus) -> None:
        # phase bookkeeping is high-frequency and already in the ledger: no listeners
        with self._lock:
            host = self._hosts.get(host_id)
            if host is None:
                raise KeyError(f"Unknown host '{host_id}'")
            host.phase_status[phase] = status
            host.current_phase = phase

    def get(self, host_id: str) -> Host:
        with self._lock:
            host = self._hosts.get(host_id)
            if host is None:
                raise KeyError(f"Unknown host '{host_id}'")
            return copy.deepcopy(host)

    def list(self, role: Optional[Role] = None) -> List[Host]:
        with self._lock:
            hosts = sorted(self._hosts.values(), key=lambda h: h.order)
            return [copy.deepcopy(h) for h in hosts if role is None or h.role == role]

    def __contains__(self, host_id: str) -> bool:
        with self._lock:
            return host_id in self._hosts

    def __len__(self) -> int:
        with self._lock:
            return len(self._hosts)

    @staticmethod
    def _notify(listeners: List[RegistryListener], host: Host, created: bool) -> None:
        for listener in listeners:
            listener(copy.deepcopy(host), created)
