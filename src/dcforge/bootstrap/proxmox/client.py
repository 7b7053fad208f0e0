# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/dcforge/bootstrap/proxmox/client.py

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional
from urllib.parse import quote

import requests

from dcforge.config.models import ProxmoxSettings
from dcforge.deploy.errors import FatalActionError, TransientActionError

log = logging.getLogger("dcforge")


class ProxmoxClient:
    """
    Minimal Proxmox VE API client:
      - login (ticket + CSRF token)
      - look up, clone, configure, start, stop and delete QEMU VMs
      - wait for the asynchronous tasks those calls return

    HTTP 5xx and connection problems raise TransientActionError;
    authentication and other client errors raise FatalActionError.
    """

    def __init__(
        self,
        *,
        config: ProxmoxSettings,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        task_poll_seconds: float = 2.0,
    ):
        self.config = config
        self.session = session or requests.Session()
        self.session.verify = config.verify_tls
        self._ticket: Optional[str] = None
        self._csrf: Optional[str] = None
        self._login_lock = threading.Lock()
        self._clock = clock
        self._sleep = sleep
        self._task_poll = task_poll_seconds

    # -----------------------
    # HTTP helpers
    # -----------------------
    def _url(self, path: str) -> str:
        return f"{str(self.config.api_url).rstrip('/')}/{path.lstrip('/')}"

    def _node_path(self, *parts: Any) -> str:
        return "/".join(["nodes", self.config.node, *map(str, parts)])

    def login(self) -> None:
        try:
            r = self.session.post(
                self._url("access/ticket"),
                data={"username": self.config.user, "password": self.config.password},
                timeout=self.config.timeout_seconds,
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientActionError(f"Proxmox unreachable: {e}") from e
        if r.status_code in (401, 403):
            raise FatalActionError(f"Proxmox login failed for {self.config.user}: {r.status_code}")
        if r.status_code >= 500:
            raise TransientActionError(f"Proxmox login: {r.status_code} {r.text}")
        if r.status_code != 200:
            raise FatalActionError(f"Proxmox login: {r.status_code} {r.text}")

        data = r.json()["data"]
        self._ticket = data["ticket"]
        self._csrf = data["CSRFPreventionToken"]
        self.session.cookies.set("PVEAuthCookie", self._ticket)

    def _request(self, method: str, path: str, **kwargs) -> Any:
        with self._login_lock:
            if not self._ticket:
                self.login()
        headers = {}
        if method != "GET":
            headers["CSRFPreventionToken"] = self._csrf

        try:
            r = self.session.request(
                method, self._url(path), headers=headers, timeout=self.config.timeout_seconds, **kwargs
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientActionError(f"{method} {path}: {e}") from e

        if r.status_code in (401, 403):
            raise FatalActionError(f"{method} {path}: not authorized ({r.status_code})")
        if r.status_code >= 500:
            raise TransientActionError(f"{method} {path}: {r.status_code} {r.reason}")
        if r.status_code >= 400:
            raise FatalActionError(f"{method} {path}: {r.status_code} {r.text}")
        return r.json().get("data")

    # -----------------------
    # VMs
    # -----------------------
    def vm_exists(self, vmid: int) -> bool:
        vms = self._request("GET", self._node_path("qemu")) or []
        return any(int(vm.get("vmid", -1)) == vmid for vm in vms)

    def vm_status(self, vmid: int) -> Optional[str]:
        """'running', 'stopped', ... or None when the VM does not exist."""
        if not self.vm_exists(vmid):
            return None
        data = self._request("GET", self._node_path("qemu", vmid, "status", "current")) or {}
        return data.get("status")

    def clone_vm(self, template_vmid: int, vmid: int, name: str, *, full: bool = True,
                 storage: Optional[str] = None) -> Optional[str]:
        payload: Dict[str, Any] = {"newid": vmid, "name": name, "full": int(full)}
        if full and storage:
            payload["storage"] = storage
        return self._request("POST", self._node_path("qemu", template_vmid, "clone"), data=payload)

    def configure_vm(self, vmid: int, **options: Any) -> Optional[str]:
        payload = {k: v for k, v in options.items() if v is not None}
        if "sshkeys" in payload:
            # the API expects the key URL-encoded, spaces included
            payload["sshkeys"] = quote(payload["sshkeys"], safe="")
        return self._request("POST", self._node_path("qemu", vmid, "config"), data=payload)

    def start_vm(self, vmid: int) -> Optional[str]:
        return self._request("POST", self._node_path("qemu", vmid, "status", "start"))

    def stop_vm(self, vmid: int) -> Optional[str]:
        return self._request("POST", self._node_path("qemu", vmid, "status", "stop"))

    def delete_vm(self, vmid: int) -> Optional[str]:
        return self._request("DELETE", self._node_path("qemu", vmid), params={"purge": 1})

    # -----------------------
    # Tasks
    # -----------------------
    def wait_task(self, upid: Optional[str], timeout: Optional[float] = None) -> None:
        """Block until the task finishes; a non-OK exit status is fatal."""
        if not upid:
            return
        timeout = self.config.task_timeout_seconds if timeout is None else timeout
        deadline = self._clock() + timeout
        path = self._node_path("tasks", quote(upid, safe=""), "status")

        while True:
            data = self._request("GET", path) or {}
            if data.get("status") == "stopped":
                exit_status = data.get("exitstatus")
                if exit_status != "OK":
                    raise FatalActionError(f"Proxmox task {upid} failed: {exit_status}")
                log.debug("proxmox task %s finished", upid)
                return
            if self._clock() >= deadline:
                raise TransientActionError(f"Proxmox task {upid} still running after {timeout:.0f}s")
            self._sleep(self._task_poll)
