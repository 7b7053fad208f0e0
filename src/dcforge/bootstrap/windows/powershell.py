# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/dcforge/bootstrap/windows/powershell.py

from __future__ import annotations

import base64
import logging
import socket
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

import paramiko

from dcforge.deploy.errors import FatalActionError, TransientActionError
from dcforge.deploy.models import HostContext
from dcforge.utils.ssh import open_ssh
from dcforge.utils.ssh_runner import SSHRunner

log = logging.getLogger("dcforge")

# scripts exit with this code when the host is not ready yet (reboot pending, service starting)
NOT_READY_EXIT = 3

_PREAMBLE = "$ErrorActionPreference = 'Stop'\n$ProgressPreference = 'SilentlyContinue'\n"


def ps_quote(value: str) -> str:
    """Single-quoted PowerShell literal."""
    return "'" + str(value).replace("'", "''") + "'"


def ps_array(values: Iterable[str]) -> str:
    return "@(" + ", ".join(ps_quote(v) for v in values) + ")"


def encode_command(script: str) -> str:
    return base64.b64encode((_PREAMBLE + script).encode("utf-16-le")).decode("ascii")


@dataclass(frozen=True)
class PSResult:
    rc: int
    stdout: str
    stderr: str

    @property
    def lines(self) -> list[str]:
        return [line.strip() for line in self.stdout.splitlines() if line.strip()]


class PowerShellSession:
    """
    Runs PowerShell scripts on a Windows host over SSH.

    Connection failures are transient (the host may be rebooting);
    authentication failures are fatal.
    """

    def __init__(
        self,
        address: str,
        *,
        username: str,
        password: Optional[str] = None,
        pkey_path: Optional[str] = None,
        port: int = 22,
        connect_timeout: float = 20.0,
        connector: Callable[..., SSHRunner] = open_ssh,
    ):
        self.address = address
        self.username = username
        self._password = password
        self._pkey_path = pkey_path
        self.port = port
        self.connect_timeout = connect_timeout
        self._connector = connector
        self._runner: Optional[SSHRunner] = None

    def connect(self) -> "PowerShellSession":
        try:
            self._runner = self._connector(
                self.address,
                username=self.username,
                password=self._password,
                pkey_path=self._pkey_path,
                port=self.port,
                connect_timeout=self.connect_timeout,
            )
        except paramiko.AuthenticationException as e:
            raise FatalActionError(f"{self.username}@{self.address}: authentication failed") from e
        except (paramiko.SSHException, socket.error) as e:
            raise TransientActionError(f"{self.address}:{self.port} unreachable: {e}") from e
        return self

    def close(self) -> None:
        if self._runner is not None:
            self._runner.close()
            self._runner = None

    def __enter__(self) -> "PowerShellSession":
        return self.connect()

    def __exit__(self, *exc) -> None:
        self.close()

    def run(self, script: str, *, timeout: Optional[float] = None, check: bool = True) -> PSResult:
        if self._runner is None:
            self.connect()
        cmd = f"powershell -NoProfile -NonInteractive -EncodedCommand {encode_command(script)}"
        try:
            rc, out, err = self._runner.run(cmd, timeout=timeout)
        except (paramiko.SSHException, socket.error) as e:
            # connection dropped mid-script, usually a reboot
            raise TransientActionError(f"{self.address}: session lost: {e}") from e

        result = PSResult(rc, out, err)
        log.debug("%s: powershell rc=%d\n%s%s", self.address, rc, out, err)
        if rc == NOT_READY_EXIT:
            raise TransientActionError(f"{self.address}: not ready: {_last_line(err or out)}")
        if rc != 0 and check:
            raise FatalActionError(f"{self.address}: script failed (rc={rc}): {_last_line(err or out)}")
        return result


def _last_line(text: str) -> str:
    lines = [line for line in text.strip().splitlines() if line.strip()]
    return lines[-1].strip() if lines else "no output"


def session_for(hctx: HostContext) -> PowerShellSession:
    """PowerShell session to the host being worked on, using deployment credentials."""
    cfg = hctx.settings
    if not hctx.host.address:
        raise TransientActionError(f"{hctx.host.name}: no address published yet")
    return PowerShellSession(
        hctx.host.address,
        username=cfg.ssh_username,
        password=cfg.domain.admin_password or None,
        pkey_path=cfg.ssh_key_path,
        port=cfg.orchestrator.ssh_port,
    )
