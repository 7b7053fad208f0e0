# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/dcforge/utils/ssh_runner.py

from __future__ import annotations

from typing import Optional

import paramiko


class SSHRunner:
    def __init__(self, client: paramiko.SSHClient):
        self.client = client

    def run(self, cmd: str, *, timeout: Optional[float] = None) -> tuple[int, str, str]:
        stdin, stdout, stderr = self.client.exec_command(cmd, timeout=timeout)
        out = stdout.read().decode(errors="replace")
        err = stderr.read().decode(errors="replace")
        rc = stdout.channel.recv_exit_status()
        return rc, out, err

    def close(self) -> None:
        self.client.close()
