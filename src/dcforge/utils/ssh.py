# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/dcforge/utils/ssh.py

from __future__ import annotations

from typing import Optional

import paramiko

from .ssh_runner import SSHRunner


def open_ssh(
    address: str,
    *,
    username: str,
    password: Optional[str] = None,
    pkey_path: Optional[str] = None,
    port: int = 22,
    connect_timeout: float = 20.0,
) -> SSHRunner:
    client = paramiko.SSHClient()
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

    pkey = None
    if pkey_path:
        for key_cls in (
            paramiko.RSAKey,
            paramiko.Ed25519Key,
            paramiko.ECDSAKey,
        ):
            try:
                pkey = key_cls.from_private_key_file(pkey_path)
                break
            except paramiko.SSHException:
                continue

    client.connect(
        hostname=address,
        port=port,
        username=username,
        password=password if not pkey else None,
        pkey=pkey,
        timeout=connect_timeout,
        allow_agent=False,
        look_for_keys=pkey is None and not password,
    )

    return SSHRunner(client)
