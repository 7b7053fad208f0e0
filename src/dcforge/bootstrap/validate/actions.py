# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/dcforge/bootstrap/validate/actions.py

from __future__ import annotations

import logging

from dcforge.bootstrap.windows.base import SessionFactory
from dcforge.bootstrap.windows.powershell import session_for
from dcforge.deploy.errors import FatalActionError
from dcforge.deploy.models import HostContext

log = logging.getLogger("dcforge")

CRITICAL_SERVICES = ("NTDS", "DNS")

_VALIDATE = """
foreach ($name in @('NTDS', 'DNS')) {
    $svc = Get-Service -Name $name
    Write-Output "SERVICE $name $($svc.Status)"
}
try {
    $domain = Get-ADDomain -ErrorAction Stop
    Write-Output "SUCCESS: Domain $($domain.DNSRoot) is accessible"
    Write-Output "Domain Controllers: $($domain.ReplicaDirectoryServers -join ', ')"
} catch {
    Write-Output "FAILED: $_"
}
"""


def validate(hctx: HostContext, *, session_factory: SessionFactory = session_for) -> None:
    """NTDS and DNS running and the domain answering on this DC."""
    with session_factory(hctx) as ps:
        lines = ps.run(_VALIDATE).lines

    services = {}
    for line in lines:
        if line.startswith("SERVICE "):
            _, name, status = line.split(None, 2)
            services[name] = status
    stopped = [s for s in CRITICAL_SERVICES if services.get(s) != "Running"]
    if stopped:
        raise FatalActionError(f"{hctx.host.name}: services not running: {', '.join(stopped)}")

    success = [line for line in lines if line.startswith("SUCCESS:")]
    if not success:
        failure = next((line for line in lines if line.startswith("FAILED:")), "no domain answer")
        raise FatalActionError(f"{hctx.host.name}: AD connectivity test failed: {failure}")

    log.info("%s: %s", hctx.host.name, success[0])
    for line in lines:
        if line.startswith("Domain Controllers:"):
            log.info("%s: %s", hctx.host.name, line)
