# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/dcforge/bootstrap/windows/base.py

from __future__ import annotations

import logging
from typing import Callable

from dcforge.bootstrap.windows.powershell import (
    NOT_READY_EXIT,
    PowerShellSession,
    ps_array,
    ps_quote,
    session_for,
)
from dcforge.deploy.models import HostContext
from dcforge.deploy.prober import ProbeResult, tcp_probe

log = logging.getLogger("dcforge")

SessionFactory = Callable[[HostContext], PowerShellSession]

FIREWALL_RULES = [
    ("AD-LDAP", "389", "TCP"),
    ("AD-LDAPS", "636", "TCP"),
    ("AD-GlobalCatalog", "3268", "TCP"),
    ("AD-GlobalCatalogSSL", "3269", "TCP"),
    ("DNS", "53", "TCP"),
    ("DNS-UDP", "53", "UDP"),
    ("Kerberos", "88", "TCP"),
    ("Kerberos-UDP", "88", "UDP"),
    ("RPC-Endpoint", "135", "TCP"),
]

DISABLED_SERVICES = ["Spooler", "WSearch", "TabletInputService", "WerSvc"]
AUTO_SERVICES = ["W32Time", "Netlogon", "NTDS", "DNS", "EventLog", "LanmanServer", "LanmanWorkstation"]


# ---------------------------------------------------------------------
# readiness helpers shared by the Windows phases
# ---------------------------------------------------------------------
def probe_timeout(hctx: HostContext) -> float:
    cfg = hctx.settings
    override = cfg.phases.get(hctx.phase.name)
    if override and override.probe_timeout_seconds:
        return override.probe_timeout_seconds
    return cfg.orchestrator.probe_timeout_seconds


def wait_for_ssh(hctx: HostContext) -> ProbeResult:
    orch = hctx.settings.orchestrator
    return hctx.prober.require_ready(
        hctx.host.address,
        tcp_probe(orch.ssh_port, orch.connect_timeout_seconds),
        probe_timeout(hctx),
    )


def wait_for_ldap(hctx: HostContext) -> ProbeResult:
    orch = hctx.settings.orchestrator
    return hctx.prober.require_ready(
        hctx.host.address,
        tcp_probe(orch.ldap_port, orch.connect_timeout_seconds),
        probe_timeout(hctx),
    )


# ---------------------------------------------------------------------
# leaf actions
# ---------------------------------------------------------------------
def await_connectivity(hctx: HostContext) -> None:
    """The VM has booted far enough to accept SSH."""
    result = wait_for_ssh(hctx)
    log.info("%s: reachable after %d poll(s)", hctx.host.name, result.polls)


def _hostname_script(name: str) -> str:
    return f"""
$target = {ps_quote(name)}
$pending = (Get-ItemProperty 'HKLM:\\SYSTEM\\CurrentControlSet\\Control\\ComputerName\\ComputerName').ComputerName
if ($env:COMPUTERNAME -ne $target) {{
    if ($pending -ne $target) {{ Rename-Computer -NewName $target -Force | Out-Null }}
    cmd.exe /c "shutdown /r /t 5 /f >nul 2>&1"
    [Console]::Error.WriteLine("rebooting to apply hostname $target")
    exit {NOT_READY_EXIT}
}}
Write-Output "hostname ok"
"""


def _system_script() -> str:
    rules = "\n".join(
        f"    @{{ Name = {ps_quote(n)}; Port = {ps_quote(p)}; Protocol = {ps_quote(proto)} }}"
        for n, p, proto in FIREWALL_RULES
    )
    return f"""
$rules = @(
{rules}
)
foreach ($r in $rules) {{
    if (-not (Get-NetFirewallRule -Name $r.Name -ErrorAction SilentlyContinue)) {{
        New-NetFirewallRule -Name $r.Name -DisplayName $r.Name -Direction Inbound -Action Allow `
            -Protocol $r.Protocol -LocalPort $r.Port -Enabled True | Out-Null
    }}
}}

if ((Get-TimeZone).Id -ne 'UTC') {{ Set-TimeZone -Id 'UTC' }}

w32tm /config /manualpeerlist:"time.windows.com,0x9" /syncfromflags:manual /reliable:yes /update | Out-Null
Restart-Service w32time

Set-ItemProperty -Path 'HKLM:\\SYSTEM\\CurrentControlSet\\Control\\PriorityControl' -Name Win32PrioritySeparation -Value 24 -Type DWord
New-Item -Path 'HKLM:\\SOFTWARE\\Microsoft\\ServerManager' -Force | Out-Null
Set-ItemProperty -Path 'HKLM:\\SOFTWARE\\Microsoft\\ServerManager' -Name DoNotOpenServerManagerAtLogon -Value 1 -Type DWord

foreach ($s in {ps_array(DISABLED_SERVICES)}) {{
    Get-Service -Name $s -ErrorAction SilentlyContinue | Set-Service -StartupType Disabled
}}
foreach ($s in {ps_array(AUTO_SERVICES)}) {{
    $svc = Get-Service -Name $s -ErrorAction SilentlyContinue
    if ($svc) {{
        Set-Service -Name $s -StartupType Automatic
        if ($svc.Status -ne 'Running') {{ Start-Service -Name $s -ErrorAction SilentlyContinue }}
    }}
}}

New-Item -ItemType Directory -Path 'C:\\Scripts' -Force | Out-Null

$disk = Get-Disk | Where-Object {{ $_.Size -gt 20GB -and $_.PartitionStyle -eq 'RAW' }} | Select-Object -First 1
if ($disk) {{
    Initialize-Disk -Number $disk.Number -PartitionStyle GPT
    New-Partition -DiskNumber $disk.Number -UseMaximumSize -DriveLetter D | Out-Null
    Format-Volume -DriveLetter D -FileSystem NTFS -NewFileSystemLabel 'Data' -Confirm:$false | Out-Null
    Write-Output "data disk initialized as D:"
}}
Write-Output "base configuration applied"
"""


def base_configure(hctx: HostContext, *, session_factory: SessionFactory = session_for) -> None:
    """
    Hostname (with reboot), firewall rules for AD, UTC and NTP, registry
    tuning, service start modes, scripts directory and data disk.
    """
    wait_for_ssh(hctx)
    with session_factory(hctx) as ps:
        ps.run(_hostname_script(hctx.host.name))
        result = ps.run(_system_script())
    for line in result.lines:
        log.info("%s: %s", hctx.host.name, line)
