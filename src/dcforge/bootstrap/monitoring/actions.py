# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/dcforge/bootstrap/monitoring/actions.py

from __future__ import annotations

import logging

from dcforge.bootstrap.windows.base import SessionFactory
from dcforge.bootstrap.windows.powershell import ps_quote, session_for
from dcforge.deploy.models import HostContext

log = logging.getLogger("dcforge")

MONITORING_DIR = "C:\\Scripts\\Monitoring"
REPORTS_DIR = "C:\\Scripts\\Reports"
HEALTH_CHECK_PATH = MONITORING_DIR + "\\AD-HealthCheck.ps1"
PERFORMANCE_PATH = MONITORING_DIR + "\\Performance-Monitor.ps1"
HEALTH_CHECK_TASK = "AD Health Check"
PERFORMANCE_TASK = "AD Performance Monitor"

HEALTH_CHECK_PS1 = r"""
$report = "C:\Scripts\Reports\health-$(Get-Date -Format yyyyMMdd-HHmm).txt"
"== dcdiag ==" | Out-File $report
dcdiag /q | Out-File $report -Append
"== replication ==" | Out-File $report -Append
repadmin /replsummary | Out-File $report -Append
"== services ==" | Out-File $report -Append
Get-Service NTDS, DNS, Netlogon, W32Time | Format-Table Name, Status | Out-File $report -Append
"""

PERFORMANCE_PS1 = r"""
$counters = @(
    '\NTDS\LDAP Searches/sec',
    '\NTDS\DRA Inbound Bytes Total/sec',
    '\Processor(_Total)\% Processor Time',
    '\Memory\Available MBytes'
)
$csv = "C:\Scripts\Reports\perf-$(Get-Date -Format yyyyMMdd).csv"
Get-Counter -Counter $counters -ErrorAction SilentlyContinue |
    Select-Object -ExpandProperty CounterSamples |
    Select-Object Timestamp, Path, CookedValue |
    Export-Csv $csv -Append -NoTypeInformation
"""


def _task_script(name: str, description: str, script_path: str, trigger: str) -> str:
    return f"""
if (-not (Get-ScheduledTask -TaskName {ps_quote(name)} -ErrorAction SilentlyContinue)) {{
    $action = New-ScheduledTaskAction -Execute 'powershell.exe' `
        -Argument {ps_quote(f'-ExecutionPolicy Bypass -File {script_path}')}
    $trigger = {trigger}
    Register-ScheduledTask -TaskName {ps_quote(name)} -Description {ps_quote(description)} `
        -Action $action -Trigger $trigger -User 'SYSTEM' -RunLevel Highest | Out-Null
    Write-Output "scheduled task {name} registered"
}}
"""


def _monitoring_script() -> str:
    health, perf = HEALTH_CHECK_PATH, PERFORMANCE_PATH
    return "\n".join([
        f"New-Item -ItemType Directory -Path {ps_quote(MONITORING_DIR)} -Force | Out-Null",
        f"New-Item -ItemType Directory -Path {ps_quote(REPORTS_DIR)} -Force | Out-Null",
        f"Set-Content -Path {ps_quote(health)} -Value {ps_quote(HEALTH_CHECK_PS1)} -Encoding UTF8",
        f"Set-Content -Path {ps_quote(perf)} -Value {ps_quote(PERFORMANCE_PS1)} -Encoding UTF8",
        _task_script(HEALTH_CHECK_TASK, "Daily Active Directory health check", health,
                     "New-ScheduledTaskTrigger -Daily -At 6am"),
        _task_script(PERFORMANCE_TASK, "Collect AD performance metrics every 15 minutes", perf,
                     "New-ScheduledTaskTrigger -Once -At (Get-Date) "
                     "-RepetitionInterval (New-TimeSpan -Minutes 15)"),
    ])


def configure_monitoring(hctx: HostContext, *, session_factory: SessionFactory = session_for) -> None:
    """Health check and performance scripts plus their scheduled tasks, then one health check run."""
    with session_factory(hctx) as ps:
        for line in ps.run(_monitoring_script()).lines:
            log.info("%s: %s", hctx.host.name, line)
        first = ps.run(f"& {ps_quote(HEALTH_CHECK_PATH)}", check=False)
    if first.rc != 0:
        log.warning("%s: initial health check returned %d", hctx.host.name, first.rc)
