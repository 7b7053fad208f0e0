# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/dcforge/bootstrap/directory/actions.py

from __future__ import annotations

import logging

from dcforge.bootstrap.windows.base import SessionFactory, wait_for_ldap, wait_for_ssh
from dcforge.bootstrap.windows.powershell import NOT_READY_EXIT, ps_array, ps_quote, session_for
from dcforge.config.models import DeploymentConfig
from dcforge.deploy.errors import FatalActionError, TransientActionError
from dcforge.deploy.models import HostContext, Role

log = logging.getLogger("dcforge")

AD_FEATURES = [
    "AD-Domain-Services",
    "DNS",
    "RSAT-ADDS",
    "RSAT-AD-AdminCenter",
    "RSAT-ADDS-Tools",
    "RSAT-DNS-Server",
]

PASSWORD_POLICY_GROUP = "Domain Password Policy Users"

PROMOTED = "PROMOTED"
NOT_PROMOTED = "NOT_PROMOTED"

# Win32_ComputerSystem.DomainRole: 4 = backup DC, 5 = primary DC
_PROMOTED_CHECK = f"""
if ((Get-CimInstance Win32_ComputerSystem).DomainRole -ge 4) {{ Write-Output '{PROMOTED}' }}
else {{ Write-Output '{NOT_PROMOTED}' }}
"""


def _features_script() -> str:
    return f"""
$r = Install-WindowsFeature -Name {ps_array(AD_FEATURES)} -IncludeManagementTools
if ($r.RestartNeeded -eq 'Yes') {{
    cmd.exe /c "shutdown /r /t 5 /f >nul 2>&1"
    [Console]::Error.WriteLine("rebooting to finish feature installation")
    exit {NOT_READY_EXIT}
}}
Write-Output "features present"
"""


def _secure(value: str) -> str:
    return f"(ConvertTo-SecureString {ps_quote(value)} -AsPlainText -Force)"


def _forest_script(cfg: DeploymentConfig) -> str:
    d = cfg.domain
    return f"""
Import-Module ADDSDeployment
Install-ADDSForest `
    -DomainName {ps_quote(d.name)} `
    -DomainNetbiosName {ps_quote(d.netbios_name)} `
    -SafeModeAdministratorPassword {_secure(d.dsrm_password)} `
    -ForestMode {ps_quote(d.forest_functional_level)} `
    -DomainMode {ps_quote(d.domain_functional_level)} `
    -DatabasePath {ps_quote(d.database_path)} `
    -SysvolPath {ps_quote(d.sysvol_path)} `
    -LogPath {ps_quote(d.log_path)} `
    -InstallDns `
    -CreateDnsDelegation:$false `
    -Force | Out-Null
Write-Output "forest {d.name} created; rebooting"
"""


def _join_script(cfg: DeploymentConfig, primary_ip: str) -> str:
    d = cfg.domain
    user = f"{d.admin_username}@{d.name}"
    return f"""
$adapter = Get-NetAdapter | Where-Object {{ $_.Status -eq 'Up' }} | Select-Object -First 1
Set-DnsClientServerAddress -InterfaceIndex $adapter.ifIndex -ServerAddresses {ps_quote(primary_ip)}
if (-not (Resolve-DnsName {ps_quote(d.name)} -ErrorAction SilentlyContinue)) {{
    [Console]::Error.WriteLine("domain {d.name} does not resolve yet")
    exit {NOT_READY_EXIT}
}}
$cred = New-Object System.Management.Automation.PSCredential({ps_quote(user)}, {_secure(d.admin_password)})
Import-Module ADDSDeployment
Install-ADDSDomainController `
    -DomainName {ps_quote(d.name)} `
    -Credential $cred `
    -SafeModeAdministratorPassword {_secure(d.dsrm_password)} `
    -DatabasePath {ps_quote(d.database_path)} `
    -SysvolPath {ps_quote(d.sysvol_path)} `
    -LogPath {ps_quote(d.log_path)} `
    -InstallDns `
    -Force | Out-Null
Write-Output "joined {d.name} as domain controller; rebooting"
"""


_DOMAIN_READY = f"""
try {{ $d = Get-ADDomain -Server localhost }}
catch {{
    [Console]::Error.WriteLine("AD DS not answering yet: $_")
    exit {NOT_READY_EXIT}
}}
Write-Output "domain $($d.DNSRoot) online"
"""


def _promote(hctx: HostContext, script: str, session_factory: SessionFactory) -> None:
    """Check-then-act promotion followed by the post-promotion reboot wait."""
    wait_for_ssh(hctx)
    with session_factory(hctx) as ps:
        ps.run(_features_script())
        state = ps.run(_PROMOTED_CHECK).lines
        if PROMOTED in state:
            log.info("%s: already a domain controller", hctx.host.name)
        else:
            # a session cut by the promotion reboot is transient; the next attempt re-checks
            for line in ps.run(script).lines:
                log.info("%s: %s", hctx.host.name, line)

    wait_for_ssh(hctx)
    wait_for_ldap(hctx)
    with session_factory(hctx) as ps:
        for line in ps.run(_DOMAIN_READY).lines:
            log.info("%s: %s", hctx.host.name, line)


def _require_credentials(cfg: DeploymentConfig, *, admin: bool) -> None:
    if not cfg.domain.dsrm_password:
        raise FatalActionError("domain.dsrm_password is not set")
    if admin and not cfg.domain.admin_password:
        raise FatalActionError("domain.admin_password is not set")


def create_forest(hctx: HostContext, *, session_factory: SessionFactory = session_for) -> None:
    cfg: DeploymentConfig = hctx.settings
    _require_credentials(cfg, admin=False)
    _promote(hctx, _forest_script(cfg), session_factory)


def join_domain(hctx: HostContext, *, session_factory: SessionFactory = session_for) -> None:
    cfg: DeploymentConfig = hctx.settings
    _require_credentials(cfg, admin=True)
    primaries = hctx.registry.list(role=Role.PRIMARY)
    if not primaries or not primaries[0].address:
        raise TransientActionError("primary domain controller address not published yet")
    _promote(hctx, _join_script(cfg, primaries[0].address), session_factory)


def _primary_directory_script(cfg: DeploymentConfig) -> str:
    d = cfg.domain
    p = d.password_policy
    return f"""
Import-Module ActiveDirectory
$base = {ps_quote(d.distinguished_name)}
foreach ($ou in {ps_array(d.organizational_units)}) {{
    if (-not (Get-ADOrganizationalUnit -Filter "Name -eq '$ou'" -SearchBase $base -SearchScope OneLevel)) {{
        New-ADOrganizationalUnit -Name $ou -Path $base -ProtectedFromAccidentalDeletion $true
        Write-Output "created OU $ou"
    }}
}}

$group = {ps_quote(PASSWORD_POLICY_GROUP)}
if (-not (Get-ADGroup -Filter "Name -eq '$group'")) {{
    New-ADGroup -Name $group -GroupScope Global -GroupCategory Security
    Write-Output "created group $group"
}}

if (${'true' if d.enable_recycle_bin else 'false'}) {{
    $rb = Get-ADOptionalFeature -Filter "Name -eq 'Recycle Bin Feature'"
    if (-not $rb.EnabledScopes) {{
        Enable-ADOptionalFeature -Identity 'Recycle Bin Feature' -Scope ForestOrConfigurationSet `
            -Target (Get-ADDomain).Forest -Confirm:$false
        Write-Output "recycle bin enabled"
    }}
}}

Set-ADDefaultDomainPasswordPolicy -Identity (Get-ADDomain).DNSRoot `
    -MinPasswordLength {p.min_length} `
    -ComplexityEnabled ${'true' if p.complexity_enabled else 'false'} `
    -MaxPasswordAge (New-TimeSpan -Days {p.max_password_age_days}) `
    -MinPasswordAge (New-TimeSpan -Days {p.min_password_age_days}) `
    -PasswordHistoryCount {p.password_history_count} `
    -LockoutThreshold {p.lockout_threshold} `
    -LockoutDuration (New-TimeSpan -Minutes {p.lockout_duration_minutes}) `
    -LockoutObservationWindow (New-TimeSpan -Minutes {p.lockout_observation_window_minutes})
Write-Output "default password policy applied"
"""


_REPLICATION_CHECK = f"""
$out = repadmin /replsummary 2>&1
if ($LASTEXITCODE -ne 0) {{
    [Console]::Error.WriteLine(($out | Out-String))
    exit {NOT_READY_EXIT}
}}
Write-Output "replication healthy"
"""


def configure_directory_service(hctx: HostContext, *, session_factory: SessionFactory = session_for) -> None:
    """
    Primary: OUs, password policy group, recycle bin, default password
    policy. Every DC: replication health.
    """
    cfg: DeploymentConfig = hctx.settings
    wait_for_ldap(hctx)
    with session_factory(hctx) as ps:
        if hctx.host.role is Role.PRIMARY:
            for line in ps.run(_primary_directory_script(cfg)).lines:
                log.info("%s: %s", hctx.host.name, line)
        ps.run(_REPLICATION_CHECK)
    log.info("%s: directory service configured", hctx.host.name)
