# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/dcforge/bootstrap/dns/actions.py

from __future__ import annotations

import ipaddress
import logging
from typing import List

from dcforge.bootstrap.windows.base import SessionFactory
from dcforge.bootstrap.windows.powershell import ps_array, ps_quote, session_for
from dcforge.config.models import DeploymentConfig
from dcforge.deploy.errors import FatalActionError
from dcforge.deploy.models import HostContext, Role

log = logging.getLogger("dcforge")


def reverse_zone_network(ip: str, cidr_bits: int) -> str:
    try:
        return str(ipaddress.ip_interface(f"{ip}/{cidr_bits}").network)
    except ValueError as e:
        raise FatalActionError(f"invalid address {ip}/{cidr_bits}: {e}") from e


def resolver_order(hctx: HostContext) -> List[str]:
    """Primary resolves through itself; additional DCs try the primary first."""
    own = hctx.host.vars.get("ip") or hctx.host.address
    if hctx.host.role is Role.PRIMARY:
        return ["127.0.0.1"]
    primary = [h.address for h in hctx.registry.list(role=Role.PRIMARY) if h.address]
    return primary + ([own] if own else [])


def _dns_script(cfg: DeploymentConfig, resolvers: List[str]) -> str:
    return f"""
$forwarders = {ps_array(cfg.domain.dns_forwarders)}
$current = @((Get-DnsServerForwarder).IPAddress | ForEach-Object {{ $_.IPAddressToString }})
if (Compare-Object $current $forwarders) {{
    Set-DnsServerForwarder -IPAddress $forwarders -PassThru | Out-Null
    Write-Output "forwarders set to $($forwarders -join ', ')"
}}
$adapter = Get-NetAdapter | Where-Object {{ $_.Status -eq 'Up' }} | Select-Object -First 1
Set-DnsClientServerAddress -InterfaceIndex $adapter.ifIndex -ServerAddresses {ps_array(resolvers)}
"""


def _primary_zone_script(network: str) -> str:
    return f"""
Set-DnsServerScavenging -ScavengingState $true -ScavengingInterval 7.00:00:00 -ApplyOnAllZones
$network = {ps_quote(network)}
$existing = Get-DnsServerZone | Where-Object {{ $_.IsReverseLookupZone -and -not $_.IsAutoCreated }}
if (-not $existing) {{
    Add-DnsServerPrimaryZone -NetworkId $network -ReplicationScope Forest
    Write-Output "reverse zone for $network created"
}}
Write-Output "scavenging enabled"
"""


def configure_dns(hctx: HostContext, *, session_factory: SessionFactory = session_for) -> None:
    """Forwarders and resolver order on every DC; scavenging and reverse zone on the primary."""
    cfg: DeploymentConfig = hctx.settings
    with session_factory(hctx) as ps:
        out = ps.run(_dns_script(cfg, resolver_order(hctx))).lines
        if hctx.host.role is Role.PRIMARY:
            network = reverse_zone_network(hctx.host.vars.get("ip") or hctx.host.address, cfg.network.cidr_bits)
            out += ps.run(_primary_zone_script(network)).lines
    for line in out:
        log.info("%s: %s", hctx.host.name, line)
