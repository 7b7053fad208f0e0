# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/dcforge/bootstrap/proxmox/actions.py

from __future__ import annotations

import logging

from dcforge.bootstrap.proxmox.client import ProxmoxClient
from dcforge.config.models import DeploymentConfig
from dcforge.deploy.errors import FatalActionError
from dcforge.deploy.models import HostContext

log = logging.getLogger("dcforge")


def _vmid(hctx: HostContext) -> int:
    try:
        return int(hctx.host.vars["vmid"])
    except (KeyError, TypeError, ValueError):
        raise FatalActionError(f"{hctx.host.name}: no vmid in host vars") from None


def _vm_options(cfg: DeploymentConfig, ip: str) -> dict:
    res = cfg.resources
    net = cfg.network
    return {
        "cores": res.cores,
        "sockets": res.sockets,
        "memory": res.memory_mb,
        "bios": res.bios,
        "machine": res.machine,
        "cpu": res.cpu_type,
        "boot": f"order={res.boot_disk}",
        "net0": f"virtio,bridge={net.bridge}",
        "ipconfig0": f"ip={ip}/{net.cidr_bits},gw={net.gateway}",
        "nameserver": " ".join(net.dns_servers),
        "ciuser": cfg.domain.admin_username,
        "cipassword": cfg.domain.admin_password or None,
        "sshkeys": cfg.ssh_public_key,
    }


def provision(hctx: HostContext, *, client: ProxmoxClient) -> None:
    """
    Clone the VM from the template unless it already exists, apply the
    hardware and cloud-init settings, start it and publish its address.
    """
    cfg: DeploymentConfig = hctx.settings
    host = hctx.host
    vmid = _vmid(hctx)
    ip = host.vars.get("ip")
    if not ip:
        raise FatalActionError(f"{host.name}: no ip in host vars")

    status = client.vm_status(vmid)
    if status is None:
        log.info("%s: cloning template %s into vmid %s", host.name, cfg.template.vmid, vmid)
        client.wait_task(client.clone_vm(
            cfg.template.vmid, vmid, host.name,
            full=cfg.template.full_clone, storage=cfg.template.storage,
        ))
        status = "stopped"
    else:
        log.info("%s: vmid %s already exists (%s)", host.name, vmid, status)

    client.wait_task(client.configure_vm(vmid, **_vm_options(cfg, ip)))

    if status != "running":
        log.info("%s: starting vmid %s", host.name, vmid)
        client.wait_task(client.start_vm(vmid))

    hctx.registry.update(host.name, address=ip)


def stop(hctx: HostContext, *, client: ProxmoxClient) -> None:
    vmid = _vmid(hctx)
    status = client.vm_status(vmid)
    if status is None:
        log.info("%s: vmid %s does not exist; nothing to stop", hctx.host.name, vmid)
        return
    if status == "stopped":
        log.info("%s: vmid %s already stopped", hctx.host.name, vmid)
        return
    client.wait_task(client.stop_vm(vmid))


def delete(hctx: HostContext, *, client: ProxmoxClient) -> None:
    vmid = _vmid(hctx)
    if not client.vm_exists(vmid):
        log.info("%s: vmid %s not found or already deleted", hctx.host.name, vmid)
        return
    client.wait_task(client.delete_vm(vmid))
    log.info("%s: vmid %s deleted", hctx.host.name, vmid)
