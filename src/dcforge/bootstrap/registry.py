# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/dcforge/bootstrap/registry.py

from __future__ import annotations

from functools import partial
from typing import Callable, Dict, Optional

from dcforge.bootstrap.directory.actions import configure_directory_service, create_forest, join_domain
from dcforge.bootstrap.dns.actions import configure_dns
from dcforge.bootstrap.monitoring.actions import configure_monitoring
from dcforge.bootstrap.proxmox import actions as vm
from dcforge.bootstrap.proxmox.client import ProxmoxClient
from dcforge.bootstrap.validate.actions import validate
from dcforge.bootstrap.windows.base import await_connectivity, base_configure
from dcforge.config.models import DeploymentConfig

LeafAction = Callable


def build_actions(
    settings: DeploymentConfig,
    client: Optional[ProxmoxClient] = None,
) -> Dict[str, LeafAction]:
    """Leaf action per phase name of the standard AD plan."""
    client = client or ProxmoxClient(config=settings.proxmox)
    return {
        "provision": partial(vm.provision, client=client),
        "await-connectivity": await_connectivity,
        "base-configure": base_configure,
        "create-forest": create_forest,
        "join-domain": join_domain,
        "configure-directory-service": configure_directory_service,
        "configure-dns": configure_dns,
        "configure-monitoring": configure_monitoring,
        "validate": validate,
    }


def build_teardown_actions(
    settings: DeploymentConfig,
    client: Optional[ProxmoxClient] = None,
) -> Dict[str, LeafAction]:
    client = client or ProxmoxClient(config=settings.proxmox)
    return {
        "stop": partial(vm.stop, client=client),
        "delete": partial(vm.delete, client=client),
    }
