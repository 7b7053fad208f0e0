# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/dcforge/config/models.py

from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, Field, HttpUrl, model_validator

from ..deploy.models import Role


class ProxmoxSettings(BaseModel):
    api_url: HttpUrl
    user: str
    password: str = ""
    node: str
    verify_tls: bool = False
    timeout_seconds: float = 30.0
    task_timeout_seconds: float = 600.0

    model_config = {"extra": "forbid"}


class TemplateSettings(BaseModel):
    name: str = "windows-server-2025-template"
    vmid: int = 9000
    full_clone: bool = True
    storage: str = "local-lvm"


class VmResources(BaseModel):
    cores: int = Field(4, ge=1)
    sockets: int = Field(1, ge=1)
    memory_mb: int = Field(8192, ge=512)
    cpu_type: str = "x86-64-v2-AES"
    machine: str = "pc-q35-9.2+pve1"
    bios: str = "ovmf"
    boot_disk: str = "virtio0"


class NetworkSettings(BaseModel):
    bridge: str = "vmbr0"
    cidr_bits: int = Field(24, ge=1, le=32)
    gateway: str
    dns_servers: List[str] = ["1.1.1.1", "8.8.8.8"]


class PasswordPolicy(BaseModel):
    min_length: int = 14
    complexity_enabled: bool = True
    max_password_age_days: int = 60
    min_password_age_days: int = 1
    password_history_count: int = 24
    lockout_threshold: int = 5
    lockout_duration_minutes: int = 30
    lockout_observation_window_minutes: int = 30


class DomainSettings(BaseModel):
    name: str
    netbios_name: str
    admin_username: str = "Administrator"
    admin_password: str = ""
    dsrm_password: str = ""
    forest_functional_level: str = "WinThreshold"
    domain_functional_level: str = "WinThreshold"
    organizational_units: List[str] = ["Servers", "Workstations", "Users", "Groups", "Service Accounts"]
    dns_forwarders: List[str] = ["8.8.8.8", "1.1.1.1"]
    enable_recycle_bin: bool = True
    database_path: str = "D:\\NTDS"
    sysvol_path: str = "D:\\SYSVOL"
    log_path: str = "D:\\Logs"
    password_policy: PasswordPolicy = PasswordPolicy()

    @property
    def distinguished_name(self) -> str:
        return ",".join(f"DC={part}" for part in self.name.split("."))


class ControllerSpec(BaseModel):
    name: str
    vmid: int
    ip: str
    role: Role = Role.ADDITIONAL

    model_config = {"extra": "forbid"}


class RetrySpec(BaseModel):
    max_attempts: int = Field(3, ge=1)
    backoff_base_seconds: float = Field(5.0, ge=0)
    backoff_multiplier: float = Field(2.0, ge=1)
    backoff_cap_seconds: float = Field(300.0, ge=0)
    jitter: float = Field(0.1, ge=0, le=1)
    attempt_timeout_seconds: Optional[float] = Field(None, gt=0)
    timeout_is_fatal: bool = False


class PhaseOverride(BaseModel):
    retry: Optional[RetrySpec] = None
    probe_timeout_seconds: Optional[float] = Field(None, gt=0)


class OrchestratorSettings(BaseModel):
    forks: int = Field(10, ge=1)
    probe_interval_seconds: float = Field(5.0, ge=0)
    probe_timeout_seconds: float = Field(600.0, gt=0)
    connect_timeout_seconds: float = Field(3.0, gt=0)
    ssh_port: int = 22
    ldap_port: int = 389
    ledger_path: str = ".dcforge/ledger.jsonl"
    events_path: Optional[str] = None


class DeploymentConfig(BaseModel):
    """
    One Active Directory deployment: where the VMs live, how they look,
    and the domain they form.
    """

    environment: str = "lab"
    proxmox: ProxmoxSettings
    template: TemplateSettings = TemplateSettings()
    resources: VmResources = VmResources()
    network: NetworkSettings
    domain: DomainSettings

    # controller list; derived from the dc_* fields when empty
    domain_controllers: List[ControllerSpec] = []
    dc_count: int = Field(2, ge=1)
    dc_name_prefix: str = "dc"
    dc_vmid_start: int = 200
    dc_ip_prefix: str = "192.168.1"
    dc_ip_start: int = 10

    ssh_username: str = "Administrator"
    ssh_public_key: Optional[str] = None
    ssh_key_path: Optional[str] = None

    phases: Dict[str, PhaseOverride] = {}
    orchestrator: OrchestratorSettings = OrchestratorSettings()

    def controllers(self) -> List[ControllerSpec]:
        if self.domain_controllers:
            return list(self.domain_controllers)
        return [
            ControllerSpec(
                name=f"{self.dc_name_prefix}-{i + 1:02d}",
                vmid=self.dc_vmid_start + i,
                ip=f"{self.dc_ip_prefix}.{self.dc_ip_start + i}",
                role=Role.PRIMARY if i == 0 else Role.ADDITIONAL,
            )
            for i in range(self.dc_count)
        ]

    def controller(self, name: str) -> ControllerSpec:
        for c in self.controllers():
            if c.name == name:
                return c
        raise KeyError(f"Unknown domain controller '{name}'")

    @model_validator(mode="after")
    def _check_controllers(self) -> "DeploymentConfig":
        dcs = self.controllers()
        primaries = [c.name for c in dcs if c.role is Role.PRIMARY]
        if len(primaries) != 1:
            raise ValueError(f"exactly one primary domain controller required, got {len(primaries)}")
        for attr in ("name", "vmid", "ip"):
            values = [getattr(c, attr) for c in dcs]
            dupes = sorted({str(v) for v in values if values.count(v) > 1})
            if dupes:
                raise ValueError(f"duplicate domain controller {attr}: {', '.join(dupes)}")
        return self
