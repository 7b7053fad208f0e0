import pytest

from dcforge.bootstrap.directory.actions import (
    NOT_PROMOTED,
    PROMOTED,
    configure_directory_service,
    create_forest,
    join_domain,
)
from dcforge.bootstrap.dns.actions import configure_dns, resolver_order, reverse_zone_network
from dcforge.bootstrap.monitoring.actions import HEALTH_CHECK_PATH, configure_monitoring
from dcforge.bootstrap.validate.actions import validate
from dcforge.bootstrap.windows.base import base_configure, probe_timeout
from dcforge.bootstrap.windows.powershell import PSResult
from dcforge.config.models import DeploymentConfig
from dcforge.deploy.errors import FatalActionError, TransientActionError
from dcforge.deploy.graph import Phase
from dcforge.deploy.models import Host, HostContext, Role
from dcforge.deploy.prober import ProbeResult, ProbeStatus
from dcforge.deploy.registry import HostRegistry


class FakeProber:
    def __init__(self):
        self.waits = []

    def require_ready(self, address, probe, timeout):
        self.waits.append((address, probe.__name__, timeout))
        return ProbeResult(ProbeStatus.SUCCEEDED, 1, 0.0)


class FakePS:
    """Replies with the first canned output whose marker occurs in the script."""

    def __init__(self, replies=()):
        self.replies = list(replies)
        self.scripts = []

    def __call__(self, hctx):
        return self

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return None

    def run(self, script, *, timeout=None, check=True):
        self.scripts.append(script)
        for marker, out in self.replies:
            if marker in script:
                return PSResult(0, out, "")
        return PSResult(0, "", "")


def _cfg(**domain):
    d = {"name": "corp.example.com", "netbios_name": "CORP",
         "admin_password": "Adm1n!", "dsrm_password": "Dsrm!"}
    d.update(domain)
    return DeploymentConfig.model_validate({
        "proxmox": {"api_url": "https://pve.example.com:8006/api2/json", "user": "root@pam", "node": "pve"},
        "network": {"gateway": "192.168.1.1"},
        "domain": d,
        "phases": {"create-forest": {"probe_timeout_seconds": 900}},
    })


def _hctx(name="dc-01", phase="validate", cfg=None, primary_address="192.168.1.10"):
    reg = HostRegistry()
    reg.register(Host("dc-01", Role.PRIMARY, address=primary_address, vars={"ip": "192.168.1.10"}))
    reg.register(Host("dc-02", Role.ADDITIONAL, address="192.168.1.11", vars={"ip": "192.168.1.11"}))
    return HostContext(host=reg.get(name), phase=Phase(phase), attempt=1, registry=reg,
                       prober=FakeProber(), settings=cfg or _cfg())


# ----------------------------------------------------------------------
# base
# ----------------------------------------------------------------------
def test_probe_timeout_uses_phase_override():
    assert probe_timeout(_hctx(phase="create-forest")) == 900
    assert probe_timeout(_hctx(phase="join-domain")) == 600


def test_base_configure_waits_then_runs_hostname_and_system_scripts():
    ps = FakePS([("base configuration", "base configuration applied\n")])
    hctx = _hctx(phase="base-configure")
    base_configure(hctx, session_factory=ps)
    assert hctx.prober.waits == [("192.168.1.10", "tcp/22", 600)]
    assert "Rename-Computer -NewName $target" in ps.scripts[0]
    assert "$target = 'dc-01'" in ps.scripts[0]
    assert "New-NetFirewallRule" in ps.scripts[1]


# ----------------------------------------------------------------------
# directory service
# ----------------------------------------------------------------------
def test_create_forest_promotes_when_not_yet_a_dc():
    ps = FakePS([("DomainRole", NOT_PROMOTED + "\n")])
    hctx = _hctx(phase="create-forest")
    create_forest(hctx, session_factory=ps)
    assert any("Install-ADDSForest" in s for s in ps.scripts)
    forest = next(s for s in ps.scripts if "Install-ADDSForest" in s)
    assert "-DomainName 'corp.example.com'" in forest
    assert "-DomainNetbiosName 'CORP'" in forest
    assert [w[1] for w in hctx.prober.waits] == ["tcp/22", "tcp/22", "tcp/389"]
    assert hctx.prober.waits[0][2] == 900


def test_create_forest_skips_promotion_when_already_done():
    ps = FakePS([("DomainRole", PROMOTED + "\n")])
    create_forest(_hctx(phase="create-forest"), session_factory=ps)
    assert not any("Install-ADDSForest" in s for s in ps.scripts)
    assert "Get-ADDomain -Server localhost" in ps.scripts[-1]


def test_create_forest_needs_dsrm_password():
    with pytest.raises(FatalActionError):
        create_forest(_hctx(cfg=_cfg(dsrm_password="")), session_factory=FakePS())


def test_join_domain_points_dns_at_primary():
    ps = FakePS([("DomainRole", NOT_PROMOTED + "\n")])
    join_domain(_hctx("dc-02", phase="join-domain"), session_factory=ps)
    join = next(s for s in ps.scripts if "Install-ADDSDomainController" in s)
    assert "-ServerAddresses '192.168.1.10'" in join
    assert "'Administrator@corp.example.com'" in join


def test_join_domain_waits_for_primary_address():
    with pytest.raises(TransientActionError):
        join_domain(_hctx("dc-02", phase="join-domain", primary_address=None), session_factory=FakePS())


def test_configure_directory_service_primary_vs_additional():
    ps = FakePS()
    configure_directory_service(_hctx("dc-01"), session_factory=ps)
    assert len(ps.scripts) == 2
    assert "New-ADOrganizationalUnit" in ps.scripts[0]
    assert "-MinPasswordLength 14" in ps.scripts[0]
    assert "repadmin /replsummary" in ps.scripts[1]

    ps = FakePS()
    configure_directory_service(_hctx("dc-02"), session_factory=ps)
    assert len(ps.scripts) == 1
    assert "repadmin" in ps.scripts[0]


# ----------------------------------------------------------------------
# dns
# ----------------------------------------------------------------------
def test_reverse_zone_network():
    assert reverse_zone_network("192.168.1.10", 24) == "192.168.1.0/24"
    with pytest.raises(FatalActionError):
        reverse_zone_network("not-an-ip", 24)


def test_resolver_order():
    assert resolver_order(_hctx("dc-01")) == ["127.0.0.1"]
    assert resolver_order(_hctx("dc-02")) == ["192.168.1.10", "192.168.1.11"]


def test_configure_dns_adds_reverse_zone_on_primary_only():
    ps = FakePS()
    configure_dns(_hctx("dc-01"), session_factory=ps)
    assert "Set-DnsServerForwarder" in ps.scripts[0]
    assert "'192.168.1.0/24'" in ps.scripts[1]

    ps = FakePS()
    configure_dns(_hctx("dc-02"), session_factory=ps)
    assert len(ps.scripts) == 1


# ----------------------------------------------------------------------
# monitoring and validation
# ----------------------------------------------------------------------
def test_configure_monitoring_registers_tasks_and_runs_health_check():
    ps = FakePS()
    configure_monitoring(_hctx("dc-01"), session_factory=ps)
    assert "Register-ScheduledTask" in ps.scripts[0]
    assert HEALTH_CHECK_PATH in ps.scripts[1]


def test_validate_passes():
    ps = FakePS([("Get-Service", "SERVICE NTDS Running\nSERVICE DNS Running\n"
                                 "SUCCESS: Domain corp.example.com is accessible\n")])
    validate(_hctx(), session_factory=ps)


def test_validate_reports_stopped_services():
    ps = FakePS([("Get-Service", "SERVICE NTDS Stopped\nSERVICE DNS Running\nSUCCESS: Domain x\n")])
    with pytest.raises(FatalActionError) as ei:
        validate(_hctx(), session_factory=ps)
    assert "NTDS" in str(ei.value)


def test_validate_reports_unreachable_domain():
    ps = FakePS([("Get-Service", "SERVICE NTDS Running\nSERVICE DNS Running\n"
                                 "FAILED: Unable to contact the server\n")])
    with pytest.raises(FatalActionError) as ei:
        validate(_hctx(), session_factory=ps)
    assert "Unable to contact the server" in str(ei.value)
