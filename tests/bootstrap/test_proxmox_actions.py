import pytest

from dcforge.bootstrap.proxmox import actions
from dcforge.config.models import DeploymentConfig
from dcforge.deploy.errors import FatalActionError
from dcforge.deploy.graph import Phase
from dcforge.deploy.models import Host, HostContext, Role
from dcforge.deploy.prober import ReadinessProber
from dcforge.deploy.registry import HostRegistry


class FakeClient:
    def __init__(self, status=None):
        self.status = status
        self.calls = []

    def vm_status(self, vmid):
        return self.status

    def vm_exists(self, vmid):
        return self.status is not None

    def clone_vm(self, template, vmid, name, *, full, storage):
        self.calls.append(("clone", template, vmid, name))
        return "UPID:clone"

    def configure_vm(self, vmid, **options):
        self.calls.append(("configure", vmid, options))
        return None

    def start_vm(self, vmid):
        self.calls.append(("start", vmid))
        return "UPID:start"

    def stop_vm(self, vmid):
        self.calls.append(("stop", vmid))
        return "UPID:stop"

    def delete_vm(self, vmid):
        self.calls.append(("delete", vmid))
        return "UPID:delete"

    def wait_task(self, upid):
        self.calls.append(("wait", upid))


def _hctx(vars=None):
    cfg = DeploymentConfig.model_validate({
        "proxmox": {"api_url": "https://pve.example.com:8006/api2/json", "user": "root@pam", "node": "pve"},
        "network": {"gateway": "192.168.1.1"},
        "domain": {"name": "corp.example.com", "netbios_name": "CORP", "admin_password": "pw"},
        "ssh_public_key": "ssh-ed25519 AAAA me@host",
    })
    reg = HostRegistry()
    reg.register(Host("dc-01", Role.PRIMARY, vars=vars if vars is not None else {"vmid": 200, "ip": "192.168.1.10"}))
    return HostContext(host=reg.get("dc-01"), phase=Phase("provision"), attempt=1,
                       registry=reg, prober=ReadinessProber(), settings=cfg)


def test_provision_fresh_vm_publishes_address():
    client = FakeClient(status=None)
    hctx = _hctx()
    actions.provision(hctx, client=client)
    kinds = [c[0] for c in client.calls]
    assert kinds == ["clone", "wait", "configure", "wait", "start", "wait"]
    assert client.calls[0] == ("clone", 9000, 200, "dc-01")
    opts = client.calls[2][2]
    assert opts["ipconfig0"] == "ip=192.168.1.10/24,gw=192.168.1.1"
    assert opts["sshkeys"] == "ssh-ed25519 AAAA me@host"
    assert opts["ciuser"] == "Administrator"
    assert hctx.registry.get("dc-01").address == "192.168.1.10"


def test_provision_existing_running_vm_is_not_recloned():
    client = FakeClient(status="running")
    hctx = _hctx()
    actions.provision(hctx, client=client)
    assert [c[0] for c in client.calls] == ["configure", "wait"]
    assert hctx.registry.get("dc-01").address == "192.168.1.10"


def test_provision_requires_vmid():
    with pytest.raises(FatalActionError):
        actions.provision(_hctx(vars={"ip": "192.168.1.10"}), client=FakeClient())


def test_stop_and_delete_are_idempotent():
    missing = FakeClient(status=None)
    actions.stop(_hctx(), client=missing)
    actions.delete(_hctx(), client=missing)
    assert missing.calls == []

    stopped = FakeClient(status="stopped")
    actions.stop(_hctx(), client=stopped)
    actions.delete(_hctx(), client=stopped)
    assert stopped.calls == [("delete", 200), ("wait", "UPID:delete")]

    running = FakeClient(status="running")
    actions.stop(_hctx(), client=running)
    assert running.calls == [("stop", 200), ("wait", "UPID:stop")]
