import pytest

from dcforge.config.models import DeploymentConfig
from dcforge.deploy.errors import UnknownDependencyError
from dcforge.deploy.graph import ALL_HOSTS
from dcforge.deploy.models import AbortScope, Role
from dcforge.deploy.phases import (
    CONFIGURE_DIRECTORY,
    CONFIGURE_MONITORING,
    CREATE_FOREST,
    JOIN_DOMAIN,
    PHASE_NAMES,
    VALIDATE,
    build_ad_graph,
    resolve_phase_selection,
)
from dcforge.deploy.scheduler import DIRECTORY_SERVICE_CLASS


def _cfg(**extra):
    data = {
        "proxmox": {"api_url": "https://pve.example.com:8006/api2/json", "user": "root@pam", "node": "pve"},
        "network": {"gateway": "192.168.1.1"},
        "domain": {"name": "corp.example.com", "netbios_name": "CORP"},
    }
    data.update(extra)
    return DeploymentConfig.model_validate(data)


def test_plan_order_and_directory_edges():
    g = build_ad_graph({})
    assert g.names() == PHASE_NAMES
    join = g.get(JOIN_DOMAIN)
    assert join.roles == frozenset({Role.ADDITIONAL})
    forest_dep = next(d for d in join.dependencies if d.phase == CREATE_FOREST)
    assert forest_dep.scope == ALL_HOSTS
    for name in (CREATE_FOREST, JOIN_DOMAIN, CONFIGURE_DIRECTORY):
        assert g.serialization_class_of(name) == DIRECTORY_SERVICE_CLASS
        assert g.get(name).abort_scope is AbortScope.GLOBAL
    assert g.get(CONFIGURE_MONITORING).optional
    assert [p.name for p in g.dependencies_of(VALIDATE)] == ["configure-dns", CONFIGURE_MONITORING]


def test_retry_overrides_from_config():
    cfg = _cfg(phases={"join-domain": {"retry": {"max_attempts": 7, "backoff_base_seconds": 1}}})
    g = build_ad_graph({}, cfg)
    assert g.get(JOIN_DOMAIN).retry.max_attempts == 7
    assert g.get(JOIN_DOMAIN).retry.backoff_base == 1
    assert g.get(CREATE_FOREST).retry.max_attempts == 5
    assert g.get(VALIDATE).retry.max_attempts == 3


def test_unknown_phase_in_config_is_rejected():
    with pytest.raises(UnknownDependencyError):
        build_ad_graph({}, _cfg(phases={"join-domian": {}}))
    build_ad_graph({}, _cfg(phases={"teardown": {"retry": {"max_attempts": 1}}}))


def test_resolve_phase_selection():
    g = build_ad_graph({})
    assert resolve_phase_selection("validate, provision", g) == ["provision", "validate"]
    with pytest.raises(UnknownDependencyError) as ei:
        resolve_phase_selection("provision,bogus", g)
    assert "bogus" in str(ei.value)
    with pytest.raises(UnknownDependencyError):
        resolve_phase_selection(" , ", g)
