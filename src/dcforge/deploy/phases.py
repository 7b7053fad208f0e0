# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/dcforge/deploy/phases.py

from __future__ import annotations

from typing import TYPE_CHECKING, Callable, Dict, List, Optional

from .errors import UnknownDependencyError
from .graph import ALL_HOSTS, SAME_HOST, Dependency, Phase, PhaseGraph
from .models import AbortScope, Role
from .retry import RetryPolicy
from .scheduler import DIRECTORY_SERVICE_CLASS

# Observer bits
from ..observers.dispatcher import EventBus

if TYPE_CHECKING:
    from ..config.models import DeploymentConfig

PROVISION = "provision"
AWAIT_CONNECTIVITY = "await-connectivity"
BASE_CONFIGURE = "base-configure"
CREATE_FOREST = "create-forest"
JOIN_DOMAIN = "join-domain"
CONFIGURE_DIRECTORY = "configure-directory-service"
CONFIGURE_DNS = "configure-dns"
CONFIGURE_MONITORING = "configure-monitoring"
VALIDATE = "validate"

# config key for the retry policy of the teardown plan
TEARDOWN = "teardown"

PRIMARY_ONLY = frozenset({Role.PRIMARY})
ADDITIONAL_ONLY = frozenset({Role.ADDITIONAL})

# phases that wait on reboots through the prober get a longer budget
_DEFAULT_RETRY: Dict[str, RetryPolicy] = {
    AWAIT_CONNECTIVITY: RetryPolicy(max_attempts=5, backoff_base=10.0),
    BASE_CONFIGURE: RetryPolicy(max_attempts=5, backoff_base=15.0),
    CREATE_FOREST: RetryPolicy(max_attempts=5, backoff_base=30.0),
    JOIN_DOMAIN: RetryPolicy(max_attempts=5, backoff_base=30.0),
    CONFIGURE_DIRECTORY: RetryPolicy(max_attempts=5, backoff_base=30.0),
}


def _retry(name: str, settings: Optional["DeploymentConfig"]) -> RetryPolicy:
    if settings is not None:
        override = settings.phases.get(name)
        if override and override.retry:
            return RetryPolicy.from_spec(override.retry)
    return _DEFAULT_RETRY.get(name, RetryPolicy())


def build_ad_graph(
    actions: Dict[str, Callable],
    settings: Optional["DeploymentConfig"] = None,
    bus: Optional[EventBus] = None,
    run_ctx: Optional[Dict] = None,
) -> PhaseGraph:
    """
    The standard Active Directory deployment plan. ``actions`` maps phase
    names to leaf actions; a missing entry leaves the phase without one,
    which fails it when dispatched.
    """
    if settings is not None:
        unknown = sorted(set(settings.phases) - set(PHASE_NAMES) - {TEARDOWN})
        if unknown:
            raise UnknownDependencyError(f"Configuration for unknown phase(s): {', '.join(unknown)}")

    def phase(name: str, **kw) -> Phase:
        return Phase(name, action=actions.get(name), retry=_retry(name, settings), **kw)

    return PhaseGraph(
        [
            phase(PROVISION, description="Clone, configure and start the VM"),
            phase(AWAIT_CONNECTIVITY, depends_on=(PROVISION,),
                  description="Wait until the VM accepts SSH"),
            phase(BASE_CONFIGURE, depends_on=(AWAIT_CONNECTIVITY,),
                  description="Hostname, firewall, time, services"),
            phase(CREATE_FOREST, roles=PRIMARY_ONLY, depends_on=(BASE_CONFIGURE,),
                  serialization_class=DIRECTORY_SERVICE_CLASS, abort_scope=AbortScope.GLOBAL,
                  description="Promote the primary and create the forest"),
            phase(JOIN_DOMAIN, roles=ADDITIONAL_ONLY,
                  depends_on=(BASE_CONFIGURE, Dependency(CREATE_FOREST, ALL_HOSTS)),
                  serialization_class=DIRECTORY_SERVICE_CLASS, abort_scope=AbortScope.GLOBAL,
                  description="Promote an additional domain controller"),
            phase(CONFIGURE_DIRECTORY,
                  depends_on=(CREATE_FOREST, Dependency(JOIN_DOMAIN, SAME_HOST)),
                  serialization_class=DIRECTORY_SERVICE_CLASS, abort_scope=AbortScope.GLOBAL,
                  description="OUs, password policy, recycle bin, replication health"),
            phase(CONFIGURE_DNS, depends_on=(CONFIGURE_DIRECTORY,),
                  description="Forwarders, resolver order, scavenging"),
            phase(CONFIGURE_MONITORING, depends_on=(CONFIGURE_DIRECTORY,), optional=True,
                  description="Health check scripts and scheduled tasks"),
            phase(VALIDATE, depends_on=(CONFIGURE_DNS, CONFIGURE_MONITORING),
                  description="NTDS and DNS running, domain answering"),
        ],
        bus=bus,
        run_ctx=run_ctx,
    )


PHASE_NAMES: List[str] = [
    PROVISION,
    AWAIT_CONNECTIVITY,
    BASE_CONFIGURE,
    CREATE_FOREST,
    JOIN_DOMAIN,
    CONFIGURE_DIRECTORY,
    CONFIGURE_DNS,
    CONFIGURE_MONITORING,
    VALIDATE,
]


def resolve_phase_selection(selection: str, graph: PhaseGraph) -> List[str]:
    """
    "a,b" -> ["a", "b"] in plan order. Unknown names raise
    UnknownDependencyError naming the valid phases.
    """
    names = [s.strip() for s in selection.split(",") if s.strip()]
    if not names:
        raise UnknownDependencyError("No phases selected")
    unknown = [n for n in names if n not in graph]
    if unknown:
        raise UnknownDependencyError(
            f"Unknown phase(s): {', '.join(unknown)}. Valid phases: {', '.join(graph.names())}"
        )
    return [n for n in graph.names() if n in set(names)]
