# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/dcforge/deploy/graph.py

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Union

from .errors import CyclicDependencyError, UnknownDependencyError
from .models import AbortScope, Role
from .retry import RetryPolicy

# Observer bits
from ..observers.dispatcher import EventBus
from ..observers.events import PlanComputed, PlanFailed, new_ctx

SAME_HOST = "same-host"
ALL_HOSTS = "all-hosts"
AUTO = "auto"


@dataclass(frozen=True)
class Dependency:
    phase: str
    scope: str = AUTO       # "auto" | "same-host" | "all-hosts"

    def __post_init__(self) -> None:
        if self.scope not in (AUTO, SAME_HOST, ALL_HOSTS):
            raise ValueError(f"Unknown dependency scope '{self.scope}'")


@dataclass(frozen=True)
class Phase:
    """
    A named unit of work. ``roles`` empty means the phase applies to every
    host; ``action`` is the caller-supplied leaf action.

    ``optional`` phases end Skipped instead of Failed when they give up and
    never abort anything; continuing past them is a stated policy.
    """
    name: str
    action: Optional[Callable] = None
    roles: FrozenSet[Role] = frozenset()
    depends_on: Sequence[Union[str, Dependency]] = ()
    serialization_class: Optional[str] = None
    abort_scope: AbortScope = AbortScope.HOST
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    optional: bool = False
    description: str = ""

    @property
    def dependencies(self) -> List[Dependency]:
        return [d if isinstance(d, Dependency) else Dependency(d) for d in self.depends_on]

    def applies_to(self, role: Optional[Role]) -> bool:
        return not self.roles or role in self.roles


def _validate_dependencies(phases: Sequence[Phase]) -> None:
    names: Set[str] = set()
    for p in phases:
        if p.name in names:
            raise UnknownDependencyError(f"Phase '{p.name}' is defined more than once")
        names.add(p.name)
    for p in phases:
        for d in p.dependencies:
            if d.phase not in names:
                raise UnknownDependencyError(
                    f"Phase '{p.name}' depends on unknown phase '{d.phase}'"
                )
            if d.phase == p.name:
                raise CyclicDependencyError(f"Phase '{p.name}' depends on itself")


def _topological_order(phases: Sequence[Phase]) -> List[str]:
    """
    Stable topological sort; ties go to definition order.
    """
    position = {p.name: i for i, p in enumerate(phases)}
    indeg: Dict[str, int] = {p.name: len({d.phase for d in p.dependencies}) for p in phases}
    graph: Dict[str, Set[str]] = {p.name: {d.phase for d in p.dependencies} for p in phases}

    queue = deque(sorted([n for n, deg in indeg.items() if deg == 0], key=position.get))
    order: List[str] = []

    while queue:
        n = queue.popleft()
        order.append(n)
        for m, deps in graph.items():
            if n in deps:
                indeg[m] -= 1
                if indeg[m] == 0:
                    queue.append(m)
                    queue = deque(sorted(queue, key=position.get))  # deterministic

    if len(order) != len(phases):
        stuck = sorted(set(position) - set(order), key=position.get)
        raise CyclicDependencyError(
            f"Cyclic dependency detected among phases: {', '.join(stuck)}"
        )
    return order


class PhaseGraph:
    """
    Immutable phase definitions plus the edges between them. Validated at
    construction: a bad graph never reaches the scheduler.
    """

    def __init__(
        self,
        phases: Iterable[Phase],
        bus: Optional[EventBus] = None,
        run_ctx: Optional[dict] = None,
    ):
        phases = list(phases)
        ctx = run_ctx or new_ctx(env="lab", context=None)
        try:
            _validate_dependencies(phases)
            order = _topological_order(phases)
        except Exception as e:
            if bus:
                bus.emit(PlanFailed(error=str(e), **ctx))
            raise

        self._by_name: Dict[str, Phase] = {p.name: p for p in phases}
        self._order: List[str] = order
        self._index: Dict[str, int] = {n: i for i, n in enumerate(order)}
        self._dependents: Dict[str, List[str]] = {n: [] for n in order}
        for p in phases:
            for d in p.dependencies:
                self._dependents[d.phase].append(p.name)

        if bus:
            bus.emit(PlanComputed(order=list(order), **ctx))

    def phases(self) -> List[Phase]:
        return [self._by_name[n] for n in self._order]

    def names(self) -> List[str]:
        return list(self._order)

    def get(self, name: str) -> Phase:
        try:
            return self._by_name[name]
        except KeyError:
            raise KeyError(f"Unknown phase '{name}'") from None

    def __contains__(self, name: str) -> bool:
        return name in self._by_name

    def dependencies_of(self, name: str) -> List[Phase]:
        return [self._by_name[d.phase] for d in self.get(name).dependencies]

    def dependents_of(self, name: str) -> List[Phase]:
        return [self._by_name[n] for n in self._dependents[self.get(name).name]]

    def serialization_class_of(self, name: str) -> Optional[str]:
        return self.get(name).serialization_class

    def index_of(self, name: str) -> int:
        return self._index[name]

    def applicable(self, role: Optional[Role]) -> List[Phase]:
        return [p for p in self.phases() if p.applies_to(role)]

    def resolve_scope(self, dependency: Dependency, role: Optional[Role]) -> str:
        """Concrete scope of ``dependency`` for a host with ``role``."""
        if dependency.scope != AUTO:
            return dependency.scope
        return SAME_HOST if self.get(dependency.phase).applies_to(role) else ALL_HOSTS

