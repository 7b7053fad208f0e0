# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/dcforge/deploy/teardown.py

from __future__ import annotations

from typing import Callable, Dict, Optional

from .executor import ActionExecutor
from .graph import SAME_HOST, Dependency, Phase, PhaseGraph
from .ledger import DeploymentLedger
from .models import AbortScope
from .registry import HostRegistry
from .retry import RetryPolicy
from .scheduler import DeploymentReport, Orchestrator
from ..observers.dispatcher import EventBus

STOP = "stop"
DELETE = "delete"


def build_teardown_graph(
    stop_action: Callable,
    delete_action: Callable,
    retry: Optional[RetryPolicy] = None,
    bus: Optional[EventBus] = None,
    run_ctx: Optional[Dict] = None,
) -> PhaseGraph:
    """stop -> delete per host; hosts are independent of each other."""
    retry = retry or RetryPolicy()
    return PhaseGraph(
        [
            Phase(STOP, action=stop_action, retry=retry, abort_scope=AbortScope.HOST,
                  description="Stop the VM"),
            Phase(DELETE, action=delete_action, depends_on=(Dependency(STOP, SAME_HOST),),
                  retry=retry, abort_scope=AbortScope.HOST, description="Destroy the VM"),
        ],
        bus=bus,
        run_ctx=run_ctx,
    )


def run_teardown(
    registry: HostRegistry,
    graph: PhaseGraph,
    executor: ActionExecutor,
    *,
    ledger: Optional[DeploymentLedger] = None,
    concurrency: int = 10,
    bus: Optional[EventBus] = None,
    run_ctx: Optional[Dict] = None,
) -> DeploymentReport:
    orch = Orchestrator(
        graph,
        registry,
        executor,
        ledger=ledger,
        concurrency=concurrency,
        global_abort_classes=(),
        bus=bus,
        run_ctx=run_ctx,
    )
    return orch.run()
