# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/dcforge/utils/execution.py

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class ExecutionContext:
    """
    controls how leaf actions are executed
    """

    dry_run: bool = False
    run_id: Optional[str] = None
    env: str = "lab"
