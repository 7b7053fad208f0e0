# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/dcforge/deploy/errors.py

from __future__ import annotations

import errno
import socket


class DcforgeError(Exception):
    pass


# ---------------------------------------------------------------------
# Leaf action failures
# ---------------------------------------------------------------------
class ActionError(DcforgeError):
    """Raised by a leaf action. Subclasses decide whether a retry can help."""

    transient = False


class TransientActionError(ActionError):
    """Network blip, service not ready yet, host still rebooting."""

    transient = True


class FatalActionError(ActionError):
    """Invalid configuration, authorization failure, broken remote state."""

    transient = False


# ---------------------------------------------------------------------
# Scheduler / graph
# ---------------------------------------------------------------------
class DependencyUnmetError(DcforgeError):
    """A PhaseRun is still waiting on a dependency. Never a plan failure."""

    def __init__(self, host: str, phase: str, waiting_on: list[tuple[str, str]]):
        self.host = host
        self.phase = phase
        self.waiting_on = waiting_on
        pending = ", ".join(f"{h}/{p}" for h, p in waiting_on)
        super().__init__(f"{host}/{phase} waiting on {pending}")


class GraphConfigurationError(DcforgeError, ValueError):
    pass


class UnknownDependencyError(GraphConfigurationError):
    pass


class CyclicDependencyError(GraphConfigurationError):
    pass


class LedgerCorruptError(DcforgeError):
    pass


class ConfigError(DcforgeError):
    pass


TRANSIENT = "transient"
FATAL = "fatal"

_NETWORK_ERRNOS = {
    errno.EHOSTUNREACH,
    errno.ENETUNREACH,
    errno.ETIMEDOUT,
    errno.EHOSTDOWN,
    errno.ENETDOWN,
}


def classify_error(exc: BaseException) -> str:
    """
    Map an exception raised by a leaf action to ``transient`` or ``fatal``.

    Explicit ActionErrors keep their class. Timeouts and socket level
    connection problems are transient. Everything else is fatal: an
    unexpected exception inside a leaf action is a bug or bad config, and
    retrying it only burns the attempt budget.
    """
    if isinstance(exc, ActionError):
        return TRANSIENT if exc.transient else FATAL
    if isinstance(exc, (TimeoutError, socket.timeout, ConnectionError)):
        return TRANSIENT
    if isinstance(exc, OSError) and exc.errno in _NETWORK_ERRNOS:
        return TRANSIENT
    return FATAL
