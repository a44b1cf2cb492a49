"""
Isolation backends for the code runner.

A backend is selected once from configuration and shared by every job; the
supervisor only talks to the :class:`IsolationBackend` interface.  Supported
strategies:

* ``ephemeral`` – :class:`EphemeralStrategy`, one container per job.
* ``warm`` – :class:`WarmPoolStrategy`, one shared long-lived container.
* ``local`` – :class:`LocalStrategy`, host processes for development.
"""

from __future__ import annotations

from typing import Sequence

from ..config import Config
from ..languages import ExecutionProfile
from .base import IsolatedExecutionHandle, IsolationBackend, OutputBuffer, RawResult
from .ephemeral import EphemeralStrategy
from .local import LocalStrategy
from .warm_pool import WarmPoolStrategy

STRATEGIES = {
    "ephemeral": EphemeralStrategy,
    "warm": WarmPoolStrategy,
    "local": LocalStrategy,
}


def create_backend(config: Config, profiles: Sequence[ExecutionProfile] = ()) -> IsolationBackend:
    """Instantiate the strategy named by ``config.backend``."""
    try:
        strategy = STRATEGIES[config.backend]
    except KeyError:
        raise ValueError(f"Unknown backend: {config.backend}") from None
    return strategy(config, profiles)


__all__ = [
    "IsolatedExecutionHandle",
    "IsolationBackend",
    "OutputBuffer",
    "RawResult",
    "EphemeralStrategy",
    "WarmPoolStrategy",
    "LocalStrategy",
    "create_backend",
]
