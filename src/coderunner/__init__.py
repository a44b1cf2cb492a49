"""Code runner package.

This package runs untrusted programs submitted from the collaborative editor
inside isolated, resource-bounded containers and returns their output within
a fixed time limit.

The top-level modules include:

* ``config`` – configuration handling for environment variables.
* ``languages`` – the registry of supported languages and their profiles.
* ``backends`` – isolation strategies (ephemeral, warm pool, local).
* ``supervisor`` – per-job lifecycle, timeout enforcement and cleanup.
* ``service`` – the ``CodeRunner`` entry point used by callers.
* ``collab`` – translation of collaboration-server events.
* ``api`` – FastAPI application exposing HTTP endpoints.
"""

from .config import Config
from .errors import (
    CodeRunnerError,
    InfraUnavailableError,
    ResourceSetupError,
    UnsupportedLanguageError,
)
from .result import ExecutionResult, ExecutionStatus
from .service import CodeRunner

__all__ = [
    "CodeRunner",
    "CodeRunnerError",
    "Config",
    "ExecutionResult",
    "ExecutionStatus",
    "InfraUnavailableError",
    "ResourceSetupError",
    "UnsupportedLanguageError",
]
