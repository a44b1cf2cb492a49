"""Exception types raised by the code runner.

Only :class:`UnsupportedLanguageError` ever reaches a caller of
:meth:`coderunner.service.CodeRunner.execute`.  Everything else is resolved
into an :class:`~coderunner.result.ExecutionResult` at the job boundary.
"""

from __future__ import annotations


class CodeRunnerError(Exception):
    """Base class for all code runner errors."""


class UnsupportedLanguageError(CodeRunnerError):
    """The requested language is not in the registry."""

    def __init__(self, language_id: str) -> None:
        super().__init__(f"Unsupported language: {language_id}")
        self.language_id = language_id


class InfraUnavailableError(CodeRunnerError):
    """The isolation backend is not ready or the container runtime is unreachable."""


class ResourceSetupError(InfraUnavailableError):
    """A job-scoped directory or source file could not be created."""


class InvalidTransitionError(CodeRunnerError):
    """A job was moved through its lifecycle in an order that is not allowed."""
