"""The normalised result handed back to callers of the code runner."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional

TRUNCATION_MARKER = "\n[output truncated]"
TIMEOUT_MESSAGE = "execution timed out"


class ExecutionStatus(str, enum.Enum):
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"
    INFRA_ERROR = "infra_error"


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of one job.

    Attributes
    ----------
    status: ExecutionStatus
        ``success`` and ``error`` mirror the exit code of the program (a
        failed compile step is reported as ``error`` as well), ``timeout``
        means the job was killed at its deadline and ``infra_error`` means
        the isolation backend could not run the job at all.
    stdout: str
        Captured standard output, at most ``max_output_bytes`` long plus a
        truncation marker.
    stderr: str
        Captured standard error, bounded the same way.
    exit_code: int, optional
        Exit status of the program; ``None`` for timeouts and infra errors.
    duration_ms: int
        Wall-clock time spent on the job.
    truncated: bool
        Whether either stream hit the capture ceiling.
    """

    status: ExecutionStatus
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    duration_ms: int = 0
    truncated: bool = False

    @property
    def ok(self) -> bool:
        return self.status is ExecutionStatus.SUCCESS

    @classmethod
    def timed_out(cls, duration_ms: int = 0) -> "ExecutionResult":
        return cls(ExecutionStatus.TIMEOUT, stdout="", stderr=TIMEOUT_MESSAGE, duration_ms=duration_ms)

    @classmethod
    def infra_error(cls, message: str, duration_ms: int = 0) -> "ExecutionResult":
        return cls(ExecutionStatus.INFRA_ERROR, stdout="", stderr=message, duration_ms=duration_ms)
