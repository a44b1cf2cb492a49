"""
Local strategy: run jobs as plain host processes.

The source is written to a job-scoped directory under the job root and the
profile's build/run command is executed there with ``sh``, in a new session
so the whole process group can be killed at the deadline.  CPU time, file
size and core dumps are capped with ``resource`` limits.

This is **not** a security boundary.  It exists for development machines
without a container runtime and for exercising the supervisor against real
processes; the host must provide the language toolchains on ``PATH``.
"""

from __future__ import annotations

import asyncio
import functools
import math
import os
import resource
from typing import TYPE_CHECKING, Dict

from ..languages import ExecutionProfile
from .base import IsolatedExecutionHandle, IsolationBackend, RawResult

if TYPE_CHECKING:
    from ..supervisor import Job

MAX_FILE_BYTES = 16 * 1024 * 1024


def apply_rlimits(cpu_seconds: int, file_bytes: int) -> None:
    """Limit CPU time and file size of the child; runs between fork and exec."""
    resource.setrlimit(resource.RLIMIT_CPU, (cpu_seconds, cpu_seconds))
    resource.setrlimit(resource.RLIMIT_FSIZE, (file_bytes, file_bytes))
    resource.setrlimit(resource.RLIMIT_CORE, (0, 0))


class LocalStrategy(IsolationBackend):
    """Execute jobs directly on the host in per-job directories."""

    name = "local"

    async def initialize(self) -> None:
        self._prepare_job_root()
        self._ready = True

    async def allocate(self, profile: ExecutionProfile, job: "Job") -> IsolatedExecutionHandle:
        self._require_ready()
        job_dir = self._create_job_dir(job, profile)
        return IsolatedExecutionHandle(
            job_id=job.job_id,
            profile=profile,
            source_code=job.source_code,
            job_dir=job_dir,
        )

    def _env(self, handle: IsolatedExecutionHandle) -> Dict[str, str]:
        return {
            "PATH": os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin"),
            "HOME": str(handle.job_dir),
            "LANG": "C.UTF-8",
        }

    async def run(self, handle: IsolatedExecutionHandle, deadline: float) -> RawResult:
        remaining = deadline - asyncio.get_running_loop().time()
        # Secondary guard only; the supervisor's timer is authoritative.
        cpu_seconds = max(1, math.ceil(remaining) + 1)
        handle.process = await self._spawn(
            ["sh", "-c", handle.profile.shell_command()],
            cwd=handle.job_dir,
            env=self._env(handle),
            preexec_fn=functools.partial(apply_rlimits, cpu_seconds, MAX_FILE_BYTES),
        )
        raw = await self._communicate(handle.process)
        handle.finished = True
        return raw

    async def _release(self, handle: IsolatedExecutionHandle) -> None:
        await self._remove_job_dir(handle.job_dir)
