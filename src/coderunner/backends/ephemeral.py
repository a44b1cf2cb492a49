"""
Ephemeral strategy: one disposable container per job.

Each job gets a fresh container started from the language's image with
networking disabled and memory, CPU and process caps applied.  The source is
streamed to the container's standard input, where a small shell prelude
writes it to the profile's source file on a private tmpfs before building
and running it.  The container is started with ``--rm`` and disappears when
the program exits; :meth:`EphemeralStrategy.terminate` force-removes it by
name if the job had to be killed.

The prelude prints a start line before reading the source.  A run that
never produced it failed in the runtime and is an infrastructure error; a
run that did reports the program's own exit status, 125 included.

This gives the smallest blast radius per job at the cost of a container
cold start on every execution.
"""

from __future__ import annotations

import logging
import shlex
from typing import TYPE_CHECKING, List

from ..errors import InfraUnavailableError
from ..languages import ExecutionProfile
from .base import IsolatedExecutionHandle, IsolationBackend, RawResult

if TYPE_CHECKING:
    from ..supervisor import Job

logger = logging.getLogger("coderunner.backends.ephemeral")

WORKDIR = "/sandbox"
WORKDIR_SIZE = "64m"
# Printed by the container shell before the source is read; its absence means
# the container never started.
STARTED_LINE = "coderunner-started"
PULL_TIMEOUT_SECONDS = 600


def container_name(job_id: str) -> str:
    return f"coderunner-{job_id}"


class EphemeralStrategy(IsolationBackend):
    """Run every job in its own short-lived container."""

    name = "ephemeral"

    async def initialize(self) -> None:
        rc, out, err = await self._run_cli(
            self.config.docker_bin, "version", "--format", "{{.Server.Version}}"
        )
        if rc != 0:
            self._ready = False
            raise InfraUnavailableError(f"Container runtime unavailable: {err.strip() or out.strip()}")
        logger.info("Container runtime ready (server %s)", out.strip())
        if self.config.pull_images:
            for profile in self.profiles:
                await self._ensure_image(profile.image)
        self._ready = True

    async def _ensure_image(self, image: str) -> None:
        rc, _, _ = await self._run_cli(self.config.docker_bin, "image", "inspect", image)
        if rc == 0:
            return
        logger.info("Pulling image %s", image)
        rc, _, err = await self._run_cli(
            self.config.docker_bin, "pull", image, timeout=PULL_TIMEOUT_SECONDS
        )
        if rc != 0:
            raise InfraUnavailableError(f"Failed to pull {image}: {err.strip()}")

    def run_args(self, handle: IsolatedExecutionHandle) -> List[str]:
        """Full ``docker run`` command line for ``handle``."""
        profile = handle.profile
        prelude = f"echo {STARTED_LINE} && cat > {shlex.quote(profile.source_file)} && {profile.shell_command()}"
        return [
            self.config.docker_bin,
            "run",
            "--rm",
            "-i",
            "--name",
            container_name(handle.job_id),
            "--label",
            f"coderunner.job={handle.job_id}",
            "--network",
            "none",
            "--memory",
            self.config.memory_limit,
            "--memory-swap",
            self.config.memory_limit,
            "--cpus",
            self.config.cpus,
            "--pids-limit",
            str(self.config.pids_limit),
            "--tmpfs",
            f"{WORKDIR}:rw,exec,size={WORKDIR_SIZE}",
            "-w",
            WORKDIR,
            profile.image,
            "sh",
            "-c",
            prelude,
        ]

    async def allocate(self, profile: ExecutionProfile, job: "Job") -> IsolatedExecutionHandle:
        self._require_ready()
        return IsolatedExecutionHandle(
            job_id=job.job_id,
            profile=profile,
            source_code=job.source_code,
            container=container_name(job.job_id),
        )

    async def run(self, handle: IsolatedExecutionHandle, deadline: float) -> RawResult:
        handle.process = await self._spawn(self.run_args(handle), stdin=True)
        started = await self._read_prelude_line(handle.process) == STARTED_LINE
        raw = await self._communicate(handle.process, stdin_data=handle.source_code)
        handle.finished = True
        if not started:
            raise InfraUnavailableError(f"Container failed to start: {raw.stderr.strip() or raw.exit_code}")
        return raw

    async def _terminate(self, handle: IsolatedExecutionHandle) -> None:
        if not handle.container:
            return
        try:
            rc, _, err = await self._run_cli(self.config.docker_bin, "rm", "-f", handle.container)
        except InfraUnavailableError as exc:
            logger.warning("Failed to remove container %s: %s", handle.container, exc)
            return
        if rc != 0 and "No such container" not in err:
            logger.warning("Failed to remove container %s: %s", handle.container, err.strip())
