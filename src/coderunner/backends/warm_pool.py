"""
Warm-pool strategy: one long-lived container shared by every job.

The container is started once by :meth:`WarmPoolStrategy.initialize` with
``sleep infinity`` as its main process and the host job root bind-mounted
inside it.  For every job a uniquely named directory is created under the
job root, the source is written there, and the profile's build/run command
is executed inside the running container with ``docker exec``, scoped to
that directory.

Each job runs in its own session inside the container (``setsid``).  The
job's shell prints its pid, which is the group id, as the first line of
stdout before the program starts, so the program cannot forge it.  The
group is killed on timeout, and again on release to reap anything a
finished program left in the background, without touching the shared
container or its other jobs.  The container's memory and CPU caps are
shared by all concurrent jobs; heavy load slows jobs down rather than
rejecting them.

The image must provide every configured language toolchain plus
util-linux ``setsid`` (Debian-based images do).
"""

from __future__ import annotations

import asyncio
import logging
import posixpath
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional

from ..errors import InfraUnavailableError
from ..languages import ExecutionProfile
from .base import IsolatedExecutionHandle, IsolationBackend, RawResult

if TYPE_CHECKING:
    from ..supervisor import Job

logger = logging.getLogger("coderunner.backends.warm_pool")

START_TIMEOUT_SECONDS = 120
# Runs as the new session leader, so its pid is the job's process group id.
JOB_PRELUDE = 'echo $$ && exec sh -c "$1"'


def parse_pgid(line: str) -> Optional[int]:
    """Process group id from the first line a job prints, if it is one."""
    try:
        pgid = int(line)
    except ValueError:
        return None
    return pgid if pgid > 1 else None


class WarmPoolStrategy(IsolationBackend):
    """Execute jobs inside one pre-started container."""

    name = "warm"

    async def initialize(self) -> None:
        root = self._prepare_job_root()
        docker = self.config.docker_bin
        name = self.config.warm_container

        # A container left over from a previous run would hold the name.
        await self._run_cli(docker, "rm", "-f", name)

        if self.config.pull_images:
            rc, _, _ = await self._run_cli(docker, "image", "inspect", self.config.warm_image)
            if rc != 0:
                logger.info("Pulling image %s", self.config.warm_image)
                await self._run_cli(docker, "pull", self.config.warm_image, timeout=START_TIMEOUT_SECONDS)

        logger.info("Starting warm container %s from %s", name, self.config.warm_image)
        rc, out, err = await self._run_cli(*self.start_args(root), timeout=START_TIMEOUT_SECONDS)
        if rc != 0:
            self._ready = False
            raise InfraUnavailableError(f"Failed to start warm container: {err.strip()}")
        if not await self.is_alive():
            self._ready = False
            raise InfraUnavailableError(f"Warm container {name} is not running after start")
        logger.info("Warm container started: %s", out.strip()[:12])
        self._ready = True

    async def shutdown(self) -> None:
        self._ready = False
        try:
            await self._run_cli(self.config.docker_bin, "rm", "-f", self.config.warm_container)
        except InfraUnavailableError as exc:
            logger.warning("Failed to remove warm container: %s", exc)

    def start_args(self, root: Path) -> List[str]:
        """``docker run`` command line for the shared container."""
        return [
            self.config.docker_bin,
            "run",
            "-d",
            "--rm",
            "--name",
            self.config.warm_container,
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
            "-v",
            f"{root.resolve()}:{self.config.warm_mount}:rw",
            "-w",
            self.config.warm_mount,
            self.config.warm_image,
            "sleep",
            "infinity",
        ]

    def container_dir(self, handle: IsolatedExecutionHandle) -> str:
        return posixpath.join(self.config.warm_mount, handle.job_id)

    def exec_args(self, handle: IsolatedExecutionHandle) -> List[str]:
        """``docker exec`` command line running one job in its own session."""
        return [
            self.config.docker_bin,
            "exec",
            "-w",
            self.container_dir(handle),
            self.config.warm_container,
            "setsid",
            "-f",
            "-w",
            "sh",
            "-c",
            JOB_PRELUDE,
            f"coderunner-{handle.job_id}",
            handle.profile.shell_command(),
        ]

    async def is_alive(self) -> bool:
        """Check if the shared container is still running."""
        try:
            rc, out, _ = await self._run_cli(
                self.config.docker_bin,
                "container",
                "inspect",
                "-f",
                "{{.State.Running}}",
                self.config.warm_container,
            )
        except InfraUnavailableError:
            return False
        return rc == 0 and out.strip() == "true"

    async def allocate(self, profile: ExecutionProfile, job: "Job") -> IsolatedExecutionHandle:
        self._require_ready()
        job_dir = self._create_job_dir(job, profile)
        return IsolatedExecutionHandle(
            job_id=job.job_id,
            profile=profile,
            source_code=job.source_code,
            job_dir=job_dir,
            container=self.config.warm_container,
        )

    async def run(self, handle: IsolatedExecutionHandle, deadline: float) -> RawResult:
        handle.process = await self._spawn(self.exec_args(handle))
        handle.pgid = parse_pgid(await self._read_prelude_line(handle.process))
        raw = await self._communicate(handle.process)
        handle.finished = True
        if raw.exit_code != 0 and not await self.is_alive():
            self._ready = False
            logger.error("Warm container %s is gone; refusing further jobs", self.config.warm_container)
            raise InfraUnavailableError("Warm container is not running")
        return raw

    async def _terminate(self, handle: IsolatedExecutionHandle) -> None:
        if handle.pgid is None and handle.process is not None:
            # The deadline may have fired before the first line was read.
            # Let the cancelled run leave its pending read first.
            await asyncio.sleep(0)
            try:
                line = await asyncio.wait_for(
                    self._read_prelude_line(handle.process), timeout=self.config.cleanup_timeout_seconds
                )
            except asyncio.TimeoutError:
                line = ""
            handle.pgid = parse_pgid(line)
        if handle.pgid is None:
            logger.warning("No process group reported for job %s", handle.job_id)
            return
        await self._kill_job_group(handle)

    async def _reclaim(self, handle: IsolatedExecutionHandle) -> None:
        await super()._reclaim(handle)
        if handle.pgid is not None:
            await self._kill_job_group(handle)

    async def _kill_job_group(self, handle: IsolatedExecutionHandle) -> None:
        try:
            await self._run_cli(
                self.config.docker_bin,
                "exec",
                self.config.warm_container,
                "kill",
                "-KILL",
                "--",
                f"-{handle.pgid}",
            )
        except InfraUnavailableError as exc:
            logger.warning("Failed to kill job %s in warm container: %s", handle.job_id, exc)

    async def _release(self, handle: IsolatedExecutionHandle) -> None:
        await self._remove_job_dir(handle.job_dir)
        if handle.job_dir is not None and handle.job_dir.exists():
            # Files created inside the container may belong to another uid.
            try:
                await self._run_cli(
                    self.config.docker_bin,
                    "exec",
                    self.config.warm_container,
                    "rm",
                    "-rf",
                    self.container_dir(handle),
                )
            except InfraUnavailableError as exc:
                logger.warning("Failed to remove job directory of %s: %s", handle.job_id, exc)
