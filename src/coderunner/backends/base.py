"""
Base interfaces and helpers for isolation backends.

An isolation backend knows how to run a build/run command against a piece
of source code inside some containment boundary.  Every backend exposes the
same small contract so the job supervisor never needs to know which
strategy is active:

* :meth:`IsolationBackend.allocate` prepares per-job resources and returns
  an :class:`IsolatedExecutionHandle`.
* :meth:`IsolationBackend.run` starts the program and returns its captured
  output as a :class:`RawResult`.
* :meth:`IsolationBackend.terminate` forcibly kills whatever the handle
  still has running.
* :meth:`IsolationBackend.release` frees the handle and kills anything the
  program left running in the background.  It is idempotent and
  safe to call after a partial failure.

The wall-clock timeout is *not* enforced here.  The supervisor owns the
timer and cancels :meth:`run` when the deadline passes; backends only have
to make sure that cancellation and :meth:`terminate` leave nothing alive.
"""

from __future__ import annotations

import abc
import asyncio
import contextlib
import logging
import os
import shutil
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, AsyncIterator, List, Optional, Sequence, Tuple

from ..config import Config
from ..errors import InfraUnavailableError, ResourceSetupError
from ..languages import ExecutionProfile
from ..result import TRUNCATION_MARKER

if TYPE_CHECKING:
    from ..supervisor import Job

logger = logging.getLogger("coderunner.backends")

READ_CHUNK = 4096


@dataclass
class RawResult:
    """Output of a finished process before classification."""

    stdout: str
    stderr: str
    exit_code: int
    truncated: bool = False


@dataclass
class IsolatedExecutionHandle:
    """Backend-specific state for one job.

    ``process`` is the local process the backend spawned (the container
    runtime client, or the program itself for the local strategy).
    ``job_dir`` is the job-scoped directory on the host, if the strategy
    uses one, and ``container`` the name of the instance the job runs in.
    ``pgid`` is the job's process group inside a shared container, as
    reported by the job's shell before the program starts.
    ``finished`` is set once the program has exited on its own; a handle
    released without it is terminated first.
    """

    job_id: str
    profile: ExecutionProfile
    source_code: str = ""
    job_dir: Optional[Path] = None
    container: Optional[str] = None
    process: Optional[asyncio.subprocess.Process] = None
    pgid: Optional[int] = None
    finished: bool = False
    terminated: bool = False
    released: bool = False


class OutputBuffer:
    """Append-only capture of one stream, bounded to ``limit`` bytes.

    Bytes beyond the limit are read and dropped so the writer never blocks
    on a full pipe.  The cut is moved back to a UTF-8 character boundary.
    """

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self._chunks: List[bytes] = []
        self._size = 0
        self.truncated = False

    def append(self, data: bytes) -> None:
        if self.truncated:
            return
        room = self.limit - self._size
        if room <= 0:
            if data:
                self.truncated = True
            return
        if len(data) > room:
            self.truncated = True
            # Continuation bytes have the form 0b10xxxxxx.
            while room > 0 and data[room] & 0xC0 == 0x80:
                room -= 1
            data = data[:room]
        self._chunks.append(data)
        self._size += len(data)

    def text(self) -> str:
        out = b"".join(self._chunks).decode("utf-8", errors="replace")
        if self.truncated:
            out += TRUNCATION_MARKER
        return out


async def _drain(stream: Optional[asyncio.StreamReader], buffer: OutputBuffer) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(READ_CHUNK)
        if not chunk:
            break
        buffer.append(chunk)


class IsolationBackend(abc.ABC):
    """Abstract base class for isolation strategies."""

    name = "base"

    def __init__(self, config: Config, profiles: Sequence[ExecutionProfile] = ()) -> None:
        self.config = config
        self.profiles = list(profiles)
        self._ready = False

    def ready(self) -> bool:
        return self._ready

    async def initialize(self) -> None:
        """Prepare the backend.  Jobs are refused until this has succeeded."""
        self._ready = True

    async def shutdown(self) -> None:
        self._ready = False

    @abc.abstractmethod
    async def allocate(self, profile: ExecutionProfile, job: "Job") -> IsolatedExecutionHandle:
        raise NotImplementedError

    @abc.abstractmethod
    async def run(self, handle: IsolatedExecutionHandle, deadline: float) -> RawResult:
        """Run the job's program and wait for it to exit.

        ``deadline`` is an event-loop timestamp; backends may use it for
        secondary limits but must not rely on it for the timeout.
        """
        raise NotImplementedError

    async def terminate(self, handle: IsolatedExecutionHandle) -> None:
        """Forcibly stop everything the handle has running.  Idempotent."""
        if handle.terminated:
            return
        handle.terminated = True
        await self._kill_process(handle.process)
        await self._terminate(handle)

    async def release(self, handle: IsolatedExecutionHandle) -> None:
        """Free the handle's resources.  Safe to call more than once."""
        if handle.released:
            return
        handle.released = True
        if handle.finished:
            await self._reclaim(handle)
        else:
            await self.terminate(handle)
        await self._release(handle)

    async def _terminate(self, handle: IsolatedExecutionHandle) -> None:
        """Strategy-specific part of :meth:`terminate`."""

    async def _reclaim(self, handle: IsolatedExecutionHandle) -> None:
        """Kill processes a program left behind after exiting on its own."""
        self._kill_group(handle.process)

    async def _release(self, handle: IsolatedExecutionHandle) -> None:
        """Strategy-specific part of :meth:`release`."""

    @contextlib.asynccontextmanager
    async def session(self, profile: ExecutionProfile, job: "Job") -> AsyncIterator[IsolatedExecutionHandle]:
        """Allocate a handle and guarantee it is released on every exit path."""
        handle = await self.allocate(profile, job)
        try:
            yield handle
        finally:
            await self.release(handle)

    def _require_ready(self) -> None:
        if not self.ready():
            raise InfraUnavailableError(f"{self.name} backend is not initialised")

    def _prepare_job_root(self) -> Path:
        root = Path(self.config.job_root)
        root.mkdir(parents=True, exist_ok=True)
        try:
            root.chmod(0o777)
        except PermissionError:
            logger.warning("Unable to chmod job root %s; continuing", root)
        return root

    def _create_job_dir(self, job: "Job", profile: ExecutionProfile) -> Path:
        """Create the job's own directory and write the source file into it.

        The directory must not exist yet; a collision means two jobs share an
        id and is reported as a setup error rather than reusing the path.
        """
        job_dir = Path(self.config.job_root) / job.job_id
        try:
            job_dir.mkdir(mode=0o777)
        except OSError as exc:
            raise ResourceSetupError(f"Cannot create job directory {job_dir}: {exc}") from exc
        try:
            job_dir.chmod(0o777)
            (job_dir / profile.source_file).write_text(job.source_code, encoding="utf-8")
        except OSError as exc:
            shutil.rmtree(job_dir, ignore_errors=True)
            raise ResourceSetupError(f"Cannot write source for job {job.job_id}: {exc}") from exc
        return job_dir

    async def _remove_job_dir(self, job_dir: Optional[Path]) -> None:
        if job_dir is None or not job_dir.exists():
            return
        try:
            await asyncio.to_thread(shutil.rmtree, job_dir)
        except OSError as exc:
            logger.warning("Failed to remove job directory %s: %s", job_dir, exc)

    async def _spawn(
        self,
        args: Sequence[str],
        cwd: Optional[Path] = None,
        stdin: bool = False,
        **kwargs,
    ) -> asyncio.subprocess.Process:
        """Start ``args`` in its own session so the whole group can be killed."""
        try:
            return await asyncio.create_subprocess_exec(
                *args,
                cwd=str(cwd) if cwd else None,
                stdin=asyncio.subprocess.PIPE if stdin else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
                **kwargs,
            )
        except (FileNotFoundError, PermissionError) as exc:
            raise InfraUnavailableError(f"Cannot start {args[0]}: {exc}") from exc

    async def _communicate(
        self,
        process: asyncio.subprocess.Process,
        stdin_data: Optional[str] = None,
    ) -> RawResult:
        """Feed stdin, capture both streams and wait for the process to exit.

        If the calling task is cancelled the process group is killed before
        the cancellation propagates.
        """
        out = OutputBuffer(self.config.max_output_bytes)
        err = OutputBuffer(self.config.max_output_bytes)
        try:
            if process.stdin is not None:
                if stdin_data:
                    process.stdin.write(stdin_data.encode("utf-8"))
                    with contextlib.suppress(BrokenPipeError, ConnectionResetError):
                        await process.stdin.drain()
                process.stdin.close()
            await asyncio.gather(_drain(process.stdout, out), _drain(process.stderr, err))
            exit_code = await process.wait()
        except asyncio.CancelledError:
            await self._kill_process(process)
            raise
        return RawResult(
            stdout=out.text(),
            stderr=err.text(),
            exit_code=exit_code,
            truncated=out.truncated or err.truncated,
        )

    @staticmethod
    def _kill_group(process: Optional[asyncio.subprocess.Process]) -> None:
        """SIGKILL the process group led by ``process``.

        The group outlives its leader while any member is still running, so
        this also reaches children of a process that has already exited.
        """
        if process is None:
            return
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.killpg(process.pid, signal.SIGKILL)

    async def _kill_process(self, process: Optional[asyncio.subprocess.Process]) -> None:
        """SIGKILL the process group of ``process`` and reap it."""
        if process is None:
            return
        self._kill_group(process)
        if process.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        try:
            await asyncio.wait_for(process.wait(), timeout=self.config.cleanup_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("Process %s did not exit after SIGKILL", process.pid)

    @staticmethod
    async def _read_prelude_line(process: asyncio.subprocess.Process) -> str:
        """Read the first stdout line, printed by the job's shell before the program runs."""
        if process.stdout is None:
            return ""
        try:
            line = await process.stdout.readline()
        except ValueError:
            return ""
        return line.decode("utf-8", errors="replace").strip()

    async def _run_cli(self, *args: str, timeout: Optional[float] = None) -> Tuple[int, str, str]:
        """Run a short helper command and return ``(returncode, stdout, stderr)``.

        Raises :class:`InfraUnavailableError` if the command cannot be
        started or does not finish within ``timeout``.
        """
        timeout = timeout if timeout is not None else self.config.cleanup_timeout_seconds
        proc = await self._spawn(args)
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await self._kill_process(proc)
            raise InfraUnavailableError(f"{' '.join(args[:3])} timed out after {timeout}s")
        return (
            proc.returncode if proc.returncode is not None else -1,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )
