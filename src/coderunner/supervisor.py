"""
Job lifecycle supervision.

A :class:`JobSupervisor` owns exactly one :class:`Job` from submission to
result.  It resolves the language profile, acquires an isolated execution
handle from the backend, runs the program against the job's deadline,
classifies the outcome and releases the handle.  The handle is acquired
through :meth:`IsolationBackend.session`, so release happens on every exit
path without being repeated at each branch.

Lifecycle::

    CREATED -> PREPARING -> RUNNING -> {COMPLETED, FAILED, TIMED_OUT, INFRA_ERROR} -> RELEASED

An unsupported language goes straight from ``CREATED`` to ``FAILED``
without touching the backend.

The timeout is enforced here with the event loop's clock, never delegated
to the isolated program.  When the deadline passes the job is resolved as
timed out first, then the run is cancelled and the backend is told to kill
everything; a completion arriving after that point is ignored.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, FrozenSet, Optional

from .backends.base import IsolatedExecutionHandle, IsolationBackend, RawResult
from .errors import InfraUnavailableError, InvalidTransitionError, UnsupportedLanguageError
from .languages import ExecutionProfile, LanguageRegistry
from .result import ExecutionResult, ExecutionStatus

logger = logging.getLogger("coderunner.supervisor")


class JobState(str, enum.Enum):
    CREATED = "created"
    PREPARING = "preparing"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    INFRA_ERROR = "infra_error"
    RELEASED = "released"


OUTCOMES: FrozenSet[JobState] = frozenset(
    {JobState.COMPLETED, JobState.FAILED, JobState.TIMED_OUT, JobState.INFRA_ERROR}
)

TRANSITIONS: Dict[JobState, FrozenSet[JobState]] = {
    JobState.CREATED: frozenset({JobState.PREPARING, JobState.FAILED, JobState.INFRA_ERROR}),
    JobState.PREPARING: frozenset({JobState.RUNNING, JobState.INFRA_ERROR}),
    JobState.RUNNING: OUTCOMES,
    JobState.COMPLETED: frozenset({JobState.RELEASED}),
    JobState.FAILED: frozenset({JobState.RELEASED}),
    JobState.TIMED_OUT: frozenset({JobState.RELEASED}),
    JobState.INFRA_ERROR: frozenset({JobState.RELEASED}),
    JobState.RELEASED: frozenset(),
}


def new_job_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Job:
    """One request to run ``source_code`` in ``language_id``.

    ``started`` and ``deadline`` are event-loop timestamps; ``created_at``
    is the wall-clock submission time.
    """

    job_id: str
    language_id: str
    source_code: str
    timeout: float
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started: float = 0.0
    state: JobState = JobState.CREATED
    result: Optional[ExecutionResult] = None

    def __post_init__(self) -> None:
        if not self.started:
            self.started = asyncio.get_running_loop().time()

    @property
    def deadline(self) -> float:
        return self.started + self.timeout

    def elapsed_ms(self) -> int:
        return int((asyncio.get_running_loop().time() - self.started) * 1000)

    def transition(self, new_state: JobState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"job {self.job_id}: {self.state.value} -> {new_state.value} is not allowed"
            )
        logger.info("[job %s] %s -> %s", self.job_id, self.state.value, new_state.value)
        self.state = new_state

    def resolve(self, state: JobState, result: ExecutionResult) -> bool:
        """Record the job's outcome.  Only the first outcome counts."""
        if self.result is not None:
            logger.info(
                "[job %s] ignoring late %s outcome; already %s",
                self.job_id,
                state.value,
                self.state.value,
            )
            return False
        self.transition(state)
        self.result = result
        return True


def _consume_result(task: "asyncio.Future[RawResult]") -> None:
    # A run that loses the race against the deadline is never awaited.
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Run finished with %r after its job was resolved", task.exception())


class JobSupervisor:
    """Drive one job through its lifecycle."""

    def __init__(self, job: Job, registry: LanguageRegistry, backend: IsolationBackend) -> None:
        self.job = job
        self.registry = registry
        self.backend = backend

    async def run(self) -> ExecutionResult:
        """Execute the job and return its final result.

        Raises :class:`UnsupportedLanguageError` before any backend call if
        the language is not registered.  All other failures are returned as
        results.
        """
        job = self.job
        try:
            profile = self.registry.resolve(job.language_id)
        except UnsupportedLanguageError:
            job.transition(JobState.FAILED)
            job.transition(JobState.RELEASED)
            raise

        try:
            await self._supervise(profile)
            if job.result is None:
                raise InvalidTransitionError(f"Job {job.job_id} stopped in state {job.state.value} without a result")
        except Exception as exc:
            # Bookkeeping fault in the supervisor itself; the service carries on.
            logger.exception("[job %s] supervisor fault: %s", job.job_id, exc)
            if job.result is None:
                job.state = JobState.INFRA_ERROR
                job.result = ExecutionResult.infra_error("internal error", job.elapsed_ms())
        finally:
            if job.state in OUTCOMES:
                job.transition(JobState.RELEASED)

        return job.result

    async def _supervise(self, profile: ExecutionProfile) -> None:
        job = self.job
        job.transition(JobState.PREPARING)
        try:
            async with self.backend.session(profile, job) as handle:
                job.transition(JobState.RUNNING)
                await self._run_until_deadline(handle)
        except InfraUnavailableError as exc:
            logger.warning("[job %s] infrastructure error: %s", job.job_id, exc)
            job.resolve(JobState.INFRA_ERROR, ExecutionResult.infra_error(str(exc), job.elapsed_ms()))

    async def _run_until_deadline(self, handle: IsolatedExecutionHandle) -> None:
        job = self.job
        loop = asyncio.get_running_loop()
        run_task = asyncio.ensure_future(self.backend.run(handle, job.deadline))
        run_task.add_done_callback(_consume_result)
        try:
            done, _ = await asyncio.wait({run_task}, timeout=max(job.deadline - loop.time(), 0))
        except asyncio.CancelledError:
            run_task.cancel()
            raise

        if run_task not in done:
            job.resolve(JobState.TIMED_OUT, ExecutionResult.timed_out(job.elapsed_ms()))
            run_task.cancel()
            await self.backend.terminate(handle)
            return

        raw = run_task.result()
        self._classify(raw)

    def _classify(self, raw: RawResult) -> None:
        if raw.exit_code == 0:
            state, status = JobState.COMPLETED, ExecutionStatus.SUCCESS
        else:
            state, status = JobState.FAILED, ExecutionStatus.ERROR
        self.job.resolve(
            state,
            ExecutionResult(
                status=status,
                stdout=raw.stdout,
                stderr=raw.stderr,
                exit_code=raw.exit_code,
                duration_ms=self.job.elapsed_ms(),
                truncated=raw.truncated,
            ),
        )
