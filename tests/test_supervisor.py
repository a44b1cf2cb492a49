"""Tests for the job lifecycle supervisor.

These run against the recording :class:`FakeBackend` so that every backend
call can be counted.
"""

from __future__ import annotations

import asyncio

import pytest
from conftest import FakeBackend

from coderunner.errors import (
    InfraUnavailableError,
    InvalidTransitionError,
    ResourceSetupError,
    UnsupportedLanguageError,
)
from coderunner.languages import LanguageRegistry
from coderunner.result import TIMEOUT_MESSAGE, ExecutionStatus
from coderunner.supervisor import Job, JobState, JobSupervisor, new_job_id


async def run_job(backend: FakeBackend, language: str = "python", source: str = "print(1)", timeout: float = 1.0):
    job = Job(job_id=new_job_id(), language_id=language, source_code=source, timeout=timeout)
    result = await JobSupervisor(job, LanguageRegistry(), backend).run()
    return job, result


@pytest.mark.asyncio
async def test_zero_exit_is_success():
    backend = FakeBackend(stdout="hi\n")
    job, result = await run_job(backend)
    assert result.status is ExecutionStatus.SUCCESS
    assert result.stdout == "hi\n"
    assert result.stderr == ""
    assert result.exit_code == 0
    assert job.state is JobState.RELEASED
    assert backend.count("release") == 1
    assert backend.count("terminate") == 0


@pytest.mark.asyncio
async def test_nonzero_exit_is_error():
    backend = FakeBackend(stderr="Traceback: boom", exit_code=1)
    job, result = await run_job(backend)
    assert result.status is ExecutionStatus.ERROR
    assert result.stderr == "Traceback: boom"
    assert result.exit_code == 1
    assert job.state is JobState.RELEASED
    assert backend.count("release") == 1


@pytest.mark.asyncio
async def test_unsupported_language_never_reaches_backend():
    backend = FakeBackend()
    job = Job(job_id=new_job_id(), language_id="ruby", source_code="puts 1", timeout=1.0)
    with pytest.raises(UnsupportedLanguageError):
        await JobSupervisor(job, LanguageRegistry(), backend).run()
    assert backend.calls == []
    assert job.state is JobState.RELEASED


@pytest.mark.asyncio
async def test_timeout_discards_output_and_terminates():
    backend = FakeBackend(stdout="partial", delay=5.0)
    loop = asyncio.get_running_loop()
    start = loop.time()
    job, result = await run_job(backend, timeout=0.2)
    assert loop.time() - start < 2.0
    assert result.status is ExecutionStatus.TIMEOUT
    assert result.stdout == ""
    assert result.stderr == TIMEOUT_MESSAGE
    assert result.exit_code is None
    assert backend.count("terminate") == 1
    assert backend.count("release") == 1
    assert job.state is JobState.RELEASED


@pytest.mark.asyncio
async def test_late_completion_after_timeout_is_ignored():
    backend = FakeBackend(stdout="too late", delay=5.0, ignore_cancel=True)
    job, result = await run_job(backend, timeout=0.1)
    await asyncio.sleep(0.05)
    assert backend.late_results, "run should have completed after the timeout"
    assert result.status is ExecutionStatus.TIMEOUT
    assert job.result is result
    assert job.state is JobState.RELEASED


@pytest.mark.asyncio
async def test_backend_not_ready_is_infra_error():
    backend = FakeBackend()
    backend._ready = False
    job, result = await run_job(backend)
    assert result.status is ExecutionStatus.INFRA_ERROR
    assert "not initialised" in result.stderr
    assert backend.count("run") == 0
    assert backend.count("release") == 0
    assert job.state is JobState.RELEASED


@pytest.mark.asyncio
async def test_setup_failure_is_infra_error():
    backend = FakeBackend(allocate_error=ResourceSetupError("disk full"))
    job, result = await run_job(backend)
    assert result.status is ExecutionStatus.INFRA_ERROR
    assert result.stderr == "disk full"
    assert backend.count("run") == 0


@pytest.mark.asyncio
async def test_runtime_failure_during_run_is_released():
    backend = FakeBackend(run_error=InfraUnavailableError("daemon went away"))
    job, result = await run_job(backend)
    assert result.status is ExecutionStatus.INFRA_ERROR
    assert result.stderr == "daemon went away"
    assert backend.count("release") == 1
    assert job.state is JobState.RELEASED


@pytest.mark.asyncio
async def test_unexpected_fault_is_contained():
    backend = FakeBackend(run_error=RuntimeError("bug"))
    job, result = await run_job(backend)
    assert result.status is ExecutionStatus.INFRA_ERROR
    assert result.stderr == "internal error"
    assert backend.count("release") == 1
    assert job.state is JobState.RELEASED


@pytest.mark.asyncio
async def test_release_is_idempotent():
    backend = FakeBackend()
    job = Job(job_id=new_job_id(), language_id="python", source_code="", timeout=1.0)
    handle = await backend.allocate(LanguageRegistry().resolve("python"), job)
    await backend.release(handle)
    await backend.release(handle)
    await backend.terminate(handle)
    assert backend.count("release") == 1
    assert backend.count("terminate") == 1


@pytest.mark.asyncio
async def test_illegal_transition_raises():
    job = Job(job_id=new_job_id(), language_id="python", source_code="", timeout=1.0)
    with pytest.raises(InvalidTransitionError):
        job.transition(JobState.RUNNING)


@pytest.mark.asyncio
async def test_concurrent_jobs_do_not_share_output():
    backend = FakeBackend(delay=0.05, echo_source=True)
    results = await asyncio.gather(*(run_job(backend, source=f"marker-{i}") for i in range(20)))
    for i, (job, result) in enumerate(results):
        assert result.stdout == f"marker-{i}"
    assert len({job.job_id for job, _ in results}) == 20
    assert backend.count("release") == 20


@pytest.mark.asyncio
async def test_job_without_outcome_is_infra_error(monkeypatch):
    async def no_op(self, profile):
        return None

    monkeypatch.setattr(JobSupervisor, "_supervise", no_op)
    job = Job(job_id=new_job_id(), language_id="python", source_code="", timeout=1.0)
    result = await JobSupervisor(job, LanguageRegistry(), FakeBackend()).run()
    assert result.status is ExecutionStatus.INFRA_ERROR
    assert result.stderr == "internal error"
    assert job.state is JobState.RELEASED
