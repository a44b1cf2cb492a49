"""Shared test fixtures.

Tests never touch ``/tmp/coderunner``; every config points its job root at
pytest's temporary directory.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import List, Optional, Tuple

import pytest

from coderunner.backends.base import IsolatedExecutionHandle, IsolationBackend, RawResult
from coderunner.config import Config
from coderunner.errors import InfraUnavailableError
from coderunner.languages import ExecutionProfile


@pytest.fixture
def job_root(tmp_path: Path) -> Path:
    return tmp_path / "jobs"


@pytest.fixture
def local_config(job_root: Path) -> Config:
    return Config(backend="local", job_root=str(job_root), timeout_seconds=5.0)


class FakeBackend(IsolationBackend):
    """Recording test double for the isolation backend.

    ``delay`` makes :meth:`run` sleep before answering; with
    ``ignore_cancel`` the run swallows its cancellation and still produces a
    result, simulating a completion that races the timeout.
    """

    name = "fake"

    def __init__(
        self,
        stdout: str = "",
        stderr: str = "",
        exit_code: int = 0,
        delay: float = 0.0,
        ignore_cancel: bool = False,
        allocate_error: Optional[Exception] = None,
        run_error: Optional[Exception] = None,
        echo_source: bool = False,
        init_error: Optional[Exception] = None,
    ) -> None:
        super().__init__(Config(backend="local", timeout_seconds=1.0))
        self._ready = True
        self.stdout = stdout
        self.stderr = stderr
        self.exit_code = exit_code
        self.delay = delay
        self.ignore_cancel = ignore_cancel
        self.allocate_error = allocate_error
        self.run_error = run_error
        self.echo_source = echo_source
        self.init_error = init_error
        self.calls: List[Tuple[str, str]] = []
        self.late_results: List[RawResult] = []

    async def initialize(self) -> None:
        if self.init_error is not None:
            self._ready = False
            raise self.init_error
        self._ready = True

    async def allocate(self, profile: ExecutionProfile, job) -> IsolatedExecutionHandle:
        self.calls.append(("allocate", job.job_id))
        if not self.ready():
            raise InfraUnavailableError("fake backend is not initialised")
        if self.allocate_error is not None:
            raise self.allocate_error
        return IsolatedExecutionHandle(job_id=job.job_id, profile=profile, source_code=job.source_code)

    async def run(self, handle: IsolatedExecutionHandle, deadline: float) -> RawResult:
        self.calls.append(("run", handle.job_id))
        stdout = handle.source_code if self.echo_source else self.stdout
        raw = RawResult(stdout=stdout, stderr=self.stderr, exit_code=self.exit_code)
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            if not self.ignore_cancel:
                raise
            self.late_results.append(raw)
            return raw
        if self.run_error is not None:
            raise self.run_error
        handle.finished = True
        return raw

    async def _terminate(self, handle: IsolatedExecutionHandle) -> None:
        self.calls.append(("terminate", handle.job_id))

    async def _release(self, handle: IsolatedExecutionHandle) -> None:
        self.calls.append(("release", handle.job_id))

    def count(self, name: str) -> int:
        return sum(1 for call, _ in self.calls if call == name)


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()
