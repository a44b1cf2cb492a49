"""
The code runner service.

:class:`CodeRunner` is constructed from configuration only and performs no
I/O until :meth:`CodeRunner.initialize` is awaited.  Jobs submitted before
initialisation has completed are answered with an ``infra_error`` result
instead of racing the backend setup.  Callers receive the configured
instance explicitly (the API keeps it on ``app.state``); there is no
module-level singleton.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Set

from .backends import IsolationBackend, create_backend
from .config import Config
from .languages import LanguageRegistry
from .result import ExecutionResult
from .supervisor import Job, JobSupervisor, new_job_id

logger = logging.getLogger("coderunner.service")


class CodeRunner:
    """Accept untrusted programs and run each one as an independent job."""

    def __init__(
        self,
        config: Config,
        registry: Optional[LanguageRegistry] = None,
        backend: Optional[IsolationBackend] = None,
    ) -> None:
        self.config = config
        self.registry = registry or LanguageRegistry.from_config(config.allowed_langs, config.images)
        self.backend = backend or create_backend(config, self.registry.profiles())
        self._active: Set[str] = set()
        self._init_lock = asyncio.Lock()
        self._initialized = False

    def ready(self) -> bool:
        return self._initialized and self.backend.ready()

    def languages(self) -> List[str]:
        return self.registry.languages()

    @property
    def active_jobs(self) -> int:
        return len(self._active)

    async def initialize(self) -> None:
        """Bring the backend up.  Failures propagate to the caller."""
        async with self._init_lock:
            if self._initialized:
                return
            logger.info("Initialising %s backend", self.backend.name)
            await self.backend.initialize()
            self._initialized = True
            logger.info("Code runner ready; languages=%s", self.languages())

    async def shutdown(self) -> None:
        async with self._init_lock:
            self._initialized = False
            await self.backend.shutdown()
            logger.info("Code runner stopped")

    def _reserve_job_id(self) -> str:
        job_id = new_job_id()
        while job_id in self._active:
            job_id = new_job_id()
        self._active.add(job_id)
        return job_id

    async def execute(self, language_id: str, source_code: str) -> ExecutionResult:
        """Run ``source_code`` and return its result.

        Raises :class:`~coderunner.errors.UnsupportedLanguageError` for an
        unknown ``language_id``; every other outcome is a result.
        """
        job_id = self._reserve_job_id()
        try:
            job = Job(
                job_id=job_id,
                language_id=language_id,
                source_code=source_code,
                timeout=self.config.timeout_seconds,
            )
            result = await JobSupervisor(job, self.registry, self.backend).run()
        finally:
            self._active.discard(job_id)
        logger.info(
            "[job %s] %s finished: status=%s exit_code=%s duration_ms=%s",
            job_id,
            language_id,
            result.status.value,
            result.exit_code,
            result.duration_ms,
        )
        return result
