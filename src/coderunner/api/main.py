"""
FastAPI application for the code runner.

The application is built by :func:`create_app`, which takes an explicit
configuration and keeps the :class:`~coderunner.service.CodeRunner` on
``app.state``.  The runner is initialised in the application lifespan; if
that fails the server still starts, ``/health`` reports 503 and jobs are
answered with ``infra_error`` until a restart.
"""

from __future__ import annotations

import contextlib
import logging
from typing import AsyncIterator, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..collab import CodeOutputEvent, RunCodeEvent, handle_run_code
from ..config import Config
from ..errors import CodeRunnerError, UnsupportedLanguageError
from ..models import ExecuteRequest, ExecuteResponse, HealthResponse
from ..service import CodeRunner


logger = logging.getLogger("coderunner")


def configure_logging(level: int = logging.INFO) -> None:
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter("[coderunner] %(levelname)s - %(message)s")
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(level)


class RoomRunRequest(BaseModel):
    language: str
    code: str


def get_runner(request: Request) -> CodeRunner:
    return request.app.state.runner


def create_app(config: Optional[Config] = None, runner: Optional[CodeRunner] = None) -> FastAPI:
    """Build the application around ``runner`` (or one made from ``config``)."""
    configure_logging()
    if runner is None:
        config = config or Config.from_env()
        runner = CodeRunner(config)
    config = runner.config

    logger.info(
        "Loaded config: backend=%s, timeout=%ss, memory=%s, cpus=%s, languages=%s",
        config.backend,
        config.timeout_seconds,
        config.memory_limit,
        config.cpus,
        runner.languages(),
    )

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        try:
            await runner.initialize()
        except CodeRunnerError as exc:
            logger.error("Backend initialisation failed: %s", exc)
        yield
        await runner.shutdown()

    app = FastAPI(title="Code Runner", version="0.1.0", lifespan=lifespan)
    app.state.runner = runner

    @app.middleware("http")
    async def authenticate(request, call_next):
        """Middleware to enforce API key authentication on all requests."""
        path = request.url.path
        method = request.method
        client = getattr(request.client, "host", "unknown")

        logger.info("Incoming request: %s %s from %s", method, path, client)

        if config.api_key and path != "/health":
            if request.headers.get("x-api-key") != config.api_key:
                logger.warning("Invalid API key for %s %s from %s", method, path, client)
                return JSONResponse(status_code=401, content={"detail": "Invalid API key"})

        response = await call_next(request)
        logger.info("Response: %s %s -> %s", method, path, response.status_code)
        return response

    @app.get("/health", response_model=HealthResponse)
    async def health(runner: CodeRunner = Depends(get_runner)):
        """Report whether the isolation backend is accepting jobs."""
        body = HealthResponse(
            status="ok" if runner.ready() else "unavailable",
            backend=runner.backend.name,
            languages=runner.languages(),
        )
        if not runner.ready():
            return JSONResponse(status_code=503, content=body.model_dump())
        return body

    @app.get("/v1/languages")
    async def languages(runner: CodeRunner = Depends(get_runner)) -> Dict[str, List[str]]:
        return {"languages": runner.languages()}

    @app.post("/exec", response_model=ExecuteResponse)
    async def exec_code(req: ExecuteRequest, runner: CodeRunner = Depends(get_runner)) -> ExecuteResponse:
        """Run one program and return its captured output."""
        try:
            result = await runner.execute(req.language, req.code)
        except UnsupportedLanguageError as exc:
            logger.warning("[/exec] %s", exc)
            raise HTTPException(status_code=400, detail=str(exc))
        except Exception as exc:
            logger.exception("[/exec] Unhandled error during execution: %s", exc)
            raise HTTPException(status_code=500, detail="Execution error")
        return ExecuteResponse.from_result(result)

    @app.post("/v1/rooms/{room_id}/run", response_model=CodeOutputEvent)
    async def run_in_room(
        room_id: str, req: RoomRunRequest, runner: CodeRunner = Depends(get_runner)
    ) -> CodeOutputEvent:
        """Handle a room's ``run_code`` event; the caller broadcasts the reply."""
        event = RunCodeEvent(room_id=room_id, language=req.language, code=req.code)
        return await handle_run_code(runner, event)

    return app
