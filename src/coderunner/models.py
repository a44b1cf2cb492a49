"""Pydantic models for request and response bodies."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field

from .result import ExecutionResult, ExecutionStatus


class ExecuteRequest(BaseModel):
    """Request body for running a program."""

    language: str = Field(..., description="Language identifier, e.g. 'python' or 'javascript'.")
    code: str = Field(..., description="Source code to execute.")


class ExecuteResponse(BaseModel):
    """Response body for code execution."""

    status: ExecutionStatus
    stdout: str
    stderr: str
    exit_code: Optional[int] = None
    duration_ms: int = 0
    truncated: bool = False

    @classmethod
    def from_result(cls, result: ExecutionResult) -> "ExecuteResponse":
        return cls(
            status=result.status,
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.exit_code,
            duration_ms=result.duration_ms,
            truncated=result.truncated,
        )


class HealthResponse(BaseModel):
    status: str
    backend: str
    languages: List[str] = Field(default_factory=list)
