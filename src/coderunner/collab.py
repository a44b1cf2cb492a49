"""
Adapter between the collaboration server and the code runner.

The collaboration server emits a ``run_code`` event when a room member
presses *Run* and broadcasts a ``code_output`` event back to everyone in the
room.  This module only translates between those event payloads and
:meth:`CodeRunner.execute`; room membership and the broadcast itself belong
to the collaboration server.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field

from .errors import UnsupportedLanguageError
from .result import ExecutionResult
from .service import CodeRunner

logger = logging.getLogger("coderunner.collab")

RUN_CODE = "run_code"
CODE_OUTPUT = "code_output"

HTML_PREFIXES = ("<!DOCTYPE", "<html")


class RunCodeEvent(BaseModel):
    room_id: str
    language: str
    code: str


class CodeOutputEvent(BaseModel):
    event: str = Field(default=CODE_OUTPUT)
    room_id: str
    output: str
    is_error: bool


def looks_like_html(code: str) -> bool:
    return code.strip().startswith(HTML_PREFIXES)


def output_for(result: ExecutionResult) -> str:
    """Text shown in the room's terminal pane."""
    if result.ok:
        return result.stdout
    return result.stderr or result.stdout


async def handle_run_code(runner: CodeRunner, event: RunCodeEvent) -> CodeOutputEvent:
    """Run the room's code and build the ``code_output`` payload to broadcast."""
    if looks_like_html(event.code):
        logger.info("Room %s submitted HTML; not executing", event.room_id)
        return CodeOutputEvent(
            room_id=event.room_id,
            output="Error: It looks like HTML code is trying to run.",
            is_error=True,
        )
    try:
        result = await runner.execute(event.language, event.code)
    except UnsupportedLanguageError as exc:
        return CodeOutputEvent(room_id=event.room_id, output=str(exc), is_error=True)
    return CodeOutputEvent(
        room_id=event.room_id,
        output=output_for(result),
        is_error=not result.ok,
    )
