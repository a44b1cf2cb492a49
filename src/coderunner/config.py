"""Configuration loader.

The code runner reads its configuration from environment variables once at
startup so that the same image can run next to the collaboration server in
docker-compose or on its own.  Reasonable defaults are provided so that local
development works out of the box.  Configuration is never hot-reloaded.

Environment variables:

``CODERUNNER_API_KEY``
    Shared secret expected in the ``x-api-key`` header.  Empty disables the
    check (local development only).

``CODERUNNER_BACKEND``
    Isolation strategy.  ``ephemeral`` (one container per job, default),
    ``warm`` (one long-lived container shared by all jobs) or ``local``
    (host processes, development only).

``CODERUNNER_DOCKER_BIN``
    Container runtime CLI.  Defaults to ``docker``; ``podman`` also works.

``CODERUNNER_TIMEOUT_SECONDS``
    Fixed wall-clock ceiling applied to every job regardless of language.
    Default is 10.

``CODERUNNER_MEMORY_LIMIT`` / ``CODERUNNER_CPUS`` / ``CODERUNNER_PIDS_LIMIT``
    Resource caps handed to the container runtime.  Defaults are ``128m``,
    ``0.5`` and 64.

``CODERUNNER_MAX_OUTPUT_BYTES``
    Maximum number of bytes captured per stream.  Default is 65536.

``CODERUNNER_JOB_ROOT``
    Shared directory holding one sub-directory per job.  Defaults to
    ``/tmp/coderunner/jobs``.

``CODERUNNER_WARM_IMAGE`` / ``CODERUNNER_WARM_CONTAINER`` / ``CODERUNNER_WARM_MOUNT``
    Image, container name and in-container mount point of the job root for
    the ``warm`` backend.

``CODERUNNER_PULL_IMAGES``
    If ``true``, missing images are pulled during initialisation.

``CODERUNNER_CLEANUP_TIMEOUT_SECONDS``
    Upper bound on each cleanup command (container removal, kills).

``CODERUNNER_ALLOWED_LANGS``
    Comma-separated subset of registered languages to serve.  Defaults to
    every registered language.

``CODERUNNER_IMAGE_<LANG>``
    Per-language image override, e.g. ``CODERUNNER_IMAGE_PYTHON=python:3.12-slim``.

``PORT``
    The port on which the API server listens.  Defaults to 8080.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

BACKENDS = {"ephemeral", "warm", "local"}


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.lower() in {"1", "true", "t", "yes", "y"}


def _int_var(name: str, default: int) -> int:
    val = os.getenv(name)
    if val is None:
        return default
    try:
        return int(val)
    except ValueError:
        raise ValueError(f"Invalid integer for {name}: {val}")


def _float_var(name: str, default: float) -> float:
    val = os.getenv(name)
    if val is None:
        return default
    try:
        return float(val)
    except ValueError:
        raise ValueError(f"Invalid number for {name}: {val}")


@dataclass
class Config:
    """Centralised configuration object."""

    api_key: str = ""
    backend: str = "ephemeral"
    docker_bin: str = "docker"
    timeout_seconds: float = 10.0
    memory_limit: str = "128m"
    cpus: str = "0.5"
    pids_limit: int = 64
    max_output_bytes: int = 64 * 1024
    job_root: str = "/tmp/coderunner/jobs"
    warm_image: str = "coderunner-polyglot:latest"
    warm_container: str = "coderunner-warm"
    warm_mount: str = "/jobs"
    pull_images: bool = False
    cleanup_timeout_seconds: float = 5.0
    allowed_langs: Optional[List[str]] = None
    images: Dict[str, str] = field(default_factory=dict)
    port: int = 8080

    def __post_init__(self) -> None:
        if self.backend not in BACKENDS:
            raise ValueError(
                f"Invalid CODERUNNER_BACKEND: {self.backend}. Use one of {sorted(BACKENDS)}."
            )
        if self.timeout_seconds <= 0:
            raise ValueError("CODERUNNER_TIMEOUT_SECONDS must be positive")
        if self.max_output_bytes <= 0:
            raise ValueError("CODERUNNER_MAX_OUTPUT_BYTES must be positive")

    @classmethod
    def load(cls) -> "Config":
        allowed_env = os.getenv("CODERUNNER_ALLOWED_LANGS")
        allowed_langs = None
        if allowed_env:
            allowed_langs = [lang.strip() for lang in allowed_env.split(",") if lang.strip()]

        prefix = "CODERUNNER_IMAGE_"
        images = {
            name[len(prefix):].lower(): value
            for name, value in os.environ.items()
            if name.startswith(prefix) and value
        }

        return cls(
            api_key=os.getenv("CODERUNNER_API_KEY", ""),
            backend=os.getenv("CODERUNNER_BACKEND", "ephemeral").lower(),
            docker_bin=os.getenv("CODERUNNER_DOCKER_BIN", "docker"),
            timeout_seconds=_float_var("CODERUNNER_TIMEOUT_SECONDS", 10.0),
            memory_limit=os.getenv("CODERUNNER_MEMORY_LIMIT", "128m"),
            cpus=os.getenv("CODERUNNER_CPUS", "0.5"),
            pids_limit=_int_var("CODERUNNER_PIDS_LIMIT", 64),
            max_output_bytes=_int_var("CODERUNNER_MAX_OUTPUT_BYTES", 64 * 1024),
            job_root=os.getenv("CODERUNNER_JOB_ROOT", "/tmp/coderunner/jobs"),
            warm_image=os.getenv("CODERUNNER_WARM_IMAGE", "coderunner-polyglot:latest"),
            warm_container=os.getenv("CODERUNNER_WARM_CONTAINER", "coderunner-warm"),
            warm_mount=os.getenv("CODERUNNER_WARM_MOUNT", "/jobs"),
            pull_images=_parse_bool(os.getenv("CODERUNNER_PULL_IMAGES"), False),
            cleanup_timeout_seconds=_float_var("CODERUNNER_CLEANUP_TIMEOUT_SECONDS", 5.0),
            allowed_langs=allowed_langs,
            images=images,
            port=_int_var("PORT", 8080),
        )

    @classmethod
    def from_env(cls) -> "Config":
        """Alternate constructor used by the API to load configuration."""
        return cls.load()
