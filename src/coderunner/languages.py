"""Language registry.

Maps a closed set of language identifiers to the profile describing how to
build and run a program of that language inside the isolation backend.
Adding a language is a data change: add a :class:`Language` member and a
profile to :data:`DEFAULT_PROFILES`.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Mapping, Optional

from .errors import UnsupportedLanguageError


class Language(str, enum.Enum):
    PYTHON = "python"
    JAVASCRIPT = "javascript"
    CPP = "cpp"
    JAVA = "java"


@dataclass(frozen=True)
class ExecutionProfile:
    """How to build and run one language.

    Attributes
    ----------
    language: Language
        Registry key.
    image: str
        Container image providing the toolchain.
    source_file: str
        Name the source is stored under inside the job directory.
    run_command: str
        Shell command that runs the program from the job directory.
    build_command: str, optional
        Shell command executed before ``run_command``; the run step only
        happens if the build succeeds.
    """

    language: Language
    image: str
    source_file: str
    run_command: str
    build_command: Optional[str] = None

    def shell_command(self) -> str:
        """Build and run steps chained so that a failed build skips the run."""
        if self.build_command:
            return f"{self.build_command} && {self.run_command}"
        return self.run_command


DEFAULT_PROFILES: Dict[Language, ExecutionProfile] = {
    Language.PYTHON: ExecutionProfile(
        language=Language.PYTHON,
        image="python:3.10-slim",
        source_file="main.py",
        run_command="python3 main.py",
    ),
    Language.JAVASCRIPT: ExecutionProfile(
        language=Language.JAVASCRIPT,
        image="node:18-alpine",
        source_file="main.js",
        run_command="node main.js",
    ),
    Language.CPP: ExecutionProfile(
        language=Language.CPP,
        image="gcc:latest",
        source_file="main.cpp",
        build_command="g++ -O2 -o main main.cpp",
        run_command="./main",
    ),
    Language.JAVA: ExecutionProfile(
        language=Language.JAVA,
        image="eclipse-temurin:17-jdk",
        source_file="Main.java",
        build_command="javac Main.java",
        run_command="java Main",
    ),
}

ALIASES: Dict[str, Language] = {"node": Language.JAVASCRIPT}


class LanguageRegistry:
    """Case-sensitive lookup from language identifier to profile."""

    def __init__(
        self,
        profiles: Mapping[Language, ExecutionProfile] = DEFAULT_PROFILES,
        aliases: Mapping[str, Language] = ALIASES,
    ) -> None:
        self._profiles: Dict[str, ExecutionProfile] = {
            lang.value: profile for lang, profile in profiles.items()
        }
        for alias, lang in aliases.items():
            if lang.value in self._profiles:
                self._profiles[alias] = self._profiles[lang.value]

    @classmethod
    def from_config(
        cls,
        allowed: Optional[Iterable[str]] = None,
        images: Optional[Mapping[str, str]] = None,
    ) -> "LanguageRegistry":
        """Build a registry restricted to ``allowed`` with image overrides applied."""
        images = images or {}
        profiles: Dict[Language, ExecutionProfile] = {}
        wanted = set(allowed) if allowed is not None else None
        if wanted is not None:
            unknown = wanted - {lang.value for lang in Language} - set(ALIASES)
            if unknown:
                raise ValueError(f"Invalid CODERUNNER_ALLOWED_LANGS entries: {sorted(unknown)}")
            wanted = {ALIASES[name].value if name in ALIASES else name for name in wanted}
        for lang, profile in DEFAULT_PROFILES.items():
            if wanted is not None and lang.value not in wanted:
                continue
            if lang.value in images:
                profile = replace(profile, image=images[lang.value])
            profiles[lang] = profile
        return cls(profiles)

    def resolve(self, language_id: str) -> ExecutionProfile:
        try:
            return self._profiles[language_id]
        except KeyError:
            raise UnsupportedLanguageError(language_id) from None

    def languages(self) -> List[str]:
        return sorted(self._profiles)

    def profiles(self) -> List[ExecutionProfile]:
        """Distinct profiles, one per registered language."""
        seen: Dict[Language, ExecutionProfile] = {}
        for profile in self._profiles.values():
            seen.setdefault(profile.language, profile)
        return list(seen.values())
