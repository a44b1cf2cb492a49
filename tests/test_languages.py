from __future__ import annotations

import pytest

from coderunner.errors import UnsupportedLanguageError
from coderunner.languages import DEFAULT_PROFILES, Language, LanguageRegistry


def test_every_language_has_a_profile():
    registry = LanguageRegistry()
    for lang in Language:
        profile = registry.resolve(lang.value)
        assert profile.language is lang
        assert profile.image
        assert profile.source_file


def test_resolve_is_case_sensitive():
    registry = LanguageRegistry()
    with pytest.raises(UnsupportedLanguageError):
        registry.resolve("Python")


def test_unsupported_language():
    registry = LanguageRegistry()
    with pytest.raises(UnsupportedLanguageError) as excinfo:
        registry.resolve("ruby")
    assert excinfo.value.language_id == "ruby"
    assert str(excinfo.value) == "Unsupported language: ruby"


def test_node_alias_resolves_to_javascript():
    registry = LanguageRegistry()
    assert registry.resolve("node") is registry.resolve("javascript")


def test_build_step_is_chained_before_run():
    cpp = DEFAULT_PROFILES[Language.CPP]
    assert cpp.shell_command() == "g++ -O2 -o main main.cpp && ./main"
    python = DEFAULT_PROFILES[Language.PYTHON]
    assert python.shell_command() == "python3 main.py"


def test_from_config_restricts_languages_and_overrides_images():
    registry = LanguageRegistry.from_config(["python", "node"], {"python": "python:3.12-slim"})
    assert registry.resolve("python").image == "python:3.12-slim"
    assert registry.resolve("javascript").image == "node:18-alpine"
    with pytest.raises(UnsupportedLanguageError):
        registry.resolve("cpp")
    assert {p.language for p in registry.profiles()} == {Language.PYTHON, Language.JAVASCRIPT}


def test_from_config_rejects_unknown_languages():
    with pytest.raises(ValueError):
        LanguageRegistry.from_config(["python", "ruby"])


def test_languages_lists_aliases():
    assert LanguageRegistry().languages() == ["cpp", "java", "javascript", "node", "python"]
