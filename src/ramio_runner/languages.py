from __future__ import annotations

from dataclasses import dataclass

from .errors import UnsupportedLanguageError
from .types import Language


@dataclass(frozen=True, slots=True)
class LanguageProfile:
    """Fixed file names and in-sandbox command for one language.

    A profile without a command is declared but has no execution path.

    Example:
        ```python
        profile = profile_for(Language.PYTHON)
        profile.test_filename  # "test_solution.py"
        ```
    """

    language: Language
    solution_filename: str
    test_filename: str
    command: tuple[str, ...] | None = None

    @property
    def supported(self) -> bool:
        return self.command is not None


_PROFILES = {
    Language.PYTHON: LanguageProfile(
        language=Language.PYTHON,
        solution_filename="solution.py",
        test_filename="test_solution.py",
        command=("python", "-B", "-m", "unittest", "-v", "test_solution"),
    ),
    # TODO: add a `node --test` command once a runner-node image ships with a test harness.
    Language.NODE_JS: LanguageProfile(
        language=Language.NODE_JS,
        solution_filename="solution.js",
        test_filename="solution.test.js",
    ),
}


def profile_for(language: Language | str) -> LanguageProfile:
    """Return the profile for a language.

    Example:
        ```python
        profile = profile_for("python")
        ```
    """
    return _PROFILES[Language.parse(language)]


def require_supported(language: Language | str) -> LanguageProfile:
    """Return the profile for a language, rejecting languages without an execution path.

    Example:
        ```python
        require_supported(Language.NODE_JS)  # raises UnsupportedLanguageError
        ```
    """
    profile = profile_for(language)
    if not profile.supported:
        raise UnsupportedLanguageError(
            f"Language '{profile.language.value}' is declared but not supported for execution"
        )
    return profile
