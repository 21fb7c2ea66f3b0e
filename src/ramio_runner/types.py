from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any

MAX_SOURCE_CHARS = 100_000

_LANGUAGE_ALIASES = {
    "py": "python",
    "python3": "python",
    "js": "node",
    "javascript": "node",
    "nodejs": "node",
    "node_js": "node",
}


class Language(str, enum.Enum):
    PYTHON = "python"
    NODE_JS = "node"

    @classmethod
    def parse(cls, value: "Language | str") -> "Language":
        """Resolve a language from its enum, value or a common alias.

        Example:
            ```python
            Language.parse("py")  # Language.PYTHON
            ```
        """
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower()
        key = _LANGUAGE_ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            raise ValueError(f"Unknown language: {value!r}") from None


class RunState(enum.Enum):
    """Lifecycle of one run. Terminal states never transition back to RUNNING."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    LAUNCHER_FAILED = "launcher_failed"

    @property
    def terminal(self) -> bool:
        return self not in {RunState.PENDING, RunState.RUNNING}


@dataclass(frozen=True, slots=True)
class ExecutionRequest:
    """Candidate code plus the tests to run against it.

    Example:
        ```python
        req = ExecutionRequest("def add(a, b):\\n    return a + b\\n", tests, Language.PYTHON)
        ```
    """

    candidate_source: str
    test_source: str
    language: Language = Language.PYTHON

    def __post_init__(self) -> None:
        """Validate source types and sizes after dataclass initialization.

        Example:
            ```python
            ExecutionRequest("x" * 100_001, "")  # raises ValueError
            ```
        """
        for field_name in ("candidate_source", "test_source"):
            value = getattr(self, field_name)
            if not isinstance(value, str):
                raise ValueError(f"'{field_name}' must be a string")
            if len(value) > MAX_SOURCE_CHARS:
                raise ValueError(
                    f"'{field_name}' must not exceed {MAX_SOURCE_CHARS:,} characters"
                )
        object.__setattr__(self, "language", Language.parse(self.language))


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Normalized outcome of one sandboxed test run.

    Example:
        ```python
        result = ExecutionResult(success=True, exit_code=0, stdout="", stderr="OK", timed_out=False)
        ```
    """

    success: bool
    exit_code: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @classmethod
    def launcher_failed(cls, message: str, *, stdout: str = "", stderr: str = "") -> "ExecutionResult":
        """Build the result for a run whose sandbox never ran or failed at runtime level.

        Example:
            ```python
            result = ExecutionResult.launcher_failed("Docker CLI was not found")
            ```
        """
        return cls(
            success=False,
            exit_code=-1,
            stdout=stdout,
            stderr=f"{stderr}\n[Runner error: {message}]\n",
            timed_out=False,
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the wire shape consumed by the surrounding application.

        Example:
            ```python
            payload = result.to_dict()  # {"success": ..., "exitCode": ..., ...}
            ```
        """
        return {
            "success": self.success,
            "exitCode": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "timedOut": self.timed_out,
        }
