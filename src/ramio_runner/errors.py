from __future__ import annotations


class RunnerError(Exception):
    """Base class for all runner failures."""


class ResourceExhaustion(RunnerError):
    """Workspace could not be allocated or written (disk, inode or quota exhaustion).

    Raised before any sandbox is started and never retried.

    Example:
        ```python
        raise ResourceExhaustion("No space left on device")
        ```
    """


class UnsupportedLanguageError(RunnerError, ValueError):
    """Language is declared in the data model but has no execution path."""


class LauncherError(RunnerError):
    """Sandbox runtime could not start the process (missing binary, daemon down, permission denied).

    Folded into an `ExecutionResult` with `exit_code=-1` by the runner.

    Example:
        ```python
        raise LauncherError("Docker CLI 'docker' was not found on PATH")
        ```
    """


class SandboxRuntimeError(RunnerError):
    """Sandbox runtime failed after the process had started."""
