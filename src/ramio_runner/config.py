from __future__ import annotations

import os
import tempfile
import tomllib
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping

from .types import Language

DEFAULT_PYTHON_IMAGE = "runner-python:3.12"
DEFAULT_NODE_IMAGE = "runner-node:20"
DEFAULT_TIMEOUT_MS = 30_000
DEFAULT_CPUS = 0.5
DEFAULT_MEMORY_LIMIT_MB = 256
DEFAULT_PIDS_LIMIT = 128
DEFAULT_TMPFS_SIZE_MB = 64
DEFAULT_KILL_GRACE_MS = 2_000

ENV_PREFIX = "RUNNER_"

# field name -> (environment variable suffix, type)
_OPTIONS: dict[str, tuple[str, type]] = {
    "python_image": ("PYTHON_IMAGE", str),
    "node_image": ("NODE_IMAGE", str),
    "timeout_ms": ("TIMEOUT_MS", int),
    "cpus": ("CPUS", float),
    "memory_limit_mb": ("MEMORY_MB", int),
    "pids_limit": ("PIDS_LIMIT", int),
    "tmpfs_size_mb": ("TMPFS_MB", int),
    "max_output_kb": ("MAX_OUTPUT_KB", int),
    "workspace_root": ("WORKSPACE_ROOT", str),
    "docker_binary": ("DOCKER_BINARY", str),
    "docker_host": ("DOCKER_HOST", str),
    "docker_context": ("DOCKER_CONTEXT", str),
    "kill_grace_ms": ("KILL_GRACE_MS", int),
}


def _default_workspace_root() -> str:
    return tempfile.gettempdir()


def _coerce(value: Any, kind: type, source: str) -> Any:
    """Convert a raw config value to the option's type.

    Example:
        ```python
        _coerce("5000", int, "RUNNER_TIMEOUT_MS")  # 5000
        ```
    """
    if kind is str:
        return str(value)
    if isinstance(value, bool):
        raise ValueError(f"'{source}' must be {kind.__name__}, got {value!r}")
    if kind is int and isinstance(value, float) and not value.is_integer():
        raise ValueError(f"'{source}' must be a whole number, got {value!r}")
    try:
        return kind(value)
    except (TypeError, ValueError):
        raise ValueError(f"'{source}' must be {kind.__name__}, got {value!r}") from None


@dataclass(frozen=True, slots=True)
class RunnerConfig:
    """Sandbox images, wall-clock budget and resource caps for every run.

    Example:
        ```python
        config = RunnerConfig(timeout_ms=5_000, memory_limit_mb=128)
        ```
    """

    python_image: str = DEFAULT_PYTHON_IMAGE
    node_image: str = DEFAULT_NODE_IMAGE
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    cpus: float = DEFAULT_CPUS
    memory_limit_mb: int = DEFAULT_MEMORY_LIMIT_MB
    pids_limit: int = DEFAULT_PIDS_LIMIT
    tmpfs_size_mb: int = DEFAULT_TMPFS_SIZE_MB
    max_output_kb: int = 0
    workspace_root: str = field(default_factory=_default_workspace_root)
    docker_binary: str = "docker"
    docker_host: str | None = None
    docker_context: str | None = None
    kill_grace_ms: int = DEFAULT_KILL_GRACE_MS

    def __post_init__(self) -> None:
        """Validate limits and connection options after dataclass initialization.

        Example:
            ```python
            RunnerConfig(timeout_ms=0)  # raises ValueError
            ```
        """
        if self.timeout_ms <= 0:
            raise ValueError("timeout_ms must be positive")
        if self.cpus <= 0:
            raise ValueError("cpus must be positive")
        for name in ("memory_limit_mb", "pids_limit", "tmpfs_size_mb"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.max_output_kb < 0:
            raise ValueError("max_output_kb must not be negative")
        if self.kill_grace_ms <= 0:
            raise ValueError("kill_grace_ms must be positive")
        if not self.docker_binary.strip():
            raise ValueError("docker_binary must not be empty")
        if self.docker_context and self.docker_host:
            raise ValueError("Use either docker_context or docker_host, not both")

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000

    @property
    def kill_grace_seconds(self) -> float:
        return self.kill_grace_ms / 1000

    def image_for(self, language: Language | str) -> str:
        """Return the sandbox image configured for a language.

        Example:
            ```python
            image = config.image_for(Language.PYTHON)
            ```
        """
        if Language.parse(language) is Language.PYTHON:
            return self.python_image
        return self.node_image

    def with_overrides(self, **overrides: Any) -> "RunnerConfig":
        """Return a copy with non-None overrides applied.

        Example:
            ```python
            fast = config.with_overrides(timeout_ms=2_000, docker_host=None)
            ```
        """
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], *, source: str = "config") -> "RunnerConfig":
        """Build a config from a plain mapping of field names to values.

        Example:
            ```python
            config = RunnerConfig.from_mapping({"timeout_ms": 5000})
            ```
        """
        unknown = sorted(set(raw) - {f.name for f in fields(cls)})
        if unknown:
            raise ValueError(f"Unknown {source} option(s): {', '.join(unknown)}")
        kwargs = {
            name: _coerce(value, _OPTIONS[name][1], f"{source}.{name}")
            for name, value in raw.items()
            if value is not None
        }
        return cls(**kwargs)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "RunnerConfig":
        """Build a config from `RUNNER_*` environment variables, defaults elsewhere.

        Example:
            ```python
            config = RunnerConfig.from_env({"RUNNER_TIMEOUT_MS": "5000"})
            ```
        """
        env = os.environ if environ is None else environ
        kwargs: dict[str, Any] = {}
        for name, (suffix, kind) in _OPTIONS.items():
            key = f"{ENV_PREFIX}{suffix}"
            raw = env.get(key)
            if raw is None or raw.strip() == "":
                continue
            kwargs[name] = _coerce(raw.strip(), kind, key)
        return cls(**kwargs)

    @classmethod
    def from_file(cls, config_path: str) -> "RunnerConfig":
        """Create a config from a TOML file with an optional `[runner]` table.

        Example:
            ```python
            config = RunnerConfig.from_file("/etc/ramio/runner.toml")
            ```
        """
        raw = tomllib.loads(Path(config_path).read_text(encoding="utf-8"))
        table = raw.get("runner", raw)
        if not isinstance(table, dict):
            raise ValueError("Runner config must be a TOML table")
        return cls.from_mapping(table, source="runner")
