from .config import RunnerConfig
from .errors import (
    LauncherError,
    ResourceExhaustion,
    RunnerError,
    SandboxRuntimeError,
    UnsupportedLanguageError,
)
from .execution.docker_backend import DockerBackend
from .runner import CodeTestRunner, run_tests
from .types import ExecutionRequest, ExecutionResult, Language

__all__ = [
    "CodeTestRunner",
    "DockerBackend",
    "ExecutionRequest",
    "ExecutionResult",
    "Language",
    "LauncherError",
    "ResourceExhaustion",
    "RunnerConfig",
    "RunnerError",
    "SandboxRuntimeError",
    "UnsupportedLanguageError",
    "run_tests",
]
