from __future__ import annotations

import asyncio
import time

import structlog

from .config import RunnerConfig
from .errors import LauncherError
from .execution.backend import SandboxBackend
from .execution.docker_backend import DockerBackend
from .languages import require_supported
from .supervisor import Supervisor
from .types import ExecutionRequest, ExecutionResult, Language
from .workspace import WorkspaceProvisioner

logger = structlog.get_logger(__name__)


class CodeTestRunner:
    """Run candidate code against its tests in a fresh sandbox per request.

    Runs are independent: each gets its own workspace and sandbox, so one
    runner can serve many concurrent `run` calls.

    Example:
        ```python
        runner = CodeTestRunner(RunnerConfig.from_env())
        result = await runner.run(ExecutionRequest(code, tests))
        ```
    """

    def __init__(
        self,
        config: RunnerConfig | None = None,
        *,
        backend: SandboxBackend | None = None,
        provisioner: WorkspaceProvisioner | None = None,
    ) -> None:
        self._config = config or RunnerConfig()
        self._backend = backend or DockerBackend(self._config)
        self._provisioner = provisioner or WorkspaceProvisioner(self._config.workspace_root)
        self._supervisor = Supervisor(self._config)

    @property
    def config(self) -> RunnerConfig:
        return self._config

    async def run(self, request: ExecutionRequest) -> ExecutionResult:
        """Execute one request and return its result.

        Only pre-flight failures raise: `UnsupportedLanguageError` and
        `ResourceExhaustion`. Everything after that is folded into the result.

        Example:
            ```python
            result = await runner.run(ExecutionRequest(code, tests, Language.PYTHON))
            ```
        """
        require_supported(request.language)
        workspace = await asyncio.to_thread(self._provisioner.acquire)
        log = logger.bind(workspace=workspace.name, language=request.language.value)
        started = time.monotonic()
        try:
            await asyncio.to_thread(
                self._provisioner.write,
                workspace,
                request.candidate_source,
                request.test_source,
                request.language,
            )
            log.info("run_started")
            try:
                handle = await self._backend.launch(workspace.path, request.language)
            except LauncherError as exc:
                log.error("sandbox_launch_failed", error=str(exc))
                return ExecutionResult.launcher_failed(str(exc))
            result = await self._supervisor.supervise(handle, self._backend)
            log.info(
                "run_finished",
                success=result.success,
                exit_code=result.exit_code,
                timed_out=result.timed_out,
                duration_ms=int((time.monotonic() - started) * 1000),
            )
            return result
        finally:
            await asyncio.to_thread(self._provisioner.release, workspace)


async def run_tests(
    candidate_source: str,
    test_source: str,
    *,
    language: Language | str = Language.PYTHON,
    config: RunnerConfig | None = None,
    backend: SandboxBackend | None = None,
) -> ExecutionResult:
    """Run candidate code against tests with a one-off runner.

    Example:
        ```python
        result = await run_tests("def add(a, b):\\n    return a + b\\n", tests)
        ```
    """
    runner = CodeTestRunner(config, backend=backend)
    request = ExecutionRequest(candidate_source, test_source, Language.parse(language))
    return await runner.run(request)
