"""Output capture and wall-clock supervision of one sandbox process.

The natural-exit path and the timeout path race each other. Both funnel
into a `Settlement`: the first path to `claim` it owns the result, the other
becomes a no-op. The sandbox is always dead by the time `supervise` returns.
"""

from __future__ import annotations

import asyncio
import contextlib

import structlog

from .config import RunnerConfig
from .errors import SandboxRuntimeError
from .execution.backend import SandboxBackend, SandboxProcess
from .types import ExecutionResult, RunState

logger = structlog.get_logger(__name__)

TIMEOUT_MARKER = "\n[Runner timed out]\n"
TRUNCATED_MARKER = "\n[output truncated]\n"
SIGNAL_EXIT_CODE = -1
_CHUNK_SIZE = 64 * 1024


class OutputBuffer:
    """Growable byte buffer for one output stream, decoded as UTF-8 on read.

    Example:
        ```python
        buf = OutputBuffer(limit_bytes=1024)
        buf.feed(b"ok\\n")
        buf.text()  # "ok\\n"
        ```
    """

    def __init__(self, limit_bytes: int = 0) -> None:
        self._chunks: list[bytes] = []
        self._size = 0
        self._limit = limit_bytes
        self._truncated = False

    @property
    def truncated(self) -> bool:
        return self._truncated

    def feed(self, chunk: bytes) -> None:
        if self._limit and self._size + len(chunk) > self._limit:
            chunk = chunk[: max(0, self._limit - self._size)]
            self._truncated = True
        if chunk:
            self._chunks.append(chunk)
            self._size += len(chunk)

    def text(self) -> str:
        out = b"".join(self._chunks).decode("utf-8", errors="replace")
        if self._truncated:
            out += TRUNCATED_MARKER
        return out


async def pump(stream: asyncio.StreamReader | None, buffer: OutputBuffer) -> None:
    """Copy a stream into a buffer until EOF.

    Example:
        ```python
        await pump(process.stdout, stdout_buffer)
        ```
    """
    if stream is None:
        return
    while True:
        try:
            chunk = await stream.read(_CHUNK_SIZE)
        except OSError as exc:
            raise SandboxRuntimeError(f"Failed reading sandbox output: {exc}") from exc
        if not chunk:
            return
        buffer.feed(chunk)


class Settlement:
    """Single-assignment result slot shared by racing completion paths.

    `claim` moves the run out of RUNNING exactly once; only the claimant may
    `resolve`. Later claims return False and later resolves are ignored.

    Example:
        ```python
        settlement = Settlement()
        if settlement.claim(RunState.TIMED_OUT):
            settlement.resolve(result)
        ```
    """

    def __init__(self) -> None:
        self._state = RunState.RUNNING
        self._future: asyncio.Future[ExecutionResult] = asyncio.get_running_loop().create_future()

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def settled(self) -> bool:
        return self._state is not RunState.RUNNING

    def claim(self, state: RunState) -> bool:
        if not state.terminal:
            raise ValueError(f"Cannot settle into non-terminal state {state.value}")
        if self.settled:
            return False
        self._state = state
        return True

    def resolve(self, result: ExecutionResult) -> bool:
        if self._future.done():
            return False
        self._future.set_result(result)
        return True

    async def result(self) -> ExecutionResult:
        return await self._future


class Supervisor:
    """Capture a sandbox's output and enforce the wall-clock timeout.

    Example:
        ```python
        supervisor = Supervisor(RunnerConfig(timeout_ms=5_000))
        result = await supervisor.supervise(handle, backend)
        ```
    """

    def __init__(self, config: RunnerConfig | None = None) -> None:
        self._config = config or RunnerConfig()

    async def supervise(self, handle: SandboxProcess, backend: SandboxBackend) -> ExecutionResult:
        """Race process exit against the timeout and return the single settled result.

        Example:
            ```python
            result = await supervisor.supervise(handle, backend)
            ```
        """
        limit = self._config.max_output_kb * 1024
        stdout = OutputBuffer(limit)
        stderr = OutputBuffer(limit)
        settlement = Settlement()
        readers = [
            asyncio.create_task(pump(handle.process.stdout, stdout)),
            asyncio.create_task(pump(handle.process.stderr, stderr)),
        ]
        paths = [
            asyncio.create_task(self._await_exit(handle, readers, stdout, stderr, settlement)),
            asyncio.create_task(self._await_timeout(handle, backend, readers, stdout, stderr, settlement)),
        ]
        try:
            result = await settlement.result()
        finally:
            for task in paths:
                task.cancel()
            await asyncio.gather(*paths, return_exceptions=True)
            if handle.running:
                await self._kill(handle, backend)
            for task in readers:
                task.cancel()
            await asyncio.gather(*readers, return_exceptions=True)
        logger.debug("sandbox_settled", container=handle.name, state=settlement.state.value)
        return result

    async def _await_exit(
        self,
        handle: SandboxProcess,
        readers: list[asyncio.Task[None]],
        stdout: OutputBuffer,
        stderr: OutputBuffer,
        settlement: Settlement,
    ) -> None:
        try:
            returncode = await handle.process.wait()
            await asyncio.gather(*readers)
        except (OSError, SandboxRuntimeError) as exc:
            message = str(exc) or type(exc).__name__
            if settlement.claim(RunState.LAUNCHER_FAILED):
                logger.warning("sandbox_runtime_error", container=handle.name, error=message)
                settlement.resolve(
                    ExecutionResult.launcher_failed(message, stdout=stdout.text(), stderr=stderr.text())
                )
            return

        if returncode in handle.launcher_exit_codes:
            if settlement.claim(RunState.LAUNCHER_FAILED):
                logger.warning("sandbox_launch_failed", container=handle.name, exit_code=returncode)
                settlement.resolve(
                    ExecutionResult.launcher_failed(
                        f"sandbox runtime exited with status {returncode}",
                        stdout=stdout.text(),
                        stderr=stderr.text(),
                    )
                )
            return

        if not settlement.claim(RunState.COMPLETED):
            return
        exit_code = returncode if returncode >= 0 else SIGNAL_EXIT_CODE
        settlement.resolve(
            ExecutionResult(
                success=exit_code == 0,
                exit_code=exit_code,
                stdout=stdout.text(),
                stderr=stderr.text(),
                timed_out=False,
            )
        )

    async def _await_timeout(
        self,
        handle: SandboxProcess,
        backend: SandboxBackend,
        readers: list[asyncio.Task[None]],
        stdout: OutputBuffer,
        stderr: OutputBuffer,
        settlement: Settlement,
    ) -> None:
        await asyncio.sleep(self._config.timeout_seconds)
        if not settlement.claim(RunState.TIMED_OUT):
            return
        logger.info("sandbox_timed_out", container=handle.name, timeout_ms=self._config.timeout_ms)
        try:
            await self._kill(handle, backend)
            # Pipes close once the process is gone; a grandchild holding them open is not waited on.
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(
                    asyncio.shield(asyncio.gather(*readers, return_exceptions=True)),
                    timeout=self._config.kill_grace_seconds,
                )
        except (OSError, RuntimeError) as exc:
            logger.warning("sandbox_kill_failed", container=handle.name, error=str(exc))
        finally:
            settlement.resolve(
                ExecutionResult(
                    success=False,
                    exit_code=-1,
                    stdout=stdout.text(),
                    stderr=stderr.text() + TIMEOUT_MARKER,
                    timed_out=True,
                )
            )

    async def _kill(self, handle: SandboxProcess, backend: SandboxBackend) -> None:
        """Terminate through the backend and wait until the process is reaped."""
        try:
            await backend.terminate(handle)
        finally:
            if handle.running:
                with contextlib.suppress(ProcessLookupError):
                    handle.process.kill()
            await handle.process.wait()
