from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

from ramio_runner import RunnerConfig
from ramio_runner.execution import SandboxProcess
from ramio_runner.languages import require_supported
from ramio_runner.types import Language


class LocalProcessBackend:
    """Runs the language's test command as a plain host subprocess, without isolation.

    Lets the supervisor and runner be exercised with real processes when Docker
    is not available.
    """

    def __init__(self, command: list[str] | None = None, launcher_exit_codes: frozenset[int] = frozenset()) -> None:
        self.command = command
        self.launcher_exit_codes = launcher_exit_codes
        self.launched: list[Path] = []
        self.terminated: list[str] = []

    async def launch(self, workspace_path: Path, language: Language) -> SandboxProcess:
        profile = require_supported(language)
        assert profile.command is not None
        cmd = self.command or [sys.executable, *profile.command[1:]]
        self.launched.append(Path(workspace_path))
        process = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(workspace_path),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        return SandboxProcess(
            process=process,
            name=f"local-{process.pid}",
            launcher_exit_codes=self.launcher_exit_codes,
        )

    async def terminate(self, handle: SandboxProcess) -> None:
        self.terminated.append(handle.name)
        if handle.running:
            handle.process.kill()


async def spawn_python(
    code: str, *, name: str = "local-test", launcher_exit_codes: frozenset[int] = frozenset()
) -> SandboxProcess:
    process = await asyncio.create_subprocess_exec(
        sys.executable,
        "-c",
        code,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    return SandboxProcess(process=process, name=name, launcher_exit_codes=launcher_exit_codes)


@pytest.fixture
def local_backend() -> LocalProcessBackend:
    return LocalProcessBackend()


@pytest.fixture
def config(tmp_path: Path) -> RunnerConfig:
    root = tmp_path / "workspaces"
    root.mkdir()
    return RunnerConfig(timeout_ms=20_000, workspace_root=str(root))
