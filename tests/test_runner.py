import asyncio
from pathlib import Path

import pytest

from ramio_runner import (
    CodeTestRunner,
    ExecutionRequest,
    Language,
    LauncherError,
    ResourceExhaustion,
    RunnerConfig,
    UnsupportedLanguageError,
    run_tests,
)
from ramio_runner.workspace import Workspace, WorkspaceProvisioner

from conftest import LocalProcessBackend

ADD_TESTS = """\
import unittest

from solution import add


class AddTests(unittest.TestCase):
    def test_add(self):
        self.assertEqual(add(1, 2), 3)
"""


class _RecordingProvisioner(WorkspaceProvisioner):
    def __init__(self, root) -> None:
        super().__init__(root)
        self.acquired: list[Path] = []

    def acquire(self) -> Workspace:
        ws = super().acquire()
        self.acquired.append(ws.path)
        return ws


def _run(config: RunnerConfig, request: ExecutionRequest, backend=None):
    provisioner = _RecordingProvisioner(config.workspace_root)
    runner = CodeTestRunner(config, backend=backend or LocalProcessBackend(), provisioner=provisioner)
    result = asyncio.run(runner.run(request))
    return result, provisioner


def test_passing_solution(config: RunnerConfig) -> None:
    result, provisioner = _run(config, ExecutionRequest("def add(a, b):\n    return a + b\n", ADD_TESTS))

    assert result.success is True
    assert result.exit_code == 0
    assert result.timed_out is False
    assert "test_add (test_solution.AddTests" in result.stderr
    assert "OK" in result.stderr
    assert not provisioner.acquired[0].exists()


def test_failing_solution(config: RunnerConfig) -> None:
    result, provisioner = _run(config, ExecutionRequest("def add(a, b):\n    return a - b\n", ADD_TESTS))

    assert result.success is False
    assert result.exit_code == 1
    assert result.timed_out is False
    assert "AssertionError: -1 != 3" in result.stderr
    assert "FAILED (failures=1)" in result.stderr
    assert not provisioner.acquired[0].exists()


def test_infinite_loop_times_out(config: RunnerConfig) -> None:
    config = config.with_overrides(timeout_ms=1_000, kill_grace_ms=500)
    result, provisioner = _run(config, ExecutionRequest("while True:\n    pass\n", ADD_TESTS))

    assert result.success is False
    assert result.exit_code == -1
    assert result.timed_out is True
    assert "[Runner timed out]" in result.stderr
    assert not provisioner.acquired[0].exists()


def test_unsupported_language_rejected_before_workspace(config: RunnerConfig) -> None:
    backend = LocalProcessBackend()
    with pytest.raises(UnsupportedLanguageError):
        _run(config, ExecutionRequest("module.exports = {}", "", Language.NODE_JS), backend)
    assert backend.launched == []
    assert list(Path(config.workspace_root).iterdir()) == []


def test_launcher_error_is_folded_and_workspace_released(config: RunnerConfig) -> None:
    class _BrokenBackend(LocalProcessBackend):
        async def launch(self, workspace_path, language):
            self.launched.append(Path(workspace_path))
            raise LauncherError("Docker CLI 'docker' was not found")

    backend = _BrokenBackend()
    result, provisioner = _run(config, ExecutionRequest("a = 1\n", ADD_TESTS), backend)

    assert result.success is False
    assert result.exit_code == -1
    assert result.timed_out is False
    assert "[Runner error: Docker CLI 'docker' was not found]" in result.stderr
    assert backend.launched == provisioner.acquired
    assert not provisioner.acquired[0].exists()


def test_resource_exhaustion_propagates_without_launch(tmp_path: Path) -> None:
    backend = LocalProcessBackend()
    config = RunnerConfig(workspace_root=str(tmp_path / "missing"))
    with pytest.raises(ResourceExhaustion):
        _run(config, ExecutionRequest("a = 1\n", ADD_TESTS), backend)
    assert backend.launched == []


def test_workspace_holds_both_files_when_sandbox_starts(config: RunnerConfig) -> None:
    seen: dict[str, str] = {}

    class _InspectingBackend(LocalProcessBackend):
        async def launch(self, workspace_path, language):
            for path in Path(workspace_path).iterdir():
                seen[path.name] = path.read_text(encoding="utf-8")
            return await super().launch(workspace_path, language)

    _run(config, ExecutionRequest("def add(a, b):\n    return a + b\n", ADD_TESTS), _InspectingBackend())

    assert seen == {"solution.py": "def add(a, b):\n    return a + b\n", "test_solution.py": ADD_TESTS}


def test_concurrent_runs_get_separate_workspaces(config: RunnerConfig) -> None:
    tests = """\
import os
import time
import unittest


class IsolationTests(unittest.TestCase):
    def test_scratch_is_private(self):
        self.assertFalse(os.path.exists("marker.txt"))
        with open("marker.txt", "w") as handle:
            handle.write("mine")
        time.sleep(0.3)
        with open("marker.txt") as handle:
            self.assertEqual(handle.read(), "mine")
"""
    backend = LocalProcessBackend()
    provisioner = _RecordingProvisioner(config.workspace_root)
    runner = CodeTestRunner(config, backend=backend, provisioner=provisioner)

    async def _scenario():
        return await asyncio.gather(*(runner.run(ExecutionRequest("", tests)) for _ in range(3)))

    results = asyncio.run(_scenario())

    assert [r.success for r in results] == [True, True, True]
    assert len(set(provisioner.acquired)) == 3
    assert all(not path.exists() for path in provisioner.acquired)


def test_run_tests_helper(config: RunnerConfig) -> None:
    result = asyncio.run(
        run_tests(
            "def add(a, b):\n    return a + b\n",
            ADD_TESTS,
            language="python",
            config=config,
            backend=LocalProcessBackend(),
        )
    )
    assert result.success is True
    assert list(Path(config.workspace_root).iterdir()) == []
