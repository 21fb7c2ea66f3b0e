import asyncio
import time

import pytest

from ramio_runner import ExecutionResult, RunnerConfig
from ramio_runner.supervisor import TIMEOUT_MARKER, TRUNCATED_MARKER, OutputBuffer, Settlement, Supervisor
from ramio_runner.types import RunState

from conftest import LocalProcessBackend, spawn_python


def _supervise(code: str, *, timeout_ms: int = 20_000, max_output_kb: int = 0, **spawn_kwargs):
    backend = LocalProcessBackend()
    supervisor = Supervisor(RunnerConfig(timeout_ms=timeout_ms, max_output_kb=max_output_kb, kill_grace_ms=500))

    async def _scenario():
        handle = await spawn_python(code, **spawn_kwargs)
        result = await supervisor.supervise(handle, backend)
        return result, handle

    result, handle = asyncio.run(_scenario())
    assert handle.process.returncode is not None
    return result, backend


def test_settlement_first_claim_wins() -> None:
    async def _scenario():
        settlement = Settlement()
        assert settlement.claim(RunState.TIMED_OUT) is True
        assert settlement.claim(RunState.COMPLETED) is False
        assert settlement.state is RunState.TIMED_OUT
        first = ExecutionResult(False, -1, "", TIMEOUT_MARKER, True)
        assert settlement.resolve(first) is True
        assert settlement.resolve(ExecutionResult(True, 0, "", "", False)) is False
        return await settlement.result()

    result = asyncio.run(_scenario())
    assert result.timed_out is True


def test_settlement_rejects_non_terminal_state() -> None:
    async def _scenario():
        with pytest.raises(ValueError):
            Settlement().claim(RunState.RUNNING)

    asyncio.run(_scenario())


def test_settlement_with_racing_claimants_yields_one_result() -> None:
    async def _claimant(settlement: Settlement, state: RunState, delay: float) -> bool:
        await asyncio.sleep(delay)
        if not settlement.claim(state):
            return False
        settlement.resolve(ExecutionResult(False, -1, "", str(state.value), state is RunState.TIMED_OUT))
        return True

    async def _scenario():
        settlement = Settlement()
        wins = await asyncio.gather(
            _claimant(settlement, RunState.COMPLETED, 0),
            _claimant(settlement, RunState.TIMED_OUT, 0),
        )
        return wins, await settlement.result()

    wins, result = asyncio.run(_scenario())
    assert wins == [True, False]
    assert result.stderr == "completed"


def test_output_buffer_decodes_invalid_utf8_with_replacement() -> None:
    buffer = OutputBuffer()
    buffer.feed(b"ok \xff\n")
    assert buffer.text() == "ok �\n"


def test_output_buffer_truncates_at_limit() -> None:
    buffer = OutputBuffer(limit_bytes=4)
    buffer.feed(b"abc")
    buffer.feed(b"defg")
    assert buffer.truncated
    assert buffer.text() == "abcd" + TRUNCATED_MARKER


def test_natural_exit_zero_is_success() -> None:
    result, backend = _supervise("import sys; print('out'); print('err', file=sys.stderr)")
    assert result == ExecutionResult(success=True, exit_code=0, stdout="out\n", stderr="err\n", timed_out=False)
    assert backend.terminated == []


def test_non_zero_exit_is_a_normal_failure() -> None:
    result, _ = _supervise("import sys; print('boom', file=sys.stderr); sys.exit(3)")
    assert result.success is False
    assert result.exit_code == 3
    assert result.timed_out is False
    assert result.stderr == "boom\n"


def test_killed_by_signal_maps_to_sentinel() -> None:
    result, _ = _supervise("import os, signal; os.kill(os.getpid(), signal.SIGKILL)")
    assert result.success is False
    assert result.exit_code == -1
    assert result.timed_out is False


def test_timeout_force_kills_even_when_sigterm_is_ignored() -> None:
    code = (
        "import signal, time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        "print('started', flush=True)\n"
        "while True:\n"
        "    time.sleep(0.01)\n"
    )
    started = time.monotonic()
    result, backend = _supervise(code, timeout_ms=500)
    elapsed = time.monotonic() - started

    assert result.success is False
    assert result.exit_code == -1
    assert result.timed_out is True
    assert result.stdout == "started\n"
    assert result.stderr.endswith(TIMEOUT_MARKER)
    assert backend.terminated == ["local-test"]
    assert elapsed < 10


def test_exit_racing_the_timer_settles_exactly_once() -> None:
    result, _ = _supervise("pass", timeout_ms=1)
    assert isinstance(result, ExecutionResult)
    if result.timed_out:
        assert result.exit_code == -1
        assert result.stderr.count("[Runner timed out]") == 1
    else:
        assert result.exit_code == 0
        assert result.success is True


def test_launcher_exit_code_is_reported_as_runner_error() -> None:
    result, _ = _supervise(
        "import sys; print('daemon down', file=sys.stderr); sys.exit(125)",
        launcher_exit_codes=frozenset({125}),
    )
    assert result.success is False
    assert result.exit_code == -1
    assert result.timed_out is False
    assert result.stderr.startswith("daemon down\n")
    assert "[Runner error: sandbox runtime exited with status 125]" in result.stderr


def test_large_output_is_fully_captured() -> None:
    result, _ = _supervise("import sys; sys.stdout.write('x' * 2_000_000); sys.stderr.write('y' * 500_000)")
    assert result.success is True
    assert len(result.stdout) == 2_000_000
    assert len(result.stderr) == 500_000


def test_output_cap_truncates_but_keeps_draining() -> None:
    result, _ = _supervise("import sys; sys.stdout.write('x' * 100_000)", max_output_kb=1)
    assert result.success is True
    assert result.stdout == "x" * 1024 + TRUNCATED_MARKER


def test_stream_failure_is_reported_as_runner_error() -> None:
    class _BrokenReader:
        async def read(self, n: int) -> bytes:
            raise ConnectionResetError("pipe torn down")

    backend = LocalProcessBackend()
    supervisor = Supervisor(RunnerConfig(timeout_ms=20_000))

    async def _scenario():
        handle = await spawn_python("print('hello')")
        handle.process.stdout = _BrokenReader()
        return await supervisor.supervise(handle, backend), handle

    result, handle = asyncio.run(_scenario())

    assert result.success is False
    assert result.exit_code == -1
    assert result.timed_out is False
    assert "[Runner error: Failed reading sandbox output: pipe torn down]" in result.stderr
    assert handle.process.returncode is not None
