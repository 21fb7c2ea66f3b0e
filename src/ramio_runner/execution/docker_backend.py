from __future__ import annotations

import asyncio
import contextlib
import os
import subprocess
import uuid
from dataclasses import dataclass
from pathlib import Path

import structlog

from ..config import RunnerConfig
from ..errors import LauncherError
from ..languages import require_supported
from ..types import Language
from .backend import SandboxProcess

logger = structlog.get_logger(__name__)

CONTAINER_WORKDIR = "/workspace"
CONTAINER_PREFIX = "ramio-runner-"
MANAGED_LABEL = "ramio_runner.managed"
MANAGED_LABEL_VALUE = "true"
MANAGED_LABELS = {
    MANAGED_LABEL: MANAGED_LABEL_VALUE,
    "ramio_runner.engine": "docker",
}
# `docker run` exits 125 when the daemon cannot create or start the container.
DOCKER_LAUNCH_FAILURE = 125


@dataclass(frozen=True, slots=True)
class ContainerInfo:
    """Snapshot of a managed container.

    Example:
        ```python
        info = ContainerInfo("abc", "ramio-runner-1a2b", "runner-python:3.12", "running", "Up 2s")
        ```
    """

    id: str
    name: str
    image: str
    state: str
    status: str


@dataclass(frozen=True, slots=True)
class CleanupSummary:
    removed_containers: int


class DockerBackend:
    """Run each test command in a fresh, locked-down Docker container.

    Example:
        ```python
        backend = DockerBackend(RunnerConfig.from_env())
        handle = await backend.launch(ws.path, Language.PYTHON)
        ```
    """

    def __init__(self, config: RunnerConfig | None = None) -> None:
        self._config = config or RunnerConfig()

    @property
    def config(self) -> RunnerConfig:
        return self._config

    def build_command(self, workspace_path: Path, language: Language, name: str) -> list[str]:
        """Build the full `docker run` argument vector for one sandbox.

        Example:
            ```python
            cmd = backend.build_command(Path("/tmp/ramio-runner-x"), Language.PYTHON, "ramio-runner-1")
            ```
        """
        profile = require_supported(language)
        assert profile.command is not None
        cfg = self._config
        memory = f"{cfg.memory_limit_mb}m"
        cmd = self._docker_prefix()
        cmd.extend(["run", "--rm", "--name", name])
        for key, value in MANAGED_LABELS.items():
            cmd.extend(["--label", f"{key}={value}"])
        cmd.extend(
            [
                "--network",
                "none",
                f"--cpus={cfg.cpus:g}",
                f"--memory={memory}",
                f"--memory-swap={memory}",
                f"--pids-limit={cfg.pids_limit}",
                "--read-only",
                "--tmpfs",
                f"/tmp:rw,nosuid,size={cfg.tmpfs_size_mb}m",
                "--security-opt",
                "no-new-privileges",
                "--cap-drop",
                "ALL",
                "-v",
                f"{Path(workspace_path).resolve()}:{CONTAINER_WORKDIR}:ro",
                "-w",
                CONTAINER_WORKDIR,
                cfg.image_for(language),
                *profile.command,
            ]
        )
        return cmd

    async def launch(self, workspace_path: Path, language: Language) -> SandboxProcess:
        """Start a sandbox container and return its handle with both streams piped.

        Example:
            ```python
            handle = await backend.launch(ws.path, Language.PYTHON)
            ```
        """
        name = f"{CONTAINER_PREFIX}{uuid.uuid4().hex[:12]}"
        cmd = self.build_command(workspace_path, language, name)
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._docker_env(),
            )
        except FileNotFoundError as exc:
            raise LauncherError(
                f"Docker CLI '{self._config.docker_binary}' was not found. "
                "Install Docker and ensure it is on PATH."
            ) from exc
        except PermissionError as exc:
            raise LauncherError(f"Permission denied starting Docker CLI: {exc}") from exc
        except OSError as exc:
            raise LauncherError(f"Failed to start Docker CLI: {exc}") from exc
        logger.debug("sandbox_launched", container=name, image=self._config.image_for(language))
        return SandboxProcess(
            process=process,
            name=name,
            launcher_exit_codes=frozenset({DOCKER_LAUNCH_FAILURE}),
        )

    async def terminate(self, handle: SandboxProcess) -> None:
        """Kill the container, then the CLI process attached to it, then remove the container.

        The final `rm -f` catches a container the daemon created but had not
        started when `kill` ran.

        Example:
            ```python
            await backend.terminate(handle)
            ```
        """
        await self._docker_bounded("kill", handle.name)
        if handle.running:
            with contextlib.suppress(ProcessLookupError):
                handle.process.kill()
        await self._docker_bounded("rm", "-f", handle.name)

    async def _docker_bounded(self, *args: str) -> int | None:
        """Run a Docker CLI command, killing it if it outlasts the grace period.

        Returns the exit status, or None when the command could not finish.
        """
        try:
            helper = await asyncio.create_subprocess_exec(
                *self._docker_prefix(),
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                env=self._docker_env(),
            )
        except OSError as exc:
            logger.warning("docker_command_failed", command=args[0], error=str(exc))
            return None
        try:
            return await asyncio.wait_for(helper.wait(), timeout=self._config.kill_grace_seconds)
        except TimeoutError:
            logger.warning(
                "docker_command_timed_out",
                command=args[0],
                container=args[-1],
                grace_ms=self._config.kill_grace_ms,
            )
            return None
        finally:
            if helper.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    helper.kill()
                await helper.wait()

    def list_containers(self, all_states: bool = False) -> list[ContainerInfo]:
        """List containers labeled as managed by this runner.

        Example:
            ```python
            containers = backend.list_containers(all_states=True)
            ```
        """
        fmt = "{{.ID}}|{{.Names}}|{{.Image}}|{{.State}}|{{.Status}}"
        cmd = ["ps", "--filter", f"label={MANAGED_LABEL}={MANAGED_LABEL_VALUE}", "--format", fmt]
        if all_states:
            cmd.insert(1, "-a")
        out = self._run_docker(cmd)
        if out.returncode != 0:
            raise RuntimeError(f"Failed to list containers: {out.stderr.strip()}")
        items: list[ContainerInfo] = []
        for line in out.stdout.splitlines():
            if not line.strip():
                continue
            c_id, name, image, state, status = line.split("|", 4)
            items.append(ContainerInfo(c_id, name, image, state, status))
        return items

    def kill_container(self, container_id: str) -> None:
        """Force-kill a managed container.

        Example:
            ```python
            backend.kill_container("abc123")
            ```
        """
        self._ensure_managed_container(container_id)
        killed = self._run_docker(["kill", container_id])
        if killed.returncode != 0:
            raise RuntimeError(f"Failed to kill container: {killed.stderr.strip()}")

    def cleanup_stale(self, include_running: bool = False) -> CleanupSummary:
        """Remove exited managed containers, and running ones when asked.

        Running sandboxes outlive a run only when the supervising process died.

        Example:
            ```python
            summary = backend.cleanup_stale(include_running=True)
            ```
        """
        removed = 0
        for container in self.list_containers(all_states=True):
            if container.state == "running" and not include_running:
                continue
            if self._run_docker(["rm", "-f", container.id]).returncode == 0:
                removed += 1
        return CleanupSummary(removed_containers=removed)

    def _ensure_managed_container(self, container_id: str) -> None:
        check = self._run_docker(
            ["inspect", "-f", f'{{{{ index .Config.Labels "{MANAGED_LABEL}" }}}}', container_id]
        )
        if check.returncode != 0 or check.stdout.strip() != MANAGED_LABEL_VALUE:
            raise ValueError(
                f"Container '{container_id}' is not managed by ramio-runner and cannot be modified"
            )

    def _run_docker(self, args: list[str]) -> subprocess.CompletedProcess[str]:
        """Run a Docker CLI command against the configured target.

        Example:
            ```python
            completed = backend._run_docker(["ps"])
            ```
        """
        try:
            return subprocess.run(
                [*self._docker_prefix(), *args],
                capture_output=True,
                text=True,
                check=False,
                env=self._docker_env(),
            )
        except OSError as exc:
            raise RuntimeError(f"Failed to run Docker CLI: {exc}") from exc

    def _docker_prefix(self) -> list[str]:
        cmd = [self._config.docker_binary]
        if self._config.docker_context:
            cmd.extend(["--context", self._config.docker_context])
        return cmd

    def _docker_env(self) -> dict[str, str]:
        """Build environment variables for Docker CLI targeting.

        Example:
            ```python
            env = backend._docker_env()
            ```
        """
        env = dict(os.environ)
        if self._config.docker_host:
            env["DOCKER_HOST"] = self._config.docker_host
        return env
