from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from ..types import Language


@dataclass(slots=True)
class SandboxProcess:
    """Handle to one running sandbox.

    `launcher_exit_codes` lists exit statuses that mean the sandbox runtime
    failed to start the program rather than the program itself exiting.

    Example:
        ```python
        handle = SandboxProcess(process=proc, name="ramio-runner-1a2b", launcher_exit_codes=frozenset({125}))
        ```
    """

    process: asyncio.subprocess.Process
    name: str
    launcher_exit_codes: frozenset[int] = field(default_factory=frozenset)

    @property
    def running(self) -> bool:
        return self.process.returncode is None


class SandboxBackend(Protocol):
    async def launch(self, workspace_path: Path, language: Language) -> SandboxProcess:
        """Start the test command for `language` inside a new sandbox over `workspace_path`.

        Raises `LauncherError` when the sandbox cannot be started.

        Example:
            ```python
            handle = await backend.launch(ws.path, Language.PYTHON)
            ```
        """
        ...

    async def terminate(self, handle: SandboxProcess) -> None:
        """Forcibly stop the sandbox. Must not be catchable by the sandboxed program.

        Example:
            ```python
            await backend.terminate(handle)
            ```
        """
        ...
