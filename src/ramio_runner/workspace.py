from __future__ import annotations

import contextlib
import os
import shutil
import stat
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

import structlog

from .errors import ResourceExhaustion
from .languages import LanguageProfile, profile_for
from .types import Language

logger = structlog.get_logger(__name__)

WORKSPACE_PREFIX = "ramio-runner-"
_DIR_MODE = 0o755
_FILE_MODE = 0o644


@dataclass(frozen=True, slots=True)
class Workspace:
    """Ephemeral per-run directory holding the candidate and test files.

    Example:
        ```python
        ws = Workspace(path=Path("/tmp/ramio-runner-abc123"))
        ```
    """

    path: Path

    @property
    def name(self) -> str:
        return self.path.name


class WorkspaceProvisioner:
    """Create, fill and delete per-run workspaces under one shared root.

    Example:
        ```python
        provisioner = WorkspaceProvisioner("/tmp")
        with provisioner.provision(code, tests, Language.PYTHON) as ws:
            ...
        ```
    """

    def __init__(self, root: str | os.PathLike[str] | None = None) -> None:
        self._root = Path(root) if root is not None else Path(tempfile.gettempdir())

    @property
    def root(self) -> Path:
        return self._root

    def acquire(self) -> Workspace:
        """Allocate a fresh, uniquely named workspace directory.

        Example:
            ```python
            ws = provisioner.acquire()
            ```
        """
        try:
            path = Path(tempfile.mkdtemp(prefix=WORKSPACE_PREFIX, dir=self._root))
        except OSError as exc:
            raise ResourceExhaustion(
                f"Could not allocate workspace under {self._root}: {exc.strerror or exc}"
            ) from exc
        try:
            # Readable by the unprivileged user inside the sandbox; the mount is read-only.
            path.chmod(_DIR_MODE)
        except OSError as exc:
            shutil.rmtree(path, ignore_errors=True)
            raise ResourceExhaustion(
                f"Could not allocate workspace under {self._root}: {exc.strerror or exc}"
            ) from exc
        return Workspace(path=path)

    def write(
        self,
        workspace: Workspace,
        candidate_source: str,
        test_source: str,
        language: Language | str = Language.PYTHON,
    ) -> LanguageProfile:
        """Write the candidate and test files at the language's fixed names.

        Files are flushed to disk before this returns.

        Example:
            ```python
            provisioner.write(ws, "def add(a, b): return a + b", tests, Language.PYTHON)
            ```
        """
        profile = profile_for(language)
        try:
            _write_synced(workspace.path / profile.solution_filename, candidate_source)
            _write_synced(workspace.path / profile.test_filename, test_source)
        except OSError as exc:
            raise ResourceExhaustion(
                f"Could not write workspace {workspace.path}: {exc.strerror or exc}"
            ) from exc
        return profile

    def release(self, workspace: Workspace) -> None:
        """Delete the workspace tree. Failures are logged, never raised.

        Example:
            ```python
            provisioner.release(ws)
            ```
        """
        try:
            shutil.rmtree(workspace.path, onexc=_force_remove)
        except FileNotFoundError:
            return
        except OSError as exc:
            logger.warning(
                "workspace_release_failed",
                workspace=str(workspace.path),
                error=str(exc),
            )

    @contextlib.contextmanager
    def provision(
        self,
        candidate_source: str,
        test_source: str,
        language: Language | str = Language.PYTHON,
    ) -> Iterator[Workspace]:
        """Yield a written workspace and release it on every exit path.

        Example:
            ```python
            with provisioner.provision(code, tests) as ws:
                run_in_sandbox(ws.path)
            ```
        """
        workspace = self.acquire()
        try:
            self.write(workspace, candidate_source, test_source, language)
            yield workspace
        finally:
            self.release(workspace)


def _write_synced(path: Path, content: str) -> None:
    with open(path, "w", encoding="utf-8", newline="") as handle:
        handle.write(content)
        handle.flush()
        os.fsync(handle.fileno())
    path.chmod(_FILE_MODE)


def _force_remove(func, path: str, exc: BaseException) -> None:
    """Retry a failed removal after making the entry and its parent writable."""
    if isinstance(exc, FileNotFoundError):
        return
    parent = os.path.dirname(path)
    with contextlib.suppress(OSError):
        os.chmod(parent, stat.S_IRWXU)
    os.chmod(path, stat.S_IRWXU)
    func(path)
