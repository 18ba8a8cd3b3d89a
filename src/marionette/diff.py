from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Optional, Sequence
import logging

from .errors import ProbeError
from .executors import CommandResult, Executor, PathLike
from .types import HostConfig

logger = logging.getLogger(__name__)


class Check(str, Enum):
    SATISFIED = "satisfied"
    UNSATISFIED = "unsatisfied"


class ReadOnlyExecutor(Executor):
    """Wraps an executor so only read-only primitives reach the host."""

    def __init__(self, inner: Executor):
        super().__init__(inner.host, dry_run=inner.dry_run, timeout=inner.timeout)
        self.inner = inner

    def run(
        self,
        command: Sequence[str],
        *,
        check: bool = True,
        mutable: bool = True,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[PathLike] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        if mutable:
            raise ProbeError(f"probe attempted a mutating command: {' '.join(command)}")
        return self.inner.run(command, check=check, mutable=False, env=env, cwd=cwd, timeout=timeout)

    def read_file(self, path: PathLike) -> Optional[str]:
        return self.inner.read_file(path)

    def file_checksum(self, path: PathLike) -> Optional[str]:
        return self.inner.file_checksum(path)

    def file_mode(self, path: PathLike) -> Optional[int]:
        return self.inner.file_mode(path)

    def path_exists(self, path: PathLike) -> bool:
        return self.inner.path_exists(path)

    def is_dir(self, path: PathLike) -> bool:
        return self.inner.is_dir(path)

    def copy_file(self, src: Path, dst: PathLike, *, mode: Optional[int] = None) -> None:
        raise ProbeError(f"probe attempted to copy {src} to {dst}")

    def write_file(self, path: PathLike, *, content: str, mode: Optional[int] = None) -> None:
        raise ProbeError(f"probe attempted to write {path}")

    def ensure_directory(self, path: PathLike, *, mode: Optional[int] = None) -> None:
        raise ProbeError(f"probe attempted to create {path}")

    def chmod(self, path: PathLike, mode: int) -> None:
        raise ProbeError(f"probe attempted to chmod {path}")

    def remove_path(self, path: PathLike) -> bool:
        raise ProbeError(f"probe attempted to remove {path}")


class DiffEngine:
    """Decides, before any mutation, whether a task is already applied."""

    def check(self, operation, host: HostConfig, executor: Executor) -> Check:
        satisfied = operation.check(host, ReadOnlyExecutor(executor))
        state = Check.SATISFIED if satisfied else Check.UNSATISFIED
        logger.debug("probe host=%s operation=%s state=%s", host.name, type(operation).__name__, state.value)
        return state
