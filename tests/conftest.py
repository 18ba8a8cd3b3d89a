from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional, Sequence

import pytest

from marionette.errors import ConnectionError
from marionette.executors import CommandResult, Executor, PathLike, sha256_bytes
from marionette.types import HostConfig

Responder = Callable[[list[str]], tuple[int, str]]


class FakeExecutor(Executor):
    """In-memory host: a dict of files, a set of directories and scripted commands."""

    def __init__(
        self,
        host: HostConfig,
        *,
        responder: Optional[Responder] = None,
        files: Optional[dict[str, str]] = None,
        connect_failures: int = 0,
        dry_run: bool = False,
        timeout: Optional[float] = None,
    ):
        super().__init__(host, dry_run=dry_run, timeout=timeout)
        self.responder = responder or (lambda command: (0, ""))
        self.files: dict[str, str] = dict(files or {})
        self.dirs: set[str] = set()
        self.modes: dict[str, int] = {}
        self.calls: list[tuple[list[str], bool]] = []
        self.writes: list[str] = []
        self.connect_failures = connect_failures
        self.connect_attempts = 0
        self.closed = False

    def connect(self) -> None:
        self.connect_attempts += 1
        if self.connect_attempts <= self.connect_failures:
            raise ConnectionError(f"timed out connecting to {self.host.name}", host=self.host.name)

    def close(self) -> None:
        self.closed = True

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
        cmd = list(command)
        self.calls.append((cmd, mutable))
        rc, out = self.responder(cmd)
        result = CommandResult(cmd, out, "", rc)
        if check:
            self._check_result(result)
        return result

    @property
    def mutations(self) -> list[list[str]]:
        return [cmd for cmd, mutable in self.calls if mutable] + [[w] for w in self.writes]

    def read_file(self, path: PathLike) -> Optional[str]:
        return self.files.get(str(path))

    def file_checksum(self, path: PathLike) -> Optional[str]:
        content = self.files.get(str(path))
        return None if content is None else sha256_bytes(content.encode())

    def file_mode(self, path: PathLike) -> Optional[int]:
        return self.modes.get(str(path))

    def path_exists(self, path: PathLike) -> bool:
        return str(path) in self.files or str(path) in self.dirs

    def is_dir(self, path: PathLike) -> bool:
        return str(path) in self.dirs

    def copy_file(self, src: Path, dst: PathLike, *, mode: Optional[int] = None) -> None:
        self.write_file(dst, content=Path(src).read_text(), mode=mode)

    def write_file(self, path: PathLike, *, content: str, mode: Optional[int] = None) -> None:
        self.writes.append(str(path))
        self.files[str(path)] = content
        if mode is not None:
            self.modes[str(path)] = mode

    def ensure_directory(self, path: PathLike, *, mode: Optional[int] = None) -> None:
        self.writes.append(str(path))
        self.dirs.add(str(path))
        if mode is not None:
            self.modes[str(path)] = mode

    def chmod(self, path: PathLike, mode: int) -> None:
        self.writes.append(str(path))
        self.modes[str(path)] = mode

    def remove_path(self, path: PathLike) -> bool:
        key = str(path)
        if key not in self.files and key not in self.dirs:
            return False
        self.writes.append(key)
        self.files.pop(key, None)
        self.dirs.discard(key)
        return True


@pytest.fixture
def fake_executor_cls():
    return FakeExecutor


@pytest.fixture
def local_host() -> HostConfig:
    return HostConfig(name="local")
