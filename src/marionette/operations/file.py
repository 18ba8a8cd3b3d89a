from __future__ import annotations

from pathlib import PurePosixPath
from typing import Any

from .base import Operation, parse_mode
from ..executors import Executor
from ..types import HostConfig


class FileOperation(Operation):
    """Ensure a path is a directory or absent."""

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        raw_path = spec.get("path") or spec.get("name")
        if not raw_path:
            raise ValueError("file operation requires a path")
        self.path = PurePosixPath(str(raw_path))
        self.state = str(spec.get("state", "directory"))
        if self.state not in {"absent", "directory"}:
            raise ValueError("file operation state must be 'directory' or 'absent' (use copy for content)")
        self.mode = parse_mode(spec.get("mode"))

    def check(self, host: HostConfig, executor: Executor) -> bool:
        if self.state == "absent":
            return not executor.path_exists(self.path)
        if not executor.is_dir(self.path):
            return False
        return self.mode is None or executor.file_mode(self.path) == self.mode

    def apply(self, host: HostConfig, executor: Executor) -> str:
        if self.state == "absent":
            return "removed" if executor.remove_path(self.path) else "noop"
        reasons: list[str] = []
        if not executor.is_dir(self.path):
            reasons.append("created")
        if self.mode is not None and executor.file_mode(self.path) != self.mode:
            reasons.append(f"mode->{self.mode:04o}")
        executor.ensure_directory(self.path, mode=self.mode)
        return ", ".join(reasons) if reasons else "noop"
