from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from .base import Operation, coerce_bool
from ..executors import Executor
from ..types import HostConfig

logger = logging.getLogger(__name__)


@dataclass
class PackageManager:
    """Command templates for one package manager; packages are appended."""

    name: str = "generic"
    binary: str = ""
    refresh: tuple[str, ...] = ()
    add: tuple[str, ...] = ()
    delete: tuple[str, ...] = ()
    query: tuple[str, ...] = ()
    installed_marker: Optional[str] = None
    env: tuple[tuple[str, str], ...] = ()

    def ensure_present(self, executor: Executor, packages: Iterable[str]) -> tuple[bool, str]:
        needed = self.missing(executor, packages)
        if not needed:
            return False, "already-installed"
        self.install(executor, needed)
        return True, f"installed={','.join(needed)}"

    def ensure_absent(self, executor: Executor, packages: Iterable[str]) -> tuple[bool, str]:
        present = self.installed(executor, packages)
        if not present:
            return False, "already-removed"
        self.remove(executor, present)
        return True, f"removed={','.join(present)}"

    def missing(self, executor: Executor, packages: Iterable[str]) -> list[str]:
        return [pkg for pkg in packages if not self.is_installed(executor, pkg)]

    def installed(self, executor: Executor, packages: Iterable[str]) -> list[str]:
        return [pkg for pkg in packages if self.is_installed(executor, pkg)]

    def update(self, executor: Executor) -> None:
        executor.run(list(self.refresh), env=self._env())

    def install(self, executor: Executor, packages: list[str]) -> None:
        executor.run([*self.add, *packages], env=self._env())

    def remove(self, executor: Executor, packages: list[str]) -> None:
        executor.run([*self.delete, *packages], env=self._env())

    def is_installed(self, executor: Executor, package: str) -> bool:
        result = executor.run([*self.query, package], check=False, mutable=False)
        if result.returncode != 0:
            return False
        return self.installed_marker is None or self.installed_marker in result.stdout

    def _env(self) -> Optional[dict[str, str]]:
        return dict(self.env) or None


# Probed in this order when the action names no manager.
MANAGERS = {
    manager.name: manager
    for manager in (
        PackageManager(
            name="apt",
            binary="apt-get",
            refresh=("apt-get", "update"),
            add=("apt-get", "install", "-y"),
            delete=("apt-get", "remove", "-y"),
            query=("dpkg-query", "-W", "-f", "${Status}"),
            installed_marker="install ok installed",
            env=(("DEBIAN_FRONTEND", "noninteractive"),),
        ),
        PackageManager(
            name="apk",
            binary="apk",
            refresh=("apk", "update"),
            add=("apk", "add"),
            delete=("apk", "del"),
            query=("apk", "info", "-e"),
        ),
        PackageManager(
            name="dnf",
            binary="dnf",
            refresh=("dnf", "makecache"),
            add=("dnf", "install", "-y"),
            delete=("dnf", "remove", "-y"),
            query=("rpm", "-q"),
        ),
        PackageManager(
            name="yum",
            binary="yum",
            refresh=("yum", "makecache"),
            add=("yum", "install", "-y"),
            delete=("yum", "remove", "-y"),
            query=("rpm", "-q"),
        ),
        PackageManager(
            name="pacman",
            binary="pacman",
            refresh=("pacman", "-Sy"),
            add=("pacman", "-S", "--noconfirm"),
            delete=("pacman", "-R", "--noconfirm"),
            query=("pacman", "-Qi"),
        ),
    )
}


def manager_named(name: str) -> PackageManager:
    try:
        return MANAGERS[name.lower()]
    except KeyError:
        raise ValueError(f"Unknown package manager '{name}'") from None


def detect_manager(executor: Executor, preferred: Optional[str] = None) -> PackageManager:
    if preferred:
        return manager_named(preferred)
    for manager in MANAGERS.values():
        probe = executor.run(["sh", "-c", f"command -v {manager.binary}"], check=False, mutable=False)
        if probe.returncode == 0:
            return manager
    raise RuntimeError(f"No supported package manager found on {executor.host.name}")


class PackageOperation(Operation):
    """Install or remove packages using the target's package manager."""

    def __init__(self, spec: dict[str, object]):
        super().__init__(spec)
        packages = spec.get("name") or spec.get("packages")
        self.packages = [packages] if isinstance(packages, str) else [str(p) for p in packages or []]
        if not self.packages:
            raise ValueError("package operation requires at least one package")
        self.state = str(spec.get("state", "present"))
        if self.state not in {"present", "absent"}:
            raise ValueError("package operation state must be 'present' or 'absent'")
        self.update_cache = bool(coerce_bool(spec.get("update_cache", False)))
        self.manager = str(spec["manager"]) if spec.get("manager") else None
        if self.manager is not None:
            manager_named(self.manager)

    def check(self, host: HostConfig, executor: Executor) -> bool:
        manager = detect_manager(executor, self.manager)
        if self.state == "present":
            return not manager.missing(executor, self.packages)
        return not manager.installed(executor, self.packages)

    def apply(self, host: HostConfig, executor: Executor) -> str:
        manager = detect_manager(executor, self.manager)
        logger.debug("package manager=%s host=%s packages=%s", manager.name, host.name, self.packages)
        if self.state == "absent":
            _, details = manager.ensure_absent(executor, self.packages)
        else:
            if self.update_cache:
                manager.update(executor)
            _, details = manager.ensure_present(executor, self.packages)
        return f"manager={manager.name} {details}"
