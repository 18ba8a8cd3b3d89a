from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .base import Operation, coerce_bool
from ..executors import Executor
from ..types import HostConfig

logger = logging.getLogger(__name__)


class ServiceManager:
    name = "generic"
    binary = ""

    def is_enabled(self, executor: Executor, service: str) -> bool:
        raise NotImplementedError

    def is_service_running(self, executor: Executor, service: str) -> bool:
        raise NotImplementedError

    def enable(self, executor: Executor, service: str) -> None:
        raise NotImplementedError

    def disable(self, executor: Executor, service: str) -> None:
        raise NotImplementedError

    def start(self, executor: Executor, service: str) -> None:
        raise NotImplementedError

    def stop(self, executor: Executor, service: str) -> None:
        raise NotImplementedError

    def restart_service(self, executor: Executor, service: str) -> None:
        raise NotImplementedError


@dataclass
class SystemCtl(ServiceManager):
    executable: str = "systemctl"
    name = "systemd"
    binary = "systemctl"

    def is_enabled(self, executor: Executor, service: str) -> bool:
        result = executor.run([self.executable, "is-enabled", service], check=False, mutable=False)
        return result.returncode == 0

    def is_service_running(self, executor: Executor, service: str) -> bool:
        result = executor.run([self.executable, "is-active", service], check=False, mutable=False)
        return result.returncode == 0

    def enable(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "enable", service])

    def disable(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "disable", service])

    def start(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "start", service])

    def stop(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "stop", service])

    def restart_service(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "restart", service])


@dataclass
class OpenRC(ServiceManager):
    runlevel: str = "default"
    name = "openrc"
    binary = "rc-service"

    def is_enabled(self, executor: Executor, service: str) -> bool:
        result = executor.run(["rc-update", "show", self.runlevel], check=False, mutable=False)
        if result.returncode != 0:
            return False
        pattern = re.compile(rf"^\s*{re.escape(service)}\s*\|", re.MULTILINE)
        return bool(pattern.search(result.stdout))

    def is_service_running(self, executor: Executor, service: str) -> bool:
        result = executor.run(["rc-service", service, "status"], check=False, mutable=False)
        return result.returncode == 0

    def enable(self, executor: Executor, service: str) -> None:
        executor.run(["rc-update", "add", service, self.runlevel])

    def disable(self, executor: Executor, service: str) -> None:
        executor.run(["rc-update", "del", service, self.runlevel])

    def start(self, executor: Executor, service: str) -> None:
        executor.run(["rc-service", service, "start"])

    def stop(self, executor: Executor, service: str) -> None:
        executor.run(["rc-service", service, "stop"])

    def restart_service(self, executor: Executor, service: str) -> None:
        executor.run(["rc-service", service, "restart"])


SERVICE_MANAGERS: dict[str, type[ServiceManager]] = {
    "systemd": SystemCtl,
    "openrc": OpenRC,
}


def detect_service_manager(executor: Executor, preferred: Optional[str] = None) -> ServiceManager:
    if preferred:
        try:
            return SERVICE_MANAGERS[preferred]()
        except KeyError:
            raise ValueError(f"Unknown service manager '{preferred}'") from None
    for manager_cls in SERVICE_MANAGERS.values():
        probe = executor.run(["sh", "-c", f"command -v {manager_cls.binary}"], check=False, mutable=False)
        if probe.returncode == 0:
            return manager_cls()
    raise RuntimeError(f"No supported service manager found on {executor.host.name}")


class ServiceOperation(Operation):
    """Manage systemd or OpenRC services."""

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        raw_name = spec.get("name")
        if not raw_name:
            raise ValueError("service operation requires a name")
        self.name = str(raw_name)
        self._enabled = coerce_bool(spec.get("enabled"))
        self._state = spec.get("state")
        if coerce_bool(spec.get("restart", False)):
            self._state = "restarted"
        if self._state not in {None, "running", "stopped", "restarted"}:
            raise ValueError("service state must be 'running', 'stopped' or 'restarted'")
        self.preferred_manager = spec.get("manager")
        if self.preferred_manager is not None and self.preferred_manager not in SERVICE_MANAGERS:
            raise ValueError(f"Unknown service manager '{self.preferred_manager}'")
    def check(self, host: HostConfig, executor: Executor) -> bool:
        return not self._pending(detect_service_manager(executor, self.preferred_manager), executor)

    def apply(self, host: HostConfig, executor: Executor) -> str:
        steps = self._pending(detect_service_manager(executor, self.preferred_manager), executor)
        for verb, step in steps:
            logger.debug("service name=%s host=%s %s", self.name, host.name, verb)
            step(executor, self.name)
        return ", ".join(verb for verb, _ in steps) or "noop"

    def _pending(self, manager: ServiceManager, executor: Executor) -> list[tuple[str, Callable[[Executor, str], None]]]:
        """Steps still needed to converge, in the order they must run."""
        steps: list[tuple[str, Callable[[Executor, str], None]]] = []
        if self._enabled is not None and manager.is_enabled(executor, self.name) != self._enabled:
            steps.append(("enabled", manager.enable) if self._enabled else ("disabled", manager.disable))
        if self._state == "restarted":
            steps.append(("restarted", manager.restart_service))
        elif self._state is not None:
            want_running = self._state == "running"
            if manager.is_service_running(executor, self.name) != want_running:
                steps.append(("started", manager.start) if want_running else ("stopped", manager.stop))
        return steps
