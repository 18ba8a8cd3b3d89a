from __future__ import annotations

import logging
from pathlib import PurePosixPath
from string import Template
from typing import Any, Optional

from .base import Operation
from ..errors import TaskError
from ..executors import CommandResult, Executor
from ..secrets import SecretResolver
from ..types import HostConfig

logger = logging.getLogger(__name__)

# guard name -> return code predicate meaning "nothing left to do"
GUARDS = {
    "only_if": lambda rc: rc != 0,
    "unless": lambda rc: rc == 0,
}


class ExecOperation(Operation):
    """Run a shell command, optionally guarded like Puppet's exec.

    ``creates`` skips the command once a path exists; ``only_if`` and
    ``unless`` are probe commands whose exit status decides. Commands and
    guards may reference ``${var}`` from the host variables, the action's
    own ``variables`` plus ``inventory_hostname`` and ``address``.
    Without any guard the command is not idempotent: it always runs and a
    failure leaves the host state unknown.
    """

    secret_resolver = SecretResolver()

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        if not spec.get("name"):
            raise ValueError("exec operation requires a name")
        self.name = str(spec["name"])
        self.command = spec.get("command", spec.get("cmd"))
        if self.command is None:
            raise ValueError("exec operation requires a command")
        self.guards = {key: spec[key] for key in GUARDS if spec.get(key)}
        self.cwd = PurePosixPath(str(spec["cwd"])) if spec.get("cwd") else None
        self.creates = _relative_to(spec.get("creates"), self.cwd)
        self.env = _parse_env(spec.get("env", spec.get("environment")))
        self.returns = _parse_returns(spec.get("returns", 0))
        self.timeout = _parse_timeout(spec.get("timeout"))
        variables = spec.get("variables") or {}
        if not isinstance(variables, dict):
            raise ValueError("exec variables must be a mapping")
        self.variables = variables
        self.idempotent = self.creates is not None or bool(self.guards)

    def check(self, host: HostConfig, executor: Executor) -> bool:
        if self.creates is not None and executor.path_exists(self.creates):
            logger.debug("exec name=%s satisfied creates=%s", self.name, self.creates)
            return True
        context = self._context(host)
        for key, satisfied in GUARDS.items():
            if key not in self.guards:
                continue
            result = self._run(executor, self.guards[key], context, mutable=False)
            if satisfied(result.returncode):
                logger.debug("exec name=%s satisfied %s rc=%s", self.name, key, result.returncode)
                return True
        return False

    def apply(self, host: HostConfig, executor: Executor) -> str:
        result = self._run(executor, self.command, self._context(host), mutable=True)
        if result.returncode not in self.returns:
            logger.debug("exec name=%s rc=%s cmd=%s", self.name, result.returncode, " ".join(result.command))
            raise TaskError(_failure_detail(result), task=self.name)
        return f"ran (rc={result.returncode})"

    def _context(self, host: HostConfig) -> dict[str, Any]:
        context = {"inventory_hostname": host.name, "address": host.target}
        context.update(host.variables)
        context.update(self.variables)
        return self.secret_resolver.resolve(context)

    def _run(self, executor: Executor, command: Any, context: dict[str, Any], *, mutable: bool) -> CommandResult:
        return executor.run(
            _render(command, context),
            check=False,
            mutable=mutable,
            env=self.env,
            cwd=self.cwd,
            timeout=self.timeout,
        )


def _render(command: Any, context: dict[str, Any]) -> list[str]:
    if isinstance(command, str):
        return ["sh", "-c", Template(command).safe_substitute(context)]
    if isinstance(command, (list, tuple)):
        return [Template(str(part)).safe_substitute(context) for part in command]
    raise ValueError("exec command and guards must be a string or a list")


def _relative_to(path: Optional[Any], cwd: Optional[PurePosixPath]) -> Optional[PurePosixPath]:
    if not path:
        return None
    resolved = PurePosixPath(str(path))
    if resolved.is_absolute() or cwd is None:
        return resolved
    return cwd / resolved


def _parse_env(value: Any) -> Optional[dict[str, str]]:
    if value is None:
        return None
    if isinstance(value, dict):
        return {str(k): str(v) for k, v in value.items()}
    if not isinstance(value, (list, tuple)):
        raise ValueError("exec env must be a mapping or a list of KEY=VALUE strings")
    env = {}
    for item in value:
        key, sep, val = str(item).partition("=")
        if not sep:
            raise ValueError(f"exec env entry {item!r} is not KEY=VALUE")
        env[key] = val
    return env


def _parse_returns(value: Any) -> frozenset[int]:
    codes = value if isinstance(value, (list, tuple)) else [value]
    try:
        return frozenset(int(code) for code in codes)
    except (TypeError, ValueError):
        raise ValueError("exec returns must be an int or a list of ints") from None


def _parse_timeout(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValueError("exec timeout must be numeric") from None


def _failure_detail(result: CommandResult) -> str:
    for text in (result.stderr, result.stdout):
        lines = (text or "").strip().splitlines()
        if lines:
            first = lines[0]
            if len(first) > 160:
                first = first[:157] + "..."
            return f"rc={result.returncode}: {first}"
    return f"rc={result.returncode}"
