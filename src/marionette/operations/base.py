from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from ..types import HostConfig
from ..executors import Executor

RESOURCE_KEYS = ("resource", "name", "dest", "path", "service")


class Operation(ABC):
    """Shared surface for runnable automation actions.

    ``check`` is a read-only probe that reports whether the host already
    matches ``self.spec``; ``apply`` converges the host and returns a short
    detail string. One instance serves every host a task targets, so
    neither may keep per-host state on ``self``.
    """

    idempotent = True

    def __init__(self, spec: dict[str, Any]):
        self.spec = spec

    @property
    def resource(self) -> Optional[str]:
        return resource_name(self.spec)

    @abstractmethod
    def check(self, host: HostConfig, executor: Executor) -> bool:
        """Return True when ``host`` already satisfies the operation."""

    @abstractmethod
    def apply(self, host: HostConfig, executor: Executor) -> str:
        """Perform the operation against ``host`` using ``executor``."""


def resource_name(data: dict[str, Any]) -> Optional[str]:
    for key in RESOURCE_KEYS:
        value = data.get(key)
        if value:
            return str(value)
    pkgs = data.get("packages")
    if isinstance(pkgs, (list, tuple)) and pkgs:
        rendered = ",".join(str(p) for p in pkgs[:3])
        if len(pkgs) > 3:
            rendered += ",..."
        return rendered
    return None


def parse_mode(value: Optional[Any]) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if not text:
        return None
    base = 8 if text.startswith("0") else 10
    return int(text, base)


def coerce_bool(value: Any | None) -> bool | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "yes", "on", "1"}:
            return True
        if lowered in {"false", "no", "off", "0"}:
            return False
        raise ValueError(f"Unable to interpret boolean value '{value}'")
    return bool(value)
