from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Optional

try:
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore[no-redef]

from .types import DEFAULT_PORT, DEFAULT_USER

DEFAULT_CONFIG = Path("/etc/marionette/main.conf")
DEFAULT_PLAN = Path("/etc/marionette/plan.mpp")
HOST_KEY_POLICIES = {"auto-add", "reject", "warn"}


@dataclass(frozen=True)
class MarionetteConfig:
    plan: Path = DEFAULT_PLAN
    forks: int = 5
    default_user: str = DEFAULT_USER
    default_port: int = DEFAULT_PORT
    connect_timeout: float = 10.0
    task_timeout: float = 300.0
    connect_retries: int = 3
    retry_backoff: float = 1.0
    retry_backoff_max: float = 30.0
    force_handlers: bool = False
    host_key_policy: str = "auto-add"
    known_hosts: Optional[Path] = None
    report: Optional[Path] = None
    plugin_dirs: list[Path] = field(default_factory=list)
    plugin_modules: list[str] = field(default_factory=list)

    def validate(self) -> "MarionetteConfig":
        if self.forks < 1:
            raise ValueError("forks must be at least 1")
        if not 0 < self.default_port < 65536:
            raise ValueError(f"default_port {self.default_port} is out of range")
        if self.connect_retries < 1:
            raise ValueError("connect_retries must be at least 1")
        for name in ("connect_timeout", "task_timeout", "retry_backoff_max"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.retry_backoff < 0:
            raise ValueError("retry_backoff must not be negative")
        if self.host_key_policy not in HOST_KEY_POLICIES:
            allowed = ", ".join(sorted(HOST_KEY_POLICIES))
            raise ValueError(f"host_key_policy must be one of: {allowed}")
        return self

    def override(self, **changes: Any) -> "MarionetteConfig":
        """Return a copy with every non-None value in ``changes`` applied."""
        applied = {key: value for key, value in changes.items() if value is not None}
        return replace(self, **applied)


def load_config(path: Path) -> MarionetteConfig:
    if not path.exists():
        return MarionetteConfig()
    try:
        data = tomllib.loads(path.read_text())
    except tomllib.TOMLDecodeError as exc:
        raise ValueError(f"{path}: {exc}") from None
    defaults = data.get("defaults", {})
    base = MarionetteConfig()
    known_hosts = defaults.get("known_hosts")
    report = defaults.get("report")
    cfg = MarionetteConfig(
        plan=Path(defaults.get("plan", DEFAULT_PLAN)),
        forks=int(defaults.get("forks", base.forks)),
        default_user=str(defaults.get("default_user", base.default_user)),
        default_port=int(defaults.get("default_port", base.default_port)),
        connect_timeout=float(defaults.get("connect_timeout", base.connect_timeout)),
        task_timeout=float(defaults.get("task_timeout", base.task_timeout)),
        connect_retries=int(defaults.get("connect_retries", base.connect_retries)),
        retry_backoff=float(defaults.get("retry_backoff", base.retry_backoff)),
        retry_backoff_max=float(defaults.get("retry_backoff_max", base.retry_backoff_max)),
        force_handlers=bool(defaults.get("force_handlers", base.force_handlers)),
        host_key_policy=str(defaults.get("host_key_policy", base.host_key_policy)),
        known_hosts=Path(known_hosts).expanduser() if known_hosts else None,
        report=Path(report) if report else None,
        plugin_dirs=[Path(p) for p in defaults.get("plugin_dirs", [])],
        plugin_modules=[str(m) for m in defaults.get("plugin_modules", [])],
    )
    return cfg.validate()
