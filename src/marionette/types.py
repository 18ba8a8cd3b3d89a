from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from .inventory import Inventory

DEFAULT_PORT = 22
DEFAULT_USER = "root"


@dataclass(frozen=True)
class HostConfig:
    name: str
    connection: str = "local"
    address: Optional[str] = None
    port: int = DEFAULT_PORT
    user: str = DEFAULT_USER
    credential: Any = field(default=None, compare=False, hash=False)
    groups: frozenset[str] = frozenset()
    variables: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def target(self) -> str:
        return self.address or self.name


@dataclass
class ActionSpec:
    type: str
    data: dict[str, Any]
    depends_on: list[str] = field(default_factory=list)
    notify: list[str] = field(default_factory=list)


@dataclass
class TaskSpec:
    name: str
    hosts: list[str]
    actions: list[ActionSpec]


@dataclass
class HandlerSpec:
    name: str
    actions: list[ActionSpec]
    hosts: list[str] = field(default_factory=list)


@dataclass
class PlanDocument:
    """Plan as declared, before inventory defaults and validation."""

    defaults: dict[str, Any] = field(default_factory=dict)
    nodes: list[dict[str, Any]] = field(default_factory=list)
    groups: dict[str, list[str]] = field(default_factory=dict)
    tasks: list[TaskSpec] = field(default_factory=list)
    handlers: list[HandlerSpec] = field(default_factory=list)


@dataclass
class Plan:
    inventory: Inventory
    tasks: list[TaskSpec]
    handlers: list[HandlerSpec] = field(default_factory=list)

    @property
    def hosts(self) -> dict[str, HostConfig]:
        return self.inventory.hosts


class TaskStatus(str, Enum):
    CHANGED = "changed"
    SKIPPED = "skipped"
    FAILED = "failed"
    INDETERMINATE = "indeterminate"


class ConnectionState(str, Enum):
    PENDING = "pending"
    CONNECTED = "connected"
    FAILED = "failed"
    UNREACHABLE = "unreachable"


_ALLOWED_TRANSITIONS = {
    ConnectionState.PENDING: {ConnectionState.CONNECTED, ConnectionState.UNREACHABLE},
    ConnectionState.CONNECTED: {ConnectionState.FAILED},
    ConnectionState.FAILED: set(),
    ConnectionState.UNREACHABLE: set(),
}


@dataclass
class ActionResult:
    host: str
    action: str
    status: TaskStatus
    details: str
    task_id: Optional[str] = None
    resource: Optional[str] = None
    handler: bool = False
    attempts: int = 1
    duration_ms: int = 0

    @property
    def changed(self) -> bool:
        return self.status is TaskStatus.CHANGED

    @property
    def failed(self) -> bool:
        return self.status in (TaskStatus.FAILED, TaskStatus.INDETERMINATE)

    def to_dict(self) -> dict[str, Any]:
        return {
            "host": self.host,
            "action": self.action,
            "task_id": self.task_id,
            "resource": self.resource,
            "status": self.status.value,
            "details": self.details,
            "handler": self.handler,
            "attempts": self.attempts,
            "duration_ms": self.duration_ms,
        }


@dataclass
class HostResult:
    host: str
    state: ConnectionState = ConnectionState.PENDING
    results: list[ActionResult] = field(default_factory=list)
    error: Optional[str] = None
    attempts: int = 0

    def transition(self, new_state: ConnectionState) -> None:
        if new_state not in _ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(
                f"host {self.host}: illegal connection transition {self.state.value} -> {new_state.value}"
            )
        self.state = new_state

    @property
    def failed(self) -> bool:
        if self.state is ConnectionState.UNREACHABLE:
            return True
        return any(result.failed for result in self.results)

    def to_dict(self) -> dict[str, Any]:
        return {
            "host": self.host,
            "state": self.state.value,
            "error": self.error,
            "connect_attempts": self.attempts,
            "results": [result.to_dict() for result in self.results],
        }


@dataclass
class RunResult:
    hosts: dict[str, HostResult] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def results(self) -> list[ActionResult]:
        return [result for host in self.hosts.values() for result in host.results]

    @property
    def ok(self) -> bool:
        return not self.failed_hosts

    @property
    def failed_hosts(self) -> list[str]:
        return [name for name, host in self.hosts.items() if host.failed]

    @property
    def unreachable_hosts(self) -> list[str]:
        return [
            name for name, host in self.hosts.items() if host.state is ConnectionState.UNREACHABLE
        ]

    def result_for(self, host: str, task_id: str) -> Optional[ActionResult]:
        host_result = self.hosts.get(host)
        if host_result is None:
            return None
        for result in host_result.results:
            if result.task_id == task_id:
                return result
        return None

    def summary(self) -> dict[str, int]:
        counts = {status.value: 0 for status in TaskStatus}
        for result in self.results:
            counts[result.status.value] += 1
        counts["unreachable"] = len(self.unreachable_hosts)
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "cancelled": self.cancelled,
            "summary": self.summary(),
            "hosts": {name: host.to_dict() for name, host in self.hosts.items()},
        }
