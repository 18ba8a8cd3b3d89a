from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass
from typing import Any, Optional

from .errors import GraphError
from .inventory import Inventory
from .operations import OPERATION_REGISTRY, Operation
from .operations.base import resource_name
from .types import ActionSpec, HostConfig, Plan

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GraphTask:
    id: str
    name: str
    action: ActionSpec
    operation: Operation
    selector: tuple[str, ...]
    notify: tuple[str, ...] = ()
    prerequisites: tuple[str, ...] = ()
    timeout: Optional[float] = None

    @property
    def type(self) -> str:
        return self.action.type

    @property
    def resource(self) -> Optional[str]:
        return self.operation.resource

    @property
    def idempotent(self) -> bool:
        return bool(getattr(self.operation, "idempotent", True))


@dataclass(frozen=True)
class GraphHandler:
    name: str
    tasks: tuple[GraphTask, ...]
    selector: tuple[str, ...]


class TaskGraph:
    """Validated, dependency-ordered tasks and handlers for one plan.

    Building the graph instantiates every operation, so malformed actions,
    unknown prerequisites, undeclared handlers and cycles all surface as
    :class:`GraphError` before any host is contacted.
    """

    def __init__(self, tasks: list[GraphTask], handlers: list[GraphHandler], inventory: Inventory):
        self.tasks = tasks
        self.handlers = handlers
        self.inventory = inventory
        self._targets: dict[str, frozenset[str]] = {}
        for item in [*tasks, *(t for h in handlers for t in h.tasks)]:
            self._targets[item.id] = frozenset(host.name for host in inventory.resolve(item.selector))

    @classmethod
    def build(cls, plan: Plan, inventory: Optional[Inventory] = None) -> "TaskGraph":
        inventory = inventory or plan.inventory
        handler_names: list[str] = []
        for handler in plan.handlers:
            if handler.name in handler_names:
                raise GraphError(f"handler '{handler.name}' is declared more than once")
            handler_names.append(handler.name)

        ids: set[str] = set()
        declared: list[GraphTask] = []
        for task in plan.tasks:
            if not task.hosts:
                raise GraphError(f"task '{task.name}' has no host selector")
            for action in task.actions:
                graph_task = cls._make_task(action, task.name, tuple(task.hosts), ids, len(declared) + 1)
                unknown = [name for name in graph_task.notify if name not in handler_names]
                if unknown:
                    raise GraphError(
                        f"task '{task.name}' action '{graph_task.id}' notifies undeclared handler(s): "
                        + ", ".join(unknown)
                    )
                declared.append(graph_task)

        handlers: list[GraphHandler] = []
        for handler in plan.handlers:
            selector = tuple(handler.hosts) or ("all",)
            handler_tasks = []
            for action in handler.actions:
                if action.notify or action.depends_on:
                    raise GraphError(f"handler '{handler.name}' actions cannot notify or depend on tasks")
                handler_tasks.append(
                    cls._make_task(action, f"handler:{handler.name}", selector, ids, len(ids) + 1)
                )
            handlers.append(GraphHandler(name=handler.name, tasks=tuple(handler_tasks), selector=selector))

        ordered = cls._order(declared)
        logger.debug("graph tasks=%s handlers=%s", len(ordered), len(handlers))
        return cls(ordered, handlers, inventory)

    @staticmethod
    def _make_task(
        action: ActionSpec,
        task_name: str,
        selector: tuple[str, ...],
        ids: set[str],
        index: int,
    ) -> GraphTask:
        operation_cls = OPERATION_REGISTRY.get(action.type)
        if not operation_cls:
            raise GraphError(f"task '{task_name}': unknown operation '{action.type}'")
        try:
            operation = operation_cls(action.data)
        except (ValueError, TypeError, KeyError) as exc:
            raise GraphError(f"task '{task_name}': invalid {action.type} action: {exc}") from exc
        name = resource_name(action.data)
        base_id = f"{action.type}.{name}" if name else f"{action.type}.__{index}"
        task_id = base_id
        suffix = 2
        while task_id in ids:
            task_id = f"{base_id}#{suffix}"
            suffix += 1
        ids.add(task_id)
        return GraphTask(
            id=task_id,
            name=task_name,
            action=action,
            operation=operation,
            selector=selector,
            notify=tuple(dict.fromkeys(action.notify)),
            prerequisites=tuple(dict.fromkeys(action.depends_on)),
            timeout=_timeout(action.data, task_name),
        )

    @staticmethod
    def _order(tasks: list[GraphTask]) -> list[GraphTask]:
        """Stable topological sort: declaration order unless a prerequisite forces otherwise."""
        position = {task.id: index for index, task in enumerate(tasks)}
        dependents: dict[str, list[str]] = {task.id: [] for task in tasks}
        in_degree: dict[str, int] = {}
        for task in tasks:
            for dep in task.prerequisites:
                if dep not in position:
                    raise GraphError(f"task '{task.name}' action '{task.id}' depends on unknown action '{dep}'")
                if dep == task.id:
                    raise GraphError(f"action '{task.id}' depends on itself")
                dependents[dep].append(task.id)
            in_degree[task.id] = len(task.prerequisites)

        ready = [position[tid] for tid, degree in in_degree.items() if degree == 0]
        heapq.heapify(ready)
        ordered: list[GraphTask] = []
        while ready:
            current = tasks[heapq.heappop(ready)]
            ordered.append(current)
            for node in dependents[current.id]:
                in_degree[node] -= 1
                if in_degree[node] == 0:
                    heapq.heappush(ready, position[node])

        if len(ordered) != len(tasks):
            cyclic = sorted(tid for tid, degree in in_degree.items() if degree > 0)
            raise GraphError("dependency cycle detected among: " + ", ".join(cyclic))
        return ordered

    def targets(self, task: GraphTask) -> frozenset[str]:
        return self._targets[task.id]

    def tasks_for(self, host: HostConfig) -> list[GraphTask]:
        return [task for task in self.tasks if host.name in self._targets[task.id]]

    def handlers_for(self, host: HostConfig) -> list[GraphHandler]:
        return [
            handler
            for handler in self.handlers
            if any(host.name in self._targets[task.id] for task in handler.tasks)
        ]

    def hosts(self) -> list[HostConfig]:
        """Hosts with at least one task, in inventory order."""
        return [host for host in self.inventory.hosts.values() if self.tasks_for(host)]


def _timeout(data: dict[str, Any], task_name: str) -> Optional[float]:
    value = data.get("timeout")
    if value is None:
        return None
    try:
        timeout = float(value)
    except (TypeError, ValueError):
        raise GraphError(f"task '{task_name}': timeout must be numeric, got {value!r}") from None
    if timeout <= 0:
        raise GraphError(f"task '{task_name}': timeout must be positive")
    return timeout
