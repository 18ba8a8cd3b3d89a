from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed, wait
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Optional

from .config import MarionetteConfig
from .diff import Check, DiffEngine
from .errors import ConnectionError, IndeterminateStateError, TimeoutError
from .executors import Executor, executor_for
from .graph import GraphTask, TaskGraph
from .inventory import Inventory
from .retry import call_with_retry
from .secrets import SecretResolver
from .types import ActionResult, ConnectionState, HostConfig, HostResult, RunResult, TaskStatus

logger = logging.getLogger(__name__)

ExecutorFactory = Callable[[HostConfig], Executor]
ProgressCallback = Callable[[HostConfig, GraphTask], None]


@dataclass(frozen=True)
class RunOptions:
    forks: int = 5
    dry_run: bool = False
    connect_retries: int = 3
    retry_backoff: float = 1.0
    retry_backoff_max: float = 30.0
    connect_timeout: float = 10.0
    task_timeout: float = 300.0
    force_handlers: bool = False
    host_key_policy: str = "auto-add"
    known_hosts: Optional[Path] = None

    @classmethod
    def from_config(cls, cfg: MarionetteConfig, *, dry_run: bool = False) -> "RunOptions":
        return cls(
            forks=cfg.forks,
            dry_run=dry_run,
            connect_retries=cfg.connect_retries,
            retry_backoff=cfg.retry_backoff,
            retry_backoff_max=cfg.retry_backoff_max,
            connect_timeout=cfg.connect_timeout,
            task_timeout=cfg.task_timeout,
            force_handlers=cfg.force_handlers,
            host_key_policy=cfg.host_key_policy,
            known_hosts=cfg.known_hosts,
        )


class RunContext:
    """State shared by the per-host workers of one run."""

    def __init__(self, cancel_event: Optional[threading.Event] = None):
        self.cancel_event = cancel_event or threading.Event()
        self._lock = threading.Lock()
        self._notified: dict[str, list[str]] = {}
        self._host_results: dict[str, HostResult] = {}

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def notify(self, host: str, handlers: Iterable[str]) -> None:
        with self._lock:
            queued = self._notified.setdefault(host, [])
            for name in handlers:
                if name not in queued:
                    queued.append(name)

    def notified(self, host: str) -> list[str]:
        with self._lock:
            return list(self._notified.get(host, []))

    def merge(self, host_result: HostResult) -> None:
        with self._lock:
            self._host_results[host_result.host] = host_result

    def result(self, order: Iterable[str]) -> RunResult:
        with self._lock:
            hosts = {name: self._host_results[name] for name in order if name in self._host_results}
        return RunResult(hosts=hosts, cancelled=self.cancelled)


class TaskRunner:
    """Runs a task graph against its hosts, one worker per host.

    Each host's tasks run strictly in graph order on a single executor.
    Hosts never share mutable state: workers only meet in
    :class:`RunContext`, which merges their results under a lock.
    """

    def __init__(
        self,
        graph: TaskGraph,
        inventory: Optional[Inventory] = None,
        *,
        options: Optional[RunOptions] = None,
        executor_factory: Optional[ExecutorFactory] = None,
        cancel_event: Optional[threading.Event] = None,
        progress_callback: Optional[ProgressCallback] = None,
        diff_engine: Optional[DiffEngine] = None,
        secret_resolver: Optional[SecretResolver] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.graph = graph
        self.inventory = inventory or graph.inventory
        self.options = options or RunOptions()
        self.executor_factory = executor_factory or self._default_executor
        self.cancel_event = cancel_event or threading.Event()
        self.progress_callback = progress_callback
        self.diff_engine = diff_engine or DiffEngine()
        self.secret_resolver = secret_resolver or SecretResolver()
        self.sleep = sleep

    def run(self) -> RunResult:
        context = RunContext(self.cancel_event)
        hosts = [host for host in self.inventory.hosts.values() if self.graph.tasks_for(host)]
        if not hosts:
            logger.warning("no host has any task to run")
            return context.result([])
        workers = max(1, min(self.options.forks, len(hosts)))
        logger.info("run hosts=%s forks=%s dry_run=%s", len(hosts), workers, self.options.dry_run)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="marionette") as pool:
            futures = {pool.submit(self._run_host, host, context): host for host in hosts}
            try:
                self._collect(futures, context)
            except KeyboardInterrupt:
                logger.warning("interrupted; finishing in-flight tasks before stopping")
                self.cancel_event.set()
                wait(futures)
                self._collect(futures, context)
        return context.result(host.name for host in hosts)

    def _collect(self, futures: dict[Future, HostConfig], context: RunContext) -> None:
        for future in as_completed(futures):
            host = futures[future]
            try:
                context.merge(future.result())
            except Exception as exc:  # noqa: BLE001
                logger.error("host=%s worker crashed: %s", host.name, exc, exc_info=True)
                crashed = HostResult(host=host.name, error=str(exc))
                crashed.results.append(
                    ActionResult(host=host.name, action="worker", status=TaskStatus.FAILED, details=str(exc))
                )
                context.merge(crashed)

    def _default_executor(self, host: HostConfig) -> Executor:
        return executor_for(
            host,
            dry_run=self.options.dry_run,
            timeout=self.options.task_timeout,
            connect_timeout=self.options.connect_timeout,
            host_key_policy=self.options.host_key_policy,
            known_hosts=self.options.known_hosts,
            secret_resolver=self.secret_resolver,
        )

    def _run_host(self, host: HostConfig, context: RunContext) -> HostResult:
        host_result = HostResult(host=host.name)
        tasks = self.graph.tasks_for(host)
        if context.cancelled:
            self._skip(host_result, tasks, "cancelled")
            return host_result

        executor = self.executor_factory(host)
        try:
            if not self._connect(host, executor, host_result):
                self._skip(host_result, tasks, f"unreachable: {host_result.error}")
                return host_result

            failed = False
            for index, task in enumerate(tasks):
                if context.cancelled:
                    self._skip(host_result, tasks[index:], "cancelled")
                    break
                result = self._run_task(task, host, executor, host_result, context)
                host_result.results.append(result)
                if result.failed:
                    failed = True
                    self._skip(host_result, tasks[index + 1:], f"skipped after {task.id} failed")
                    break

            self._run_handlers(host, executor, host_result, context, failed)
        finally:
            try:
                executor.close()
            except Exception as exc:  # noqa: BLE001
                logger.warning("host=%s close failed: %s", host.name, exc)
        return host_result

    def _connect(self, host: HostConfig, executor: Executor, host_result: HostResult) -> bool:
        def on_retry(attempt: int, exc: BaseException) -> None:
            logger.warning(
                "host=%s connect attempt=%s/%s failed: %s",
                host.name,
                attempt,
                self.options.connect_retries,
                exc,
            )

        try:
            _, attempts = call_with_retry(
                executor.connect,
                attempts=self.options.connect_retries,
                base=self.options.retry_backoff,
                maximum=self.options.retry_backoff_max,
                retry_on=(ConnectionError,),
                on_retry=on_retry,
                sleep=self.sleep,
            )
        except ConnectionError as exc:
            host_result.attempts = self.options.connect_retries
            host_result.error = str(exc)
            host_result.transition(ConnectionState.UNREACHABLE)
            logger.error("host=%s unreachable after %s attempts: %s", host.name, host_result.attempts, exc)
            return False
        except Exception as exc:  # noqa: BLE001
            # credential and key loading errors are not retried
            host_result.attempts = 1
            host_result.error = f"{type(exc).__name__}: {exc}"
            host_result.transition(ConnectionState.UNREACHABLE)
            logger.error("host=%s unreachable: %s", host.name, host_result.error)
            return False
        host_result.attempts = attempts
        host_result.transition(ConnectionState.CONNECTED)
        logger.debug("host=%s connected attempts=%s", host.name, attempts)
        return True

    def _run_handlers(
        self,
        host: HostConfig,
        executor: Executor,
        host_result: HostResult,
        context: RunContext,
        failed: bool,
    ) -> None:
        notified = context.notified(host.name)
        if not notified:
            return
        handlers = [handler for handler in self.graph.handlers_for(host) if handler.name in notified]
        reason = None
        if context.cancelled:
            reason = "cancelled"
        elif host_result.state is not ConnectionState.CONNECTED:
            reason = "connection failed"
        elif failed and not self.options.force_handlers:
            reason = "host had failures"
        for handler in handlers:
            tasks = [task for task in handler.tasks if host.name in self.graph.targets(task)]
            if reason:
                self._skip(host_result, tasks, f"handler not run: {reason}", handler=True)
                continue
            for index, task in enumerate(tasks):
                result = self._run_task(task, host, executor, host_result, context, handler=True)
                host_result.results.append(result)
                if result.failed:
                    self._skip(
                        host_result, tasks[index + 1:], f"skipped after {task.id} failed", handler=True
                    )
                    break
            if host_result.state is not ConnectionState.CONNECTED:
                reason = "connection failed"

    def _run_task(
        self,
        task: GraphTask,
        host: HostConfig,
        executor: Executor,
        host_result: HostResult,
        context: RunContext,
        *,
        handler: bool = False,
    ) -> ActionResult:
        if self.progress_callback:
            self.progress_callback(host, task)
        executor.timeout = task.timeout or self.options.task_timeout
        started = time.monotonic()
        applying = False
        try:
            state = self.diff_engine.check(task.operation, host, executor)
            if state is Check.SATISFIED:
                status, details = TaskStatus.SKIPPED, "already satisfied"
            elif self.options.dry_run:
                status, details = TaskStatus.CHANGED, "dry-run"
            else:
                applying = True
                try:
                    details = task.operation.apply(host, executor) or "applied"
                except (ConnectionError, IndeterminateStateError):
                    raise
                except Exception as exc:
                    if not task.idempotent:
                        raise IndeterminateStateError(
                            f"{exc}; host state is unknown", task=task.id
                        ) from exc
                    raise
                status = TaskStatus.CHANGED
        except IndeterminateStateError as exc:
            status, details = TaskStatus.INDETERMINATE, str(exc)
        except ConnectionError as exc:
            host_result.error = str(exc)
            host_result.transition(ConnectionState.FAILED)
            if applying and not task.idempotent:
                status, details = TaskStatus.INDETERMINATE, f"connection lost: {exc}; host state is unknown"
            else:
                status, details = TaskStatus.FAILED, f"connection lost: {exc}"
        except TimeoutError as exc:
            status, details = TaskStatus.FAILED, f"timeout: {exc}"
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "action=%s host=%s failed: %s",
                task.id,
                host.name,
                exc,
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            status, details = TaskStatus.FAILED, str(exc) or type(exc).__name__

        if status is TaskStatus.CHANGED and task.notify:
            context.notify(host.name, task.notify)

        result = ActionResult(
            host=host.name,
            action=task.type,
            status=status,
            details=details,
            task_id=task.id,
            resource=task.resource,
            handler=handler,
            attempts=host_result.attempts,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        self._log_result(result)
        return result

    def _skip(
        self,
        host_result: HostResult,
        tasks: Iterable[GraphTask],
        reason: str,
        *,
        handler: bool = False,
    ) -> None:
        for task in tasks:
            result = ActionResult(
                host=host_result.host,
                action=task.type,
                status=TaskStatus.SKIPPED,
                details=reason,
                task_id=task.id,
                resource=task.resource,
                handler=handler,
                attempts=host_result.attempts,
            )
            host_result.results.append(result)
            self._log_result(result)

    @staticmethod
    def _log_result(result: ActionResult) -> None:
        if result.failed:
            level = logging.ERROR
        elif result.changed:
            level = logging.INFO
        else:
            level = logging.DEBUG
        logger.log(
            level,
            "host=%s task=%s status=%s details=%s",
            result.host,
            result.task_id,
            result.status.value,
            result.details,
            extra={
                "host": result.host,
                "task": result.task_id,
                "status": result.status.value,
                "changed": result.changed,
                "duration_ms": result.duration_ms,
                "attempts": result.attempts,
            },
        )


def run(graph: TaskGraph, inventory: Optional[Inventory] = None, **kwargs) -> RunResult:
    return TaskRunner(graph, inventory, **kwargs).run()
