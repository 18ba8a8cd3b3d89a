from __future__ import annotations

import argparse
import importlib
import importlib.util
import json
import logging
import os
import re
import signal
import sys
import threading
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional, Sequence

from .config import DEFAULT_CONFIG, MarionetteConfig, load_config
from .dsl import DSLParseError
from .errors import ProvisionError
from .graph import GraphTask, TaskGraph
from .inventory import InventoryLoader
from .operations import OPERATION_REGISTRY
from .runner import RunOptions, TaskRunner
from .types import ActionResult, HostConfig, RunResult, TaskStatus

EXIT_OK = 0
EXIT_INVALID = 1
EXIT_FAILED = 2
EXIT_UNREACHABLE = 3
EXIT_CANCELLED = 130


class Ansi:
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    RED = "\033[91m"
    BLUE = "\033[94m"
    ORANGE = "\033[38;5;208m"
    RESET = "\033[0m"


SATISFIED = "already satisfied"
STATUS_COLORS = {
    TaskStatus.CHANGED: Ansi.GREEN,
    TaskStatus.SKIPPED: Ansi.YELLOW,
    TaskStatus.FAILED: Ansi.RED,
    TaskStatus.INDETERMINATE: Ansi.ORANGE,
}
ROLLBACK_WORDS = {"remove", "removed", "absent", "deleted", "stopped", "disabled"}


def colorize(text: str, color: Optional[str]) -> str:
    if not color:
        return text
    if not sys.stdout.isatty() or os.environ.get("NO_COLOR"):
        return text
    return f"{color}{text}{Ansi.RESET}"

_last_progress_len = 0
_progress_lock = threading.Lock()


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Marionette agentless provisioning runner")
    parser.add_argument(
        "plan",
        nargs="?",
        default=None,
        type=Path,
        help="Path to a plan file (default from config or /etc/marionette/plan.mpp)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG,
        help=f"Path to marionette config file (default: {DEFAULT_CONFIG})",
    )
    parser.add_argument("--forks", type=int, help="Number of hosts provisioned concurrently")
    parser.add_argument("--dry-run", action="store_true", help="Calculate changes without executing")
    parser.add_argument(
        "--limit",
        help="Comma separated hosts or groups to restrict the run to",
    )
    parser.add_argument("--report", type=Path, help="Write a JSON run report to this path")
    parser.add_argument(
        "--force-handlers",
        action="store_true",
        default=None,
        help="Run notified handlers even on hosts that had failures",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Python logging level (default: INFO)",
    )
    return parser.parse_args(argv)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(levelname)s %(name)s - %(message)s",
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    try:
        cfg = load_config(args.config).override(
            forks=args.forks,
            force_handlers=args.force_handlers,
            report=args.report,
        ).validate()
        _load_plugins(cfg)
    except (ValueError, ImportError) as exc:
        print(colorize(f"Configuration error: {exc}", Ansi.RED), file=sys.stderr)
        return EXIT_INVALID

    plan_path = args.plan or cfg.plan
    loader = InventoryLoader(default_user=cfg.default_user, default_port=cfg.default_port)
    try:
        plan = loader.load(plan_path)
        graph = TaskGraph.build(plan)
        inventory = plan.inventory
        if args.limit:
            inventory = inventory.limit([s.strip() for s in args.limit.split(",") if s.strip()])
            if not inventory.hosts:
                raise ValueError(f"--limit {args.limit} matches no hosts")
    except (DSLParseError, ProvisionError, ValueError, OSError) as exc:
        _clear_progress()
        print(colorize(f"Plan validation failed: {exc}", Ansi.RED), file=sys.stderr)
        return EXIT_INVALID

    cancel_event = threading.Event()
    _install_sigterm(cancel_event)
    runner = TaskRunner(
        graph,
        inventory,
        options=RunOptions.from_config(cfg, dry_run=args.dry_run),
        cancel_event=cancel_event,
        progress_callback=print_progress,
    )
    try:
        result = runner.run()
    except Exception as exc:  # noqa: BLE001
        _clear_progress()
        if logging.getLogger().isEnabledFor(logging.DEBUG):
            raise
        print(colorize(f"Execution failed: {exc}", Ansi.RED), file=sys.stderr)
        return EXIT_FAILED

    effective_level = logging.getLogger().getEffectiveLevel()
    summary = Summary()
    _clear_progress()
    for action in result.results:
        summary.add(action)
        if not should_display_result(action, effective_level):
            continue
        print(format_result(action))
    for host in result.unreachable_hosts:
        print(colorize(f"{host} unreachable - {result.hosts[host].error}", Ansi.RED))
    summary.unreachable = len(result.unreachable_hosts)
    print(summary.render())

    if cfg.report:
        try:
            write_report(result, cfg.report)
        except OSError as exc:
            print(colorize(f"Could not write report {cfg.report}: {exc}", Ansi.RED), file=sys.stderr)

    return exit_code(result)


def exit_code(result: RunResult) -> int:
    if result.cancelled:
        return EXIT_CANCELLED
    if result.unreachable_hosts:
        return EXIT_UNREACHABLE
    if result.failed_hosts:
        return EXIT_FAILED
    return EXIT_OK


def write_report(result: RunResult, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as handle:
        json.dump(result.to_dict(), handle, indent=2)
        handle.write("\n")
    os.chmod(path, 0o600)


def format_result(result: ActionResult) -> str:
    if result.status is TaskStatus.SKIPPED and result.details == SATISFIED:
        color = Ansi.BLUE
    else:
        color = STATUS_COLORS[result.status]
    status = result.status.value + (" (handler)" if result.handler else "")
    resource = f"[{result.resource}]" if result.resource else ""
    return colorize(f"{result.host}::{result.action}{resource} {status} - {result.details}", color)


def should_display_result(result: ActionResult, log_level: int) -> bool:
    if result.status is TaskStatus.SKIPPED and result.details == SATISFIED:
        return log_level <= logging.DEBUG
    return True


def print_progress(host: HostConfig, task: GraphTask) -> None:
    global _last_progress_len
    suffix = f"[{task.resource}]" if task.resource else ""
    line = f"{host.name}::{task.type}{suffix} pending..."
    with _progress_lock:
        _last_progress_len = len(line)
        print(colorize(line, Ansi.YELLOW), end="\r", flush=True)


def _clear_progress() -> None:
    global _last_progress_len
    with _progress_lock:
        if _last_progress_len:
            print(" " * _last_progress_len, end="\r", flush=True)
            _last_progress_len = 0


def _install_sigterm(cancel_event: threading.Event) -> None:
    def handler(signum, frame) -> None:
        logging.getLogger(__name__).warning("SIGTERM received; stopping after in-flight tasks")
        cancel_event.set()

    try:
        signal.signal(signal.SIGTERM, handler)
    except ValueError:
        # not running in the main thread
        pass


def _load_plugins(cfg: MarionetteConfig) -> None:
    """Import plugin files and modules and let them extend the registry."""
    modules = []
    for directory in cfg.plugin_dirs:
        directory = Path(directory)
        if not directory.is_dir():
            raise ValueError(f"plugin directory {directory} does not exist")
        for path in sorted(directory.glob("*.py")):
            spec = importlib.util.spec_from_file_location(f"marionette_plugin_{path.stem}", path)
            if spec is None or spec.loader is None:
                raise ImportError(f"cannot load plugin {path}")
            module = importlib.util.module_from_spec(spec)
            spec.loader.exec_module(module)
            modules.append(module)
    for name in cfg.plugin_modules:
        modules.append(importlib.import_module(name))
    for module in modules:
        register = getattr(module, "register_operations", None)
        if register is None:
            logging.getLogger(__name__).warning("plugin %s has no register_operations", module.__name__)
            continue
        register(OPERATION_REGISTRY)


@dataclass
class Summary:
    changes: int = 0
    additions: int = 0
    rollbacks: int = 0
    skipped: int = 0
    failures: int = 0
    indeterminate: int = 0
    unreachable: int = 0

    def add(self, result: ActionResult) -> None:
        if result.status is TaskStatus.INDETERMINATE:
            self.indeterminate += 1
        elif result.failed:
            self.failures += 1
        elif not result.changed:
            self.skipped += 1
        else:
            self.changes += 1
            if _looks_like_rollback(result):
                self.rollbacks += 1
            else:
                self.additions += 1

    @property
    def ok(self) -> bool:
        return not (self.failures or self.indeterminate or self.unreachable)

    def render(self) -> str:
        text = " | ".join(f"{f.name.capitalize()}: {getattr(self, f.name)}" for f in fields(self))
        return colorize(text, Ansi.GREEN if self.ok else Ansi.RED)


def _looks_like_rollback(result: ActionResult) -> bool:
    words = set(re.findall(r"[a-z]+", (result.details or "").lower()))
    return bool(words & ROLLBACK_WORDS)


if __name__ == "__main__":
    raise SystemExit(main())
