from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from typing import Any, Iterable, Optional, Union
import logging
import re

try:
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore[no-redef]

from .dsl import DSLParseError, DSLParser
from .errors import InventoryError
from .types import (
    DEFAULT_PORT,
    DEFAULT_USER,
    ActionSpec,
    HandlerSpec,
    HostConfig,
    Plan,
    PlanDocument,
    TaskSpec,
)

logger = logging.getLogger(__name__)

LOCAL_NAMES = {"local", "localhost"}
CONNECTIONS = {"local", "ssh"}
NODE_KEYS = {"name", "address", "port", "user", "connection", "groups", "credential", "variables"}
ALL_GROUP = "all"
DSL_SUFFIXES = {".mpp", ".pp"}
RELATION_KEYS = ("depends_on", "notify")
INCLUDE_RE = re.compile(r"^[ \t]*include\s+['\"]([^'\"]+)['\"][ \t]*$", re.MULTILINE)


class Inventory:
    """Target hosts, their connection parameters and group memberships."""

    def __init__(self, *, default_user: str = DEFAULT_USER, default_port: int = DEFAULT_PORT):
        self.default_user = default_user
        self.default_port = default_port
        self.hosts: dict[str, HostConfig] = {}
        self.groups: dict[str, set[str]] = {}
        # explicitly declared connection parameters, per host
        self._declared: dict[str, dict[str, Any]] = {}

    def add_host(
        self,
        name: str,
        *,
        address: Optional[str] = None,
        port: Optional[int] = None,
        user: Optional[str] = None,
        connection: Optional[str] = None,
        credential: Any = None,
        groups: Iterable[str] = (),
        variables: Optional[dict[str, Any]] = None,
    ) -> HostConfig:
        """Declare ``name`` or merge a repeated declaration into it.

        Connection parameters left out of a declaration fall back to what an
        earlier declaration set, then to the inventory defaults. Only
        parameters given explicitly by both declarations must agree.
        """
        if not name:
            raise InventoryError("host name must not be empty")
        if connection is not None and connection not in CONNECTIONS:
            raise InventoryError(f"host {name}: unknown connection type '{connection}'")
        if port is not None:
            try:
                port = int(port)
            except (TypeError, ValueError):
                raise InventoryError(f"host {name}: port must be an integer, got {port!r}") from None
            if not 0 < port < 65536:
                raise InventoryError(f"host {name}: port {port} is out of range")
        member_of = {str(g) for g in groups}
        if ALL_GROUP in member_of:
            raise InventoryError(f"host {name}: '{ALL_GROUP}' is implicit and cannot be assigned")

        given = {
            "connection": connection,
            "address": str(address) if address is not None else None,
            "port": port,
            "user": str(user) if user is not None else None,
        }
        previous = self._declared.get(name, {})
        conflicts = [
            f"{key} {previous[key]!r} != {value!r}"
            for key, value in given.items()
            if value is not None and key in previous and previous[key] != value
        ]
        if conflicts:
            raise InventoryError(
                f"host {name} declared twice with conflicting parameters: {', '.join(conflicts)}"
            )
        declared = {**previous, **{key: value for key, value in given.items() if value is not None}}

        default_connection = "local" if name in LOCAL_NAMES and "address" not in declared else "ssh"
        host = HostConfig(
            name=name,
            connection=declared.get("connection", default_connection),
            address=declared.get("address"),
            port=declared.get("port", self.default_port),
            user=declared.get("user", self.default_user),
            credential=credential,
            groups=frozenset(member_of),
            variables=dict(variables or {}),
        )
        existing = self.hosts.get(name)
        if existing is not None:
            host = self._merge(existing, host)
        self._declared[name] = declared
        self.hosts[name] = host
        for group in host.groups:
            self.groups.setdefault(group, set()).add(name)
        return host

    def add_group(self, name: str, members: Iterable[str]) -> None:
        if name == ALL_GROUP:
            raise InventoryError(f"group '{ALL_GROUP}' is implicit and cannot be declared")
        if name in self.hosts:
            raise InventoryError(f"group '{name}' collides with a host of the same name")
        for member in members:
            host = self.hosts.get(member)
            if host is None:
                raise InventoryError(f"group '{name}' references undeclared host '{member}'")
            self.hosts[member] = replace(host, groups=host.groups | {name})
            self.groups.setdefault(name, set()).add(member)

    @staticmethod
    def _merge(existing: HostConfig, incoming: HostConfig) -> HostConfig:
        if (
            existing.credential is not None
            and incoming.credential is not None
            and existing.credential != incoming.credential
        ):
            raise InventoryError(f"host {existing.name} declared twice with conflicting credentials")
        variables = dict(existing.variables)
        for key, value in incoming.variables.items():
            if key in variables and variables[key] != value:
                raise InventoryError(f"host {existing.name} declared twice with conflicting variable '{key}'")
            variables[key] = value
        return replace(
            incoming,
            credential=existing.credential if existing.credential is not None else incoming.credential,
            groups=existing.groups | incoming.groups,
            variables=variables,
        )

    def hosts_in_group(self, name: str) -> set[HostConfig]:
        if name == ALL_GROUP:
            return set(self.hosts.values())
        if name in self.groups:
            return {self.hosts[member] for member in self.groups[name]}
        if name in self.hosts:
            return {self.hosts[name]}
        logger.warning("No hosts match selector '%s'", name)
        return set()

    def resolve(self, selectors: Union[str, Iterable[str]]) -> list[HostConfig]:
        """Hosts matched by any selector, in inventory declaration order."""
        if isinstance(selectors, str):
            selectors = [selectors]
        matched: set[str] = set()
        for selector in selectors:
            matched.update(host.name for host in self.hosts_in_group(selector))
        return [host for name, host in self.hosts.items() if name in matched]

    def limit(self, selectors: Union[str, Iterable[str]]) -> "Inventory":
        """Return a copy restricted to the hosts matched by ``selectors``."""
        keep = {host.name for host in self.resolve(selectors)}
        limited = Inventory(default_user=self.default_user, default_port=self.default_port)
        limited.hosts = {name: host for name, host in self.hosts.items() if name in keep}
        limited._declared = {name: dict(self._declared[name]) for name in limited.hosts if name in self._declared}
        limited.groups = {
            group: members & keep for group, members in self.groups.items() if members & keep
        }
        return limited

    @classmethod
    def from_document(
        cls,
        document: PlanDocument,
        *,
        default_user: str = DEFAULT_USER,
        default_port: int = DEFAULT_PORT,
    ) -> "Inventory":
        defaults = document.defaults
        inventory = cls(
            default_user=str(defaults.get("user", default_user)),
            default_port=int(defaults.get("port", default_port)),
        )
        for node in document.nodes:
            raw_groups = node.get("groups", [])
            if isinstance(raw_groups, str):
                raw_groups = [raw_groups]
            variables = dict(node.get("variables") or {})
            variables.update({k: v for k, v in node.items() if k not in NODE_KEYS})
            inventory.add_host(
                str(node["name"]),
                address=node.get("address"),
                port=node.get("port"),
                user=node.get("user"),
                connection=node.get("connection"),
                credential=node.get("credential", defaults.get("credential")),
                groups=raw_groups,
                variables=variables,
            )
        for group, members in document.groups.items():
            inventory.add_group(group, members)
        if not inventory.hosts:
            inventory.add_host("local", connection="local")
        return inventory


class InventoryLoader:
    """Loads a plan from TOML or the Marionette DSL into a :class:`Plan`."""

    def __init__(self, *, default_user: str = DEFAULT_USER, default_port: int = DEFAULT_PORT):
        self.default_user = default_user
        self.default_port = default_port

    def load(self, path: Path) -> Plan:
        path = Path(path)
        document = self._document(path)
        for block in (*document.tasks, *document.handlers):
            for action in block.actions:
                action.data.setdefault("_plan_dir", str(path.parent))
        inventory = Inventory.from_document(
            document, default_user=self.default_user, default_port=self.default_port
        )
        return Plan(inventory=inventory, tasks=document.tasks, handlers=document.handlers)

    def _document(self, path: Path) -> PlanDocument:
        suffix = path.suffix.lower()
        if suffix == ".toml":
            return _parse_toml(path, path.read_text())
        text = expand_includes(path) if suffix in DSL_SUFFIXES else path.read_text()
        try:
            return DSLParser().parse_text(text)
        except DSLParseError as exc:
            if suffix not in DSL_SUFFIXES:
                logger.debug("path=%s is not DSL (%s); trying TOML", path, exc)
                return _parse_toml(path, text)
            raise _located(exc, path, text) from None


def expand_includes(path: Path, stack: tuple[Path, ...] = ()) -> str:
    """Return ``path``'s text with every ``include 'file'`` line inlined."""
    real = path.resolve()
    if real in stack:
        raise InventoryError(f"Recursive include detected for {path}")
    return INCLUDE_RE.sub(
        lambda match: expand_includes(path.parent / match.group(1), stack + (real,)),
        path.read_text(),
    )


def document_from_toml(data: dict[str, Any]) -> PlanDocument:
    return PlanDocument(
        defaults=dict(data.get("defaults", {})),
        nodes=[{"name": name, **table} for name, table in _tables(data, "hosts").items()],
        groups={name: list(table.get("hosts", [])) for name, table in _tables(data, "groups").items()},
        tasks=[
            TaskSpec(name=name, hosts=hosts or ["all"], actions=actions)
            for name, hosts, actions in _blocks(data.get("tasks", []), "task")
        ],
        handlers=[
            HandlerSpec(name=name, actions=actions, hosts=hosts)
            for name, hosts, actions in _blocks(data.get("handlers", []), "handler")
        ],
    )


def _parse_toml(path: Path, text: str) -> PlanDocument:
    try:
        return document_from_toml(tomllib.loads(text))
    except tomllib.TOMLDecodeError as exc:
        raise InventoryError(f"{path}: {exc}") from None


def _tables(data: dict[str, Any], key: str) -> dict[str, dict[str, Any]]:
    value = data.get(key, {})
    if not isinstance(value, dict) or not all(isinstance(t, dict) for t in value.values()):
        raise InventoryError(f"'{key}' must be a table of tables")
    return value


def _blocks(raw_blocks: list[dict[str, Any]], kind: str):
    """Yield ``(name, host selectors, actions)`` for each task or handler table."""
    for index, block in enumerate(raw_blocks, start=1):
        name = block.get("name")
        if not name:
            if kind == "handler":
                raise ValueError(f"handler {index} is missing a name")
            name = f"task-{index}"
        hosts = block.get("hosts") or []
        actions = [
            _action(raw, f"{kind} {name!r} action {pos}")
            for pos, raw in enumerate(block.get("actions", []), start=1)
        ]
        yield str(name), [hosts] if isinstance(hosts, str) else [str(h) for h in hosts], actions


def _action(raw: dict[str, Any], where: str) -> ActionSpec:
    data = dict(raw)
    action_type = data.pop("type", None)
    if not action_type:
        raise ValueError(f"{where} is missing a type")
    relations = {}
    for key in RELATION_KEYS:
        value = data.pop(key, None) or []
        relations[key] = [value] if isinstance(value, str) else [str(v) for v in value]
    if "ensure" in data:
        data.setdefault("state", data.pop("ensure"))
    return ActionSpec(type=str(action_type), data=data, **relations)


def _located(exc: DSLParseError, path: Path, text: str) -> DSLParseError:
    """Prefix a parse error with ``path:line:col`` and the offending source line."""
    where = f"{exc.line}:{exc.column}" if exc.line is not None else "?"
    message = f"{path}:{where} {exc}"
    lines = text.splitlines()
    if exc.line is not None and 0 < exc.line <= len(lines) and lines[exc.line - 1].strip():
        message = f"{message} -> {lines[exc.line - 1].strip()}"
    return DSLParseError(message, line=exc.line, column=exc.column)
