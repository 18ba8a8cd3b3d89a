from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Callable, NamedTuple, Optional

from .types import ActionSpec, HandlerSpec, PlanDocument, TaskSpec

TOKEN_RE = re.compile(
    r"""
    (?P<SPACE>\s+)
  | (?P<COMMENT>\#[^\n]*)
  | (?P<STRING>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
  | (?P<NUMBER>-?\d+(?:\.\d+)?)
  | (?P<ARROW>=>)
  | (?P<PUNCT>[{}\[\],:])
  | (?P<IDENT>[A-Za-z_./][\w\-./]*)
  | (?P<QUOTE>['"])
  | (?P<ERROR>.)
    """,
    re.VERBOSE | re.DOTALL,
)
ESCAPE_RE = re.compile(r"\\(.)", re.DOTALL)
ESCAPES = {"n": "\n", "t": "\t", "r": "\r"}

NODE_KEYS = {"address", "port", "user", "connection", "groups", "credential", "variables"}
RELATION_KEYS = ("depends_on", "notify")
TITLE_KEYS = {"file": "path", "copy": "dest"}


class DSLParseError(ValueError):
    """Raised when the Marionette DSL cannot be parsed."""

    def __init__(self, message: str, line: Optional[int] = None, column: Optional[int] = None):
        super().__init__(message)
        self.line = line
        self.column = column


class Token(NamedTuple):
    kind: str
    value: str
    line: int
    column: int


def tokenize(text: str) -> list[Token]:
    """Split ``text`` into tokens; punctuation tokens carry themselves as kind."""
    tokens: list[Token] = []
    line, line_start = 1, 0
    for match in TOKEN_RE.finditer(text):
        kind, raw = match.lastgroup, match.group()
        column = match.start() - line_start + 1
        if kind == "QUOTE":
            raise DSLParseError("Unterminated string literal", line=line, column=column)
        if kind == "ERROR":
            raise DSLParseError(f"Unexpected character '{raw}'", line=line, column=column)
        if kind == "STRING":
            tokens.append(Token(kind, _unescape(raw[1:-1]), line, column))
        elif kind == "PUNCT":
            tokens.append(Token(raw, raw, line, column))
        elif kind not in ("SPACE", "COMMENT"):
            tokens.append(Token(kind, raw, line, column))
        newlines = raw.count("\n")
        if newlines:
            line += newlines
            line_start = match.start() + raw.rindex("\n") + 1
    tokens.append(Token("EOF", "", line, len(text) - line_start + 1))
    return tokens


def _unescape(body: str) -> str:
    return ESCAPE_RE.sub(lambda m: ESCAPES.get(m.group(1), m.group(1)), body)


class DSLParser:
    """Recursive-descent parser for plan files.

    A plan is a sequence of ``defaults``, ``node``, ``group``, ``task`` and
    ``handler`` declarations; resources inside tasks and handlers use the
    ``type { 'title': key => value }`` form.
    """

    def __init__(self):
        self._tokens: list[Token] = []
        self._index = 0
        self._declarations: dict[str, Callable[[PlanDocument], None]] = {
            "defaults": self._defaults,
            "node": self._node,
            "group": self._group,
            "task": self._task,
            "handler": self._handler,
        }

    def parse_file(self, path: Path) -> PlanDocument:
        return self.parse_text(path.read_text())

    def parse_text(self, text: str) -> PlanDocument:
        self._tokens = tokenize(text)
        self._index = 0
        document = PlanDocument()
        while not self._at("EOF"):
            token = self._peek()
            handler = self._declarations.get(token.value) if token.kind == "IDENT" else None
            if handler is None:
                raise self._error(f"Unexpected token '{token.value}'", token)
            self._next()
            handler(document)
        return document

    # declarations

    def _defaults(self, document: PlanDocument) -> None:
        document.defaults.update(self._braced_attributes())

    def _node(self, document: PlanDocument) -> None:
        keyword = self._previous()
        name = self._name()
        attrs = self._braced_attributes()
        variables = attrs.pop("variables", None) or {}
        if not isinstance(variables, dict):
            raise self._error("variables attribute must be a map", keyword)
        node: dict[str, Any] = {"name": name}
        for key, value in attrs.items():
            if key in NODE_KEYS:
                node[key] = value
            else:
                variables[key] = value
        node["variables"] = dict(variables)
        document.nodes.append(node)

    def _group(self, document: PlanDocument) -> None:
        keyword = self._previous()
        name = self._name()
        attrs = self._braced_attributes()
        members = attrs.pop("hosts", [])
        if attrs:
            raise self._error(f"Unknown group attribute '{next(iter(attrs))}'", keyword)
        if isinstance(members, str):
            members = [members]
        if not isinstance(members, list):
            raise self._error("group hosts must be a list", keyword)
        document.groups.setdefault(name, []).extend(str(member) for member in members)

    def _task(self, document: PlanDocument) -> None:
        name = self._name()
        self._expect("IDENT", "on")
        hosts = self._selector()
        document.tasks.append(TaskSpec(name=name, hosts=hosts, actions=self._resources()))

    def _handler(self, document: PlanDocument) -> None:
        name = self._name()
        hosts = self._selector() if self._accept("IDENT", "on") else []
        document.handlers.append(HandlerSpec(name=name, actions=self._resources(), hosts=hosts))

    # resources

    def _resources(self) -> list[ActionSpec]:
        self._expect("{")
        actions = []
        while not self._accept("}"):
            actions.append(self._resource())
        return actions

    def _resource(self) -> ActionSpec:
        type_token = self._expect("IDENT")
        rtype = type_token.value
        self._expect("{")
        title = self._value()
        self._expect(":")
        attrs = self._attributes()
        self._expect("}")

        data: dict[str, Any] = {}
        if isinstance(title, list):
            if rtype != "package":
                raise self._error("Only package resources accept list titles", type_token)
            data["packages"] = [str(item) for item in title]
        else:
            data["name"] = str(title)
            if rtype in TITLE_KEYS:
                data[TITLE_KEYS[rtype]] = data["name"]

        relations: dict[str, list[str]] = {key: [] for key in RELATION_KEYS}
        for key, value in attrs.items():
            if key in relations:
                relations[key].extend(str(v) for v in (value if isinstance(value, list) else [value]))
            elif key == "ensure":
                data.setdefault("state", value)
            else:
                data[key] = value
        return ActionSpec(type=rtype, data=data, **relations)

    # values

    def _selector(self) -> list[str]:
        if not self._accept("["):
            return [self._name()]
        hosts = []
        while not self._accept("]"):
            hosts.append(self._name())
            self._accept(",")
        return hosts

    def _braced_attributes(self) -> dict[str, Any]:
        self._expect("{")
        attrs = self._attributes()
        self._expect("}")
        return attrs

    def _attributes(self, key_kinds: tuple[str, ...] = ("IDENT",)) -> dict[str, Any]:
        attrs: dict[str, Any] = {}
        while not self._at("}"):
            key = self._peek()
            if key.kind not in key_kinds:
                raise self._error(f"Expected attribute name but found '{key.value}'", key)
            self._next()
            self._expect("ARROW")
            attrs[key.value] = self._value()
            self._accept(",")
        return attrs

    def _value(self) -> Any:
        token = self._next()
        if token.kind == "STRING":
            return token.value
        if token.kind == "NUMBER":
            return self._number(token)
        if token.kind == "IDENT":
            return {"true": True, "false": False}.get(token.value.lower(), token.value)
        if token.kind == "[":
            items = []
            while not self._accept("]"):
                items.append(self._value())
                self._accept(",")
            return items
        if token.kind == "{":
            mapping = self._attributes(key_kinds=("IDENT", "STRING"))
            self._expect("}")
            return mapping
        raise self._error(f"Unexpected value token '{token.value}'", token)

    def _number(self, token: Token) -> Any:
        """Numbers with a leading zero, such as file modes, are octal."""
        text = token.value
        if "." in text:
            return float(text)
        digits = text.lstrip("-")
        if len(digits) > 1 and digits.startswith("0"):
            try:
                return int(text, 8)
            except ValueError:
                raise self._error(f"Invalid octal number '{text}'", token) from None
        return int(text)

    def _name(self) -> str:
        token = self._next()
        if token.kind not in ("STRING", "IDENT"):
            raise self._error(f"Expected identifier or string but found '{token.value}'", token)
        return token.value

    # token cursor

    def _peek(self) -> Token:
        return self._tokens[self._index]

    def _previous(self) -> Token:
        return self._tokens[self._index - 1]

    def _next(self) -> Token:
        token = self._tokens[self._index]
        if token.kind != "EOF":
            self._index += 1
        return token

    def _at(self, kind: str, value: Optional[str] = None) -> bool:
        token = self._peek()
        return token.kind == kind and (value is None or token.value == value)

    def _accept(self, kind: str, value: Optional[str] = None) -> bool:
        if self._at(kind, value):
            self._next()
            return True
        return False

    def _expect(self, kind: str, value: Optional[str] = None) -> Token:
        if not self._at(kind, value):
            found = self._peek()
            wanted = f"{kind} {value}" if value else kind
            raise self._error(f"Expected {wanted} but found '{found.value}'", found)
        return self._next()

    @staticmethod
    def _error(message: str, token: Token) -> DSLParseError:
        return DSLParseError(message, line=token.line, column=token.column)
