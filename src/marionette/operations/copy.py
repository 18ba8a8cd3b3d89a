from __future__ import annotations

import hashlib
import re
from pathlib import Path, PurePosixPath
from string import Template
from typing import Any, Optional

from .base import Operation, parse_mode
from ..executors import Executor, sha256_bytes
from ..secrets import SecretResolver
from ..types import HostConfig

# Optional dependency; resolved at render time if Jinja syntax is detected
try:  # pragma: no cover
    import jinja2
except Exception:  # pragma: no cover
    jinja2 = None


class CopyOperation(Operation):
    """Place a controller-side file, inline content or template at ``dest``."""

    secret_resolver = SecretResolver()

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        raw_dest = spec.get("dest") or spec.get("path")
        if not raw_dest:
            raise ValueError("copy operation requires a dest")
        self.dest = PurePosixPath(str(raw_dest))
        self.plan_dir = Path(str(spec["_plan_dir"])) if spec.get("_plan_dir") else None
        self.src = self._locate(spec.get("src") or spec.get("source"))
        self.template = self._locate(spec.get("template"))
        raw_content = spec.get("content")
        self.content = None if raw_content is None else str(raw_content)
        sources = [value for value in (self.src, self.template, self.content) if value is not None]
        if len(sources) != 1:
            raise ValueError("copy operation requires exactly one of src, template or content")
        if self.src is not None and not self.src.is_file():
            raise ValueError(f"copy source {self.src} does not exist")
        if self.template is not None and not self.template.is_file():
            raise ValueError(f"copy template {self.template} does not exist")
        self.mode = parse_mode(spec.get("mode"))
        self.variables = spec.get("variables", {})
        if not isinstance(self.variables, dict):
            raise ValueError("copy operation variables must be a mapping")

    def check(self, host: HostConfig, executor: Executor) -> bool:
        if executor.file_checksum(self.dest) != self._desired_checksum(host):
            return False
        if self.mode is not None and executor.file_mode(self.dest) != self.mode:
            return False
        return True

    def apply(self, host: HostConfig, executor: Executor) -> str:
        reasons: list[str] = []
        current = executor.file_checksum(self.dest)
        if current != self._desired_checksum(host):
            reasons.append("created" if current is None else "content")
            if self.src is not None:
                executor.copy_file(self.src, self.dest, mode=self.mode)
            else:
                executor.write_file(self.dest, content=self._render(host), mode=self.mode)
        elif self.mode is not None and executor.file_mode(self.dest) != self.mode:
            executor.chmod(self.dest, self.mode)
        if self.mode is not None and "created" not in reasons:
            reasons.append(f"mode={self.mode:04o}")
        return ", ".join(reasons) if reasons else "noop"

    def _locate(self, value: Optional[Any]) -> Optional[Path]:
        if value is None:
            return None
        path = Path(str(value)).expanduser()
        if not path.is_absolute() and self.plan_dir is not None:
            path = self.plan_dir / path
        return path

    def _desired_checksum(self, host: HostConfig) -> str:
        if self.src is not None:
            digest = hashlib.sha256()
            with self.src.open("rb") as handle:
                for chunk in iter(lambda: handle.read(65536), b""):
                    digest.update(chunk)
            return digest.hexdigest()
        return sha256_bytes(self._render(host).encode())

    def _render(self, host: HostConfig) -> str:
        if self.content is not None:
            return self.content
        assert self.template is not None
        template_text = self.template.read_text()
        context: dict[str, object] = {"inventory_hostname": host.name, **host.variables}
        context.update(self.variables)
        context = self.secret_resolver.resolve(context)
        if self._looks_like_jinja(template_text):
            if jinja2 is None:
                raise RuntimeError("Jinja2 is required to render this template (pip install Jinja2)")
            env = jinja2.Environment(undefined=jinja2.StrictUndefined, autoescape=False)
            return env.from_string(template_text).render(**context)
        return Template(template_text).safe_substitute(context)

    @staticmethod
    def _looks_like_jinja(template_text: str) -> bool:
        return bool(re.search(r"{[{%]", template_text))
