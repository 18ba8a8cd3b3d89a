from pathlib import Path

import pytest

import marionette.operations as ops
from marionette import cli
from marionette.cli import _load_plugins
from marionette.config import MarionetteConfig
from marionette.operations.base import Operation


PLUGIN_SOURCE = """
from marionette.operations.base import Operation


class {cls}(Operation):
    def check(self, host, executor) -> bool:
        return True

    def apply(self, host, executor) -> str:
        return "noop"


def register_operations(registry):
    registry["{name}"] = {cls}
"""


def test_plugin_dir_registration(monkeypatch, tmp_path: Path):
    plugin_dir = tmp_path / "mods"
    plugin_dir.mkdir()
    (plugin_dir / "custom_op.py").write_text(PLUGIN_SOURCE.format(cls="CustomOp", name="custom_op"))

    cfg = MarionetteConfig(plugin_dirs=[plugin_dir])
    registry: dict = {}
    monkeypatch.setattr(ops, "OPERATION_REGISTRY", registry)
    monkeypatch.setattr(cli, "OPERATION_REGISTRY", registry)
    _load_plugins(cfg)

    assert "custom_op" in ops.OPERATION_REGISTRY
    assert issubclass(ops.OPERATION_REGISTRY["custom_op"], Operation)


def test_plugin_module_import(monkeypatch, tmp_path: Path):
    mod_path = tmp_path / "myplugin"
    mod_path.mkdir()
    (mod_path / "__init__.py").write_text("")
    (mod_path / "extra_ops.py").write_text(PLUGIN_SOURCE.format(cls="ExtraOp", name="extra_op"))
    monkeypatch.syspath_prepend(str(tmp_path))
    cfg = MarionetteConfig(plugin_modules=["myplugin.extra_ops"])
    registry: dict = {}
    monkeypatch.setattr(ops, "OPERATION_REGISTRY", registry)
    monkeypatch.setattr(cli, "OPERATION_REGISTRY", registry)

    _load_plugins(cfg)

    assert "extra_op" in ops.OPERATION_REGISTRY
    assert issubclass(ops.OPERATION_REGISTRY["extra_op"], Operation)


def test_missing_plugin_dir_raises(tmp_path: Path):
    with pytest.raises(ValueError, match="does not exist"):
        _load_plugins(MarionetteConfig(plugin_dirs=[tmp_path / "nope"]))


def test_bundled_example_plugin_registers_motd(monkeypatch):
    example_dir = Path(__file__).resolve().parents[1] / "examples" / "plugins"
    registry: dict = {}
    monkeypatch.setattr(cli, "OPERATION_REGISTRY", registry)

    _load_plugins(MarionetteConfig(plugin_dirs=[example_dir]))

    assert "motd" in registry
