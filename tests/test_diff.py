import pytest

from marionette.diff import Check, DiffEngine, ReadOnlyExecutor
from marionette.errors import ProbeError
from marionette.operations.base import Operation
from marionette.types import HostConfig


class ProbeOnly(Operation):
    def __init__(self, spec):
        super().__init__(spec)
        self.satisfied = spec.get("satisfied", False)

    def check(self, host, executor) -> bool:
        executor.run(["stat", "/etc/hosts"], mutable=False)
        executor.file_checksum("/etc/hosts")
        return self.satisfied

    def apply(self, host, executor) -> str:
        return "applied"


def test_diff_engine_maps_probe_result(fake_executor_cls):
    host = HostConfig("local")
    executor = fake_executor_cls(host)
    engine = DiffEngine()

    assert engine.check(ProbeOnly({"satisfied": True}), host, executor) is Check.SATISFIED
    assert engine.check(ProbeOnly({}), host, executor) is Check.UNSATISFIED
    assert executor.calls == [(["stat", "/etc/hosts"], False), (["stat", "/etc/hosts"], False)]


@pytest.mark.parametrize(
    "mutation",
    [
        lambda ex: ex.run(["systemctl", "restart", "nginx"]),
        lambda ex: ex.write_file("/etc/motd", content="x"),
        lambda ex: ex.copy_file("/tmp/src", "/etc/motd"),
        lambda ex: ex.ensure_directory("/srv/app"),
        lambda ex: ex.chmod("/etc/motd", 0o600),
        lambda ex: ex.remove_path("/etc/motd"),
    ],
)
def test_read_only_executor_blocks_mutations(fake_executor_cls, mutation):
    inner = fake_executor_cls(HostConfig("local"))
    guarded = ReadOnlyExecutor(inner)

    with pytest.raises(ProbeError):
        mutation(guarded)
    assert inner.mutations == []


def test_read_only_executor_delegates_reads(fake_executor_cls):
    inner = fake_executor_cls(HostConfig("local"), files={"/etc/motd": "hi"})
    inner.dirs.add("/etc")
    inner.modes["/etc/motd"] = 0o644
    guarded = ReadOnlyExecutor(inner)

    assert guarded.read_file("/etc/motd") == "hi"
    assert guarded.file_mode("/etc/motd") == 0o644
    assert guarded.path_exists("/etc/motd") is True
    assert guarded.is_dir("/etc") is True
    assert guarded.file_checksum("/missing") is None
