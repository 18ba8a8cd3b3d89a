import pytest

from marionette.operations import service as service_mod
from marionette.operations.service import OpenRC, ServiceOperation, SystemCtl, detect_service_manager
from marionette.types import HostConfig


class FakeServiceManager:
    def __init__(self, enabled: bool = False, running: bool = False):
        self.enabled = enabled
        self.running = running
        self.actions: list[str] = []

    def is_enabled(self, executor, service: str) -> bool:  # noqa: ARG002
        return self.enabled

    def is_service_running(self, executor, service: str) -> bool:  # noqa: ARG002
        return self.running

    def enable(self, executor, service: str) -> None:  # noqa: ARG002
        self.enabled = True
        self.actions.append("enable")

    def disable(self, executor, service: str) -> None:  # noqa: ARG002
        self.enabled = False
        self.actions.append("disable")

    def start(self, executor, service: str) -> None:  # noqa: ARG002
        self.running = True
        self.actions.append("start")

    def stop(self, executor, service: str) -> None:  # noqa: ARG002
        self.running = False
        self.actions.append("stop")

    def restart_service(self, executor, service: str) -> None:  # noqa: ARG002
        self.actions.append("restart")


def test_service_enable_and_start(fake_executor_cls, monkeypatch):
    op = ServiceOperation({"name": "sshd", "enabled": True, "state": "running"})
    fake = FakeServiceManager(enabled=False, running=False)
    monkeypatch.setattr(service_mod, "detect_service_manager", lambda executor, preferred=None: fake)
    host = HostConfig("local")
    executor = fake_executor_cls(host)

    assert op.check(host, executor) is False
    assert op.apply(host, executor) == "enabled, started"
    assert fake.actions == ["enable", "start"]
    assert op.check(host, executor) is True


def test_service_stop_and_disable(fake_executor_cls, monkeypatch):
    op = ServiceOperation({"name": "cups", "enabled": False, "state": "stopped"})
    fake = FakeServiceManager(enabled=True, running=True)
    monkeypatch.setattr(service_mod, "detect_service_manager", lambda executor, preferred=None: fake)
    host = HostConfig("local")

    assert op.apply(host, fake_executor_cls(host)) == "disabled, stopped"
    assert fake.actions == ["disable", "stop"]


def test_restarted_is_never_satisfied(fake_executor_cls, monkeypatch):
    op = ServiceOperation({"name": "nginx", "restart": True})
    fake = FakeServiceManager(enabled=True, running=True)
    monkeypatch.setattr(service_mod, "detect_service_manager", lambda executor, preferred=None: fake)
    host = HostConfig("local")
    executor = fake_executor_cls(host)

    assert op.check(host, executor) is False
    assert op.apply(host, executor) == "restarted"
    assert fake.actions == ["restart"]


def test_invalid_state_raises():
    with pytest.raises(ValueError):
        ServiceOperation({"name": "nginx", "state": "reloaded"})
    with pytest.raises(ValueError):
        ServiceOperation({"name": "nginx", "manager": "upstart"})


def test_openrc_commands(fake_executor_cls):
    def respond(command):
        if command == ["rc-update", "show", "default"]:
            return 0, "            nginx | default\n         php-fpm83 | default\n"
        if command == ["rc-service", "sshd", "status"]:
            return 3, ""
        return 0, ""

    executor = fake_executor_cls(HostConfig("alpine"), responder=respond)
    openrc = OpenRC()

    assert openrc.is_enabled(executor, "nginx") is True
    assert openrc.is_enabled(executor, "sshd") is False
    assert openrc.is_service_running(executor, "sshd") is False
    openrc.enable(executor, "sshd")
    openrc.start(executor, "sshd")

    assert (["rc-update", "add", "sshd", "default"], True) in executor.calls
    assert (["rc-service", "sshd", "start"], True) in executor.calls


def test_detects_systemd_first(fake_executor_cls):
    executor = fake_executor_cls(HostConfig("debian"), responder=lambda command: (0, ""))
    assert isinstance(detect_service_manager(executor), SystemCtl)
    assert isinstance(detect_service_manager(executor, "openrc"), OpenRC)
