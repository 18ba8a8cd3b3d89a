from pathlib import Path
import textwrap

import pytest

from marionette.dsl import DSLParseError
from marionette.errors import InventoryError
from marionette.inventory import Inventory, InventoryLoader


def test_loads_default_local_host(tmp_path: Path) -> None:
    plan_path = tmp_path / "plan.toml"
    plan_path.write_text(
        textwrap.dedent(
            """
            [[tasks]]
            name = "basic"

              [[tasks.actions]]
              type = "file"
              path = "/tmp/demo"
            """
        ).strip()
    )

    plan = InventoryLoader().load(plan_path)

    assert set(plan.hosts) == {"local"}
    assert plan.hosts["local"].connection == "local"
    assert plan.tasks[0].hosts == ["all"]
    assert plan.tasks[0].actions[0].type == "file"
    assert plan.tasks[0].actions[0].data["_plan_dir"] == str(tmp_path)


def test_missing_action_type_raises(tmp_path: Path) -> None:
    plan_path = tmp_path / "bad.toml"
    plan_path.write_text(
        textwrap.dedent(
            """
            [[tasks]]
            name = "broken"

              [[tasks.actions]]
              path = "/tmp/demo"
            """
        ).strip()
    )

    loader = InventoryLoader()
    with pytest.raises(ValueError):
        loader.load(plan_path)


def test_toml_hosts_groups_and_handlers(tmp_path: Path) -> None:
    plan_path = tmp_path / "plan.toml"
    plan_path.write_text(
        textwrap.dedent(
            """
            [defaults]
            user = "deploy"
            credential = { key_file = "~/.ssh/deploy" }

            [hosts.web1]
            address = "10.0.0.1"
            become = true

            [hosts.web2]
            address = "10.0.0.2"
            port = 2222

            [groups.web]
            hosts = ["web1", "web2"]

            [[tasks]]
            name = "nginx"
            hosts = "web"

              [[tasks.actions]]
              type = "service"
              name = "nginx"
              ensure = "running"
              notify = "reload nginx"

            [[handlers]]
            name = "reload nginx"

              [[handlers.actions]]
              type = "exec"
              name = "reload"
              command = "nginx -s reload"
            """
        ).strip()
    )

    plan = InventoryLoader().load(plan_path)

    web1 = plan.hosts["web1"]
    assert web1.connection == "ssh"
    assert web1.user == "deploy"
    assert web1.port == 22
    assert web1.variables["become"] is True
    assert web1.credential == {"key_file": "~/.ssh/deploy"}
    assert plan.hosts["web2"].port == 2222
    assert web1.groups == frozenset({"web"})
    action = plan.tasks[0].actions[0]
    assert action.data["state"] == "running"
    assert action.notify == ["reload nginx"]
    assert plan.handlers[0].name == "reload nginx"


def test_loader_accepts_dsl(tmp_path: Path) -> None:
    plan_path = tmp_path / "site.mpp"
    plan_path.write_text(
        textwrap.dedent(
            """
            defaults { user => 'ops' }

            node 'app1' { address => '192.168.1.10', groups => ['app'] }

            task 'motd' on app {
              copy { '/etc/motd': content => 'hello' }
            }
            """
        )
    )

    plan = InventoryLoader().load(plan_path)

    assert plan.hosts["app1"].user == "ops"
    assert plan.hosts["app1"].address == "192.168.1.10"
    assert plan.tasks[0].actions[0].data["dest"] == "/etc/motd"


def test_dsl_includes_are_expanded(tmp_path: Path) -> None:
    (tmp_path / "nodes.mpp").write_text("node 'db1' { address => '10.1.1.1' }\n")
    plan_path = tmp_path / "site.mpp"
    plan_path.write_text("include 'nodes.mpp'\ntask 't' on db1 { file { '/srv/db': mode => '0700' } }\n")

    plan = InventoryLoader().load(plan_path)

    assert set(plan.hosts) == {"db1"}


def test_recursive_include_raises(tmp_path: Path) -> None:
    (tmp_path / "a.mpp").write_text("include 'b.mpp'\n")
    (tmp_path / "b.mpp").write_text("include 'a.mpp'\n")

    with pytest.raises(InventoryError, match="Recursive include"):
        InventoryLoader().load(tmp_path / "a.mpp")


def test_dsl_error_reports_location(tmp_path: Path) -> None:
    plan_path = tmp_path / "broken.mpp"
    plan_path.write_text("task 't' on local {\n  file { '/tmp/x' mode => '0644' }\n}\n")

    with pytest.raises(DSLParseError) as excinfo:
        InventoryLoader().load(plan_path)

    message = str(excinfo.value)
    assert f"{plan_path}:2:" in message
    assert "file { '/tmp/x'" in message


def test_repeated_host_declarations_merge() -> None:
    inventory = Inventory()
    inventory.add_host("web1", address="10.0.0.1", groups=["web"], variables={"tier": "front"})
    merged = inventory.add_host("web1", address="10.0.0.1", groups=["edge"], credential="~/.ssh/id")

    assert merged.groups == frozenset({"web", "edge"})
    assert merged.variables == {"tier": "front"}
    assert merged.credential == "~/.ssh/id"
    assert {host.name for host in inventory.hosts_in_group("edge")} == {"web1"}


def test_repeated_declaration_keeps_connection_parameters_it_omits() -> None:
    inventory = Inventory()
    inventory.add_host("web1", address="10.0.0.5", port=2222, groups=["docker"])
    merged = inventory.add_host("web1", groups=["web"])

    assert (merged.connection, merged.target, merged.port, merged.user) == ("ssh", "10.0.0.5", 2222, "root")
    assert merged.groups == frozenset({"docker", "web"})

    widened = inventory.add_host("web1", user="deploy")
    assert (widened.target, widened.port, widened.user) == ("10.0.0.5", 2222, "deploy")
    with pytest.raises(InventoryError, match="user 'deploy' != 'admin'"):
        inventory.add_host("web1", user="admin")


@pytest.mark.parametrize(
    "changes",
    [
        {"address": "10.0.0.2"},
        {"port": 2222},
        {"user": "admin"},
        {"connection": "local"},
        {"variables": {"tier": "back"}},
    ],
)
def test_conflicting_host_declarations_raise(changes) -> None:
    inventory = Inventory()
    inventory.add_host(
        "web1", address="10.0.0.1", port=22, user="deploy", connection="ssh", variables={"tier": "front"}
    )

    with pytest.raises(InventoryError):
        inventory.add_host("web1", **changes)


def test_hosts_in_group_selectors() -> None:
    inventory = Inventory()
    inventory.add_host("web1", address="10.0.0.1", groups=["web"])
    inventory.add_host("db1", address="10.0.0.2", groups=["db"])

    assert {h.name for h in inventory.hosts_in_group("all")} == {"web1", "db1"}
    assert {h.name for h in inventory.hosts_in_group("web")} == {"web1"}
    assert {h.name for h in inventory.hosts_in_group("db1")} == {"db1"}
    assert inventory.hosts_in_group("nowhere") == set()
    assert [h.name for h in inventory.resolve(["db", "web"])] == ["web1", "db1"]


def test_group_rules() -> None:
    inventory = Inventory()
    inventory.add_host("web1", address="10.0.0.1")

    with pytest.raises(InventoryError):
        inventory.add_group("all", ["web1"])
    with pytest.raises(InventoryError):
        inventory.add_group("web", ["ghost"])
    with pytest.raises(InventoryError):
        inventory.add_host("web2", groups=["all"])

    inventory.add_group("web", ["web1"])
    assert "web" in inventory.hosts["web1"].groups


def test_invalid_port_and_connection_raise() -> None:
    inventory = Inventory()
    with pytest.raises(InventoryError):
        inventory.add_host("web1", port=70000)
    with pytest.raises(InventoryError):
        inventory.add_host("web1", connection="winrm")


def test_limit_keeps_only_selected_hosts() -> None:
    inventory = Inventory()
    inventory.add_host("web1", address="10.0.0.1", groups=["web"])
    inventory.add_host("web2", address="10.0.0.2", groups=["web"])
    inventory.add_host("db1", address="10.0.0.3", groups=["db"])

    limited = inventory.limit(["web2", "db"])

    assert list(limited.hosts) == ["web2", "db1"]
    assert limited.groups == {"web": {"web2"}, "db": {"db1"}}
