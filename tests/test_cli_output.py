import json
import os
import stat
import textwrap
from pathlib import Path

import pytest

from marionette import cli
from marionette import runner as runner_mod
from marionette.types import ActionResult, ConnectionState, HostResult, RunResult, TaskStatus


def test_format_result_failed(monkeypatch):
    monkeypatch.setenv("NO_COLOR", "1")
    result = ActionResult(host="local", action="file", status=TaskStatus.FAILED, details="boom")
    line = cli.format_result(result)
    assert line.startswith("local::file failed - boom")


def test_format_result_success(monkeypatch):
    monkeypatch.setenv("NO_COLOR", "1")
    result = ActionResult(
        host="web1", action="package", status=TaskStatus.CHANGED, details="installed", resource="nginx"
    )
    line = cli.format_result(result)
    assert line.startswith("web1::package[nginx] changed - installed")


def test_format_result_handler(monkeypatch):
    monkeypatch.setenv("NO_COLOR", "1")
    result = ActionResult(host="web1", action="service", status=TaskStatus.CHANGED, details="restarted", handler=True)
    assert cli.format_result(result) == "web1::service changed (handler) - restarted"


def test_satisfied_results_only_shown_at_debug():
    satisfied = ActionResult(host="h", action="file", status=TaskStatus.SKIPPED, details="already satisfied")
    skipped = ActionResult(host="h", action="file", status=TaskStatus.SKIPPED, details="cancelled")

    assert cli.should_display_result(satisfied, 20) is False
    assert cli.should_display_result(satisfied, 10) is True
    assert cli.should_display_result(skipped, 20) is True


def test_summary_counts(monkeypatch):
    monkeypatch.setenv("NO_COLOR", "1")
    summary = cli.Summary()
    for status, details in [
        (TaskStatus.CHANGED, "installed=nginx"),
        (TaskStatus.CHANGED, "disabled, stopped"),
        (TaskStatus.SKIPPED, "already satisfied"),
        (TaskStatus.FAILED, "boom"),
        (TaskStatus.INDETERMINATE, "rc=1"),
    ]:
        summary.add(ActionResult(host="h", action="x", status=status, details=details))
    summary.unreachable = 1

    assert summary.render() == (
        "Changes: 2 | Additions: 1 | Rollbacks: 1 | Skipped: 1 | Failures: 1 | Indeterminate: 1 | Unreachable: 1"
    )


def _host(name, state, *statuses):
    host = HostResult(host=name, state=state)
    for status in statuses:
        host.results.append(ActionResult(host=name, action="x", status=status, details=""))
    return host


@pytest.mark.parametrize(
    "hosts, cancelled, expected",
    [
        ([_host("a", ConnectionState.CONNECTED, TaskStatus.CHANGED)], False, 0),
        ([_host("a", ConnectionState.CONNECTED, TaskStatus.FAILED)], False, 2),
        ([_host("a", ConnectionState.CONNECTED, TaskStatus.INDETERMINATE)], False, 2),
        (
            [
                _host("a", ConnectionState.CONNECTED, TaskStatus.FAILED),
                _host("b", ConnectionState.UNREACHABLE, TaskStatus.SKIPPED),
            ],
            False,
            3,
        ),
        ([_host("a", ConnectionState.CONNECTED, TaskStatus.CHANGED)], True, 130),
    ],
)
def test_exit_codes(hosts, cancelled, expected):
    result = RunResult(hosts={h.host: h for h in hosts}, cancelled=cancelled)
    assert cli.exit_code(result) == expected


def test_write_report_is_private(tmp_path: Path):
    result = RunResult(hosts={"a": _host("a", ConnectionState.CONNECTED, TaskStatus.CHANGED)})
    path = tmp_path / "reports" / "run.json"

    cli.write_report(result, path)

    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
    data = json.loads(path.read_text())
    assert data["ok"] is True
    assert data["summary"]["changed"] == 1
    assert data["hosts"]["a"]["results"][0]["status"] == "changed"


def test_main_runs_plan_and_writes_report(monkeypatch, tmp_path: Path, capsys):
    monkeypatch.setenv("NO_COLOR", "1")
    target = tmp_path / "out" / "motd"
    plan_path = tmp_path / "site.mpp"
    plan_path.write_text(
        textwrap.dedent(
            f"""
            node 'local' {{ connection => local }}

            task 'motd' on local {{
              copy {{ '{target}': content => 'hello' }}
            }}
            """
        )
    )
    report = tmp_path / "report.json"

    code = cli.main([str(plan_path), "--config", str(tmp_path / "missing.conf"), "--report", str(report)])

    assert code == 0
    assert target.read_text() == "hello"
    out = capsys.readouterr().out
    assert "changed - created" in out
    assert json.loads(report.read_text())["summary"]["changed"] == 1

    code = cli.main([str(plan_path), "--config", str(tmp_path / "missing.conf")])
    assert code == 0
    assert "Changes: 0" in capsys.readouterr().out


def test_main_dry_run_leaves_host_untouched(monkeypatch, tmp_path: Path, capsys):
    monkeypatch.setenv("NO_COLOR", "1")
    target = tmp_path / "motd"
    plan_path = tmp_path / "site.mpp"
    plan_path.write_text(f"task 'motd' on local {{ copy {{ '{target}': content => 'hello' }} }}\n")

    code = cli.main([str(plan_path), "--config", str(tmp_path / "missing.conf"), "--dry-run"])

    assert code == 0
    assert not target.exists()
    assert "changed - dry-run" in capsys.readouterr().out


def test_main_rejects_invalid_plan(tmp_path: Path, capsys):
    plan_path = tmp_path / "cycle.mpp"
    plan_path.write_text(
        textwrap.dedent(
            """
            task 't' on local {
              file { '/tmp/a': depends_on => 'file./tmp/b' }
              file { '/tmp/b': depends_on => 'file./tmp/a' }
            }
            """
        )
    )

    code = cli.main([str(plan_path), "--config", str(tmp_path / "missing.conf")])

    assert code == 1
    assert "dependency cycle" in capsys.readouterr().err


def test_main_rejects_limit_matching_nothing(tmp_path: Path, capsys):
    plan_path = tmp_path / "site.mpp"
    plan_path.write_text("task 't' on local { file { '/tmp/x': mode => '0755' } }\n")

    code = cli.main([str(plan_path), "--config", str(tmp_path / "missing.conf"), "--limit", "ghost"])

    assert code == 1
    assert "matches no hosts" in capsys.readouterr().err


def test_cli_flags_override_config(monkeypatch, tmp_path: Path):
    captured = {}

    class RecordingRunner:
        def __init__(self, graph, inventory, *, options, **kwargs):
            captured["options"] = options

        def run(self):
            return RunResult()

    monkeypatch.setattr(cli, "TaskRunner", RecordingRunner)
    cfg_path = tmp_path / "main.conf"
    cfg_path.write_text("[defaults]\nforks = 3\nconnect_retries = 7\n")
    plan_path = tmp_path / "site.mpp"
    plan_path.write_text("task 't' on local { file { '/tmp/x': mode => '0755' } }\n")

    code = cli.main([str(plan_path), "--config", str(cfg_path), "--forks", "9", "--force-handlers"])

    assert code == 0
    options = captured["options"]
    assert isinstance(options, runner_mod.RunOptions)
    assert options.forks == 9
    assert options.connect_retries == 7
    assert options.force_handlers is True
