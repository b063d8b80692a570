from __future__ import annotations

import json

from typer.testing import CliRunner

import teambridge.cli
from teambridge.team.audit_log import AuditEventType, AuditLog
from teambridge.team.heartbeat import HeartbeatRegistry
from teambridge.team.mailbox import Mailbox
from teambridge.team.registration import WorkerRegistry
from teambridge.team.types import now_ms


def _combined_output(result) -> str:
    try:
        return result.stdout + result.stderr
    except ValueError:
        return result.stdout


def test_help_and_init(isolated_env):
    runner = CliRunner()

    assert runner.invoke(teambridge.cli.app, ["--help"]).exit_code == 0

    first = runner.invoke(teambridge.cli.app, ["init"])
    assert first.exit_code == 0
    assert (isolated_env["workspace"] / ".teambridge" / "config.toml").is_file()

    second = runner.invoke(teambridge.cli.app, ["init"])
    assert second.exit_code == 2
    assert "already exists" in _combined_output(second)


def test_status_json_snapshot(isolated_env, paths, write_task):
    WorkerRegistry(paths).register_worker("alpha", "w1", "codex")
    HeartbeatRegistry(paths).write_heartbeat("alpha", "w1")
    write_task("alpha", "1")

    result = CliRunner().invoke(teambridge.cli.app, ["status", "alpha", "--json"])

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["teamName"] == "alpha"
    assert payload["workers"][0]["isAlive"] is True
    assert payload["taskSummary"]["pending"] == 1


def test_status_plain_text(isolated_env, paths):
    WorkerRegistry(paths).register_worker("alpha", "w1", "gemini")

    result = CliRunner().invoke(teambridge.cli.app, ["status", "alpha"])

    assert result.exit_code == 0
    assert "worker=w1" in result.stdout
    assert "liveness=dead" in result.stdout


def test_status_rejects_unsafe_team(isolated_env):
    result = CliRunner().invoke(teambridge.cli.app, ["status", "../x"])
    assert result.exit_code == 2
    assert "Invalid team name" in _combined_output(result)


def test_health_reports_problems(isolated_env, paths):
    WorkerRegistry(paths).register_worker("alpha", "w1", "codex")
    HeartbeatRegistry(paths).write_heartbeat("alpha", "w1", status="quarantined", timestamp_ms=now_ms())

    result = CliRunner().invoke(teambridge.cli.app, ["health", "alpha"])

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload[0]["workerName"] == "w1"
    assert payload[0]["problem"] == "quarantined"


def test_audit_filters(isolated_env, paths):
    log = AuditLog(paths.logs_dir)
    log.log_event("alpha", AuditEventType.WORKER_IDLE, worker_name="w1")
    log.log_event("alpha", AuditEventType.WORKER_IDLE, worker_name="w2")

    result = CliRunner().invoke(teambridge.cli.app, ["audit", "alpha", "--worker", "w2"])

    assert result.exit_code == 0
    lines = [json.loads(line) for line in result.stdout.splitlines()]
    assert [line["workerName"] for line in lines] == ["w2"]


def test_send_and_signal(isolated_env, paths):
    runner = CliRunner()

    sent = runner.invoke(teambridge.cli.app, ["send", "alpha", "w1", "please rebase", "--from", "lead"])
    signalled = runner.invoke(teambridge.cli.app, ["signal", "alpha", "w1", "drain", "--reason", "wrap up"])

    assert sent.exit_code == 0
    assert signalled.exit_code == 0
    mailbox = Mailbox(paths)
    messages = mailbox.read_all_inbox_messages("alpha", "w1")
    assert [(m.sender, m.content) for m in messages] == [("lead", "please rebase")]
    assert mailbox.check_drain_signal("alpha", "w1").reason == "wrap up"
    assert mailbox.check_shutdown_signal("alpha", "w1") is None


def test_restart_plan(isolated_env, paths):
    runner = CliRunner()

    missing = runner.invoke(teambridge.cli.app, ["restart-plan", "alpha", "w1"])
    assert missing.exit_code == 1

    WorkerRegistry(paths).register_worker("alpha", "w1", "codex", working_directory=str(isolated_env["workspace"]))
    result = runner.invoke(teambridge.cli.app, ["restart-plan", "alpha", "w1", "--write"])

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["restart"] is True
    assert payload["config"]["provider"] == "codex"
    assert payload["configPath"].endswith("w1.bridge-config.json")


def test_bridge_rejects_untrusted_config_path(isolated_env, tmp_path):
    config = tmp_path / "w1.json"
    config.write_text("{}", encoding="utf-8")

    result = CliRunner().invoke(teambridge.cli.app, ["bridge", "--config", str(config)])

    assert result.exit_code == 1
    assert "Config path must be under" in _combined_output(result)


def test_bridge_reports_missing_fields(isolated_env):
    config = isolated_env["workspace"] / ".teambridge" / "w1.json"
    config.parent.mkdir(parents=True)
    config.write_text(json.dumps({"teamName": "alpha"}), encoding="utf-8")

    result = CliRunner().invoke(teambridge.cli.app, ["bridge", "--config", str(config)])

    assert result.exit_code == 1
    assert "Missing required config field: workerName" in _combined_output(result)


def test_bridge_runs_until_shutdown(monkeypatch, isolated_env, paths):
    config = isolated_env["workspace"] / ".teambridge" / "w1.json"
    config.parent.mkdir(parents=True)
    config.write_text(
        json.dumps(
            {
                "teamName": "alpha",
                "workerName": "w1",
                "provider": "codex",
                "workingDirectory": str(isolated_env["workspace"]),
            }
        ),
        encoding="utf-8",
    )
    seen = {}

    def fake_run_bridge(bridge_config, *, paths=None, provider=None, handle_signals=True):
        seen["config"] = bridge_config
        seen["paths"] = paths
        from teambridge.team.bridge import BridgeContext

        return BridgeContext(stop_reason="shutdown", tasks_completed=3)

    monkeypatch.setattr(teambridge.cli, "run_bridge", fake_run_bridge)

    result = CliRunner().invoke(teambridge.cli.app, ["bridge", "--config", str(config)])

    assert result.exit_code == 0
    assert seen["config"].worker_name == "w1"
    assert seen["paths"].home == paths.home
    assert "completed=3" in result.stdout


def test_audit_rejects_unparsable_since(isolated_env):
    result = CliRunner().invoke(teambridge.cli.app, ["audit", "alpha", "--since", "last tuesday"])
    assert result.exit_code == 2
    assert "Invalid since timestamp" in _combined_output(result)
