from __future__ import annotations

import json

import pytest

from teambridge.config import (
    ProjectConfigError,
    initialize_project_config,
    load_bridge_config,
    load_project_config,
    validate_config_path,
)
from teambridge.errors import BridgeConfigError


def _write_config(path, **overrides):
    data = {"teamName": "alpha", "workerName": "w1", "provider": "codex"}
    data.update(overrides)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


def test_missing_project_config_yields_defaults(tmp_path):
    config = load_project_config(tmp_path)
    assert config.poll_interval_ms == 3000
    assert config.task_timeout_ms == 600_000
    assert config.max_consecutive_errors == 3
    assert config.outbox_max_lines == 500
    assert config.max_retries == 5
    assert config.restart.max_restarts == 5
    assert config.heartbeat_max_age_ms == 30_000


def test_init_renders_loadable_defaults_and_refuses_overwrite(tmp_path):
    config_file = initialize_project_config(tmp_path)
    assert config_file == tmp_path.resolve() / ".teambridge" / "config.toml"
    assert load_project_config(tmp_path) == load_project_config(tmp_path / "nowhere")

    with pytest.raises(ProjectConfigError):
        initialize_project_config(tmp_path)
    initialize_project_config(tmp_path, force=True)


def test_project_config_coerces_bad_values(tmp_path):
    config_file = initialize_project_config(tmp_path, force=True)
    config_file.write_text(
        "[bridge]\npoll_interval_ms = -5\nmax_retries = 9\ndefault_provider = \"nope\"\n"
        "[restart]\nbackoff_multiplier = 0.5\n[logs]\nredaction = \"STRICT\"\n",
        encoding="utf-8",
    )
    config = load_project_config(tmp_path)
    assert config.poll_interval_ms == 3000
    assert config.max_retries == 9
    assert config.default_provider == "codex"
    assert config.restart.backoff_multiplier == 2.0
    assert config.logs_redaction == "strict"


def test_unparsable_project_config_raises(tmp_path):
    config_file = initialize_project_config(tmp_path)
    config_file.write_text("[bridge\n", encoding="utf-8")
    with pytest.raises(ProjectConfigError):
        load_project_config(tmp_path)


def test_validate_config_path(tmp_path):
    home = tmp_path / "home"
    assert validate_config_path(home / "proj" / ".teambridge" / "w1.json", home) is True
    assert validate_config_path(home / "proj" / "w1.json", home) is False
    assert validate_config_path(tmp_path / "other" / ".teambridge" / "w1.json", home) is False


def test_load_bridge_config_applies_defaults(isolated_env):
    workspace = isolated_env["workspace"]
    path = _write_config(
        workspace / ".teambridge" / "w1.json",
        workingDirectory=str(workspace),
        pollIntervalMs=250,
    )

    config = load_bridge_config(path, home_dir=isolated_env["user_home"])

    assert config.team_name == "alpha"
    assert config.poll_interval_ms == 250
    assert config.task_timeout_ms == 600_000
    assert config.max_retries == 5
    assert config.working_directory == str(workspace)


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"provider": "claude"}, "Invalid provider"),
        ({"teamName": ""}, "teamName"),
        ({"workerName": "bad name"}, "worker name"),
        ({"workingDirectory": "/definitely/missing"}, "does not exist"),
    ],
)
def test_load_bridge_config_rejects_invalid_input(isolated_env, overrides, message):
    workspace = isolated_env["workspace"]
    values = {"workingDirectory": str(workspace)}
    values.update(overrides)
    path = _write_config(workspace / ".teambridge" / "w1.json", **values)

    with pytest.raises(BridgeConfigError) as excinfo:
        load_bridge_config(path, home_dir=isolated_env["user_home"])
    assert message in str(excinfo.value)


def test_load_bridge_config_rejects_workdir_outside_home(isolated_env, tmp_path):
    outside = tmp_path / "outside"
    outside.mkdir()
    path = _write_config(isolated_env["workspace"] / ".teambridge" / "w1.json", workingDirectory=str(outside))

    with pytest.raises(BridgeConfigError, match="outside home"):
        load_bridge_config(path, home_dir=isolated_env["user_home"])
