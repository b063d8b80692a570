from __future__ import annotations

from pathlib import Path

import pytest

from teambridge.fs_utils import atomic_write_json
from teambridge.paths import BridgePaths


@pytest.fixture
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    user_home = tmp_path / "user"
    workspace = user_home / "workspace"
    team_home = user_home / ".teambridge"
    workspace.mkdir(parents=True, exist_ok=True)

    monkeypatch.setenv("HOME", str(user_home))
    monkeypatch.setenv("TEAMBRIDGE_HOME", str(team_home))
    monkeypatch.chdir(workspace)

    return {
        "user_home": user_home.resolve(),
        "workspace": workspace.resolve(),
        "paths": BridgePaths.resolve(working_directory=workspace, home=team_home),
    }


@pytest.fixture
def paths(isolated_env) -> BridgePaths:
    return isolated_env["paths"]


@pytest.fixture
def write_task(paths: BridgePaths):
    def _write(team: str, task_id: str, **fields):
        record = {"id": task_id, "owner": "w1", "status": "pending", "blockedBy": []}
        record.update(fields)
        atomic_write_json(paths.task_path(team, task_id), record)
        return record

    return _write
