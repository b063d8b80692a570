"""Directory layout of the shared team tree."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from teambridge.fs_utils import sanitize_name, sanitize_task_id, validate_resolved_path

HOME_ENV_VAR = "TEAMBRIDGE_HOME"
DEFAULT_HOME_DIR_NAME = ".teambridge"
WORKDIR_STATE_DIR_NAME = ".teambridge"


def resolve_home(home: Optional[Path] = None) -> Path:
    if home is not None:
        return Path(home).expanduser().resolve()
    override = os.environ.get(HOME_ENV_VAR, "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return (Path.home() / DEFAULT_HOME_DIR_NAME).resolve()


@dataclass(frozen=True)
class BridgePaths:
    """Resolved roots for one worker process.

    ``home`` holds data shared by the whole team (tasks, mailboxes, signals);
    ``working_directory`` holds per-checkout state (heartbeats, registry,
    restart bookkeeping, logs).
    """

    home: Path
    working_directory: Path

    @classmethod
    def resolve(
        cls,
        working_directory: Optional[Path] = None,
        home: Optional[Path] = None,
    ) -> "BridgePaths":
        return cls(
            home=resolve_home(home),
            working_directory=Path(working_directory or Path.cwd()).expanduser().resolve(),
        )

    @property
    def tasks_root(self) -> Path:
        return self.home / "tasks"

    @property
    def teams_root(self) -> Path:
        return self.home / "teams"

    @property
    def config_root(self) -> Path:
        return self.working_directory / WORKDIR_STATE_DIR_NAME

    @property
    def logs_dir(self) -> Path:
        return self.config_root / "logs"

    @property
    def state_root(self) -> Path:
        return self.config_root / "state" / "team-bridge"

    def team_tasks_dir(self, team_name: str) -> Path:
        path = self.tasks_root / sanitize_name(team_name, "team name")
        validate_resolved_path(path, self.tasks_root)
        return path

    def task_path(self, team_name: str, task_id: str) -> Path:
        return self.team_tasks_dir(team_name) / "{0}.json".format(sanitize_task_id(task_id))

    def failure_sidecar_path(self, team_name: str, task_id: str) -> Path:
        return self.team_tasks_dir(team_name) / "{0}.failure.json".format(sanitize_task_id(task_id))

    def team_dir(self, team_name: str) -> Path:
        path = self.teams_root / sanitize_name(team_name, "team name")
        validate_resolved_path(path, self.teams_root)
        return path

    def team_state_dir(self, team_name: str) -> Path:
        path = self.state_root / sanitize_name(team_name, "team name")
        validate_resolved_path(path, self.state_root)
        return path

    def worker_file(self, base: Path, worker_name: str, suffix: str) -> Path:
        path = base / "{0}{1}".format(sanitize_name(worker_name, "worker name"), suffix)
        validate_resolved_path(path, base)
        return path
