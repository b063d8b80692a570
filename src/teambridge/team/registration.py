"""Worker registration bookkeeping and the cached capability probe."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

from teambridge.fs_utils import atomic_write_json, read_json_object, sanitize_name
from teambridge.paths import BridgePaths
from teambridge.team.types import ConfigProbeResult, McpWorkerMember

REGISTRY_FILE_NAME = "workers.json"
PROBE_FILE_NAME = "config-probe.json"


def agent_type_for(provider: str) -> str:
    return "mcp-{0}".format(str(provider or "").strip().lower())


class WorkerRegistry:
    """Registered workers of each team, kept in one JSON record per team.

    Each worker writes only its own entry; the read-modify-write is the same
    best-effort last-rename-wins cycle used for task files.
    """

    def __init__(self, paths: BridgePaths) -> None:
        self._paths = paths

    def registry_path(self, team_name: str) -> Path:
        return self._paths.team_state_dir(team_name) / REGISTRY_FILE_NAME

    @property
    def probe_path(self) -> Path:
        return self._paths.state_root / PROBE_FILE_NAME

    def _load(self, team_name: str) -> List[McpWorkerMember]:
        data = read_json_object(self.registry_path(team_name)) or {}
        raw_workers = data.get("workers")
        if not isinstance(raw_workers, list):
            return []
        members: List[McpWorkerMember] = []
        for item in raw_workers:
            if not isinstance(item, dict):
                continue
            member = McpWorkerMember.from_dict(item)
            if member is not None:
                members.append(member)
        return members

    def _save(self, team_name: str, members: List[McpWorkerMember]) -> None:
        atomic_write_json(
            self.registry_path(team_name),
            {"teamName": team_name, "workers": [member.to_dict() for member in members]},
        )

    def register_worker(
        self,
        team_name: str,
        worker_name: str,
        provider: str,
        *,
        working_directory: Optional[str] = None,
        model: Optional[str] = None,
    ) -> McpWorkerMember:
        sanitize_name(worker_name, "worker name")
        member = McpWorkerMember(
            name=worker_name,
            agent_type=agent_type_for(provider),
            working_directory=working_directory,
            model=model,
        )
        members = [item for item in self._load(team_name) if item.name != worker_name]
        members.append(member)
        self._save(team_name, members)
        return member

    def unregister_worker(self, team_name: str, worker_name: str) -> bool:
        members = self._load(team_name)
        remaining = [item for item in members if item.name != worker_name]
        if len(remaining) == len(members):
            return False
        self._save(team_name, remaining)
        return True

    def get_worker(self, team_name: str, worker_name: str) -> Optional[McpWorkerMember]:
        for member in self._load(team_name):
            if member.name == worker_name:
                return member
        return None

    def is_registered(self, team_name: str, worker_name: str) -> bool:
        return self.get_worker(team_name, worker_name) is not None

    def list_workers(self, team_name: str) -> List[McpWorkerMember]:
        return self._load(team_name)

    def read_probe_result(self, provider: str) -> Optional[ConfigProbeResult]:
        data = read_json_object(self.probe_path) or {}
        probes = data.get("probes")
        if not isinstance(probes, dict):
            return None
        raw = probes.get(str(provider))
        if not isinstance(raw, dict):
            return None
        return ConfigProbeResult.from_dict(raw)

    def write_probe_result(self, result: ConfigProbeResult) -> None:
        data = read_json_object(self.probe_path) or {}
        probes: Dict[str, Any] = data.get("probes") if isinstance(data.get("probes"), dict) else {}
        probes[result.provider] = result.to_dict()
        atomic_write_json(self.probe_path, {"probes": probes})
