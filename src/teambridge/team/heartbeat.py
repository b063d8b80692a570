"""Per-worker liveness beacons.

A beacon is rewritten in place on every beat; its age, not its history, is
the signal.  Deleting it on graceful exit makes departure visible at once.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import List, Optional

from teambridge.fs_utils import atomic_write_json, read_json_object, remove_file
from teambridge.paths import BridgePaths
from teambridge.team.types import HeartbeatData, iso_now, now_ms, parse_iso_ms

DEFAULT_HEARTBEAT_MAX_AGE_MS = 30_000
HEARTBEAT_SUFFIX = ".heartbeat.json"


class HeartbeatRegistry:
    def __init__(self, paths: BridgePaths) -> None:
        self._paths = paths

    def heartbeat_path(self, team_name: str, worker_name: str) -> Path:
        return self._paths.worker_file(self._paths.team_state_dir(team_name), worker_name, HEARTBEAT_SUFFIX)

    def write_heartbeat(
        self,
        team_name: str,
        worker_name: str,
        *,
        pid: Optional[int] = None,
        status: str = "polling",
        provider: Optional[str] = None,
        current_task_id: Optional[str] = None,
        consecutive_errors: int = 0,
        timestamp_ms: Optional[int] = None,
    ) -> HeartbeatData:
        beat = HeartbeatData(
            worker_name=worker_name,
            team_name=team_name,
            timestamp=iso_now(timestamp_ms),
            pid=pid if pid is not None else os.getpid(),
            status=status,
            provider=provider,
            current_task_id=current_task_id,
            consecutive_errors=int(consecutive_errors),
        )
        atomic_write_json(self.heartbeat_path(team_name, worker_name), beat.to_dict())
        return beat

    def read_heartbeat(self, team_name: str, worker_name: str) -> Optional[HeartbeatData]:
        data = read_json_object(self.heartbeat_path(team_name, worker_name))
        if data is None:
            return None
        return HeartbeatData.from_dict(data)

    def list_heartbeats(self, team_name: str) -> List[HeartbeatData]:
        directory = self._paths.team_state_dir(team_name)
        try:
            files = sorted(directory.glob("*" + HEARTBEAT_SUFFIX))
        except OSError:
            return []
        beats: List[HeartbeatData] = []
        for path in files:
            data = read_json_object(path)
            beat = HeartbeatData.from_dict(data) if data is not None else None
            if beat is not None:
                beats.append(beat)
        return beats

    def heartbeat_age_ms(
        self,
        team_name: str,
        worker_name: str,
        *,
        now: Optional[int] = None,
    ) -> Optional[int]:
        beat = self.read_heartbeat(team_name, worker_name)
        if beat is None:
            return None
        stamp = parse_iso_ms(beat.timestamp)
        if stamp is None:
            return None
        return max(0, (now if now is not None else now_ms()) - stamp)

    def is_worker_alive(
        self,
        team_name: str,
        worker_name: str,
        max_age_ms: int = DEFAULT_HEARTBEAT_MAX_AGE_MS,
        *,
        now: Optional[int] = None,
    ) -> bool:
        age = self.heartbeat_age_ms(team_name, worker_name, now=now)
        return age is not None and age <= max_age_ms

    def delete_heartbeat(self, team_name: str, worker_name: str) -> bool:
        return remove_file(self.heartbeat_path(team_name, worker_name))

    def cleanup_team_heartbeats(self, team_name: str) -> int:
        directory = self._paths.team_state_dir(team_name)
        removed = 0
        try:
            files = list(directory.glob("*" + HEARTBEAT_SUFFIX))
        except OSError:
            return 0
        for path in files:
            if remove_file(path):
                removed += 1
        return removed
