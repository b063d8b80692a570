"""Task file operations: read, merge-update, dependency checks, and claiming.

Tasks live at ``<home>/tasks/<team>/<id>.json``.  Failure bookkeeping is kept
in a ``<id>.failure.json`` sidecar next to the task.

Claiming is best-effort.  :meth:`TaskStore.find_next_task` writes a claim,
waits ``claim_delay_sec`` so racing workers can write theirs, and re-reads the
task; only a caller whose claim survived the re-read gets the task.  The
later rename always wins, so two callers cannot both pass verification unless
one of them re-reads before the other has written.  That window is only made
unlikely by the delay, never closed: this is race detection, not mutual
exclusion.
"""

from __future__ import annotations

import json
import os
import time
import uuid
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from teambridge.errors import InvalidNameError, TaskNotFoundError
from teambridge.fs_utils import TMP_MARKER, atomic_write_json, read_json_object, sanitize_task_id
from teambridge.paths import BridgePaths
from teambridge.team.types import TaskFailureSidecar, TaskFile, TaskStatus, iso_now, now_ms

DEFAULT_MAX_TASK_RETRIES = 5
DEFAULT_CLAIM_DELAY_SEC = 0.05
FAILURE_MARKER = ".failure."


def _task_id_sort_key(task_id: str):
    if task_id.isascii() and task_id.isdigit():
        return (0, int(task_id), task_id)
    return (1, 0, task_id)


def sort_task_ids(task_ids: Sequence[str]) -> List[str]:
    """Numeric ids in numeric order, then the rest lexicographically."""

    return sorted(task_ids, key=_task_id_sort_key)


class TaskStore:
    """Reads and writes the task files of every team under one home root."""

    def __init__(
        self,
        paths: BridgePaths,
        *,
        claim_delay_sec: float = DEFAULT_CLAIM_DELAY_SEC,
        pid: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._paths = paths
        self._claim_delay_sec = max(0.0, float(claim_delay_sec))
        self._pid = int(pid) if pid is not None else os.getpid()
        self._sleep = sleep

    @property
    def pid(self) -> int:
        return self._pid

    def read_task(self, team_name: str, task_id: str) -> Optional[TaskFile]:
        """Return the task, or ``None`` when it is missing or malformed."""

        data = read_json_object(self._paths.task_path(team_name, task_id))
        if data is None:
            return None
        return TaskFile.from_dict(data, fallback_id=task_id)

    def update_task(self, team_name: str, task_id: str, updates: Mapping[str, Any]) -> TaskFile:
        """Merge ``updates`` into the stored record and write it back atomically.

        Only keys present in ``updates`` change; every other field, known or
        not, is written back untouched.  A ``None`` value stores JSON null.
        """

        path = self._paths.task_path(team_name, task_id)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise TaskNotFoundError(
                "Task file not found or malformed: {0}".format(task_id),
                team=team_name,
                task_id=task_id,
            ) from exc
        if not isinstance(data, dict):
            raise TaskNotFoundError(
                "Task file not found or malformed: {0}".format(task_id),
                team=team_name,
                task_id=task_id,
            )
        for key, value in updates.items():
            data[str(key)] = value
        atomic_write_json(path, data)
        return TaskFile.from_dict(data, fallback_id=task_id)

    def list_task_ids(self, team_name: str) -> List[str]:
        directory = self._paths.team_tasks_dir(team_name)
        try:
            names = [entry.name for entry in directory.iterdir() if entry.is_file()]
        except OSError:
            return []
        ids: List[str] = []
        for name in names:
            if not name.endswith(".json") or TMP_MARKER in name or FAILURE_MARKER in name:
                continue
            try:
                ids.append(sanitize_task_id(name[: -len(".json")]))
            except InvalidNameError:
                # Stray files that are not addressable task ids are never scheduled.
                continue
        return sort_task_ids(ids)

    def list_tasks(self, team_name: str) -> List[TaskFile]:
        tasks: List[TaskFile] = []
        for task_id in self.list_task_ids(team_name):
            task = self.read_task(team_name, task_id)
            if task is not None:
                tasks.append(task)
        return tasks

    def are_blockers_resolved(self, team_name: str, blocked_by: Optional[Sequence[str]]) -> bool:
        if not blocked_by:
            return True
        for blocker_id in blocked_by:
            try:
                blocker = self.read_task(team_name, blocker_id)
            except InvalidNameError:
                return False
            if blocker is None or blocker.status != TaskStatus.COMPLETED.value:
                return False
        return True

    def is_claimable(self, team_name: str, task: TaskFile, worker_name: str) -> bool:
        return (
            task.status == TaskStatus.PENDING.value
            and task.owner == worker_name
            and self.are_blockers_resolved(team_name, task.blocked_by)
        )

    def find_next_task(self, team_name: str, worker_name: str) -> Optional[TaskFile]:
        """Claim and return the first eligible task for ``worker_name``.

        A lost race moves the scan forward to the next id; it never restarts
        from the top.
        """

        for task_id in self.list_task_ids(team_name):
            task = self.read_task(team_name, task_id)
            if task is None or not self.is_claimable(team_name, task, worker_name):
                continue

            claim_token = uuid.uuid4().hex
            try:
                self.update_task(
                    team_name,
                    task_id,
                    {
                        "claimedBy": worker_name,
                        "claimedAt": now_ms(),
                        "claimPid": self._pid,
                        "claimToken": claim_token,
                    },
                )
            except TaskNotFoundError:
                continue

            if self._claim_delay_sec:
                self._sleep(self._claim_delay_sec)

            fresh = self.read_task(team_name, task_id)
            if (
                fresh is None
                or fresh.status != TaskStatus.PENDING.value
                or fresh.claimed_by != worker_name
                or fresh.claim_pid != self._pid
                or fresh.extra.get("claimToken") != claim_token
            ):
                continue
            return fresh
        return None

    def release_claim(self, team_name: str, task_id: str, updates: Optional[Dict[str, Any]] = None) -> TaskFile:
        """Return a task to ``pending`` with its claim cleared."""

        merged: Dict[str, Any] = {
            "status": TaskStatus.PENDING.value,
            "claimedBy": None,
            "claimedAt": None,
            "claimPid": None,
            "claimToken": None,
        }
        merged.update(updates or {})
        return self.update_task(team_name, task_id, merged)

    def read_task_failure(self, team_name: str, task_id: str) -> Optional[TaskFailureSidecar]:
        data = read_json_object(self._paths.failure_sidecar_path(team_name, task_id))
        if data is None:
            return None
        return TaskFailureSidecar.from_dict(data)

    def write_task_failure(self, team_name: str, task_id: str, error: str) -> TaskFailureSidecar:
        existing = self.read_task_failure(team_name, task_id)
        sidecar = TaskFailureSidecar(
            task_id=task_id,
            last_error=str(error or ""),
            retry_count=existing.retry_count + 1 if existing is not None else 1,
            last_failed_at=iso_now(),
        )
        atomic_write_json(self._paths.failure_sidecar_path(team_name, task_id), sidecar.to_dict())
        return sidecar

    def is_task_retry_exhausted(
        self,
        team_name: str,
        task_id: str,
        max_retries: int = DEFAULT_MAX_TASK_RETRIES,
    ) -> bool:
        failure = self.read_task_failure(team_name, task_id)
        if failure is None:
            return False
        return failure.retry_count >= max_retries
