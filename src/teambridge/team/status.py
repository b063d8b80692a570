"""Read-only team snapshot for external monitors.

Every piece is read independently, so counts may straddle one in-flight
transition.  The snapshot never moves a cursor and never raises for a bad
record; use it for display, not for control decisions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from teambridge.paths import BridgePaths
from teambridge.team.heartbeat import DEFAULT_HEARTBEAT_MAX_AGE_MS, HeartbeatRegistry
from teambridge.team.mailbox import Mailbox
from teambridge.team.registration import WorkerRegistry
from teambridge.team.task_store import TaskStore
from teambridge.team.types import HeartbeatData, OutboxMessage, TaskFile, TaskStatus, iso_now, now_ms


@dataclass
class TaskStats:
    total: int = 0
    completed: int = 0
    failed: int = 0
    pending: int = 0
    in_progress: int = 0

    @classmethod
    def from_tasks(cls, tasks: List[TaskFile]) -> "TaskStats":
        stats = cls(total=len(tasks))
        for task in tasks:
            if task.status == TaskStatus.COMPLETED.value:
                if task.permanently_failed:
                    stats.failed += 1
                else:
                    stats.completed += 1
            elif task.status == TaskStatus.IN_PROGRESS.value:
                stats.in_progress += 1
            elif task.status == TaskStatus.PENDING.value:
                stats.pending += 1
        return stats

    def to_dict(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "pending": self.pending,
            "inProgress": self.in_progress,
        }


@dataclass
class WorkerStatus:
    worker_name: str
    provider: str
    is_alive: bool
    heartbeat: Optional[HeartbeatData] = None
    current_task: Optional[TaskFile] = None
    recent_messages: List[OutboxMessage] = field(default_factory=list)
    task_stats: TaskStats = field(default_factory=TaskStats)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workerName": self.worker_name,
            "provider": self.provider,
            "isAlive": self.is_alive,
            "heartbeat": self.heartbeat.to_dict() if self.heartbeat is not None else None,
            "currentTask": self.current_task.to_dict() if self.current_task is not None else None,
            "recentMessages": [message.to_dict() for message in self.recent_messages],
            "taskStats": self.task_stats.to_dict(),
        }


@dataclass
class TeamStatus:
    team_name: str
    workers: List[WorkerStatus]
    task_summary: TaskStats
    last_updated: str = field(default_factory=iso_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "teamName": self.team_name,
            "workers": [worker.to_dict() for worker in self.workers],
            "taskSummary": self.task_summary.to_dict(),
            "lastUpdated": self.last_updated,
        }


def get_team_status(
    paths: BridgePaths,
    team_name: str,
    heartbeat_max_age_ms: int = DEFAULT_HEARTBEAT_MAX_AGE_MS,
    *,
    now: Optional[int] = None,
) -> TeamStatus:
    current = now if now is not None else now_ms()
    tasks = TaskStore(paths).list_tasks(team_name)
    heartbeats = HeartbeatRegistry(paths)
    mailbox = Mailbox(paths)

    workers: List[WorkerStatus] = []
    for member in WorkerRegistry(paths).list_workers(team_name):
        owned = [task for task in tasks if task.owner == member.name]
        current_task = next(
            (task for task in owned if task.status == TaskStatus.IN_PROGRESS.value),
            None,
        )
        workers.append(
            WorkerStatus(
                worker_name=member.name,
                provider=member.provider,
                is_alive=heartbeats.is_worker_alive(team_name, member.name, heartbeat_max_age_ms, now=current),
                heartbeat=heartbeats.read_heartbeat(team_name, member.name),
                current_task=current_task,
                recent_messages=mailbox.peek_new_outbox_messages(team_name, member.name),
                task_stats=TaskStats.from_tasks(owned),
            )
        )

    return TeamStatus(
        team_name=team_name,
        workers=workers,
        task_summary=TaskStats.from_tasks(tasks),
        last_updated=iso_now(current),
    )
