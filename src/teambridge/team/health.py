"""Per-worker health reports built from heartbeats, audit events, and restart records."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from teambridge.paths import BridgePaths
from teambridge.team.audit_log import AuditEventType, AuditLog
from teambridge.team.heartbeat import DEFAULT_HEARTBEAT_MAX_AGE_MS, HeartbeatRegistry
from teambridge.team.registration import WorkerRegistry
from teambridge.team.restart import read_restart_state
from teambridge.team.types import now_ms

DEFAULT_MAX_CONSECUTIVE_ERRORS = 3


@dataclass
class WorkerHealthReport:
    worker_name: str
    provider: str
    is_alive: bool
    heartbeat_age_ms: Optional[int]
    status: str
    consecutive_errors: int
    current_task_id: Optional[str]
    tasks_completed: int
    tasks_failed: int
    restart_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workerName": self.worker_name,
            "provider": self.provider,
            "isAlive": self.is_alive,
            "heartbeatAgeMs": self.heartbeat_age_ms,
            "status": self.status,
            "consecutiveErrors": self.consecutive_errors,
            "currentTaskId": self.current_task_id,
            "tasksCompleted": self.tasks_completed,
            "tasksFailed": self.tasks_failed,
            "restartCount": self.restart_count,
        }


def get_worker_health_reports(
    paths: BridgePaths,
    team_name: str,
    heartbeat_max_age_ms: int = DEFAULT_HEARTBEAT_MAX_AGE_MS,
    *,
    audit_log: Optional[AuditLog] = None,
    now: Optional[int] = None,
) -> List[WorkerHealthReport]:
    current = now if now is not None else now_ms()
    heartbeats = HeartbeatRegistry(paths)
    log = audit_log or AuditLog(paths.logs_dir)
    events = log.read_events(team_name)

    reports: List[WorkerHealthReport] = []
    for member in WorkerRegistry(paths).list_workers(team_name):
        beat = heartbeats.read_heartbeat(team_name, member.name)
        age = heartbeats.heartbeat_age_ms(team_name, member.name, now=current)
        own = [event for event in events if event.worker_name == member.name]
        completed = sum(1 for event in own if event.event_type == AuditEventType.TASK_COMPLETED.value)
        failed = sum(
            1
            for event in own
            if event.event_type in (AuditEventType.TASK_FAILED.value, AuditEventType.TASK_PERMANENTLY_FAILED.value)
        )
        restart = read_restart_state(paths, team_name, member.name)
        reports.append(
            WorkerHealthReport(
                worker_name=member.name,
                provider=member.provider,
                is_alive=age is not None and age <= heartbeat_max_age_ms,
                heartbeat_age_ms=age,
                status=beat.status if beat is not None else "unknown",
                consecutive_errors=beat.consecutive_errors if beat is not None else 0,
                current_task_id=beat.current_task_id if beat is not None else None,
                tasks_completed=completed,
                tasks_failed=failed,
                restart_count=restart.consecutive_failures if restart is not None else 0,
            )
        )
    return reports


def check_worker_health(
    paths: BridgePaths,
    team_name: str,
    worker_name: str,
    heartbeat_max_age_ms: int = DEFAULT_HEARTBEAT_MAX_AGE_MS,
    max_consecutive_errors: int = DEFAULT_MAX_CONSECUTIVE_ERRORS,
    *,
    now: Optional[int] = None,
) -> Optional[str]:
    """Return ``None`` for a healthy worker, else a short reason."""

    heartbeats = HeartbeatRegistry(paths)
    beat = heartbeats.read_heartbeat(team_name, worker_name)
    if beat is None:
        return "dead: no heartbeat"
    age = heartbeats.heartbeat_age_ms(team_name, worker_name, now=now)
    if age is None or age > heartbeat_max_age_ms:
        return "dead: heartbeat stale ({0}ms)".format(age if age is not None else "?")
    if beat.status == "quarantined":
        return "quarantined"
    if beat.consecutive_errors >= max_consecutive_errors:
        return "consecutive errors >= {0}".format(max_consecutive_errors)
    return None
