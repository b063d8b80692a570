"""Append-only JSONL audit trail, one file per team.

The stream is diagnostic: rotation may drop a line appended between its
snapshot and its rename.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from teambridge.fs_utils import (
    append_file_with_mode,
    ensure_dir_with_mode,
    read_jsonl_objects,
    sanitize_name,
    tail_truncate_lines,
    validate_resolved_path,
)
from teambridge.team.types import iso_now, parse_iso_ms

DEFAULT_MAX_LOG_BYTES = 5 * 1024 * 1024


class AuditEventType(str, Enum):
    BRIDGE_START = "bridge_start"
    BRIDGE_SHUTDOWN = "bridge_shutdown"
    TASK_CLAIMED = "task_claimed"
    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    TASK_PERMANENTLY_FAILED = "task_permanently_failed"
    WORKER_IDLE = "worker_idle"
    WORKER_QUARANTINED = "worker_quarantined"
    SHUTDOWN_RECEIVED = "shutdown_received"
    DRAIN_RECEIVED = "drain_received"
    INBOX_ROTATED = "inbox_rotated"
    OUTBOX_ROTATED = "outbox_rotated"
    CLI_TIMEOUT = "cli_timeout"
    CLI_ERROR = "cli_error"
    WORKER_RESTARTED = "worker_restarted"


@dataclass
class AuditEvent:
    team_name: str
    event_type: str
    timestamp: str = field(default_factory=iso_now)
    worker_name: Optional[str] = None
    task_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["AuditEvent"]:
        if not data.get("eventType") or not data.get("timestamp"):
            return None
        details = data.get("details")
        return cls(
            team_name=str(data.get("teamName") or ""),
            event_type=str(data["eventType"]),
            timestamp=str(data["timestamp"]),
            worker_name=str(data["workerName"]) if data.get("workerName") else None,
            task_id=str(data["taskId"]) if data.get("taskId") else None,
            details=dict(details) if isinstance(details, dict) else {},
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "timestamp": self.timestamp,
            "eventType": self.event_type,
            "teamName": self.team_name,
        }
        if self.worker_name:
            data["workerName"] = self.worker_name
        if self.task_id:
            data["taskId"] = self.task_id
        if self.details:
            data["details"] = self.details
        return data


class AuditLog:
    """Team audit streams stored under ``<logs_dir>/team-bridge-<team>.jsonl``."""

    def __init__(self, logs_dir: Path, max_bytes: int = DEFAULT_MAX_LOG_BYTES) -> None:
        self._logs_dir = Path(logs_dir)
        self._max_bytes = max(1, int(max_bytes))

    def log_path(self, team_name: str) -> Path:
        path = self._logs_dir / "team-bridge-{0}.jsonl".format(sanitize_name(team_name, "team name"))
        validate_resolved_path(path, self._logs_dir)
        return path

    def log_event(
        self,
        team_name: str,
        event_type: str,
        *,
        worker_name: Optional[str] = None,
        task_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            team_name=team_name,
            event_type=str(event_type.value if isinstance(event_type, Enum) else event_type),
            worker_name=worker_name,
            task_id=task_id,
            details=dict(details or {}),
        )
        self.append(event)
        return event

    def append(self, event: AuditEvent) -> None:
        path = self.log_path(event.team_name)
        ensure_dir_with_mode(self._logs_dir)
        line = json.dumps(event.to_dict(), ensure_ascii=False, separators=(",", ":"), default=str)
        append_file_with_mode(path, line + "\n")

    def read_events(
        self,
        team_name: str,
        *,
        event_type: Optional[str] = None,
        worker_name: Optional[str] = None,
        since: Optional[str] = None,
    ) -> List[AuditEvent]:
        """Return events oldest first, skipping malformed lines.

        ``since`` is any ISO-8601 timestamp (``Z`` or offset form) and is
        inclusive; an unparsable value raises ``ValueError``.
        """

        since_ms = None
        if since:
            since_ms = parse_iso_ms(since)
            if since_ms is None:
                raise ValueError("Invalid since timestamp: {0!r}".format(since))

        path = self.log_path(team_name)
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            return []

        wanted_type = str(event_type.value if isinstance(event_type, Enum) else event_type or "")
        events: List[AuditEvent] = []
        for record in read_jsonl_objects(content):
            event = AuditEvent.from_dict(record)
            if event is None:
                continue
            if wanted_type and event.event_type != wanted_type:
                continue
            if worker_name and event.worker_name != worker_name:
                continue
            if since_ms is not None:
                stamp = parse_iso_ms(event.timestamp)
                if stamp is None or stamp < since_ms:
                    continue
            events.append(event)
        return events

    def rotate(self, team_name: str, max_bytes: Optional[int] = None) -> bool:
        """Keep the newer half of the lines once the file exceeds ``max_bytes``.

        Halving repeats while the kept suffix would still exceed the limit.
        """

        path = self.log_path(team_name)
        limit = self._max_bytes if max_bytes is None else max(1, int(max_bytes))
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            return False
        if size <= limit:
            return False
        content = path.read_text(encoding="utf-8")
        lines = [line for line in content.split("\n") if line.strip()]
        kept = lines[len(lines) // 2:]
        while kept and sum(len(line.encode("utf-8")) + 1 for line in kept) > limit:
            kept = kept[max(1, len(kept) // 2):]
        tail_truncate_lines(path, len(kept))
        return True
