"""Record types exchanged through the team directory tree."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from teambridge.fs_utils import sanitize_name


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id(prefix: str) -> str:
    return "{0}_{1}".format(prefix, uuid.uuid4().hex)


def iso_now(ts_ms: Optional[int] = None) -> str:
    moment = time.time() if ts_ms is None else ts_ms / 1000.0
    return datetime.fromtimestamp(moment, tz=timezone.utc).isoformat(timespec="milliseconds")


def parse_iso_ms(value: Any) -> Optional[int]:
    """Convert an ISO-8601 timestamp to epoch milliseconds; ``None`` if unparsable."""

    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(round(parsed.timestamp() * 1000))


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value)
    return text or None


def _optional_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


TASK_KNOWN_FIELDS = ("id", "owner", "status", "blockedBy", "claimedBy", "claimedAt", "claimPid")


@dataclass
class TaskFile:
    """Typed view of a task record.

    Fields outside the known set are kept verbatim in ``extra`` so a
    round trip through this type never drops data written by other tools.
    """

    id: str
    owner: str = ""
    status: str = TaskStatus.PENDING.value
    blocked_by: List[str] = field(default_factory=list)
    claimed_by: Optional[str] = None
    claimed_at: Optional[int] = None
    claim_pid: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], fallback_id: str = "") -> "TaskFile":
        blocked = data.get("blockedBy")
        return cls(
            id=str(data.get("id") or fallback_id),
            owner=str(data.get("owner") or ""),
            status=str(data.get("status") or TaskStatus.PENDING.value),
            blocked_by=[str(item) for item in blocked] if isinstance(blocked, list) else [],
            claimed_by=_optional_str(data.get("claimedBy")),
            claimed_at=_optional_int(data.get("claimedAt")),
            claim_pid=_optional_int(data.get("claimPid")),
            extra={key: value for key, value in data.items() if key not in TASK_KNOWN_FIELDS},
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "owner": self.owner,
            "status": self.status,
            "blockedBy": list(self.blocked_by),
        }
        if self.claimed_by is not None:
            data["claimedBy"] = self.claimed_by
        if self.claimed_at is not None:
            data["claimedAt"] = self.claimed_at
        if self.claim_pid is not None:
            data["claimPid"] = self.claim_pid
        data.update(self.extra)
        return data

    @property
    def subject(self) -> str:
        return str(self.extra.get("subject") or "")

    @property
    def description(self) -> str:
        return str(self.extra.get("description") or "")

    @property
    def metadata(self) -> Dict[str, Any]:
        raw = self.extra.get("metadata")
        return dict(raw) if isinstance(raw, dict) else {}

    @property
    def permanently_failed(self) -> bool:
        return bool(self.metadata.get("permanentlyFailed"))


@dataclass
class TaskFailureSidecar:
    task_id: str
    last_error: str
    retry_count: int
    last_failed_at: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["TaskFailureSidecar"]:
        retry_count = _optional_int(data.get("retryCount"))
        if retry_count is None:
            return None
        return cls(
            task_id=str(data.get("taskId") or ""),
            last_error=str(data.get("lastError") or ""),
            retry_count=retry_count,
            last_failed_at=str(data.get("lastFailedAt") or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "taskId": self.task_id,
            "lastError": self.last_error,
            "retryCount": self.retry_count,
            "lastFailedAt": self.last_failed_at,
        }


@dataclass
class HeartbeatData:
    worker_name: str
    team_name: str
    timestamp: str
    pid: Optional[int] = None
    status: str = "polling"
    provider: Optional[str] = None
    current_task_id: Optional[str] = None
    consecutive_errors: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["HeartbeatData"]:
        if not data.get("workerName") or not data.get("timestamp"):
            return None
        return cls(
            worker_name=str(data["workerName"]),
            team_name=str(data.get("teamName") or ""),
            timestamp=str(data["timestamp"]),
            pid=_optional_int(data.get("pid")),
            status=str(data.get("status") or "polling"),
            provider=_optional_str(data.get("provider")),
            current_task_id=_optional_str(data.get("currentTaskId")),
            consecutive_errors=_optional_int(data.get("consecutiveErrors")) or 0,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "workerName": self.worker_name,
            "teamName": self.team_name,
            "timestamp": self.timestamp,
            "status": self.status,
            "consecutiveErrors": self.consecutive_errors,
        }
        if self.pid is not None:
            data["pid"] = self.pid
        if self.provider:
            data["provider"] = self.provider
        if self.current_task_id:
            data["currentTaskId"] = self.current_task_id
        return data


class InboxMessageType(str, Enum):
    MESSAGE = "message"
    CONTEXT = "context"


@dataclass
class InboxMessage:
    type: str
    content: str
    timestamp: str = field(default_factory=iso_now)
    sender: Optional[str] = None
    message_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InboxMessage":
        return cls(
            type=str(data.get("type") or InboxMessageType.MESSAGE.value),
            content=str(data.get("content") or ""),
            timestamp=str(data.get("timestamp") or ""),
            sender=_optional_str(data.get("from")),
            message_id=_optional_str(data.get("id")),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type, "content": self.content, "timestamp": self.timestamp}
        if self.sender:
            data["from"] = self.sender
        if self.message_id:
            data["id"] = self.message_id
        return data

    @property
    def dedup_key(self) -> str:
        return self.message_id or "{0}|{1}|{2}".format(self.timestamp, self.sender or "", self.content)


class OutboxMessageType(str, Enum):
    READY = "ready"
    TASK_STARTED = "task_started"
    TASK_COMPLETE = "task_complete"
    TASK_FAILED = "task_failed"
    IDLE = "idle"
    SHUTDOWN_ACK = "shutdown_ack"
    DRAIN_ACK = "drain_ack"
    ERROR = "error"


@dataclass
class OutboxMessage:
    type: str
    timestamp: str = field(default_factory=iso_now)
    task_id: Optional[str] = None
    summary: Optional[str] = None
    message: Optional[str] = None
    error: Optional[str] = None
    request_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OutboxMessage":
        known = {"type", "timestamp", "taskId", "summary", "message", "error", "requestId"}
        return cls(
            type=str(data.get("type") or ""),
            timestamp=str(data.get("timestamp") or ""),
            task_id=_optional_str(data.get("taskId")),
            summary=_optional_str(data.get("summary")),
            message=_optional_str(data.get("message")),
            error=_optional_str(data.get("error")),
            request_id=_optional_str(data.get("requestId")),
            data={key: value for key, value in data.items() if key not in known},
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": self.type, "timestamp": self.timestamp}
        for key, value in (
            ("taskId", self.task_id),
            ("summary", self.summary),
            ("message", self.message),
            ("error", self.error),
            ("requestId", self.request_id),
        ):
            if value is not None:
                payload[key] = value
        payload.update(self.data)
        return payload


@dataclass
class LifecycleSignal:
    """Shutdown or drain request left for a worker as a marker file."""

    request_id: str
    reason: str = ""
    timestamp: str = field(default_factory=iso_now)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LifecycleSignal":
        return cls(
            request_id=str(data.get("requestId") or ""),
            reason=str(data.get("reason") or ""),
            timestamp=str(data.get("timestamp") or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"requestId": self.request_id, "reason": self.reason, "timestamp": self.timestamp}


@dataclass
class McpWorkerMember:
    name: str
    agent_type: str
    registered_at: str = field(default_factory=iso_now)
    working_directory: Optional[str] = None
    model: Optional[str] = None

    @property
    def provider(self) -> str:
        return self.agent_type[len("mcp-"):] if self.agent_type.startswith("mcp-") else self.agent_type

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["McpWorkerMember"]:
        if not data.get("name") or not data.get("agentType"):
            return None
        return cls(
            name=str(data["name"]),
            agent_type=str(data["agentType"]),
            registered_at=str(data.get("registeredAt") or ""),
            working_directory=_optional_str(data.get("workingDirectory")),
            model=_optional_str(data.get("model")),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "agentType": self.agent_type,
            "registeredAt": self.registered_at,
        }
        if self.working_directory:
            data["workingDirectory"] = self.working_directory
        if self.model:
            data["model"] = self.model
        return data


@dataclass
class ConfigProbeResult:
    """Cached outcome of the one-time execution capability check."""

    provider: str
    available: bool
    probed_at: str = field(default_factory=iso_now)
    version: Optional[str] = None
    detail: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["ConfigProbeResult"]:
        if not data.get("provider"):
            return None
        return cls(
            provider=str(data["provider"]),
            available=bool(data.get("available")),
            probed_at=str(data.get("probedAt") or ""),
            version=_optional_str(data.get("version")),
            detail=str(data.get("detail") or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "provider": self.provider,
            "available": self.available,
            "probedAt": self.probed_at,
            "detail": self.detail,
        }
        if self.version:
            data["version"] = self.version
        return data


class SessionHost(Protocol):
    """Persistent execution context per worker, supplied by the embedding tool."""

    def create_session(self, session_name: str, working_directory: str) -> None:
        ...

    def kill_session(self, session_name: str) -> None:
        ...

    def is_session_alive(self, session_name: str) -> bool:
        ...

    def spawn_bridge(self, session_name: str, config_path: str) -> None:
        ...


def session_name(team_name: str, worker_name: str) -> str:
    return "teambridge-{0}-{1}".format(
        sanitize_name(team_name, "team name"),
        sanitize_name(worker_name, "worker name"),
    )
