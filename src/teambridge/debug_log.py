"""Per-worker JSONL diagnostics with size-based rotation and secret redaction."""

from __future__ import annotations

import json
import re
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from teambridge.fs_utils import append_file_with_mode, ensure_dir_with_mode, sanitize_name
from teambridge.team.types import iso_now

_REDACTED = "***REDACTED***"
_SENSITIVE_KEY_RE = re.compile(
    r"(password|secret|token|authorization|cookie|api[_-]?key|access[_-]?key|private[_-]?key)",
    re.IGNORECASE,
)
_BEARER_RE = re.compile(r"(?i)\bbearer\s+([^\s,;]+)")
_KEY_VALUE_RE = re.compile(
    r"(?i)\b(api[_-]?key|access[_-]?key|token|secret|authorization|cookie|private[_-]?key)\b\s*[:=]\s*([^\s,;]+)"
)
_SK_KEY_RE = re.compile(r"\bsk-[A-Za-z0-9]{8,}\b")

# Keys that identify records rather than carry payload; strict mode keeps them.
_STRICT_KEEP_KEYS = {"taskId", "requestId", "provider", "eventType", "cycle"}


class DebugLogWriter:
    """Best-effort debug log for one worker bridge.

    Writes never raise; failures only bump :attr:`write_errors`.  The active
    file is ``bridge-<team>-<worker>.debug.jsonl``, rotated to ``.1`` ...
    ``.<max_files>`` once it would exceed ``max_file_bytes``.
    """

    def __init__(
        self,
        *,
        logs_dir: Path,
        team_name: str,
        worker_name: str,
        enabled: bool = True,
        max_file_bytes: int = 10 * 1024 * 1024,
        max_files: int = 5,
        redaction: str = "default",
    ) -> None:
        self._logs_dir = Path(logs_dir)
        self._team_name = sanitize_name(team_name, "team name")
        self._worker_name = sanitize_name(worker_name, "worker name")
        self._enabled = bool(enabled)
        self._max_file_bytes = max(1, int(max_file_bytes or 0))
        self._max_files = max(1, int(max_files or 0))
        self._redaction = str(redaction or "default").strip().lower()
        if self._redaction not in {"none", "default", "strict"}:
            self._redaction = "default"
        self._write_errors = 0
        self._lock = threading.Lock()

    @property
    def active_log_file(self) -> Path:
        return self._logs_dir / "bridge-{0}-{1}.debug.jsonl".format(self._team_name, self._worker_name)

    @property
    def write_errors(self) -> int:
        return self._write_errors

    def debug(self, component: str, message: str, **data: Any) -> None:
        self.write_entry(level="debug", component=component, message=message, data=data)

    def info(self, component: str, message: str, **data: Any) -> None:
        self.write_entry(level="info", component=component, message=message, data=data)

    def warning(self, component: str, message: str, **data: Any) -> None:
        self.write_entry(level="warning", component=component, message=message, data=data)

    def error(self, component: str, message: str, **data: Any) -> None:
        self.write_entry(level="error", component=component, message=message, data=data)

    def write_entry(
        self,
        *,
        level: str,
        component: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        timestamp: Optional[str] = None,
    ) -> None:
        if not self._enabled:
            return

        record: Dict[str, Any] = {
            "timestamp": timestamp or iso_now(),
            "level": str(level or "info"),
            "component": str(component or "bridge"),
            "teamName": self._team_name,
            "workerName": self._worker_name,
            "message": str(message or ""),
            "data": {key: value for key, value in (data or {}).items() if value is not None},
        }

        if self._redaction != "none":
            record["message"] = self._redact_text(record["message"])
            if self._redaction == "strict":
                record["data"] = self._strict_redact(record["data"])
            else:
                record["data"] = self._redact_payload(record["data"])

        with self._lock:
            try:
                line = json.dumps(record, ensure_ascii=True, separators=(",", ":"), default=str) + "\n"
                ensure_dir_with_mode(self._logs_dir)
                self._rotate_if_needed_locked(len(line.encode("utf-8")))
                append_file_with_mode(self.active_log_file, line)
            except (OSError, TypeError, ValueError):
                self._write_errors += 1

    def rotated_files(self) -> List[Path]:
        return [path for path in (self._rotated_file(i) for i in range(1, self._max_files + 1)) if path.exists()]

    def _rotate_if_needed_locked(self, incoming_size: int) -> None:
        current_size = 0
        if self.active_log_file.exists():
            current_size = int(self.active_log_file.stat().st_size)
        if current_size + int(incoming_size) <= self._max_file_bytes:
            return

        self._rotated_file(self._max_files).unlink(missing_ok=True)
        for index in range(self._max_files - 1, 0, -1):
            src = self._rotated_file(index)
            if src.exists():
                src.replace(self._rotated_file(index + 1))
        if self.active_log_file.exists():
            self.active_log_file.replace(self._rotated_file(1))

    def _rotated_file(self, index: int) -> Path:
        return Path("{0}.{1}".format(self.active_log_file, index))

    def _redact_payload(self, value: Any) -> Any:
        if isinstance(value, dict):
            return {
                key: _REDACTED if _SENSITIVE_KEY_RE.search(str(key)) else self._redact_payload(item)
                for key, item in value.items()
            }
        if isinstance(value, list):
            return [self._redact_payload(item) for item in value]
        if isinstance(value, str):
            return self._redact_text(value)
        return value

    def _strict_redact(self, value: Any) -> Any:
        if isinstance(value, dict):
            out: Dict[str, Any] = {}
            for key, item in value.items():
                if _SENSITIVE_KEY_RE.search(str(key)):
                    out[key] = _REDACTED
                elif isinstance(item, (dict, list)):
                    out[key] = self._strict_redact(item)
                elif key in _STRICT_KEEP_KEYS:
                    out[key] = item
                else:
                    out[key] = _REDACTED
            return out
        if isinstance(value, list):
            return [self._strict_redact(item) for item in value]
        return _REDACTED

    @staticmethod
    def _redact_text(text: str) -> str:
        if not text:
            return text
        masked = _BEARER_RE.sub("Bearer {0}".format(_REDACTED), text)
        masked = _KEY_VALUE_RE.sub(lambda m: "{0}={1}".format(m.group(1), _REDACTED), masked)
        return _SK_KEY_RE.sub(_REDACTED, masked)
