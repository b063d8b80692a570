"""Per-worker inbox/outbox queues and lifecycle signal files.

Layout under ``<home>/teams/<team>/``::

    inbox/<worker>.jsonl          monitor/peers -> worker
    inbox/<worker>.offset.json    worker's read cursor
    outbox/<worker>.jsonl         worker -> monitor
    outbox/<worker>.offset.json   monitor's read cursor
    signals/<worker>.shutdown
    signals/<worker>.drain

Cursors are byte offsets into the queue file and only ever advance over
complete lines, so a half-written trailing line is picked up on the next
poll.  A cursor beyond the end of the file (crash between clearing content
and resetting the cursor) is clamped to the current length.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, List, Optional

from teambridge.errors import InvalidNameError
from teambridge.fs_utils import (
    append_file_with_mode,
    atomic_write_bytes,
    atomic_write_json,
    atomic_write_text,
    read_json_object,
    read_jsonl_objects,
    remove_file,
    sanitize_name,
)
from teambridge.paths import BridgePaths
from teambridge.team.heartbeat import HeartbeatRegistry
from teambridge.team.types import InboxMessage, LifecycleSignal, OutboxMessage, new_id

DEFAULT_MAX_LINES = 500
QUEUE_SUFFIX = ".jsonl"
CURSOR_SUFFIX = ".offset.json"
SHUTDOWN_SUFFIX = ".shutdown"
DRAIN_SUFFIX = ".drain"


class Mailbox:
    """Durable message queues shared through the team directory."""

    def __init__(self, paths: BridgePaths, max_lines: int = DEFAULT_MAX_LINES) -> None:
        self._paths = paths
        self._max_lines = max(1, int(max_lines))

    def _queue_dir(self, team_name: str, kind: str) -> Path:
        return self._paths.team_dir(team_name) / kind

    def _worker_file(self, team_name: str, kind: str, worker_name: str, suffix: str) -> Path:
        return self._paths.worker_file(self._queue_dir(team_name, kind), worker_name, suffix)

    def inbox_path(self, team_name: str, worker_name: str) -> Path:
        return self._worker_file(team_name, "inbox", worker_name, QUEUE_SUFFIX)

    def outbox_path(self, team_name: str, worker_name: str) -> Path:
        return self._worker_file(team_name, "outbox", worker_name, QUEUE_SUFFIX)

    def _inbox_cursor_path(self, team_name: str, worker_name: str) -> Path:
        return self._worker_file(team_name, "inbox", worker_name, CURSOR_SUFFIX)

    def _outbox_cursor_path(self, team_name: str, worker_name: str) -> Path:
        return self._worker_file(team_name, "outbox", worker_name, CURSOR_SUFFIX)

    def shutdown_signal_path(self, team_name: str, worker_name: str) -> Path:
        return self._worker_file(team_name, "signals", worker_name, SHUTDOWN_SUFFIX)

    def drain_signal_path(self, team_name: str, worker_name: str) -> Path:
        return self._worker_file(team_name, "signals", worker_name, DRAIN_SUFFIX)

    # -- queues ---------------------------------------------------------------

    def append_inbox(self, team_name: str, worker_name: str, message: InboxMessage) -> None:
        if not message.message_id:
            message.message_id = new_id("msg")
        self._append(self.inbox_path(team_name, worker_name), message.to_dict())

    def append_outbox(self, team_name: str, worker_name: str, message: OutboxMessage) -> None:
        self._append(self.outbox_path(team_name, worker_name), message.to_dict())

    def read_new_inbox_messages(self, team_name: str, worker_name: str) -> List[InboxMessage]:
        records = self._read_new(
            self.inbox_path(team_name, worker_name),
            self._inbox_cursor_path(team_name, worker_name),
            advance=True,
        )
        return [InboxMessage.from_dict(record) for record in records]

    def read_all_inbox_messages(self, team_name: str, worker_name: str) -> List[InboxMessage]:
        return [InboxMessage.from_dict(record) for record in self._read_all(self.inbox_path(team_name, worker_name))]

    def clear_inbox(self, team_name: str, worker_name: str) -> None:
        """Empty the inbox, then reset its cursor; readers clamp if only the first step landed."""

        path = self.inbox_path(team_name, worker_name)
        if path.exists():
            atomic_write_text(path, "")
        self._write_cursor(self._inbox_cursor_path(team_name, worker_name), 0)

    def read_new_outbox_messages(self, team_name: str, worker_name: str) -> List[OutboxMessage]:
        records = self._read_new(
            self.outbox_path(team_name, worker_name),
            self._outbox_cursor_path(team_name, worker_name),
            advance=True,
        )
        return [OutboxMessage.from_dict(record) for record in records]

    def peek_new_outbox_messages(self, team_name: str, worker_name: str) -> List[OutboxMessage]:
        """Unread outbox entries without moving the monitor's cursor."""

        records = self._read_new(
            self.outbox_path(team_name, worker_name),
            self._outbox_cursor_path(team_name, worker_name),
            advance=False,
        )
        return [OutboxMessage.from_dict(record) for record in records]

    def read_all_outbox_messages(self, team_name: str, worker_name: str) -> List[OutboxMessage]:
        return [OutboxMessage.from_dict(record) for record in self._read_all(self.outbox_path(team_name, worker_name))]

    def read_all_team_outbox_messages(self, team_name: str) -> Dict[str, List[OutboxMessage]]:
        """New outbox entries for every worker that has an outbox file."""

        directory = self._queue_dir(team_name, "outbox")
        result: Dict[str, List[OutboxMessage]] = {}
        for path in sorted(directory.glob("*" + QUEUE_SUFFIX)):
            try:
                worker_name = sanitize_name(path.name[: -len(QUEUE_SUFFIX)], "worker name")
            except InvalidNameError:
                continue
            messages = self.read_new_outbox_messages(team_name, worker_name)
            if messages:
                result[worker_name] = messages
        return result

    def reset_outbox_cursor(self, team_name: str, worker_name: str) -> None:
        self._write_cursor(self._outbox_cursor_path(team_name, worker_name), 0)

    def rotate_inbox_if_needed(self, team_name: str, worker_name: str, max_lines: Optional[int] = None) -> bool:
        return self._rotate(
            self.inbox_path(team_name, worker_name),
            self._inbox_cursor_path(team_name, worker_name),
            self._max_lines if max_lines is None else max_lines,
        )

    def rotate_outbox_if_needed(self, team_name: str, worker_name: str, max_lines: Optional[int] = None) -> bool:
        return self._rotate(
            self.outbox_path(team_name, worker_name),
            self._outbox_cursor_path(team_name, worker_name),
            self._max_lines if max_lines is None else max_lines,
        )

    # -- signals --------------------------------------------------------------

    def write_shutdown_signal(self, team_name: str, worker_name: str, request_id: str, reason: str = "") -> LifecycleSignal:
        signal = LifecycleSignal(request_id=request_id, reason=reason)
        atomic_write_json(self.shutdown_signal_path(team_name, worker_name), signal.to_dict())
        return signal

    def check_shutdown_signal(self, team_name: str, worker_name: str) -> Optional[LifecycleSignal]:
        return self._read_signal(self.shutdown_signal_path(team_name, worker_name))

    def delete_shutdown_signal(self, team_name: str, worker_name: str) -> bool:
        return remove_file(self.shutdown_signal_path(team_name, worker_name))

    def write_drain_signal(self, team_name: str, worker_name: str, request_id: str, reason: str = "") -> LifecycleSignal:
        signal = LifecycleSignal(request_id=request_id, reason=reason)
        atomic_write_json(self.drain_signal_path(team_name, worker_name), signal.to_dict())
        return signal

    def check_drain_signal(self, team_name: str, worker_name: str) -> Optional[LifecycleSignal]:
        return self._read_signal(self.drain_signal_path(team_name, worker_name))

    def delete_drain_signal(self, team_name: str, worker_name: str) -> bool:
        return remove_file(self.drain_signal_path(team_name, worker_name))

    def cleanup_worker_files(self, team_name: str, worker_name: str) -> None:
        """Remove every messaging, signal, and heartbeat artifact of one worker."""

        for path in (
            self.inbox_path(team_name, worker_name),
            self._inbox_cursor_path(team_name, worker_name),
            self.outbox_path(team_name, worker_name),
            self._outbox_cursor_path(team_name, worker_name),
            self.shutdown_signal_path(team_name, worker_name),
            self.drain_signal_path(team_name, worker_name),
        ):
            remove_file(path)
        HeartbeatRegistry(self._paths).delete_heartbeat(team_name, worker_name)

    # -- internals ------------------------------------------------------------

    @staticmethod
    def _append(path: Path, record: dict) -> None:
        line = json.dumps(record, ensure_ascii=False, separators=(",", ":"), default=str)
        append_file_with_mode(path, line + "\n")

    @staticmethod
    def _read_all(path: Path) -> List[dict]:
        try:
            return read_jsonl_objects(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError):
            return []

    @staticmethod
    def _read_cursor(path: Path) -> int:
        data = read_json_object(path) or {}
        try:
            return max(0, int(data.get("bytesRead") or 0))
        except (TypeError, ValueError):
            return 0

    @staticmethod
    def _write_cursor(path: Path, offset: int) -> None:
        atomic_write_json(path, {"bytesRead": max(0, int(offset))})

    def _read_new(self, queue_path: Path, cursor_path: Path, *, advance: bool) -> List[dict]:
        try:
            raw = queue_path.read_bytes()
        except OSError:
            return []

        stored = self._read_cursor(cursor_path)
        cursor = min(stored, len(raw))
        chunk = raw[cursor:]
        complete_len = chunk.rfind(b"\n") + 1
        if advance and (complete_len > 0 or stored != cursor):
            self._write_cursor(cursor_path, cursor + complete_len)
        if complete_len <= 0:
            return []
        return read_jsonl_objects(chunk[:complete_len].decode("utf-8", errors="replace"))

    def _rotate(self, queue_path: Path, cursor_path: Path, max_lines: int) -> bool:
        try:
            raw = queue_path.read_bytes()
        except FileNotFoundError:
            return False
        # (start, end) byte spans of complete, non-blank lines; a trailing
        # fragment without "\n" is still being written and always survives.
        spans = []
        start = 0
        while True:
            end = raw.find(b"\n", start)
            if end < 0:
                break
            if raw[start:end].strip():
                spans.append((start, end + 1))
            start = end + 1
        if len(spans) <= max_lines:
            return False

        kept = spans[len(spans) - max_lines:] if max_lines > 0 else []
        if start < len(raw):
            kept.append((start, len(raw)))
        cursor = min(self._read_cursor(cursor_path), len(raw))
        new_cursor = sum(max(0, min(end, cursor) - begin) for begin, end in kept)

        atomic_write_bytes(queue_path, b"".join(raw[begin:end] for begin, end in kept))
        if cursor_path.exists():
            self._write_cursor(cursor_path, new_cursor)
        return True

    @staticmethod
    def _read_signal(path: Path) -> Optional[LifecycleSignal]:
        if not path.exists():
            return None
        data = read_json_object(path)
        if data is None:
            return LifecycleSignal(request_id="", reason="unreadable signal file")
        return LifecycleSignal.from_dict(data)
