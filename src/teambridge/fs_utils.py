"""Filesystem primitives: atomic writes, owner-only modes, name and path checks.

Every record shared between workers goes through these helpers.  Writes land
in a sibling temp file first and are renamed over the target, so readers see
either the old or the new content and never a partial file.
"""

from __future__ import annotations

import json
import os
import re
import uuid
from pathlib import Path
from typing import Any, List, Optional, Union

from teambridge.errors import InvalidNameError, PathEscapeError

FILE_MODE = 0o600
DIR_MODE = 0o700
TMP_MARKER = ".tmp."
MAX_NAME_LENGTH = 50
MAX_TASK_ID_LENGTH = 128

_NAME_RE = re.compile(r"[A-Za-z0-9_-]+")
_TASK_ID_RE = re.compile(r"[A-Za-z0-9._-]+")

PathLike = Union[str, Path]


def sanitize_name(name: str, kind: str = "name") -> str:
    """Return ``name`` unchanged if it is a safe team/worker name, else raise."""

    text = str(name or "")
    if not text or len(text) > MAX_NAME_LENGTH or not _NAME_RE.fullmatch(text):
        raise InvalidNameError(
            "Invalid {0}: {1!r} must match [A-Za-z0-9_-] (1-{2} chars)".format(
                kind, text, MAX_NAME_LENGTH
            ),
            kind=kind,
        )
    return text


def sanitize_task_id(task_id: str) -> str:
    text = str(task_id or "")
    if (
        not text
        or len(text) > MAX_TASK_ID_LENGTH
        or text in {".", ".."}
        or not _TASK_ID_RE.fullmatch(text)
    ):
        raise InvalidNameError(
            "Invalid task ID: {0!r} contains unsafe characters".format(text),
            kind="task_id",
        )
    return text


def validate_resolved_path(path: PathLike, base: PathLike) -> Path:
    """Resolve ``path`` and ensure it stays inside ``base``."""

    resolved = Path(path).expanduser().resolve()
    base_resolved = Path(base).expanduser().resolve()
    if resolved != base_resolved and base_resolved not in resolved.parents:
        raise PathEscapeError(
            "Path escapes base directory: {0}".format(resolved),
            base=str(base_resolved),
        )
    return resolved


def ensure_dir_with_mode(path: PathLike, mode: int = DIR_MODE) -> Path:
    directory = Path(path)
    directory.mkdir(mode=mode, parents=True, exist_ok=True)
    return directory


def _temp_sibling(path: Path) -> Path:
    return path.with_name("{0}{1}{2}.{3}".format(path.name, TMP_MARKER, os.getpid(), uuid.uuid4().hex[:8]))


def atomic_write_bytes(path: PathLike, content: bytes, mode: int = FILE_MODE) -> None:
    target = Path(path)
    ensure_dir_with_mode(target.parent)
    tmp_path = _temp_sibling(target)
    fd = os.open(str(tmp_path), os.O_WRONLY | os.O_CREAT | os.O_EXCL, mode)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, target)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def atomic_write_text(path: PathLike, content: str, mode: int = FILE_MODE) -> None:
    atomic_write_bytes(path, content.encode("utf-8"), mode=mode)


def atomic_write_json(path: PathLike, payload: Any, mode: int = FILE_MODE) -> None:
    atomic_write_text(path, json.dumps(payload, ensure_ascii=False, indent=2) + "\n", mode=mode)


def append_file_with_mode(path: PathLike, text: str, mode: int = FILE_MODE) -> None:
    """Append ``text`` in a single write; the file is created owner-only."""

    target = Path(path)
    ensure_dir_with_mode(target.parent)
    fd = os.open(str(target), os.O_WRONLY | os.O_CREAT | os.O_APPEND, mode)
    try:
        os.write(fd, text.encode("utf-8"))
    finally:
        os.close(fd)


def read_json_object(path: PathLike) -> Optional[dict]:
    """Tolerant read: missing, unreadable, or non-object JSON all yield ``None``."""

    try:
        raw = Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed


def read_jsonl_objects(text: str) -> List[dict]:
    records: List[dict] = []
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        try:
            parsed = json.loads(stripped)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            records.append(parsed)
    return records


def tail_truncate_lines(path: PathLike, keep_lines: int) -> int:
    """Rewrite ``path`` keeping only its newest ``keep_lines`` non-empty lines.

    Returns the number of lines dropped.  A line appended between the
    snapshot and the rename is lost.
    """

    target = Path(path)
    content = target.read_text(encoding="utf-8")
    lines = [line for line in content.split("\n") if line.strip()]
    keep = max(0, int(keep_lines))
    kept = lines[len(lines) - keep:] if keep else []
    rewritten = "\n".join(kept) + "\n" if kept else ""
    atomic_write_text(target, rewritten)
    return len(lines) - len(kept)


def remove_file(path: PathLike) -> bool:
    target = Path(path)
    try:
        target.unlink()
    except FileNotFoundError:
        return False
    return True
