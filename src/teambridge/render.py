"""Presentation helpers for teambridge CLI output."""

from __future__ import annotations

from typing import Iterable, List, Optional, TextIO

from rich import box
from rich.console import Console
from rich.table import Table

from teambridge.team.status import TeamStatus
from teambridge.team.types import parse_iso_ms


def render_notice(level: str, message: str) -> str:
    prefix_map = {
        "info": "Info",
        "warn": "Warning",
        "error": "Error",
        "success": "Success",
    }
    return "{0}: {1}".format(prefix_map.get(level, "Info"), message)


def _is_tty(stream: TextIO, forced: Optional[bool]) -> bool:
    if forced is not None:
        return forced
    isatty = getattr(stream, "isatty", None)
    if callable(isatty):
        try:
            return bool(isatty())
        except (OSError, ValueError):
            return False
    return False


def _heartbeat_age(status: TeamStatus, timestamp: Optional[str]) -> str:
    now = parse_iso_ms(status.last_updated)
    stamp = parse_iso_ms(timestamp)
    if now is None or stamp is None:
        return "-"
    return "{0:.1f}s".format(max(0, now - stamp) / 1000.0)


def _worker_rows(status: TeamStatus) -> Iterable[List[str]]:
    for worker in status.workers:
        stats = worker.task_stats
        beat = worker.heartbeat
        yield [
            worker.worker_name,
            worker.provider,
            "alive" if worker.is_alive else "dead",
            beat.status if beat is not None else "-",
            _heartbeat_age(status, beat.timestamp if beat is not None else None),
            worker.current_task.id if worker.current_task is not None else "-",
            "{0}/{1}/{2}/{3}".format(stats.pending, stats.in_progress, stats.completed, stats.failed),
            str(len(worker.recent_messages)),
        ]


_HEADERS = ["worker", "provider", "liveness", "state", "beat_age", "task", "tasks", "unread"]


def render_team_status(status: TeamStatus, stream: TextIO, is_tty: Optional[bool] = None) -> None:
    summary = status.task_summary
    summary_line = "tasks total={0} pending={1} in_progress={2} completed={3} failed={4}".format(
        summary.total,
        summary.pending,
        summary.in_progress,
        summary.completed,
        summary.failed,
    )

    if _is_tty(stream, is_tty):
        console = Console(file=stream, highlight=False, soft_wrap=True)
        table = Table(title="team {0}".format(status.team_name), box=box.ROUNDED, header_style="bold cyan")
        for header in _HEADERS:
            table.add_column(header)
        for row in _worker_rows(status):
            table.add_row(*row)
        console.print(table)
        console.print(summary_line)
        return

    stream.write("team={0} updated={1}\n".format(status.team_name, status.last_updated))
    if not status.workers:
        stream.write("no registered workers\n")
    for row in _worker_rows(status):
        stream.write(" ".join("{0}={1}".format(key, value) for key, value in zip(_HEADERS, row)) + "\n")
    stream.write(summary_line + "\n")
    stream.flush()
