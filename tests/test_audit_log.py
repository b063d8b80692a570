from __future__ import annotations

import stat

import pytest

from teambridge.errors import InvalidNameError
from teambridge.team.audit_log import AuditEvent, AuditEventType, AuditLog


def test_log_and_filter_events(paths):
    log = AuditLog(paths.logs_dir)
    log.log_event("alpha", AuditEventType.BRIDGE_START, worker_name="w1")
    log.log_event("alpha", AuditEventType.TASK_COMPLETED, worker_name="w1", task_id="1")
    log.log_event("alpha", AuditEventType.TASK_COMPLETED, worker_name="w2", task_id="2")

    events = log.read_events("alpha")
    assert [event.event_type for event in events] == ["bridge_start", "task_completed", "task_completed"]
    assert [event.task_id for event in log.read_events("alpha", event_type="task_completed")] == ["1", "2"]
    assert [event.task_id for event in log.read_events("alpha", worker_name="w2")] == ["2"]
    assert log.read_events("alpha", since="9999-01-01T00:00:00.000+00:00") == []
    assert stat.S_IMODE(log.log_path("alpha").stat().st_mode) == 0o600


def test_read_skips_malformed_lines_and_missing_file(paths):
    log = AuditLog(paths.logs_dir)
    assert log.read_events("alpha") == []

    log.log_event("alpha", AuditEventType.WORKER_IDLE, worker_name="w1")
    with log.log_path("alpha").open("a", encoding="utf-8") as handle:
        handle.write("{garbage\n")
        handle.write('{"no": "event type"}\n')
    log.log_event("alpha", AuditEventType.WORKER_IDLE, worker_name="w1")

    assert len(log.read_events("alpha")) == 2


def test_log_path_rejects_unsafe_team(paths):
    with pytest.raises(InvalidNameError):
        AuditLog(paths.logs_dir).log_path("../escape")


def test_rotation_keeps_newest_suffix_below_threshold(paths):
    log = AuditLog(paths.logs_dir)
    for index in range(200):
        log.log_event("alpha", AuditEventType.TASK_STARTED, worker_name="w1", task_id=str(index))

    path = log.log_path("alpha")
    before = path.read_text(encoding="utf-8").splitlines()
    threshold = path.stat().st_size // 3

    assert log.rotate("alpha", max_bytes=threshold) is True

    after = path.read_text(encoding="utf-8").splitlines()
    assert path.stat().st_size <= threshold
    assert after == before[len(before) - len(after):]
    assert log.rotate("alpha", max_bytes=threshold) is False
    assert path.read_text(encoding="utf-8").splitlines() == after


def test_since_filter_compares_instants_not_strings(paths):
    log = AuditLog(paths.logs_dir)
    for stamp in ("2026-01-01T09:59:59.999+00:00", "2026-01-01T10:00:00.500+00:00", "2026-01-01T11:00:00.000+02:00"):
        log.append(AuditEvent(team_name="alpha", event_type="worker_idle", timestamp=stamp))

    def stamps(since):
        return [event.timestamp for event in log.read_events("alpha", since=since)]

    assert stamps("2026-01-01T10:00:00Z") == ["2026-01-01T10:00:00.500+00:00"]
    assert stamps("2026-01-01T10:00:00.500Z") == ["2026-01-01T10:00:00.500+00:00"]
    assert stamps("2026-01-01T09:00:00+00:00") == [
        "2026-01-01T09:59:59.999+00:00",
        "2026-01-01T10:00:00.500+00:00",
        "2026-01-01T11:00:00.000+02:00",
    ]
    with pytest.raises(ValueError):
        log.read_events("alpha", since="yesterday")
