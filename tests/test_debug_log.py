from __future__ import annotations

import json

from teambridge.debug_log import DebugLogWriter


def _writer(tmp_path, **kwargs):
    kwargs.setdefault("redaction", "default")
    return DebugLogWriter(logs_dir=tmp_path / "logs", team_name="alpha", worker_name="w1", **kwargs)


def _records(writer):
    return [json.loads(line) for line in writer.active_log_file.read_text(encoding="utf-8").splitlines()]


def test_debug_log_rotation_respects_size_and_max_files(tmp_path):
    writer = _writer(tmp_path, max_file_bytes=256, max_files=2, redaction="none")

    for idx in range(40):
        writer.info("cycle", "rotation-{0}".format(idx), blob="x" * 80, idx=idx)

    assert writer.active_log_file.name == "bridge-alpha-w1.debug.jsonl"
    assert writer.active_log_file.stat().st_size > 0
    assert len(writer.rotated_files()) == 2
    assert not (tmp_path / "logs" / "bridge-alpha-w1.debug.jsonl.3").exists()
    assert writer.write_errors == 0


def test_default_redaction_masks_secrets(tmp_path):
    writer = _writer(tmp_path)
    writer.warning(
        "provider",
        "call failed with Authorization: Bearer abc123 and sk-ABCDEFGHIJKL",
        api_key="plain",
        detail="token=xyz",
        taskId="7",
    )

    record = _records(writer)[0]
    assert "abc123" not in record["message"]
    assert "sk-ABCDEFGHIJKL" not in record["message"]
    assert record["data"]["api_key"] == "***REDACTED***"
    assert record["data"]["detail"] == "token=***REDACTED***"
    assert record["data"]["taskId"] == "7"
    assert record["teamName"] == "alpha"
    assert record["workerName"] == "w1"


def test_strict_redaction_keeps_only_identifiers(tmp_path):
    writer = _writer(tmp_path, redaction="strict")
    writer.error("task", "failed", taskId="7", error="stack trace with paths")

    record = _records(writer)[0]
    assert record["data"] == {"taskId": "7", "error": "***REDACTED***"}


def test_disabled_writer_writes_nothing(tmp_path):
    writer = _writer(tmp_path, enabled=False)
    writer.info("cycle", "ignored")
    assert not writer.active_log_file.exists()


def test_debug_log_fail_open_tracks_write_errors(tmp_path):
    blocked_path = tmp_path / "not-a-dir"
    blocked_path.write_text("file", encoding="utf-8")
    writer = DebugLogWriter(logs_dir=blocked_path, team_name="alpha", worker_name="w1")

    writer.info("cycle", "should not raise", token="secret")

    assert writer.write_errors >= 1
