from __future__ import annotations

import json
import subprocess

import pytest

import teambridge.providers.base as provider_base
import teambridge.providers.factory as provider_factory
from teambridge.providers.base import ExecutionRequest
from teambridge.providers.codex_cli import CodexCLIProvider
from teambridge.providers.factory import build_provider, ensure_provider_probe, probe_provider
from teambridge.providers.gemini_cli import GeminiCLIProvider
from teambridge.team.registration import WorkerRegistry
from teambridge.team.types import ConfigProbeResult


class FakePopen:
    instances = []
    stdout_text = ""
    stderr_text = ""
    returncode = 0
    hang = False

    def __init__(self, command, **kwargs):
        self.command = command
        self.kwargs = kwargs
        self.killed = False
        self.returncode = None
        FakePopen.instances.append(self)

    def communicate(self, timeout=None):
        if FakePopen.hang and not self.killed:
            raise subprocess.TimeoutExpired(self.command, timeout)
        self.returncode = -9 if self.killed else FakePopen.returncode
        return FakePopen.stdout_text, FakePopen.stderr_text

    def kill(self):
        self.killed = True


@pytest.fixture
def fake_popen(monkeypatch):
    FakePopen.instances = []
    FakePopen.stdout_text = ""
    FakePopen.stderr_text = ""
    FakePopen.returncode = 0
    FakePopen.hang = False
    monkeypatch.setattr(provider_base.subprocess, "Popen", FakePopen)
    return FakePopen


def _request(tmp_path, **kwargs):
    kwargs.setdefault("timeout_sec", 5)
    return ExecutionRequest(prompt="do it", working_directory=str(tmp_path), **kwargs)


def test_codex_parses_final_agent_message(fake_popen, tmp_path):
    fake_popen.stdout_text = "\n".join(
        [
            json.dumps({"type": "thread.started"}),
            json.dumps({"type": "item.completed", "item": {"type": "agent_message", "text": "draft"}}),
            "not json",
            json.dumps({"type": "item.completed", "item": {"type": "agent_message", "text": "final answer"}}),
        ]
    )

    result = CodexCLIProvider().execute(_request(tmp_path, model="gpt-x"))

    assert result.success is True
    assert result.output == "final answer"
    assert len(result.raw_events) == 3
    command = fake_popen.instances[0].command
    assert command[:5] == ["codex", "exec", "-m", "gpt-x", "--json"]
    assert command[-1] == "do it"
    assert fake_popen.instances[0].kwargs["cwd"] == str(tmp_path)


def test_codex_handles_nested_message_content(fake_popen, tmp_path):
    fake_popen.stdout_text = json.dumps(
        {"message": {"content": [{"type": "text", "text": "a"}, {"type": "image"}, {"type": "text", "text": "b"}]}}
    )
    assert CodexCLIProvider().execute(_request(tmp_path)).output == "a\nb"


def test_codex_error_event_fails(fake_popen, tmp_path):
    fake_popen.stdout_text = json.dumps({"type": "error", "message": "quota exceeded"})
    result = CodexCLIProvider().execute(_request(tmp_path))
    assert result.success is False
    assert "quota exceeded" in result.error


def test_nonzero_exit_fails_with_stderr(fake_popen, tmp_path):
    fake_popen.returncode = 2
    fake_popen.stderr_text = "bad flag"
    result = GeminiCLIProvider().execute(_request(tmp_path))
    assert result.success is False
    assert "bad flag" in result.error
    assert result.timed_out is False


def test_timeout_kills_process(fake_popen, tmp_path):
    fake_popen.hang = True
    result = GeminiCLIProvider().execute(_request(tmp_path, timeout_sec=0.1))
    assert result.success is False
    assert result.timed_out is True
    assert fake_popen.instances[0].killed is True


def test_missing_binary_reports_install_hint(monkeypatch, tmp_path):
    def missing(*_args, **_kwargs):
        raise FileNotFoundError("gemini")

    monkeypatch.setattr(provider_base.subprocess, "Popen", missing)
    result = GeminiCLIProvider().execute(_request(tmp_path))
    assert result.success is False
    assert "not found" in result.error
    assert "npm install" in result.error


def test_gemini_command_includes_model(fake_popen, tmp_path):
    fake_popen.stdout_text = "  done  \n"
    result = GeminiCLIProvider().execute(_request(tmp_path, model="gemini-2.5-pro"))
    assert result.output == "done"
    assert fake_popen.instances[0].command == ["gemini", "-p", "do it", "-m", "gemini-2.5-pro"]


def test_build_provider_rejects_unknown():
    assert build_provider("CODEX").provider_id == "codex"
    with pytest.raises(ValueError):
        build_provider("claude")


def test_probe_provider_reports_missing_binary():
    result = probe_provider("codex", which=lambda _name: None)
    assert result.available is False
    assert "not found" in result.detail


def test_probe_provider_reads_version(monkeypatch):
    def fake_run(command, **_kwargs):
        return subprocess.CompletedProcess(command, 0, stdout="codex-cli 1.2.3\n", stderr="")

    monkeypatch.setattr(provider_factory.subprocess, "run", fake_run)
    result = probe_provider("codex", which=lambda name: "/usr/bin/" + name)
    assert result.available is True
    assert result.version == "codex-cli 1.2.3"


def test_ensure_provider_probe_uses_cache(paths):
    calls = []

    def prober(provider_id):
        calls.append(provider_id)
        return ConfigProbeResult(provider=provider_id, available=True, version="1")

    first = ensure_provider_probe(paths, "codex", prober=prober)
    second = ensure_provider_probe(paths, "codex", prober=prober)

    assert first.available and second.available
    assert calls == ["codex"]
    assert WorkerRegistry(paths).read_probe_result("codex").version == "1"
    ensure_provider_probe(paths, "codex", force=True, prober=prober)
    assert calls == ["codex", "codex"]


def test_launch_failure_becomes_failed_result(monkeypatch, tmp_path):
    def not_executable(*_args, **_kwargs):
        raise PermissionError(13, "Permission denied")

    monkeypatch.setattr(provider_base.subprocess, "Popen", not_executable)
    result = CodexCLIProvider().execute(_request(tmp_path))
    assert result.success is False
    assert "could not be started" in result.error
    assert result.timed_out is False
