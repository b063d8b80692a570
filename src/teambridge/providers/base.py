"""Provider interfaces and shared exceptions."""

from __future__ import annotations

import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from teambridge.errors import TeamBridgeError


class ProviderError(TeamBridgeError):
    """Raised when provider invocation fails."""


class ProviderTimeoutError(ProviderError):
    """Raised when the provider process outlives its timeout and is killed."""


class ProviderUnavailableError(ProviderError):
    """Raised when the provider binary cannot be found."""


def provider_error_summary(exc: BaseException) -> str:
    detail = exc.details if isinstance(exc, TeamBridgeError) else {}
    ordered_keys = ("provider_id", "returncode", "timeout_sec")
    segments = [str(exc)]
    for key in ordered_keys:
        value = detail.get(key)
        if value in ("", None):
            continue
        segments.append("{0}={1}".format(key, value))
    return " | ".join(segments)


@dataclass
class ExecutionRequest:
    prompt: str
    working_directory: str
    timeout_sec: float
    model: Optional[str] = None


@dataclass
class ExecutionResult:
    success: bool
    output: str = ""
    error: Optional[str] = None
    timed_out: bool = False
    raw_events: List[Dict[str, Any]] = field(default_factory=list)


class BaseProvider(ABC):
    provider_id: str
    install_hint: str = ""

    def __init__(self, binary: Optional[str] = None) -> None:
        self._binary = binary or self.provider_id

    @property
    def binary(self) -> str:
        return self._binary

    @abstractmethod
    def invoke(self, request: ExecutionRequest) -> ExecutionResult:
        """Run one request; raise :class:`ProviderError` on failure."""

        raise NotImplementedError

    def execute(self, request: ExecutionRequest) -> ExecutionResult:
        """Run one request and fold provider errors into an unsuccessful result."""

        try:
            return self.invoke(request)
        except ProviderTimeoutError as exc:
            return ExecutionResult(success=False, error=provider_error_summary(exc), timed_out=True)
        except ProviderUnavailableError as exc:
            message = str(exc)
            if self.install_hint:
                message = "{0}. {1}".format(message, self.install_hint)
            return ExecutionResult(success=False, error=message)
        except ProviderError as exc:
            return ExecutionResult(success=False, error=provider_error_summary(exc))

    def _run(self, command: List[str], request: ExecutionRequest) -> subprocess.CompletedProcess:
        try:
            process = subprocess.Popen(
                command,
                cwd=request.working_directory,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except FileNotFoundError as exc:
            raise ProviderUnavailableError(
                "{0} CLI not found".format(self.provider_id),
                provider_id=self.provider_id,
            ) from exc
        except OSError as exc:
            raise ProviderError(
                "{0} CLI could not be started: {1}".format(self.provider_id, exc),
                provider_id=self.provider_id,
            ) from exc

        try:
            stdout, stderr = process.communicate(timeout=request.timeout_sec)
        except subprocess.TimeoutExpired as exc:
            process.kill()
            process.communicate()
            raise ProviderTimeoutError(
                "{0} CLI timed out after {1}s".format(self.provider_id, request.timeout_sec),
                provider_id=self.provider_id,
                timeout_sec=request.timeout_sec,
            ) from exc

        completed = subprocess.CompletedProcess(
            args=command,
            returncode=int(process.returncode or 0),
            stdout=str(stdout or ""),
            stderr=str(stderr or ""),
        )
        if completed.returncode != 0:
            raise ProviderError(
                "{0} CLI failed: {1}".format(
                    self.provider_id,
                    (completed.stderr or completed.stdout).strip() or "no output",
                ),
                provider_id=self.provider_id,
                returncode=completed.returncode,
            )
        return completed
