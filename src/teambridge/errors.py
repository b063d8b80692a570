"""Exception hierarchy shared by the team bridge modules."""

from __future__ import annotations

from typing import Any, Dict


class TeamBridgeError(RuntimeError):
    """Base error carrying optional structured details."""

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self._details: Dict[str, Any] = {}
        for key, value in details.items():
            if value is None:
                continue
            self._details[str(key)] = value

    @property
    def details(self) -> Dict[str, Any]:
        return dict(self._details)


class InvalidNameError(TeamBridgeError, ValueError):
    """Raised when a team, worker, or task identifier contains unsafe characters."""


class PathEscapeError(TeamBridgeError, ValueError):
    """Raised when a resolved path leaves its permitted base directory."""


class TaskNotFoundError(TeamBridgeError):
    """Raised when a task file required for an update is missing or malformed."""


class BridgeConfigError(TeamBridgeError):
    """Raised when a worker bridge configuration is missing or invalid."""


class BridgeFatalError(TeamBridgeError):
    """Raised when the bridge loop must exit so the restart policy can take over."""


def error_summary(exc: BaseException) -> str:
    details = exc.details if isinstance(exc, TeamBridgeError) else {}
    segments = [str(exc) or exc.__class__.__name__]
    for key in sorted(details):
        value = details[key]
        if value in ("", None):
            continue
        segments.append("{0}={1}".format(key, value))
    return " | ".join(segments)
