"""Crash-restart bookkeeping for worker bridges.

A restart record ``<state>/<team>/<worker>.restart.json`` counts consecutive
relaunches.  :func:`should_restart` refuses once the count reaches the
policy ceiling and otherwise reports how long to wait before relaunching;
:func:`clear_restart_state` resets the count after a sustained clean run.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from teambridge.config import BridgeConfig, ProjectConfig, RestartPolicy, write_bridge_config
from teambridge.fs_utils import atomic_write_json, read_json_object, remove_file
from teambridge.paths import BridgePaths
from teambridge.team.audit_log import AuditEventType, AuditLog
from teambridge.team.registration import WorkerRegistry
from teambridge.team.types import SessionHost, now_ms, session_name

RESTART_SUFFIX = ".restart.json"
BRIDGE_CONFIG_SUFFIX = ".bridge-config.json"

__all__ = [
    "RestartDecision",
    "RestartPolicy",
    "RestartState",
    "bridge_config_path",
    "clear_restart_state",
    "read_restart_state",
    "record_restart",
    "respawn_worker",
    "should_restart",
    "synthesize_bridge_config",
]


@dataclass
class RestartState:
    worker_name: str
    consecutive_failures: int = 0
    last_restart_at: int = 0
    backoff_ms: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any], worker_name: str) -> "RestartState":
        def _int(key: str) -> int:
            try:
                return max(0, int(data.get(key) or 0))
            except (TypeError, ValueError):
                return 0

        return cls(
            worker_name=str(data.get("workerName") or worker_name),
            consecutive_failures=_int("consecutiveFailures"),
            last_restart_at=_int("lastRestartAt"),
            backoff_ms=_int("backoffMs"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workerName": self.worker_name,
            "consecutiveFailures": self.consecutive_failures,
            "lastRestartAt": self.last_restart_at,
            "backoffMs": self.backoff_ms,
        }


@dataclass
class RestartDecision:
    restart: bool
    delay_ms: int = 0
    reason: str = ""


def _restart_path(paths: BridgePaths, team_name: str, worker_name: str) -> Path:
    return paths.worker_file(paths.team_state_dir(team_name), worker_name, RESTART_SUFFIX)


def bridge_config_path(paths: BridgePaths, team_name: str, worker_name: str) -> Path:
    return paths.worker_file(paths.team_state_dir(team_name), worker_name, BRIDGE_CONFIG_SUFFIX)


def read_restart_state(paths: BridgePaths, team_name: str, worker_name: str) -> Optional[RestartState]:
    data = read_json_object(_restart_path(paths, team_name, worker_name))
    if data is None:
        return None
    return RestartState.from_dict(data, worker_name)


def clear_restart_state(paths: BridgePaths, team_name: str, worker_name: str) -> bool:
    return remove_file(_restart_path(paths, team_name, worker_name))


def compute_backoff_ms(failures: int, policy: RestartPolicy) -> int:
    exponent = max(0, int(failures) - 1)
    delay = policy.backoff_base_ms * (policy.backoff_multiplier ** exponent)
    return int(min(delay, policy.backoff_max_ms))


def should_restart(
    state: Optional[RestartState],
    policy: Optional[RestartPolicy] = None,
    now: Optional[int] = None,
) -> RestartDecision:
    """Decide whether a crashed worker may be relaunched, and after what delay."""

    policy = policy or RestartPolicy()
    if state is None or state.consecutive_failures <= 0:
        return RestartDecision(restart=True, delay_ms=0, reason="first restart")
    if state.consecutive_failures >= policy.max_restarts:
        return RestartDecision(
            restart=False,
            reason="restart limit reached ({0}/{1})".format(state.consecutive_failures, policy.max_restarts),
        )
    current = now if now is not None else now_ms()
    elapsed = max(0, current - state.last_restart_at)
    remaining = max(0, state.backoff_ms - elapsed)
    return RestartDecision(
        restart=True,
        delay_ms=remaining,
        reason="backoff pending" if remaining else "backoff elapsed",
    )


def record_restart(
    paths: BridgePaths,
    team_name: str,
    worker_name: str,
    policy: Optional[RestartPolicy] = None,
    now: Optional[int] = None,
) -> RestartState:
    policy = policy or RestartPolicy()
    previous = read_restart_state(paths, team_name, worker_name)
    failures = (previous.consecutive_failures if previous is not None else 0) + 1
    state = RestartState(
        worker_name=worker_name,
        consecutive_failures=failures,
        last_restart_at=now if now is not None else now_ms(),
        backoff_ms=compute_backoff_ms(failures, policy),
    )
    atomic_write_json(_restart_path(paths, team_name, worker_name), state.to_dict())
    return state


def synthesize_bridge_config(
    paths: BridgePaths,
    team_name: str,
    worker_name: str,
    project_config: Optional[ProjectConfig] = None,
) -> Optional[BridgeConfig]:
    """Rebuild a runnable config from the worker's registration.

    Returns ``None`` when the worker was never registered.
    """

    member = WorkerRegistry(paths).get_worker(team_name, worker_name)
    if member is None:
        return None
    defaults = project_config or ProjectConfig()
    return BridgeConfig(
        team_name=team_name,
        worker_name=worker_name,
        provider=member.provider,
        working_directory=member.working_directory or str(paths.working_directory),
        model=member.model,
        poll_interval_ms=defaults.poll_interval_ms,
        task_timeout_ms=defaults.task_timeout_ms,
        max_consecutive_errors=defaults.max_consecutive_errors,
        outbox_max_lines=defaults.outbox_max_lines,
        max_retries=defaults.max_retries,
        heartbeat_interval_ms=defaults.heartbeat_interval_ms,
        claim_delay_ms=defaults.claim_delay_ms,
        rotate_every_cycles=defaults.rotate_every_cycles,
    )


def respawn_worker(
    paths: BridgePaths,
    team_name: str,
    worker_name: str,
    session_host: SessionHost,
    project_config: Optional[ProjectConfig] = None,
    *,
    audit_log: Optional[AuditLog] = None,
    now: Optional[int] = None,
) -> RestartDecision:
    """Relaunch a dead worker through ``session_host`` if the policy allows it.

    The caller owns waiting out ``delay_ms``; a decision with a pending
    delay is returned without spawning anything.
    """

    defaults = project_config or ProjectConfig()
    decision = should_restart(read_restart_state(paths, team_name, worker_name), defaults.restart, now=now)
    if not decision.restart or decision.delay_ms > 0:
        return decision

    config = synthesize_bridge_config(paths, team_name, worker_name, defaults)
    if config is None:
        return RestartDecision(restart=False, reason="worker is not registered")

    config_path = write_bridge_config(bridge_config_path(paths, team_name, worker_name), config)
    name = session_name(team_name, worker_name)
    if session_host.is_session_alive(name):
        session_host.kill_session(name)
    session_host.create_session(name, config.working_directory)
    session_host.spawn_bridge(name, str(config_path))

    state = record_restart(paths, team_name, worker_name, defaults.restart, now=now)
    log = audit_log or AuditLog(paths.logs_dir, defaults.audit_max_bytes)
    log.log_event(
        team_name,
        AuditEventType.WORKER_RESTARTED,
        worker_name=worker_name,
        details={"attempt": state.consecutive_failures, "backoffMs": state.backoff_ms},
    )
    return decision
