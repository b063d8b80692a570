"""Configuration loading for team bridges.

Two layers:

* the project config ``<workdir>/.teambridge/config.toml`` with bridge,
  restart, log, and status defaults;
* the per-worker bridge config, a whole-file JSON record naming the team,
  worker, provider, and working directory, with optional overrides.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

try:  # pragma: no cover - exercised on Python 3.11+
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - fallback for Python 3.9/3.10
    import tomli as tomllib  # type: ignore[no-redef]

from teambridge.errors import BridgeConfigError, InvalidNameError, TeamBridgeError
from teambridge.fs_utils import atomic_write_json, atomic_write_text, ensure_dir_with_mode, sanitize_name
from teambridge.paths import WORKDIR_STATE_DIR_NAME

CONFIG_FILE_NAME = "config.toml"

ALLOWED_PROVIDERS = ("codex", "gemini")
DEFAULT_PROVIDER = "codex"

DEFAULT_POLL_INTERVAL_MS = 3000
DEFAULT_TASK_TIMEOUT_MS = 600_000
DEFAULT_MAX_CONSECUTIVE_ERRORS = 3
DEFAULT_OUTBOX_MAX_LINES = 500
DEFAULT_MAX_RETRIES = 5
DEFAULT_HEARTBEAT_INTERVAL_MS = 5000
DEFAULT_CLAIM_DELAY_MS = 50
DEFAULT_ROTATE_EVERY_CYCLES = 20

DEFAULT_MAX_RESTARTS = 5
DEFAULT_BACKOFF_BASE_MS = 5000
DEFAULT_BACKOFF_MAX_MS = 60_000
DEFAULT_BACKOFF_MULTIPLIER = 2.0
DEFAULT_STABLE_RUN_MS = 60_000

DEFAULT_LOGS_ENABLED = True
DEFAULT_LOGS_MAX_FILE_BYTES = 10 * 1024 * 1024
DEFAULT_LOGS_MAX_FILES = 5
DEFAULT_LOGS_REDACTION = "default"
DEFAULT_AUDIT_MAX_BYTES = 5 * 1024 * 1024
ALLOWED_LOG_REDACTION = ("default", "none", "strict")

DEFAULT_HEARTBEAT_MAX_AGE_MS = 30_000

TRUSTED_CONFIG_SUBPATHS = ("/{0}/".format(WORKDIR_STATE_DIR_NAME),)
REQUIRED_BRIDGE_FIELDS = ("teamName", "workerName", "provider", "workingDirectory")


class ProjectConfigError(TeamBridgeError):
    """Raised when the project configuration file cannot be parsed."""


@dataclass
class RestartPolicy:
    max_restarts: int = DEFAULT_MAX_RESTARTS
    backoff_base_ms: int = DEFAULT_BACKOFF_BASE_MS
    backoff_max_ms: int = DEFAULT_BACKOFF_MAX_MS
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER
    stable_run_ms: int = DEFAULT_STABLE_RUN_MS


@dataclass
class ProjectConfig:
    default_provider: str = DEFAULT_PROVIDER
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS
    task_timeout_ms: int = DEFAULT_TASK_TIMEOUT_MS
    max_consecutive_errors: int = DEFAULT_MAX_CONSECUTIVE_ERRORS
    outbox_max_lines: int = DEFAULT_OUTBOX_MAX_LINES
    max_retries: int = DEFAULT_MAX_RETRIES
    heartbeat_interval_ms: int = DEFAULT_HEARTBEAT_INTERVAL_MS
    claim_delay_ms: int = DEFAULT_CLAIM_DELAY_MS
    rotate_every_cycles: int = DEFAULT_ROTATE_EVERY_CYCLES
    restart: RestartPolicy = field(default_factory=RestartPolicy)
    logs_enabled: bool = DEFAULT_LOGS_ENABLED
    logs_max_file_bytes: int = DEFAULT_LOGS_MAX_FILE_BYTES
    logs_max_files: int = DEFAULT_LOGS_MAX_FILES
    logs_redaction: str = DEFAULT_LOGS_REDACTION
    audit_max_bytes: int = DEFAULT_AUDIT_MAX_BYTES
    heartbeat_max_age_ms: int = DEFAULT_HEARTBEAT_MAX_AGE_MS


@dataclass
class BridgeConfig:
    """Everything one worker bridge needs to run."""

    team_name: str
    worker_name: str
    provider: str
    working_directory: str
    model: Optional[str] = None
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS
    task_timeout_ms: int = DEFAULT_TASK_TIMEOUT_MS
    max_consecutive_errors: int = DEFAULT_MAX_CONSECUTIVE_ERRORS
    outbox_max_lines: int = DEFAULT_OUTBOX_MAX_LINES
    max_retries: int = DEFAULT_MAX_RETRIES
    heartbeat_interval_ms: int = DEFAULT_HEARTBEAT_INTERVAL_MS
    claim_delay_ms: int = DEFAULT_CLAIM_DELAY_MS
    rotate_every_cycles: int = DEFAULT_ROTATE_EVERY_CYCLES

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "teamName": self.team_name,
            "workerName": self.worker_name,
            "provider": self.provider,
            "workingDirectory": self.working_directory,
            "pollIntervalMs": self.poll_interval_ms,
            "taskTimeoutMs": self.task_timeout_ms,
            "maxConsecutiveErrors": self.max_consecutive_errors,
            "outboxMaxLines": self.outbox_max_lines,
            "maxRetries": self.max_retries,
            "heartbeatIntervalMs": self.heartbeat_interval_ms,
            "claimDelayMs": self.claim_delay_ms,
            "rotateEveryCycles": self.rotate_every_cycles,
        }
        if self.model:
            data["model"] = self.model
        return data


def resolve_config_root(workspace_dir: Optional[Path] = None) -> Path:
    return (workspace_dir or Path.cwd()).resolve() / WORKDIR_STATE_DIR_NAME


def _safe_positive_int(value: object, default: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        converted = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    if converted <= 0:
        return default
    return converted


def _safe_non_negative_int(value: object, default: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        converted = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    if converted < 0:
        return default
    return converted


def _safe_multiplier(value: object, default: float) -> float:
    try:
        converted = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    if converted < 1:
        return default
    return converted


def _safe_bool(value: object, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
    return default


def _safe_redaction(value: object, default: str) -> str:
    normalized = str(value or default).strip().lower()
    if normalized not in ALLOWED_LOG_REDACTION:
        return default
    return normalized


def _normalize_provider(value: object, default: str = DEFAULT_PROVIDER) -> str:
    candidate = str(value or default).strip().lower()
    if candidate not in ALLOWED_PROVIDERS:
        return default
    return candidate


def _section(data: Dict[str, object], name: str) -> Dict[str, object]:
    value = data.get(name)
    return value if isinstance(value, dict) else {}


def _parse_project_config_data(data: Dict[str, object]) -> ProjectConfig:
    bridge = _section(data, "bridge")
    restart = _section(data, "restart")
    logs = _section(data, "logs")
    status = _section(data, "status")

    return ProjectConfig(
        default_provider=_normalize_provider(bridge.get("default_provider")),
        poll_interval_ms=_safe_positive_int(bridge.get("poll_interval_ms"), DEFAULT_POLL_INTERVAL_MS),
        task_timeout_ms=_safe_positive_int(bridge.get("task_timeout_ms"), DEFAULT_TASK_TIMEOUT_MS),
        max_consecutive_errors=_safe_positive_int(
            bridge.get("max_consecutive_errors"),
            DEFAULT_MAX_CONSECUTIVE_ERRORS,
        ),
        outbox_max_lines=_safe_positive_int(bridge.get("outbox_max_lines"), DEFAULT_OUTBOX_MAX_LINES),
        max_retries=_safe_positive_int(bridge.get("max_retries"), DEFAULT_MAX_RETRIES),
        heartbeat_interval_ms=_safe_positive_int(
            bridge.get("heartbeat_interval_ms"),
            DEFAULT_HEARTBEAT_INTERVAL_MS,
        ),
        claim_delay_ms=_safe_non_negative_int(bridge.get("claim_delay_ms"), DEFAULT_CLAIM_DELAY_MS),
        rotate_every_cycles=_safe_positive_int(bridge.get("rotate_every_cycles"), DEFAULT_ROTATE_EVERY_CYCLES),
        restart=RestartPolicy(
            max_restarts=_safe_positive_int(restart.get("max_restarts"), DEFAULT_MAX_RESTARTS),
            backoff_base_ms=_safe_positive_int(restart.get("backoff_base_ms"), DEFAULT_BACKOFF_BASE_MS),
            backoff_max_ms=_safe_positive_int(restart.get("backoff_max_ms"), DEFAULT_BACKOFF_MAX_MS),
            backoff_multiplier=_safe_multiplier(
                restart.get("backoff_multiplier"),
                DEFAULT_BACKOFF_MULTIPLIER,
            ),
            stable_run_ms=_safe_positive_int(restart.get("stable_run_ms"), DEFAULT_STABLE_RUN_MS),
        ),
        logs_enabled=_safe_bool(logs.get("enabled"), DEFAULT_LOGS_ENABLED),
        logs_max_file_bytes=_safe_positive_int(logs.get("max_file_bytes"), DEFAULT_LOGS_MAX_FILE_BYTES),
        logs_max_files=_safe_positive_int(logs.get("max_files"), DEFAULT_LOGS_MAX_FILES),
        logs_redaction=_safe_redaction(logs.get("redaction"), DEFAULT_LOGS_REDACTION),
        audit_max_bytes=_safe_positive_int(logs.get("audit_max_bytes"), DEFAULT_AUDIT_MAX_BYTES),
        heartbeat_max_age_ms=_safe_positive_int(
            status.get("heartbeat_max_age_ms"),
            DEFAULT_HEARTBEAT_MAX_AGE_MS,
        ),
    )


def _render_project_config(config: ProjectConfig) -> str:
    lines: List[str] = [
        "[bridge]",
        'default_provider = "{0}"'.format(_normalize_provider(config.default_provider)),
        "poll_interval_ms = {0}".format(config.poll_interval_ms),
        "task_timeout_ms = {0}".format(config.task_timeout_ms),
        "max_consecutive_errors = {0}".format(config.max_consecutive_errors),
        "outbox_max_lines = {0}".format(config.outbox_max_lines),
        "max_retries = {0}".format(config.max_retries),
        "heartbeat_interval_ms = {0}".format(config.heartbeat_interval_ms),
        "claim_delay_ms = {0}".format(config.claim_delay_ms),
        "rotate_every_cycles = {0}".format(config.rotate_every_cycles),
        "",
        "[restart]",
        "max_restarts = {0}".format(config.restart.max_restarts),
        "backoff_base_ms = {0}".format(config.restart.backoff_base_ms),
        "backoff_max_ms = {0}".format(config.restart.backoff_max_ms),
        "backoff_multiplier = {0}".format(float(config.restart.backoff_multiplier)),
        "stable_run_ms = {0}".format(config.restart.stable_run_ms),
        "",
        "[logs]",
        "enabled = {0}".format(str(bool(config.logs_enabled)).lower()),
        "max_file_bytes = {0}".format(config.logs_max_file_bytes),
        "max_files = {0}".format(config.logs_max_files),
        'redaction = "{0}"'.format(_safe_redaction(config.logs_redaction, DEFAULT_LOGS_REDACTION)),
        "audit_max_bytes = {0}".format(config.audit_max_bytes),
        "",
        "[status]",
        "heartbeat_max_age_ms = {0}".format(config.heartbeat_max_age_ms),
        "",
    ]
    return "\n".join(lines)


def initialize_project_config(workspace_dir: Optional[Path] = None, force: bool = False) -> Path:
    config_root = resolve_config_root(workspace_dir)
    config_file = config_root / CONFIG_FILE_NAME
    if config_file.exists() and not force:
        raise ProjectConfigError("configuration file already exists: {0}".format(config_file))
    ensure_dir_with_mode(config_root)
    atomic_write_text(config_file, _render_project_config(ProjectConfig()))
    return config_file


def load_project_config(workspace_dir: Optional[Path] = None) -> ProjectConfig:
    """Read the project config; a missing file yields the defaults."""

    config_file = resolve_config_root(workspace_dir) / CONFIG_FILE_NAME
    if not config_file.is_file():
        return ProjectConfig()

    try:
        parsed = tomllib.loads(config_file.read_text(encoding="utf-8"))
    except Exception as exc:
        raise ProjectConfigError("invalid config file: {0}".format(config_file)) from exc

    if not isinstance(parsed, dict):
        raise ProjectConfigError("invalid config file: {0}".format(config_file))
    return _parse_project_config_data(parsed)


def save_project_config(config: ProjectConfig, workspace_dir: Optional[Path] = None) -> Path:
    config_file = resolve_config_root(workspace_dir) / CONFIG_FILE_NAME
    atomic_write_text(config_file, _render_project_config(config))
    return config_file


def validate_config_path(config_path: Path, home_dir: Path) -> bool:
    """A bridge config must live under home, inside a trusted state directory."""

    resolved = str(Path(config_path).resolve())
    home = str(Path(home_dir).resolve())
    under_home = resolved == home or resolved.startswith(home.rstrip("/") + "/")
    trusted = any(marker in resolved for marker in TRUSTED_CONFIG_SUBPATHS)
    return under_home and trusted


def validate_working_directory(working_directory: str, home_dir: Optional[Path] = None) -> Path:
    path = Path(working_directory).expanduser()
    if not path.exists():
        raise BridgeConfigError("workingDirectory does not exist: {0}".format(working_directory))
    if not path.is_dir():
        raise BridgeConfigError("workingDirectory is not a directory: {0}".format(working_directory))
    resolved = path.resolve()
    if home_dir is not None:
        home = Path(home_dir).resolve()
        if resolved != home and home not in resolved.parents:
            raise BridgeConfigError("workingDirectory is outside home directory: {0}".format(resolved))
    return resolved


def bridge_config_from_dict(
    data: Dict[str, Any],
    defaults: Optional[ProjectConfig] = None,
    home_dir: Optional[Path] = None,
) -> BridgeConfig:
    for key in REQUIRED_BRIDGE_FIELDS:
        if not data.get(key):
            raise BridgeConfigError("Missing required config field: {0}".format(key), field=key)

    try:
        team_name = sanitize_name(str(data["teamName"]), "team name")
        worker_name = sanitize_name(str(data["workerName"]), "worker name")
    except InvalidNameError as exc:
        raise BridgeConfigError(str(exc)) from exc

    provider = str(data["provider"]).strip().lower()
    if provider not in ALLOWED_PROVIDERS:
        raise BridgeConfigError(
            "Invalid provider: {0}. Must be one of {1}.".format(provider, "|".join(ALLOWED_PROVIDERS)),
            provider=provider,
        )

    working_directory = validate_working_directory(str(data["workingDirectory"]), home_dir=home_dir)
    base = defaults or load_project_config(working_directory)
    return BridgeConfig(
        team_name=team_name,
        worker_name=worker_name,
        provider=provider,
        working_directory=str(working_directory),
        model=str(data["model"]) if data.get("model") else None,
        poll_interval_ms=_safe_positive_int(data.get("pollIntervalMs"), base.poll_interval_ms),
        task_timeout_ms=_safe_positive_int(data.get("taskTimeoutMs"), base.task_timeout_ms),
        max_consecutive_errors=_safe_positive_int(
            data.get("maxConsecutiveErrors"),
            base.max_consecutive_errors,
        ),
        outbox_max_lines=_safe_positive_int(data.get("outboxMaxLines"), base.outbox_max_lines),
        max_retries=_safe_positive_int(data.get("maxRetries"), base.max_retries),
        heartbeat_interval_ms=_safe_positive_int(data.get("heartbeatIntervalMs"), base.heartbeat_interval_ms),
        claim_delay_ms=_safe_non_negative_int(data.get("claimDelayMs"), base.claim_delay_ms),
        rotate_every_cycles=_safe_positive_int(data.get("rotateEveryCycles"), base.rotate_every_cycles),
    )


def load_bridge_config(config_path: Path, home_dir: Optional[Path] = None) -> BridgeConfig:
    try:
        raw = Path(config_path).read_text(encoding="utf-8")
        data = json.loads(raw)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise BridgeConfigError("Failed to read config from {0}: {1}".format(config_path, exc)) from exc
    if not isinstance(data, dict):
        raise BridgeConfigError("Bridge config must be a JSON object: {0}".format(config_path))
    return bridge_config_from_dict(data, home_dir=home_dir)


def write_bridge_config(config_path: Path, config: BridgeConfig) -> Path:
    atomic_write_json(config_path, config.to_dict())
    return Path(config_path)
