"""Worker bridge: the per-worker supervisor loop.

Each cycle checks the lifecycle signals first, then folds new inbox messages
into the prompt context, then claims at most one task and runs it through the
provider.  Results go back to the task file, the worker's outbox, and the team
audit log.  Too many consecutive failures raise :class:`BridgeFatalError` so
the restart policy, not the loop, decides what happens next.

Cancellation is only observed at cycle boundaries; a running provider call is
never interrupted by a signal file.
"""

from __future__ import annotations

import re
import signal
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from teambridge.config import BridgeConfig, ProjectConfig, load_project_config
from teambridge.debug_log import DebugLogWriter
from teambridge.errors import BridgeFatalError, TeamBridgeError, error_summary
from teambridge.paths import BridgePaths
from teambridge.providers.base import BaseProvider, ExecutionRequest, ExecutionResult, ProviderError
from teambridge.providers.factory import build_provider, ensure_provider_probe
from teambridge.team.audit_log import AuditEventType, AuditLog
from teambridge.team.heartbeat import HeartbeatRegistry
from teambridge.team.mailbox import Mailbox
from teambridge.team.registration import WorkerRegistry
from teambridge.team.restart import clear_restart_state
from teambridge.team.task_store import TaskStore
from teambridge.team.types import (
    InboxMessage,
    LifecycleSignal,
    OutboxMessage,
    OutboxMessageType,
    TaskFile,
    TaskStatus,
    iso_now,
    now_ms,
)

MAX_PROMPT_FIELD_CHARS = 20_000
MAX_SUMMARY_CHARS = 2_000
MAX_CONTEXT_MESSAGES = 20

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_PROMPT_TAG_RE = re.compile(
    r"<\s*(/?)\s*(task_subject|task_description|inbox_context|system|instructions?)\b",
    re.IGNORECASE,
)


def sanitize_prompt_content(text: str, max_length: int = MAX_PROMPT_FIELD_CHARS) -> str:
    """Make untrusted text safe to embed between the prompt's section tags."""

    cleaned = _CONTROL_CHARS_RE.sub("", str(text or ""))
    cleaned = _PROMPT_TAG_RE.sub(lambda m: "[{0}{1}".format(m.group(1), m.group(2)), cleaned)
    if len(cleaned) > max_length:
        cleaned = cleaned[:max_length] + "\n[truncated]"
    return cleaned


def build_task_prompt(task: TaskFile, worker_name: str, context: Optional[List[InboxMessage]] = None) -> str:
    lines = [
        "You are worker '{0}' on a team sharing a task list.".format(worker_name),
        "Complete the task below in the current working directory.",
        "",
        "<task_subject>",
        sanitize_prompt_content(task.subject or task.id),
        "</task_subject>",
        "",
        "<task_description>",
        sanitize_prompt_content(task.description or "(no description)"),
        "</task_description>",
    ]
    recent = list(context or [])[-MAX_CONTEXT_MESSAGES:]
    if recent:
        lines.extend(["", "<inbox_context>"])
        for message in recent:
            sender = sanitize_prompt_content(message.sender or "team", max_length=100)
            lines.append("- [{0}] {1}".format(sender, sanitize_prompt_content(message.content, max_length=4_000)))
        lines.append("</inbox_context>")
    lines.extend(["", "When finished, reply with a short summary of what you did."])
    return "\n".join(lines)


@dataclass
class BridgeContext:
    """Mutable state of one bridge run, passed explicitly through every cycle."""

    started_at_ms: int = field(default_factory=now_ms)
    cycle: int = 0
    status: str = "starting"
    current_task_id: Optional[str] = None
    consecutive_errors: int = 0
    idle_notified: bool = False
    draining: bool = False
    tasks_completed: int = 0
    tasks_failed: int = 0
    restart_state_cleared: bool = False
    stop_reason: Optional[str] = None
    seen_message_keys: Set[str] = field(default_factory=set)
    pending_context: List[InboxMessage] = field(default_factory=list)


class HeartbeatPump(threading.Thread):
    """Rewrites the worker's beacon on a fixed interval, independent of task work."""

    def __init__(
        self,
        beat: Callable[[], None],
        interval_sec: float,
        debug_log: Optional[DebugLogWriter] = None,
    ) -> None:
        super().__init__(name="teambridge-heartbeat", daemon=True)
        self._beat = beat
        self._interval_sec = max(0.01, float(interval_sec))
        self._debug_log = debug_log
        self._stop_event = threading.Event()

    def run(self) -> None:
        while not self._stop_event.wait(self._interval_sec):
            try:
                self._beat()
            except OSError as exc:
                if self._debug_log is not None:
                    self._debug_log.warning("heartbeat", "heartbeat write failed", error=str(exc))

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop_event.set()
        if self.is_alive() and threading.current_thread() is not self:
            self.join(timeout)


class BridgeRunner:
    def __init__(
        self,
        config: BridgeConfig,
        *,
        paths: Optional[BridgePaths] = None,
        provider: Optional[BaseProvider] = None,
        project_config: Optional[ProjectConfig] = None,
        debug_log: Optional[DebugLogWriter] = None,
        pid: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.paths = paths or BridgePaths.resolve(working_directory=config.working_directory)
        self.project_config = project_config or load_project_config(self.paths.working_directory)
        self.store = TaskStore(self.paths, claim_delay_sec=config.claim_delay_ms / 1000.0, pid=pid, sleep=sleep)
        self.audit = AuditLog(self.paths.logs_dir, self.project_config.audit_max_bytes)
        self.heartbeats = HeartbeatRegistry(self.paths)
        self.mailbox = Mailbox(self.paths, max_lines=config.outbox_max_lines)
        self.registry = WorkerRegistry(self.paths)
        self.debug_log = debug_log or DebugLogWriter(
            logs_dir=self.paths.logs_dir,
            team_name=config.team_name,
            worker_name=config.worker_name,
            enabled=self.project_config.logs_enabled,
            max_file_bytes=self.project_config.logs_max_file_bytes,
            max_files=self.project_config.logs_max_files,
            redaction=self.project_config.logs_redaction,
        )
        self._provider = provider
        self._stop_event = threading.Event()
        self._pump: Optional[HeartbeatPump] = None
        self.context = BridgeContext()

    @property
    def team_name(self) -> str:
        return self.config.team_name

    @property
    def worker_name(self) -> str:
        return self.config.worker_name

    # -- lifecycle ------------------------------------------------------------

    def run(self) -> BridgeContext:
        """Run cycles until shutdown, drain, or :meth:`stop`; returns the final context."""

        ctx = self.context
        self._start(ctx)
        try:
            while not self._stop_event.is_set():
                if not self._guarded_cycle(ctx):
                    break
                self._stop_event.wait(self.config.poll_interval_ms / 1000.0)
        finally:
            self._stop_pump()
        return ctx

    def stop(self) -> None:
        self._stop_event.set()

    def cleanup(self) -> None:
        """Best-effort removal of this worker's beacon and registration."""

        self._stop_pump()
        try:
            self.heartbeats.delete_heartbeat(self.team_name, self.worker_name)
            self.registry.unregister_worker(self.team_name, self.worker_name)
        except OSError as exc:
            self.debug_log.warning("lifecycle", "cleanup failed", error=str(exc))

    def _start(self, ctx: BridgeContext) -> None:
        provider = self._resolve_provider()
        self.registry.register_worker(
            self.team_name,
            self.worker_name,
            self.config.provider,
            working_directory=self.config.working_directory,
            model=self.config.model,
        )
        ctx.status = "polling"
        self._beat(ctx)
        self.audit.log_event(
            self.team_name,
            AuditEventType.BRIDGE_START,
            worker_name=self.worker_name,
            details={"provider": provider.provider_id, "pid": self.store.pid},
        )
        self._outbox(OutboxMessage(type=OutboxMessageType.READY.value, message="worker ready"))
        self.debug_log.info("lifecycle", "bridge started", provider=provider.provider_id, pid=self.store.pid)

        self._pump = HeartbeatPump(
            lambda: self._beat(ctx),
            self.config.heartbeat_interval_ms / 1000.0,
            debug_log=self.debug_log,
        )
        self._pump.start()

    def _resolve_provider(self) -> BaseProvider:
        if self._provider is not None:
            return self._provider
        probe = ensure_provider_probe(self.paths, self.config.provider)
        if not probe.available:
            raise BridgeFatalError(
                "provider {0} is not available: {1}".format(self.config.provider, probe.detail),
                provider=self.config.provider,
            )
        self._provider = build_provider(self.config.provider)
        return self._provider

    def _stop_pump(self) -> None:
        if self._pump is not None:
            self._pump.stop()
            self._pump = None

    def _beat(self, ctx: BridgeContext) -> None:
        self.heartbeats.write_heartbeat(
            self.team_name,
            self.worker_name,
            pid=self.store.pid,
            status=ctx.status,
            provider=self.config.provider,
            current_task_id=ctx.current_task_id,
            consecutive_errors=ctx.consecutive_errors,
        )

    def _outbox(self, message: OutboxMessage) -> None:
        self.mailbox.append_outbox(self.team_name, self.worker_name, message)

    # -- cycle ----------------------------------------------------------------

    def _guarded_cycle(self, ctx: BridgeContext) -> bool:
        try:
            return self.run_cycle(ctx)
        except BridgeFatalError:
            raise
        except (OSError, TeamBridgeError) as exc:
            ctx.consecutive_errors += 1
            self.debug_log.error("cycle", "bridge cycle failed", error=error_summary(exc), cycle=ctx.cycle)
            self._outbox(OutboxMessage(type=OutboxMessageType.ERROR.value, error=error_summary(exc)))
            self._check_quarantine(ctx)
            return True

    def run_cycle(self, ctx: BridgeContext) -> bool:
        """Run one poll cycle; ``False`` means the bridge should stop."""

        ctx.cycle += 1
        self._beat(ctx)

        shutdown = self.mailbox.check_shutdown_signal(self.team_name, self.worker_name)
        if shutdown is not None:
            self._handle_shutdown(ctx, shutdown)
            return False

        drain = self.mailbox.check_drain_signal(self.team_name, self.worker_name)
        if drain is not None:
            self._handle_drain(ctx, drain)
            return False

        self._collect_inbox(ctx)

        task = self.store.find_next_task(self.team_name, self.worker_name)
        if task is None:
            self._handle_idle(ctx)
        else:
            ctx.idle_notified = False
            self.audit.log_event(
                self.team_name,
                AuditEventType.TASK_CLAIMED,
                worker_name=self.worker_name,
                task_id=task.id,
            )
            self.execute_task(ctx, task)
            self._check_quarantine(ctx)

        self._maybe_clear_restart_state(ctx)
        self._maybe_rotate(ctx)
        return True

    def _collect_inbox(self, ctx: BridgeContext) -> None:
        for message in self.mailbox.read_new_inbox_messages(self.team_name, self.worker_name):
            key = message.dedup_key
            if key in ctx.seen_message_keys:
                continue
            ctx.seen_message_keys.add(key)
            ctx.pending_context.append(message)

    def _handle_idle(self, ctx: BridgeContext) -> None:
        if ctx.idle_notified:
            return
        ctx.idle_notified = True
        self._outbox(OutboxMessage(type=OutboxMessageType.IDLE.value, message="no claimable tasks"))
        self.audit.log_event(self.team_name, AuditEventType.WORKER_IDLE, worker_name=self.worker_name)

    # -- task execution -------------------------------------------------------

    def execute_task(self, ctx: BridgeContext, task: TaskFile) -> ExecutionResult:
        self.store.update_task(self.team_name, task.id, {"status": TaskStatus.IN_PROGRESS.value})
        ctx.status = "executing"
        ctx.current_task_id = task.id
        self._beat(ctx)
        self.audit.log_event(self.team_name, AuditEventType.TASK_STARTED, worker_name=self.worker_name, task_id=task.id)
        self._outbox(
            OutboxMessage(type=OutboxMessageType.TASK_STARTED.value, task_id=task.id, summary=task.subject or None)
        )

        prompt = build_task_prompt(task, self.worker_name, ctx.pending_context)
        ctx.pending_context = []
        request = ExecutionRequest(
            prompt=prompt,
            working_directory=self.config.working_directory,
            timeout_sec=self.config.task_timeout_ms / 1000.0,
            model=self.config.model,
        )
        self.debug_log.debug("task", "executing task", taskId=task.id, prompt_chars=len(prompt))

        try:
            result = self._resolve_provider().execute(request)
        except (ProviderError, OSError) as exc:
            result = ExecutionResult(success=False, error=error_summary(exc))

        try:
            if result.success:
                self._handle_success(ctx, task, result)
            else:
                self._handle_failure(ctx, task, result)
        finally:
            ctx.status = "polling"
            ctx.current_task_id = None
            self._beat(ctx)
        return result

    def _handle_success(self, ctx: BridgeContext, task: TaskFile, result: ExecutionResult) -> None:
        summary = (result.output or "").strip()[:MAX_SUMMARY_CHARS]
        metadata = task.metadata
        metadata.update({"result": summary, "completedAt": iso_now(), "completedBy": self.worker_name})
        self.store.update_task(
            self.team_name,
            task.id,
            {"status": TaskStatus.COMPLETED.value, "metadata": metadata},
        )
        ctx.consecutive_errors = 0
        ctx.tasks_completed += 1
        self._outbox(OutboxMessage(type=OutboxMessageType.TASK_COMPLETE.value, task_id=task.id, summary=summary))
        self.audit.log_event(
            self.team_name,
            AuditEventType.TASK_COMPLETED,
            worker_name=self.worker_name,
            task_id=task.id,
        )

    def _handle_failure(self, ctx: BridgeContext, task: TaskFile, result: ExecutionResult) -> None:
        error = result.error or "execution failed"
        self.audit.log_event(
            self.team_name,
            AuditEventType.CLI_TIMEOUT if result.timed_out else AuditEventType.CLI_ERROR,
            worker_name=self.worker_name,
            task_id=task.id,
            details={"error": error},
        )
        self.debug_log.warning("task", "task failed", taskId=task.id, error=error, timed_out=result.timed_out)

        sidecar = self.store.write_task_failure(self.team_name, task.id, error)
        ctx.consecutive_errors += 1
        ctx.tasks_failed += 1
        details: Dict[str, Any] = {"error": error, "retryCount": sidecar.retry_count}

        if self.store.is_task_retry_exhausted(self.team_name, task.id, self.config.max_retries):
            metadata = task.metadata
            metadata.update({"permanentlyFailed": True, "failedAt": iso_now(), "error": error})
            self.store.update_task(
                self.team_name,
                task.id,
                {"status": TaskStatus.COMPLETED.value, "metadata": metadata},
            )
            self.audit.log_event(
                self.team_name,
                AuditEventType.TASK_PERMANENTLY_FAILED,
                worker_name=self.worker_name,
                task_id=task.id,
                details=details,
            )
            self._outbox(
                OutboxMessage(
                    type=OutboxMessageType.TASK_FAILED.value,
                    task_id=task.id,
                    error=error,
                    data={"permanent": True, "retryCount": sidecar.retry_count},
                )
            )
            return

        self.store.release_claim(self.team_name, task.id)
        self.audit.log_event(
            self.team_name,
            AuditEventType.TASK_FAILED,
            worker_name=self.worker_name,
            task_id=task.id,
            details=details,
        )
        self._outbox(
            OutboxMessage(
                type=OutboxMessageType.TASK_FAILED.value,
                task_id=task.id,
                error=error,
                data={"permanent": False, "retryCount": sidecar.retry_count},
            )
        )

    # -- lifecycle signals ----------------------------------------------------

    def _handle_shutdown(self, ctx: BridgeContext, request: LifecycleSignal) -> None:
        self.audit.log_event(
            self.team_name,
            AuditEventType.SHUTDOWN_RECEIVED,
            worker_name=self.worker_name,
            details={"requestId": request.request_id, "reason": request.reason},
        )
        self._outbox(OutboxMessage(type=OutboxMessageType.SHUTDOWN_ACK.value, request_id=request.request_id))
        self.mailbox.delete_shutdown_signal(self.team_name, self.worker_name)
        self._finish(ctx, "shutdown")

    def _handle_drain(self, ctx: BridgeContext, request: LifecycleSignal) -> None:
        ctx.draining = True
        self.audit.log_event(
            self.team_name,
            AuditEventType.DRAIN_RECEIVED,
            worker_name=self.worker_name,
            details={"requestId": request.request_id, "reason": request.reason},
        )
        self._outbox(OutboxMessage(type=OutboxMessageType.DRAIN_ACK.value, request_id=request.request_id))
        self.mailbox.delete_drain_signal(self.team_name, self.worker_name)
        self._finish(ctx, "drain")

    def _finish(self, ctx: BridgeContext, reason: str) -> None:
        ctx.status = "stopped"
        ctx.stop_reason = reason
        self.cleanup()
        self.audit.log_event(
            self.team_name,
            AuditEventType.BRIDGE_SHUTDOWN,
            worker_name=self.worker_name,
            details={
                "reason": reason,
                "tasksCompleted": ctx.tasks_completed,
                "tasksFailed": ctx.tasks_failed,
            },
        )
        self.debug_log.info("lifecycle", "bridge stopped", reason=reason)

    def _check_quarantine(self, ctx: BridgeContext) -> None:
        limit = self.config.max_consecutive_errors
        if ctx.consecutive_errors < limit:
            return
        ctx.status = "quarantined"
        ctx.stop_reason = "quarantined"
        self._stop_pump()
        self._beat(ctx)
        message = "worker quarantined after {0} consecutive errors".format(ctx.consecutive_errors)
        self._outbox(OutboxMessage(type=OutboxMessageType.ERROR.value, error=message, data={"quarantined": True}))
        self.audit.log_event(
            self.team_name,
            AuditEventType.WORKER_QUARANTINED,
            worker_name=self.worker_name,
            details={"consecutiveErrors": ctx.consecutive_errors},
        )
        self.debug_log.error("lifecycle", message)
        raise BridgeFatalError(message, team=self.team_name, worker=self.worker_name)

    # -- housekeeping ---------------------------------------------------------

    def _maybe_clear_restart_state(self, ctx: BridgeContext) -> None:
        if ctx.restart_state_cleared or ctx.tasks_completed == 0:
            return
        if now_ms() - ctx.started_at_ms < self.project_config.restart.stable_run_ms:
            return
        clear_restart_state(self.paths, self.team_name, self.worker_name)
        ctx.restart_state_cleared = True

    def _maybe_rotate(self, ctx: BridgeContext) -> None:
        if ctx.cycle % max(1, self.config.rotate_every_cycles) != 0:
            return
        if self.mailbox.rotate_outbox_if_needed(self.team_name, self.worker_name):
            self.audit.log_event(self.team_name, AuditEventType.OUTBOX_ROTATED, worker_name=self.worker_name)
        if self.mailbox.rotate_inbox_if_needed(self.team_name, self.worker_name):
            self.audit.log_event(self.team_name, AuditEventType.INBOX_ROTATED, worker_name=self.worker_name)
        self.audit.rotate(self.team_name)


def run_bridge(
    config: BridgeConfig,
    *,
    paths: Optional[BridgePaths] = None,
    provider: Optional[BaseProvider] = None,
    handle_signals: bool = True,
) -> BridgeContext:
    """Run a bridge in the foreground; SIGINT/SIGTERM clean up and exit 0."""

    runner = BridgeRunner(config, paths=paths, provider=provider)

    def _on_signal(signum: int, _frame: Any) -> None:
        runner.debug_log.info("lifecycle", "received process signal", signal=signal.Signals(signum).name)
        runner.stop()
        runner.cleanup()
        raise SystemExit(0)

    if handle_signals and threading.current_thread() is threading.main_thread():
        for signum in (signal.SIGINT, signal.SIGTERM):
            signal.signal(signum, _on_signal)
    return runner.run()
