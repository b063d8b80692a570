"""Typer CLI entrypoints for teambridge."""

from __future__ import annotations

import json
import sys
from enum import Enum
from pathlib import Path
from typing import Optional

import typer

from teambridge.config import (
    ProjectConfigError,
    initialize_project_config,
    load_bridge_config,
    load_project_config,
    validate_config_path,
    write_bridge_config,
)
from teambridge.errors import BridgeConfigError, BridgeFatalError, InvalidNameError, error_summary
from teambridge.paths import BridgePaths
from teambridge.render import render_notice, render_team_status
from teambridge.team.audit_log import AuditLog
from teambridge.team.bridge import run_bridge
from teambridge.team.health import check_worker_health, get_worker_health_reports
from teambridge.team.mailbox import Mailbox
from teambridge.team.restart import (
    bridge_config_path,
    read_restart_state,
    should_restart,
    synthesize_bridge_config,
)
from teambridge.team.status import get_team_status
from teambridge.team.types import InboxMessage, InboxMessageType, new_id

app = typer.Typer(no_args_is_help=True, help="File-based coordination for teams of CLI workers")


class SignalKind(str, Enum):
    shutdown = "shutdown"
    drain = "drain"


def _paths(workdir: Optional[Path], home: Optional[Path]) -> BridgePaths:
    return BridgePaths.resolve(working_directory=workdir, home=home)


WORKDIR_OPTION = typer.Option(None, "--workdir", help="Working directory holding .teambridge state")
HOME_OPTION = typer.Option(None, "--home", help="Shared team home (default: $TEAMBRIDGE_HOME or ~/.teambridge)")


@app.command("init")
def init_cmd(
    force: bool = typer.Option(False, "--force", help="Overwrite an existing config.toml"),
    workdir: Optional[Path] = WORKDIR_OPTION,
) -> None:
    try:
        config_file = initialize_project_config(workspace_dir=workdir, force=force)
    except ProjectConfigError as exc:
        typer.echo(render_notice("error", str(exc)), err=True)
        raise typer.Exit(code=2)
    typer.echo(render_notice("success", "Initialized project config at: {0}".format(config_file)))


@app.command("bridge")
def bridge_cmd(
    config: Path = typer.Option(..., "--config", help="Path to the worker's bridge config JSON"),
    home: Optional[Path] = HOME_OPTION,
) -> None:
    """Run one worker bridge in the foreground."""

    config_path = config.expanduser().resolve()
    user_home = Path.home()
    if not validate_config_path(config_path, user_home):
        typer.echo(
            render_notice("error", "Config path must be under ~/ inside a .teambridge directory: {0}".format(config_path)),
            err=True,
        )
        raise typer.Exit(code=1)

    try:
        bridge_config = load_bridge_config(config_path, home_dir=user_home)
    except (BridgeConfigError, ProjectConfigError) as exc:
        typer.echo(render_notice("error", error_summary(exc)), err=True)
        raise typer.Exit(code=1)

    paths = BridgePaths.resolve(working_directory=Path(bridge_config.working_directory), home=home)
    try:
        ctx = run_bridge(bridge_config, paths=paths)
    except BridgeFatalError as exc:
        typer.echo(render_notice("error", "Fatal: {0}".format(error_summary(exc))), err=True)
        raise typer.Exit(code=1)
    typer.echo(
        render_notice(
            "info",
            "Bridge stopped ({0}): completed={1} failed={2}".format(
                ctx.stop_reason or "stopped",
                ctx.tasks_completed,
                ctx.tasks_failed,
            ),
        )
    )


@app.command("status")
def status_cmd(
    team: str = typer.Argument(..., help="Team name"),
    as_json: bool = typer.Option(False, "--json", help="Print the snapshot as JSON"),
    workdir: Optional[Path] = WORKDIR_OPTION,
    home: Optional[Path] = HOME_OPTION,
) -> None:
    paths = _paths(workdir, home)
    try:
        max_age = load_project_config(paths.working_directory).heartbeat_max_age_ms
        snapshot = get_team_status(paths, team, max_age)
    except (InvalidNameError, ProjectConfigError) as exc:
        typer.echo(render_notice("error", str(exc)), err=True)
        raise typer.Exit(code=2)

    if as_json:
        typer.echo(json.dumps(snapshot.to_dict(), ensure_ascii=False, indent=2))
        return
    render_team_status(snapshot, sys.stdout)


@app.command("health")
def health_cmd(
    team: str = typer.Argument(..., help="Team name"),
    workdir: Optional[Path] = WORKDIR_OPTION,
    home: Optional[Path] = HOME_OPTION,
) -> None:
    paths = _paths(workdir, home)
    try:
        project = load_project_config(paths.working_directory)
        reports = get_worker_health_reports(paths, team, project.heartbeat_max_age_ms)
        payload = []
        for report in reports:
            item = report.to_dict()
            item["problem"] = check_worker_health(
                paths,
                team,
                report.worker_name,
                project.heartbeat_max_age_ms,
                project.max_consecutive_errors,
            )
            payload.append(item)
    except (InvalidNameError, ProjectConfigError) as exc:
        typer.echo(render_notice("error", str(exc)), err=True)
        raise typer.Exit(code=2)
    typer.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@app.command("audit")
def audit_cmd(
    team: str = typer.Argument(..., help="Team name"),
    event_type: Optional[str] = typer.Option(None, "--event-type", help="Only events of this type"),
    worker: Optional[str] = typer.Option(None, "--worker", help="Only events of this worker"),
    since: Optional[str] = typer.Option(None, "--since", help="Only events at or after this ISO timestamp"),
    workdir: Optional[Path] = WORKDIR_OPTION,
) -> None:
    paths = _paths(workdir, None)
    try:
        events = AuditLog(paths.logs_dir).read_events(team, event_type=event_type, worker_name=worker, since=since)
    except (InvalidNameError, ValueError) as exc:
        typer.echo(render_notice("error", str(exc)), err=True)
        raise typer.Exit(code=2)
    for event in events:
        typer.echo(json.dumps(event.to_dict(), ensure_ascii=False))


@app.command("send")
def send_cmd(
    team: str = typer.Argument(..., help="Team name"),
    worker: str = typer.Argument(..., help="Addressee worker"),
    text: str = typer.Argument(..., help="Message content"),
    sender: Optional[str] = typer.Option(None, "--from", help="Sender name"),
    context: bool = typer.Option(False, "--context", help="Send as shared context instead of a message"),
    home: Optional[Path] = HOME_OPTION,
) -> None:
    paths = _paths(None, home)
    message = InboxMessage(
        type=(InboxMessageType.CONTEXT if context else InboxMessageType.MESSAGE).value,
        content=text,
        sender=sender,
        message_id=new_id("msg"),
    )
    try:
        Mailbox(paths).append_inbox(team, worker, message)
    except InvalidNameError as exc:
        typer.echo(render_notice("error", str(exc)), err=True)
        raise typer.Exit(code=2)
    typer.echo(render_notice("success", "Queued {0} for {1}/{2}".format(message.message_id, team, worker)))


@app.command("signal")
def signal_cmd(
    team: str = typer.Argument(..., help="Team name"),
    worker: str = typer.Argument(..., help="Worker name"),
    kind: SignalKind = typer.Argument(..., help="shutdown or drain"),
    reason: str = typer.Option("", "--reason", help="Reason recorded with the request"),
    home: Optional[Path] = HOME_OPTION,
) -> None:
    mailbox = Mailbox(_paths(None, home))
    request_id = new_id("req")
    try:
        if kind is SignalKind.shutdown:
            mailbox.write_shutdown_signal(team, worker, request_id, reason)
        else:
            mailbox.write_drain_signal(team, worker, request_id, reason)
    except InvalidNameError as exc:
        typer.echo(render_notice("error", str(exc)), err=True)
        raise typer.Exit(code=2)
    typer.echo(render_notice("success", "Sent {0} to {1}/{2} (requestId={3})".format(kind.value, team, worker, request_id)))


@app.command("restart-plan")
def restart_plan_cmd(
    team: str = typer.Argument(..., help="Team name"),
    worker: str = typer.Argument(..., help="Worker name"),
    write: bool = typer.Option(False, "--write", help="Write the synthesized bridge config to the state directory"),
    workdir: Optional[Path] = WORKDIR_OPTION,
) -> None:
    """Show whether a dead worker may be relaunched and with which config."""

    paths = _paths(workdir, None)
    try:
        project = load_project_config(paths.working_directory)
        state = read_restart_state(paths, team, worker)
        decision = should_restart(state, project.restart)
        config = synthesize_bridge_config(paths, team, worker, project)
    except (InvalidNameError, ProjectConfigError) as exc:
        typer.echo(render_notice("error", str(exc)), err=True)
        raise typer.Exit(code=2)

    payload = {
        "restart": decision.restart,
        "delayMs": decision.delay_ms,
        "reason": decision.reason,
        "state": state.to_dict() if state is not None else None,
        "config": config.to_dict() if config is not None else None,
    }
    if write and config is not None:
        payload["configPath"] = str(write_bridge_config(bridge_config_path(paths, team, worker), config))
    typer.echo(json.dumps(payload, ensure_ascii=False, indent=2))
    if config is None:
        raise typer.Exit(code=1)


def main() -> None:
    app()
