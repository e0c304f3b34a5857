"""relay-bot CLI."""

from __future__ import annotations

import json
import os
from pathlib import Path

import typer

from relay_bot.events.context import (
    GITHUB,
    GITLAB,
    EventContext,
    UnsupportedEventError,
    load_event_payload,
    parse_event_from_env,
    parse_github_event,
    parse_gitlab_event,
)
from relay_bot.events.trigger import should_trigger
from relay_bot.git.local_repo import GitCLIRepo
from relay_bot.notifications.webhook import WebhookNotifier
from relay_bot.orchestration.agent import CommandAgentRunner, result_from_output
from relay_bot.orchestration.branch import BranchSetupError
from relay_bot.orchestration.runner import PreparedRun, PreparedRunState, RunOrchestrator, RunRejectedError
from relay_bot.providers.auth import MissingTokenError, load_auth_from_env
from relay_bot.providers.base import SCMError
from relay_bot.providers.factory import build_provider, detect_platform
from relay_bot.shared.logging import configure_logging
from relay_bot.shared.settings import RelaySettings

app = typer.Typer(add_completion=False, help="relay-bot: run a coding agent from issue and merge request events")

FATAL_ERRORS = (SCMError, BranchSetupError, MissingTokenError, RunRejectedError)


@app.callback()
def main() -> None:
    configure_logging(
        level=os.environ.get("RELAY_LOG_LEVEL", "INFO"),
        fmt=os.environ.get("RELAY_LOG_FORMAT", "text"),
    )


def _load_context(platform: str, event_path: Path | None, event_name: str) -> EventContext:
    try:
        resolved = platform.strip().lower() or detect_platform()
        if resolved not in {GITHUB, GITLAB}:
            raise UnsupportedEventError(f"--platform must be github or gitlab, got {resolved!r}")
        if event_path is None:
            return parse_event_from_env(resolved)
        payload = load_event_payload(event_path)
        if resolved == GITHUB:
            name = event_name or os.environ.get("GITHUB_EVENT_NAME", "")
            return parse_github_event(name, payload or {})
        return parse_gitlab_event(payload)
    except UnsupportedEventError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=2) from exc


def _build_orchestrator(context: EventContext, settings: RelaySettings, workdir: Path) -> RunOrchestrator:
    provider = build_provider(context, load_auth_from_env(context.platform))
    notifier = WebhookNotifier(settings.notify_webhook_url) if settings.notify_webhook_url else None
    return RunOrchestrator(provider, GitCLIRepo(workdir), settings, notifier=notifier)


def _fail(exc: Exception) -> typer.Exit:
    reason = getattr(exc, "reason_code", type(exc).__name__)
    typer.echo(json.dumps({"error": str(exc), "reason_code": reason}, indent=2), err=True)
    return typer.Exit(code=1)


@app.command("check-trigger")
def check_trigger(
    platform: str = typer.Option("", "--platform"),
    event_path: Path = typer.Option(None, "--event-path"),
    event_name: str = typer.Option("", "--event-name"),
) -> None:
    """Print whether the event would start a run."""
    context = _load_context(platform, event_path, event_name)
    settings = RelaySettings.from_env()
    typer.echo("true" if should_trigger(context, settings.trigger) else "false")


@app.command()
def prepare(
    state_file: Path = typer.Option(Path("relay-run.json"), "--state-file"),
    workdir: Path = typer.Option(Path("."), "--workdir"),
    platform: str = typer.Option("", "--platform"),
    event_path: Path = typer.Option(None, "--event-path"),
    event_name: str = typer.Option("", "--event-name"),
) -> None:
    """Post the tracking comment and set up the working branch."""
    context = _load_context(platform, event_path, event_name)
    settings = RelaySettings.from_env()
    if not should_trigger(context, settings.trigger):
        typer.echo(json.dumps({"triggered": False}, indent=2))
        return

    try:
        prepared = _build_orchestrator(context, settings, workdir).prepare(context)
    except FATAL_ERRORS as exc:
        raise _fail(exc) from exc
    if prepared is None:
        typer.echo(json.dumps({"triggered": False}, indent=2))
        return

    state_file.write_text(prepared.to_state().model_dump_json(indent=2), encoding="utf-8")
    typer.echo(json.dumps({"triggered": True, "environment": prepared.environment()}, indent=2))


@app.command()
def finish(
    state_file: Path = typer.Option(Path("relay-run.json"), "--state-file"),
    success: bool = typer.Option(True, "--success/--failure"),
    output_file: Path = typer.Option(None, "--output-file"),
    error: str = typer.Option("", "--error"),
    workdir: Path = typer.Option(Path("."), "--workdir"),
    platform: str = typer.Option("", "--platform"),
    event_path: Path = typer.Option(None, "--event-path"),
    event_name: str = typer.Option("", "--event-name"),
) -> None:
    """Resolve the working branch and write the final tracking comment."""
    if not state_file.exists():
        typer.echo(f"Error: no prepared run at {state_file}", err=True)
        raise typer.Exit(code=2)
    context = _load_context(platform, event_path, event_name)
    settings = RelaySettings.from_env()
    try:
        state = PreparedRunState.model_validate_json(state_file.read_text(encoding="utf-8"))
        prepared = PreparedRun.from_state(context, state)
    except ValueError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=2) from exc

    result = result_from_output(success, output_file, error or None)
    try:
        report = _build_orchestrator(context, settings, workdir).complete(prepared, result)
    except FATAL_ERRORS as exc:
        raise _fail(exc) from exc
    typer.echo(json.dumps(report.to_dict(), indent=2))


@app.command()
def run(
    command: list[str] = typer.Argument(..., help="Agent command, after --"),
    output_file: Path = typer.Option(None, "--output-file"),
    workdir: Path = typer.Option(Path("."), "--workdir"),
    platform: str = typer.Option("", "--platform"),
    event_path: Path = typer.Option(None, "--event-path"),
    event_name: str = typer.Option("", "--event-name"),
) -> None:
    """Prepare, run the agent command, then finish in one process."""
    context = _load_context(platform, event_path, event_name)
    settings = RelaySettings.from_env()
    if not should_trigger(context, settings.trigger):
        typer.echo(json.dumps({"triggered": False}, indent=2))
        return

    agent = CommandAgentRunner(command, output_file=output_file, workdir=workdir)
    try:
        report = _build_orchestrator(context, settings, workdir).run(context, agent)
    except FATAL_ERRORS as exc:
        raise _fail(exc) from exc
    if report is None:
        typer.echo(json.dumps({"triggered": False}, indent=2))
        return
    typer.echo(json.dumps(report.to_dict(), indent=2))


if __name__ == "__main__":
    app()
