from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Iterator

import pytest
from typer.testing import CliRunner

from relay_bot.cli import app

QUIET = {"RELAY_LOG_LEVEL": "WARNING", "GITHUB_ACTOR": "alice", "GITHUB_RUN_ID": "99"}


@pytest.fixture(autouse=True)
def restore_root_logger() -> Iterator[None]:
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    yield
    root.handlers[:] = saved_handlers
    root.setLevel(saved_level)


@pytest.fixture
def workdir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(tmp_path)
    return tmp_path


def _write_comment_event(path: Path, body: str) -> Path:
    path.write_text(
        json.dumps(
            {
                "action": "created",
                "issue": {"number": 42, "title": "Crash on start"},
                "comment": {"id": 1, "body": body},
                "repository": {"full_name": "acme/widgets"},
                "sender": {"login": "alice"},
            }
        ),
        encoding="utf-8",
    )
    return path


def test_check_trigger_reports_match(workdir: Path) -> None:
    event = _write_comment_event(workdir / "event.json", "@claude please fix")
    args = ["check-trigger", "--platform", "github", "--event-path", str(event), "--event-name", "issue_comment"]
    result = CliRunner().invoke(app, args, env=QUIET)

    assert result.exit_code == 0
    assert result.stdout.strip() == "true"


def test_check_trigger_reports_no_match(workdir: Path) -> None:
    event = _write_comment_event(workdir / "event.json", "looks good to me")
    args = ["check-trigger", "--platform", "github", "--event-path", str(event), "--event-name", "issue_comment"]
    result = CliRunner().invoke(app, args, env=QUIET)

    assert result.exit_code == 0
    assert result.stdout.strip() == "false"


def test_prepare_without_trigger_needs_no_token(workdir: Path) -> None:
    event = _write_comment_event(workdir / "event.json", "no mention here")
    result = CliRunner().invoke(
        app,
        ["prepare", "--platform", "github", "--event-path", str(event), "--event-name", "issue_comment"],
        env={**QUIET, "RELAY_GITHUB_TOKEN": "", "GITHUB_TOKEN": ""},
    )

    assert result.exit_code == 0
    assert json.loads(result.stdout) == {"triggered": False}
    assert not (workdir / "relay-run.json").exists()


def test_prepare_without_token_fails_with_reason_code(workdir: Path) -> None:
    event = _write_comment_event(workdir / "event.json", "@claude fix it")
    result = CliRunner().invoke(
        app,
        ["prepare", "--platform", "github", "--event-path", str(event), "--event-name", "issue_comment"],
        env={**QUIET, "RELAY_GITHUB_TOKEN": "", "GITHUB_TOKEN": ""},
    )

    assert result.exit_code == 1
    assert '"reason_code": "missing_token"' in result.output


def test_unsupported_event_exits_with_usage_error(workdir: Path) -> None:
    event = _write_comment_event(workdir / "event.json", "@claude")
    args = ["check-trigger", "--platform", "github", "--event-path", str(event), "--event-name", "push"]
    result = CliRunner().invoke(app, args, env=QUIET)

    assert result.exit_code == 2
    assert "Unsupported GitHub event: push" in result.output


def test_unknown_platform_from_environment_exits_with_usage_error(workdir: Path) -> None:
    event = _write_comment_event(workdir / "event.json", "@claude")
    args = ["check-trigger", "--event-path", str(event), "--event-name", "issue_comment"]
    result = CliRunner().invoke(app, args, env={**QUIET, "RELAY_PLATFORM": "bitbucket"})

    assert result.exit_code == 2
    assert "RELAY_PLATFORM must be github or gitlab" in result.output


def test_unknown_platform_option_exits_with_usage_error(workdir: Path) -> None:
    event = _write_comment_event(workdir / "event.json", "@claude")
    args = ["check-trigger", "--platform", "bitbucket", "--event-path", str(event)]
    result = CliRunner().invoke(app, args, env=QUIET)

    assert result.exit_code == 2
    assert "--platform must be github or gitlab" in result.output


def test_malformed_event_file_exits_with_usage_error(workdir: Path) -> None:
    event = workdir / "event.json"
    event.write_text('{"action": "created", "comment": ', encoding="utf-8")
    args = ["check-trigger", "--platform", "github", "--event-path", str(event), "--event-name", "issue_comment"]
    result = CliRunner().invoke(app, args, env=QUIET)

    assert result.exit_code == 2
    assert "is not valid JSON" in result.output


def test_malformed_gitlab_payload_variable_exits_with_usage_error(workdir: Path) -> None:
    env = {**QUIET, "GITLAB_WEBHOOK_PAYLOAD": "{oops", "CI_PROJECT_PATH": "group/app"}
    result = CliRunner().invoke(app, ["check-trigger", "--platform", "gitlab"], env=env)

    assert result.exit_code == 2
    assert "GITLAB_WEBHOOK_PAYLOAD is not valid JSON" in result.output


def test_finish_requires_prepared_state(workdir: Path) -> None:
    result = CliRunner().invoke(app, ["finish", "--state-file", "missing.json"], env=QUIET)

    assert result.exit_code == 2
    assert "no prepared run at missing.json" in result.output


def test_finish_rejects_corrupt_state_file(workdir: Path) -> None:
    (workdir / "relay-run.json").write_text("{}", encoding="utf-8")
    event = _write_comment_event(workdir / "event.json", "@claude fix it")
    args = ["finish", "--platform", "github", "--event-path", str(event), "--event-name", "issue_comment"]
    result = CliRunner().invoke(app, args, env=QUIET)

    assert result.exit_code == 2
    assert "Error:" in result.output
