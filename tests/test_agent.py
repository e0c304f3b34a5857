from __future__ import annotations

import json
import subprocess
from pathlib import Path
from typing import Any

from relay_bot.orchestration.agent import CommandAgentRunner, parse_output_file, result_from_output


def _write_log(path: Path, entries: list[dict[str, Any]]) -> Path:
    path.write_text(json.dumps(entries), encoding="utf-8")
    return path


def test_parse_output_file_returns_last_result_entry(tmp_path: Path) -> None:
    path = _write_log(
        tmp_path / "output.json",
        [
            {"type": "system", "subtype": "init"},
            {"type": "result", "duration_ms": 10, "cost_usd": 0.01},
            {"type": "assistant", "message": {}},
            {"type": "result", "subtype": "success", "duration_ms": 74_400, "total_cost_usd": 0.25, "num_turns": 6},
        ],
    )
    details = parse_output_file(path)
    assert details is not None
    assert details.duration_ms == 74_400
    assert details.cost == 0.25


def test_parse_output_file_tolerates_missing_and_invalid_files(tmp_path: Path) -> None:
    assert parse_output_file(None) is None
    assert parse_output_file(tmp_path / "missing.json") is None
    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    assert parse_output_file(broken) is None


def test_error_result_marks_run_failed(tmp_path: Path) -> None:
    path = _write_log(
        tmp_path / "output.json",
        [{"type": "result", "subtype": "error_max_turns", "is_error": True, "result": "Too many turns"}],
    )
    result = result_from_output(True, path)
    assert result.success is False
    assert result.error == "Too many turns"


class FakeRunner:
    def __init__(self, returncode: int = 0, stderr: str = "", error: Exception | None = None) -> None:
        self.returncode = returncode
        self.stderr = stderr
        self.error = error
        self.calls: list[dict[str, Any]] = []

    def __call__(self, command: list[str], **kwargs: Any) -> subprocess.CompletedProcess:
        self.calls.append({"command": command, **kwargs})
        if self.error is not None:
            raise self.error
        return subprocess.CompletedProcess(command, self.returncode, stdout="", stderr=self.stderr)


class FakeClock:
    def __init__(self, *values: float) -> None:
        self.values = list(values)

    def __call__(self) -> float:
        return self.values.pop(0)


def test_command_runner_passes_environment_and_measures_duration(tmp_path: Path) -> None:
    runner = FakeRunner()
    agent = CommandAgentRunner(["agent", "--print"], workdir=tmp_path, runner=runner, clock=FakeClock(10.0, 12.5))

    result = agent.run({"RELAY_RUN_WORKING_BRANCH": "claude/issue-1"})

    assert result.success is True
    assert result.duration_ms == 2500
    assert runner.calls[0]["command"] == ["agent", "--print"]
    assert runner.calls[0]["cwd"] == tmp_path
    assert runner.calls[0]["env"]["RELAY_RUN_WORKING_BRANCH"] == "claude/issue-1"


def test_command_runner_prefers_logged_duration(tmp_path: Path) -> None:
    output = _write_log(tmp_path / "output.json", [{"type": "result", "duration_ms": 900, "cost_usd": 0.5}])
    agent = CommandAgentRunner(["agent"], output_file=output, runner=FakeRunner(), clock=FakeClock(0.0, 5.0))

    result = agent.run({})

    assert result.duration_ms == 900
    assert result.cost_usd == 0.5


def test_command_runner_reports_exit_code_and_stderr_tail() -> None:
    runner = FakeRunner(returncode=3, stderr="x" * 5000 + "fatal: boom\n")
    agent = CommandAgentRunner(["agent"], runner=runner, clock=FakeClock(0.0, 1.0))
    result = agent.run({})
    assert result.success is False
    assert result.error is not None
    assert result.error.endswith("fatal: boom")
    assert len(result.error) == 2000

    agent = CommandAgentRunner(["agent"], runner=FakeRunner(returncode=3), clock=FakeClock(0.0, 1.0))
    assert agent.run({}).error == "Agent exited with code 3"


def test_command_runner_handles_missing_executable() -> None:
    runner = FakeRunner(error=FileNotFoundError("missing-agent"))
    agent = CommandAgentRunner(["missing-agent"], runner=runner, clock=FakeClock(0.0))
    result = agent.run({})
    assert result.success is False
    assert result.error == "missing-agent"
