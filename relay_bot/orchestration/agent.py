"""Agent runner contract and parsing of the agent's execution log."""

from __future__ import annotations

import json
import logging
import os
import subprocess
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol

from pydantic import BaseModel, ConfigDict, ValidationError

logger = logging.getLogger(__name__)

ERROR_TAIL_CHARS = 2000


@dataclass(frozen=True)
class ExecutionResult:
    success: bool
    duration_ms: int | None = None
    cost_usd: float | None = None
    error: str | None = None


class ExecutionDetails(BaseModel):
    """The ``result`` entry the agent SDK appends to its JSON log."""

    model_config = ConfigDict(extra="allow")

    type: str = "result"
    subtype: str | None = None
    is_error: bool = False
    duration_ms: int | None = None
    duration_api_ms: int | None = None
    cost_usd: float | None = None
    total_cost_usd: float | None = None
    result: str | None = None

    @property
    def cost(self) -> float | None:
        return self.cost_usd if self.cost_usd is not None else self.total_cost_usd


def parse_output_file(path: Path | None) -> ExecutionDetails | None:
    """Return the last ``result`` entry of the output file, if any."""

    if path is None or not path.exists():
        return None
    try:
        data: Any = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.warning("Could not read agent output %s: %s", path, exc)
        return None

    entries = data if isinstance(data, list) else [data]
    for entry in reversed(entries):
        if isinstance(entry, dict) and entry.get("type") == "result":
            try:
                return ExecutionDetails.model_validate(entry)
            except ValidationError as exc:
                logger.warning("Ignoring malformed result entry in %s: %s", path, exc)
                return None
    return None


def result_from_output(success: bool, path: Path | None, error: str | None = None) -> ExecutionResult:
    details = parse_output_file(path)
    if details is None:
        return ExecutionResult(success=success, error=error)
    if details.is_error and not error:
        error = details.result
    return ExecutionResult(
        success=success and not details.is_error,
        duration_ms=details.duration_ms,
        cost_usd=details.cost,
        error=error,
    )


class AgentRunner(Protocol):
    def run(self, environment: Mapping[str, str]) -> ExecutionResult: ...


class CommandAgentRunner:
    """Run the agent as an external command and read its output file."""

    def __init__(
        self,
        command: list[str],
        output_file: Path | None = None,
        workdir: Path | None = None,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.command = list(command)
        self.output_file = output_file
        self.workdir = workdir
        self.runner = runner
        self.clock = clock

    def run(self, environment: Mapping[str, str]) -> ExecutionResult:
        started = self.clock()
        logger.info("Starting agent command %s", self.command[0] if self.command else "<empty>")
        try:
            completed = self.runner(
                self.command,
                cwd=self.workdir,
                env={**os.environ, **environment},
                capture_output=True,
                text=True,
            )
        except OSError as exc:
            logger.error("Agent command could not start: %s", exc)
            return ExecutionResult(success=False, error=str(exc))

        elapsed_ms = int((self.clock() - started) * 1000)
        success = completed.returncode == 0
        error = None
        if not success:
            tail = (completed.stderr or "").strip()[-ERROR_TAIL_CHARS:]
            error = tail or f"Agent exited with code {completed.returncode}"
            logger.warning("Agent command exited with code %d", completed.returncode)

        result = result_from_output(success, self.output_file, error)
        if result.duration_ms is None:
            result = replace(result, duration_ms=elapsed_ms)
        return result
