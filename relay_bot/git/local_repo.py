"""Local git working tree operations used around the agent run."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Callable, Protocol

logger = logging.getLogger(__name__)


class GitCommandError(RuntimeError):
    def __init__(self, args: list[str], returncode: int, stderr: str) -> None:
        super().__init__(f"git {' '.join(args)} failed with exit code {returncode}: {stderr.strip()}")
        self.args_list = list(args)
        self.returncode = returncode
        self.stderr = stderr


class LocalRepo(Protocol):
    def fetch(self, branch: str, depth: int = 1) -> None: ...

    def checkout(self, branch: str) -> None: ...

    def has_uncommitted_changes(self) -> bool: ...

    def commit_all(self, message: str) -> None: ...

    def push(self, branch: str) -> None: ...


class GitCLIRepo:
    """``LocalRepo`` backed by the ``git`` executable."""

    def __init__(
        self,
        workdir: Path,
        remote: str = "origin",
        timeout_s: int = 120,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ) -> None:
        self.workdir = workdir
        self.remote = remote
        self.timeout_s = timeout_s
        self.runner = runner

    def _run_git(self, args: list[str]) -> str:
        logger.debug("Running git %s in %s", " ".join(args), self.workdir)
        try:
            result = self.runner(
                ["git", *args],
                cwd=self.workdir,
                capture_output=True,
                text=True,
                timeout=self.timeout_s,
            )
        except subprocess.TimeoutExpired as exc:
            raise GitCommandError(args, -1, f"timed out after {self.timeout_s}s") from exc
        if result.returncode != 0:
            raise GitCommandError(args, result.returncode, result.stderr or "")
        return result.stdout or ""

    def fetch(self, branch: str, depth: int = 1) -> None:
        self._run_git(["fetch", self.remote, f"--depth={max(1, depth)}", branch])

    def checkout(self, branch: str) -> None:
        # -B resets a stale local branch of the same name to the fetched tip
        self._run_git(["checkout", "-B", branch, f"{self.remote}/{branch}"])

    def has_uncommitted_changes(self) -> bool:
        return bool(self._run_git(["status", "--porcelain"]).strip())

    def commit_all(self, message: str) -> None:
        self._run_git(["add", "-A"])
        self._run_git(["commit", "-m", message])

    def push(self, branch: str) -> None:
        self._run_git(["push", self.remote, f"HEAD:refs/heads/{branch}"])
