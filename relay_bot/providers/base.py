"""SCM provider contract, value types and errors shared by all platforms."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, Protocol

from relay_bot.events.context import EventContext

logger = logging.getLogger(__name__)


class SCMError(RuntimeError):
    def __init__(self, message: str, reason_code: str = "scm_error", status_code: int | None = None) -> None:
        super().__init__(message)
        self.reason_code = reason_code
        self.status_code = status_code


class NotFoundError(SCMError):
    def __init__(self, message: str) -> None:
        super().__init__(message, reason_code="not_found", status_code=404)


class RetryableSCMError(SCMError):
    def __init__(
        self,
        message: str,
        reason_code: str,
        status_code: int | None = None,
        retry_after_s: float | None = None,
    ) -> None:
        super().__init__(message, reason_code=reason_code, status_code=status_code)
        self.retry_after_s = retry_after_s


class NoEntityContext(SCMError):
    """An entity-scoped operation was invoked without a matching issue/PR/MR."""

    def __init__(self, operation: str) -> None:
        super().__init__(f"{operation} requires an entity context", reason_code="no_entity_context")
        self.operation = operation


class AccessLevel(IntEnum):
    NONE = 0
    READ = 10
    TRIAGE = 20
    WRITE = 30
    MAINTAIN = 40
    ADMIN = 50

    @property
    def grants_write(self) -> bool:
        return self >= AccessLevel.WRITE


@dataclass(frozen=True)
class CommentHandle:
    """Opaque reference to a platform comment.

    ``kind`` names the API namespace that created the comment; only the
    provider that issued the handle interprets it.
    """

    id: int
    kind: str


@dataclass(frozen=True)
class CommentInfo:
    handle: CommentHandle
    author: str
    body: str
    author_id: int | None = None
    author_is_bot: bool = False
    created_at: str = ""


@dataclass(frozen=True)
class RepoInfo:
    owner: str
    name: str
    default_branch: str


@dataclass(frozen=True)
class PullRequestInfo:
    number: int
    head_sha: str
    base_sha: str
    head_branch: str
    base_branch: str
    author: str
    title: str
    body: str
    is_draft: bool
    state: str
    commit_count: int = 0

    @property
    def is_open(self) -> bool:
        return self.state == "open"


@dataclass(frozen=True)
class FileChange:
    path: str
    additions: int
    deletions: int
    changes: int
    patch: str | None = None


@dataclass(frozen=True)
class BranchInfo:
    name: str
    sha: str
    protected: bool = False


@dataclass(frozen=True)
class BranchComparison:
    total_commits: int
    changed_files: tuple[str, ...] = ()

    @property
    def has_changes(self) -> bool:
        return self.total_commits > 0 or bool(self.changed_files)


@dataclass(frozen=True)
class Suggestion:
    file: str
    line: int
    suggestion: str
    description: str = ""

    def render(self) -> str:
        return f"{self.description or 'Suggestion'}\n```suggestion\n{self.suggestion}\n```"


class SCMProvider(Protocol):
    """Capability contract implemented by every platform provider."""

    platform: str
    context: EventContext

    def get_repo_info(self) -> RepoInfo: ...

    def get_default_branch(self) -> str: ...

    def get_collaborator_permission(self, actor: str) -> AccessLevel: ...

    def has_write_permission(self, actor: str) -> bool: ...

    def is_human_actor(self, actor: str) -> bool: ...

    def get_pull_request_info(self) -> PullRequestInfo: ...

    def list_comments(self) -> list[CommentInfo]: ...

    def create_comment(self, body: str, reply_to: str | None = None) -> CommentHandle: ...

    def update_comment(self, handle: CommentHandle, body: str) -> None: ...

    def get_comment(self, handle: CommentHandle) -> str: ...

    def get_diff(self) -> str: ...

    def get_changed_files(self) -> list[FileChange]: ...

    def get_file_content(self, path: str, ref: str) -> str: ...

    def get_files_content(self, paths: list[str], ref: str) -> dict[str, str]: ...

    def get_branch(self, name: str) -> BranchInfo | None: ...

    def create_branch(self, name: str, sha: str) -> None: ...

    def delete_branch(self, name: str) -> None: ...

    def compare_branches(self, base: str, head: str) -> BranchComparison: ...

    def push_changes(
        self,
        branch: str,
        message: str,
        files: dict[str, str],
        base_branch: str | None = None,
    ) -> str: ...

    def apply_suggestions(self, suggestions: list[Suggestion]) -> None: ...

    def job_url(self) -> str: ...

    def branch_url(self, name: str) -> str: ...

    def compare_url(self, base: str, head: str, title: str, body: str) -> str: ...


def require_entity(context: EventContext, operation: str) -> int:
    if context.entity_number <= 0:
        raise NoEntityContext(operation)
    return context.entity_number


def require_merge_request(context: EventContext, operation: str) -> int:
    if not context.is_merge_request or context.entity_number <= 0:
        raise NoEntityContext(operation)
    return context.entity_number


def fetch_files_concurrently(
    fetch: Callable[[str, str], str],
    paths: list[str],
    ref: str,
    max_workers: int = 8,
) -> dict[str, str]:
    """Fetch many files at ``ref``; a failed item is logged and dropped."""

    results: dict[str, str] = {}
    unique_paths = list(dict.fromkeys(paths))
    if not unique_paths:
        return results
    with ThreadPoolExecutor(max_workers=min(max_workers, len(unique_paths))) as pool:
        futures = {pool.submit(fetch, path, ref): path for path in unique_paths}
        for future in as_completed(futures):
            path = futures[future]
            try:
                results[path] = future.result()
            except SCMError as exc:
                logger.warning("Failed to fetch %s at %s: %s", path, ref, exc)
    return {path: results[path] for path in unique_paths if path in results}
