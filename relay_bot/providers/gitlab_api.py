"""GitLab REST (v4) implementation of the SCM provider contract."""

from __future__ import annotations

import base64
import binascii
import logging
from typing import Any, Callable
from urllib.parse import quote, urlencode

import requests

from relay_bot.events.context import EventContext
from relay_bot.providers.base import (
    AccessLevel,
    BranchComparison,
    BranchInfo,
    CommentHandle,
    CommentInfo,
    FileChange,
    NotFoundError,
    PullRequestInfo,
    RepoInfo,
    SCMError,
    Suggestion,
    fetch_files_concurrently,
    require_entity,
    require_merge_request,
)
from relay_bot.providers.http import JSONTransport

logger = logging.getLogger(__name__)

NOTE = "note"
BOT_USER_TYPES = {"project_bot", "service_user", "service_account"}
COMMITS_PER_PAGE = 100
MR_STATES = {"opened": "open", "merged": "merged", "closed": "closed", "locked": "closed"}


class GitLabProvider:
    platform = "gitlab"

    def __init__(
        self,
        context: EventContext,
        token: str | None,
        host: str = "https://gitlab.com",
        pipeline_url: str | None = None,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.context = context
        self.host = host.rstrip("/")
        self.pipeline_url = pipeline_url
        self.project_id = quote(context.repository.full_name, safe="")
        headers = {"Content-Type": "application/json"}
        if token and token.startswith(("glpat-", "gloas-")):
            headers["Authorization"] = f"Bearer {token}"
        elif token:
            headers["PRIVATE-TOKEN"] = token
        transport_kwargs: dict[str, Any] = {"session": session}
        if sleep is not None:
            transport_kwargs["sleep"] = sleep
        self.transport = JSONTransport(f"{self.host}/api/v4", headers, platform="gitlab", **transport_kwargs)
        self._project: dict[str, Any] | None = None
        self._mr: dict[str, Any] | None = None
        self._mr_info: PullRequestInfo | None = None

    @property
    def _project_path(self) -> str:
        return f"/projects/{self.project_id}"

    def _entity_path(self, operation: str) -> str:
        number = require_entity(self.context, operation)
        collection = "merge_requests" if self.context.is_merge_request else "issues"
        return f"{self._project_path}/{collection}/{number}"

    def get_repo_info(self) -> RepoInfo:
        if self._project is None:
            self._project = self.transport.request("GET", self._project_path)
        return RepoInfo(
            owner=self.context.repository.owner,
            name=self.context.repository.name,
            default_branch=str(self._project.get("default_branch") or ""),
        )

    def get_default_branch(self) -> str:
        return self.get_repo_info().default_branch

    def _find_user(self, username: str) -> dict[str, Any] | None:
        users = self.transport.request("GET", "/users", params={"username": username})
        if not isinstance(users, list) or not users:
            return None
        return users[0]

    def get_collaborator_permission(self, actor: str) -> AccessLevel:
        user = self._find_user(actor)
        if user is None:
            logger.info("User %s not found on %s", actor, self.host)
            return AccessLevel.NONE
        try:
            # members/all includes access inherited from parent groups
            member = self.transport.request(
                "GET", f"{self._project_path}/members/all/{int(user['id'])}"
            )
        except NotFoundError:
            return AccessLevel.NONE
        return _access_level(int(member.get("access_level") or 0))

    def has_write_permission(self, actor: str) -> bool:
        if not actor:
            return False
        try:
            level = self.get_collaborator_permission(actor)
        except SCMError as exc:
            logger.warning("Permission lookup for %s failed, denying: %s", actor, exc)
            return False
        logger.info("Actor %s has %s access", actor, level.name.lower())
        return level.grants_write

    def is_human_actor(self, actor: str) -> bool:
        if not actor:
            return False
        try:
            user = self._find_user(actor)
        except SCMError as exc:
            logger.warning("User lookup for %s failed, treating as non-human: %s", actor, exc)
            return False
        if user is None:
            return False
        if user.get("bot") or str(user.get("user_type") or "") in BOT_USER_TYPES:
            return False
        return str(user.get("state") or "active") == "active"

    def _merge_request(self) -> dict[str, Any]:
        number = require_merge_request(self.context, "get_pull_request_info")
        if self._mr is None:
            self._mr = self.transport.request("GET", f"{self._project_path}/merge_requests/{number}")
        return self._mr

    def get_pull_request_info(self) -> PullRequestInfo:
        if self._mr_info is None:
            mr = self._merge_request()
            self._mr_info = PullRequestInfo(
                number=int(mr.get("iid") or self.context.entity_number),
                head_sha=str(mr.get("sha") or ""),
                base_sha=str((mr.get("diff_refs") or {}).get("base_sha") or mr.get("sha") or ""),
                head_branch=str(mr.get("source_branch") or ""),
                base_branch=str(mr.get("target_branch") or ""),
                author=str((mr.get("author") or {}).get("username") or ""),
                title=str(mr.get("title") or ""),
                body=str(mr.get("description") or ""),
                is_draft=bool(mr.get("draft") or mr.get("work_in_progress")),
                state=MR_STATES.get(str(mr.get("state") or ""), "closed"),
                commit_count=self._merge_request_commit_count(),
            )
        return self._mr_info

    def _merge_request_commit_count(self) -> int:
        """Count MR commits from ``X-Total``, paging when the header is absent."""

        path = f"{self._project_path}/merge_requests/{self.context.entity_number}/commits"
        counted = 0
        page = 1
        try:
            while True:
                commits, headers = self.transport.request_with_headers(
                    "GET", path, params={"per_page": COMMITS_PER_PAGE, "page": page}
                )
                total = str(headers.get("X-Total") or "").strip()
                if total.isdigit():
                    return int(total)
                counted += len(commits) if isinstance(commits, list) else 0
                next_page = str(headers.get("X-Next-Page") or "").strip()
                if not next_page.isdigit():
                    return counted
                page = int(next_page)
        except SCMError as exc:
            logger.warning("Could not count merge request commits: %s", exc)
            return counted

    def list_comments(self) -> list[CommentInfo]:
        rows = self.transport.request(
            "GET", f"{self._entity_path('list_comments')}/notes", params={"per_page": 100}
        )
        comments: list[CommentInfo] = []
        for row in rows if isinstance(rows, list) else []:
            if row.get("system"):
                continue
            author = row.get("author") or {}
            username = str(author.get("username") or "")
            comments.append(
                CommentInfo(
                    handle=CommentHandle(id=int(row["id"]), kind=NOTE),
                    author=username,
                    author_id=author.get("id"),
                    author_is_bot=bool(author.get("bot")) or "_bot" in username,
                    body=str(row.get("body") or ""),
                    created_at=str(row.get("created_at") or ""),
                )
            )
        return comments

    def create_comment(self, body: str, reply_to: str | None = None) -> CommentHandle:
        entity_path = self._entity_path("create_comment")
        if reply_to:
            path = f"{entity_path}/discussions/{reply_to}/notes"
        else:
            path = f"{entity_path}/notes"
        note = self.transport.request("POST", path, json={"body": body})
        return CommentHandle(id=int(note["id"]), kind=NOTE)

    def update_comment(self, handle: CommentHandle, body: str) -> None:
        self.transport.request(
            "PUT", f"{self._entity_path('update_comment')}/notes/{handle.id}", json={"body": body}
        )

    def get_comment(self, handle: CommentHandle) -> str:
        note = self.transport.request("GET", f"{self._entity_path('get_comment')}/notes/{handle.id}")
        return str(note.get("body") or "")

    def _merge_request_changes(self, operation: str) -> list[dict[str, Any]]:
        number = require_merge_request(self.context, operation)
        data = self.transport.request("GET", f"{self._project_path}/merge_requests/{number}/changes")
        return [row for row in data.get("changes") or [] if isinstance(row, dict)]

    def get_diff(self) -> str:
        changes = self._merge_request_changes("get_diff")
        return "\n".join(
            f"diff --git a/{change.get('old_path')} b/{change.get('new_path')}\n{change.get('diff') or ''}"
            for change in changes
        )

    def get_changed_files(self) -> list[FileChange]:
        files: list[FileChange] = []
        for change in self._merge_request_changes("get_changed_files"):
            diff = str(change.get("diff") or "")
            additions, deletions = _count_diff_lines(diff)
            files.append(
                FileChange(
                    path=str(change.get("new_path") or ""),
                    additions=additions,
                    deletions=deletions,
                    changes=additions + deletions,
                    patch=diff,
                )
            )
        return files

    def get_file_content(self, path: str, ref: str) -> str:
        data = self.transport.request(
            "GET",
            f"{self._project_path}/repository/files/{quote(path, safe='')}",
            params={"ref": ref},
        )
        try:
            return base64.b64decode(str(data.get("content") or "")).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise SCMError(f"Could not decode {path}: {exc}", reason_code="undecodable") from exc

    def get_files_content(self, paths: list[str], ref: str) -> dict[str, str]:
        return fetch_files_concurrently(self.get_file_content, paths, ref)

    def get_branch(self, name: str) -> BranchInfo | None:
        try:
            data = self.transport.request(
                "GET", f"{self._project_path}/repository/branches/{quote(name, safe='')}"
            )
        except NotFoundError:
            return None
        return BranchInfo(
            name=str(data.get("name") or name),
            sha=str((data.get("commit") or {}).get("id") or ""),
            protected=bool(data.get("protected")),
        )

    def create_branch(self, name: str, sha: str) -> None:
        self.transport.request(
            "POST",
            f"{self._project_path}/repository/branches",
            params={"branch": name, "ref": sha},
        )

    def delete_branch(self, name: str) -> None:
        self.transport.request(
            "DELETE", f"{self._project_path}/repository/branches/{quote(name, safe='')}"
        )

    def compare_branches(self, base: str, head: str) -> BranchComparison:
        data = self.transport.request(
            "GET",
            f"{self._project_path}/repository/compare",
            params={"from": base, "to": head, "straight": "false"},
        )
        files = tuple(str(item.get("new_path") or "") for item in data.get("diffs") or [])
        return BranchComparison(total_commits=len(data.get("commits") or []), changed_files=files)

    def push_changes(
        self,
        branch: str,
        message: str,
        files: dict[str, str],
        base_branch: str | None = None,
    ) -> str:
        """Create one commit through the Commits API.

        A missing ``branch`` is created from ``base_branch`` by the same call.
        """

        payload: dict[str, Any] = {"branch": branch, "commit_message": message}
        source_ref = branch
        if self.get_branch(branch) is None:
            if not base_branch:
                raise NotFoundError(f"Branch {branch} does not exist and no base branch was given")
            payload["start_branch"] = base_branch
            source_ref = base_branch

        payload["actions"] = [
            {
                "action": "update" if self._file_exists(path, source_ref) else "create",
                "file_path": path,
                "content": content,
            }
            for path, content in files.items()
        ]
        commit = self.transport.request("POST", f"{self._project_path}/repository/commits", json=payload)
        return str(commit["id"])

    def _file_exists(self, path: str, ref: str) -> bool:
        try:
            self.transport.request(
                "GET",
                f"{self._project_path}/repository/files/{quote(path, safe='')}",
                params={"ref": ref},
            )
        except NotFoundError:
            return False
        return True

    def apply_suggestions(self, suggestions: list[Suggestion]) -> None:
        number = require_merge_request(self.context, "apply_suggestions")
        if not suggestions:
            return
        diff_refs = self._merge_request().get("diff_refs") or {}
        for item in suggestions:
            self.transport.request(
                "POST",
                f"{self._project_path}/merge_requests/{number}/discussions",
                json={
                    "body": item.render(),
                    "position": {
                        "position_type": "text",
                        "base_sha": diff_refs.get("base_sha"),
                        "start_sha": diff_refs.get("start_sha"),
                        "head_sha": diff_refs.get("head_sha"),
                        "old_path": item.file,
                        "new_path": item.file,
                        "new_line": item.line,
                    },
                },
            )

    def job_url(self) -> str:
        if self.pipeline_url:
            return self.pipeline_url
        return f"{self.host}/{self.context.repository.full_name}/-/pipelines/{self.context.run_id}"

    def branch_url(self, name: str) -> str:
        return f"{self.host}/{self.context.repository.full_name}/-/tree/{name}"

    def compare_url(self, base: str, head: str, title: str, body: str) -> str:
        query = urlencode(
            {
                "merge_request[source_branch]": head,
                "merge_request[target_branch]": base,
                "merge_request[title]": title,
                "merge_request[description]": body,
            },
            quote_via=quote,
        )
        return f"{self.host}/{self.context.repository.full_name}/-/merge_requests/new?{query}"


def _access_level(value: int) -> AccessLevel:
    if value >= 50:
        return AccessLevel.ADMIN
    if value >= 40:
        return AccessLevel.MAINTAIN
    if value >= 30:
        return AccessLevel.WRITE
    if value >= 20:
        return AccessLevel.TRIAGE
    if value >= 10:
        return AccessLevel.READ
    return AccessLevel.NONE


def _count_diff_lines(diff: str) -> tuple[int, int]:
    additions = deletions = 0
    in_hunk = False
    for line in diff.splitlines():
        if line.startswith("@@"):
            in_hunk = True
            continue
        if not in_hunk:
            continue
        if line.startswith("+") and not line.startswith("+++"):
            additions += 1
        elif line.startswith("-") and not line.startswith("---"):
            deletions += 1
    return additions, deletions
