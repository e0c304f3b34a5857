"""GitHub REST implementation of the SCM provider contract."""

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

# Issue comments and inline review comments live in disjoint id namespaces.
ISSUE_COMMENT = "issue_comment"
REVIEW_COMMENT = "review_comment"

PERMISSION_LEVELS = {
    "admin": AccessLevel.ADMIN,
    "maintain": AccessLevel.MAINTAIN,
    "write": AccessLevel.WRITE,
    "triage": AccessLevel.TRIAGE,
    "read": AccessLevel.READ,
    "none": AccessLevel.NONE,
}


class GitHubProvider:
    platform = "github"

    def __init__(
        self,
        context: EventContext,
        token: str | None,
        api_url: str = "https://api.github.com",
        server_url: str = "https://github.com",
        session: requests.Session | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.context = context
        self.server_url = server_url.rstrip("/")
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        transport_kwargs: dict[str, Any] = {"session": session}
        if sleep is not None:
            transport_kwargs["sleep"] = sleep
        self.transport = JSONTransport(api_url, headers, platform="github", **transport_kwargs)
        self._repo_info: RepoInfo | None = None
        self._pr_info: PullRequestInfo | None = None

    @property
    def _repo_path(self) -> str:
        repo = self.context.repository
        return f"/repos/{repo.owner}/{repo.name}"

    def get_repo_info(self) -> RepoInfo:
        if self._repo_info is None:
            data = self.transport.request("GET", self._repo_path)
            self._repo_info = RepoInfo(
                owner=self.context.repository.owner,
                name=self.context.repository.name,
                default_branch=str(data.get("default_branch") or ""),
            )
        return self._repo_info

    def get_default_branch(self) -> str:
        return self.get_repo_info().default_branch

    def get_collaborator_permission(self, actor: str) -> AccessLevel:
        data = self.transport.request(
            "GET", f"{self._repo_path}/collaborators/{quote(actor)}/permission"
        )
        role = str(data.get("role_name") or "").lower()
        if role in PERMISSION_LEVELS:
            return PERMISSION_LEVELS[role]
        return PERMISSION_LEVELS.get(str(data.get("permission") or "none").lower(), AccessLevel.NONE)

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
            data = self.transport.request("GET", f"/users/{quote(actor)}")
        except SCMError as exc:
            logger.warning("User lookup for %s failed, treating as non-human: %s", actor, exc)
            return False
        user_type = str(data.get("type") or "")
        logger.info("Actor %s has account type %s", actor, user_type or "<unknown>")
        return user_type == "User"

    def get_pull_request_info(self) -> PullRequestInfo:
        number = require_merge_request(self.context, "get_pull_request_info")
        if self._pr_info is None:
            pr = self.transport.request("GET", f"{self._repo_path}/pulls/{number}")
            state = str(pr.get("state") or "open")
            if pr.get("merged") or pr.get("merged_at"):
                state = "merged"
            head = pr.get("head") or {}
            base = pr.get("base") or {}
            self._pr_info = PullRequestInfo(
                number=int(pr.get("number") or number),
                head_sha=str(head.get("sha") or ""),
                base_sha=str(base.get("sha") or ""),
                head_branch=str(head.get("ref") or ""),
                base_branch=str(base.get("ref") or ""),
                author=str((pr.get("user") or {}).get("login") or ""),
                title=str(pr.get("title") or ""),
                body=str(pr.get("body") or ""),
                is_draft=bool(pr.get("draft")),
                state=state,
                commit_count=int(pr.get("commits") or 0),
            )
        return self._pr_info

    def list_comments(self) -> list[CommentInfo]:
        number = require_entity(self.context, "list_comments")
        rows = self.transport.request(
            "GET", f"{self._repo_path}/issues/{number}/comments", params={"per_page": 100}
        )
        comments: list[CommentInfo] = []
        for row in rows if isinstance(rows, list) else []:
            user = row.get("user") or {}
            comments.append(
                CommentInfo(
                    handle=CommentHandle(id=int(row["id"]), kind=ISSUE_COMMENT),
                    author=str(user.get("login") or ""),
                    author_id=user.get("id"),
                    author_is_bot=user.get("type") == "Bot",
                    body=str(row.get("body") or ""),
                    created_at=str(row.get("created_at") or ""),
                )
            )
        return comments

    def create_comment(self, body: str, reply_to: str | None = None) -> CommentHandle:
        number = require_entity(self.context, "create_comment")
        if reply_to and self.context.is_merge_request:
            data = self.transport.request(
                "POST",
                f"{self._repo_path}/pulls/{number}/comments/{reply_to}/replies",
                json={"body": body},
            )
            return CommentHandle(id=int(data["id"]), kind=REVIEW_COMMENT)

        data = self.transport.request(
            "POST", f"{self._repo_path}/issues/{number}/comments", json={"body": body}
        )
        return CommentHandle(id=int(data["id"]), kind=ISSUE_COMMENT)

    def update_comment(self, handle: CommentHandle, body: str) -> None:
        self._with_namespace_fallback(
            handle, lambda path: self.transport.request("PATCH", path, json={"body": body})
        )

    def get_comment(self, handle: CommentHandle) -> str:
        data = self._with_namespace_fallback(
            handle, lambda path: self.transport.request("GET", path)
        )
        return str(data.get("body") or "")

    def _with_namespace_fallback(
        self, handle: CommentHandle, call: Callable[[str], Any]
    ) -> Any:
        try:
            return call(self._comment_path(handle.kind, handle.id))
        except NotFoundError:
            other = ISSUE_COMMENT if handle.kind == REVIEW_COMMENT else REVIEW_COMMENT
            logger.info(
                "Comment %d not found as %s, retrying as %s", handle.id, handle.kind, other
            )
            return call(self._comment_path(other, handle.id))

    def _comment_path(self, kind: str, comment_id: int) -> str:
        namespace = "pulls" if kind == REVIEW_COMMENT else "issues"
        return f"{self._repo_path}/{namespace}/comments/{comment_id}"

    def get_diff(self) -> str:
        number = require_merge_request(self.context, "get_diff")
        return self.transport.request_text(
            f"{self._repo_path}/pulls/{number}", accept="application/vnd.github.v3.diff"
        )

    def get_changed_files(self) -> list[FileChange]:
        number = require_merge_request(self.context, "get_changed_files")
        rows = self.transport.request(
            "GET", f"{self._repo_path}/pulls/{number}/files", params={"per_page": 100}
        )
        return [
            FileChange(
                path=str(row.get("filename") or ""),
                additions=int(row.get("additions") or 0),
                deletions=int(row.get("deletions") or 0),
                changes=int(row.get("changes") or 0),
                patch=row.get("patch"),
            )
            for row in (rows if isinstance(rows, list) else [])
        ]

    def get_file_content(self, path: str, ref: str) -> str:
        data = self.transport.request(
            "GET", f"{self._repo_path}/contents/{quote(path)}", params={"ref": ref}
        )
        if not isinstance(data, dict) or data.get("type") != "file":
            raise SCMError(f"Path {path} is not a file", reason_code="not_a_file")
        try:
            return base64.b64decode(str(data.get("content") or "")).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise SCMError(f"Could not decode {path}: {exc}", reason_code="undecodable") from exc

    def get_files_content(self, paths: list[str], ref: str) -> dict[str, str]:
        return fetch_files_concurrently(self.get_file_content, paths, ref)

    def get_branch(self, name: str) -> BranchInfo | None:
        try:
            data = self.transport.request("GET", f"{self._repo_path}/branches/{quote(name)}")
        except NotFoundError:
            return None
        return BranchInfo(
            name=str(data.get("name") or name),
            sha=str((data.get("commit") or {}).get("sha") or ""),
            protected=bool(data.get("protected")),
        )

    def create_branch(self, name: str, sha: str) -> None:
        self.transport.request(
            "POST", f"{self._repo_path}/git/refs", json={"ref": f"refs/heads/{name}", "sha": sha}
        )

    def delete_branch(self, name: str) -> None:
        self.transport.request("DELETE", f"{self._repo_path}/git/refs/heads/{quote(name)}")

    def compare_branches(self, base: str, head: str) -> BranchComparison:
        data = self.transport.request(
            "GET", f"{self._repo_path}/compare/{quote(base)}...{quote(head)}"
        )
        files = tuple(str(item.get("filename") or "") for item in data.get("files") or [])
        return BranchComparison(total_commits=int(data.get("total_commits") or 0), changed_files=files)

    def push_changes(
        self,
        branch: str,
        message: str,
        files: dict[str, str],
        base_branch: str | None = None,
    ) -> str:
        """Commit ``files`` through the Git Data API.

        Commits made this way are signed by GitHub. When ``branch`` does not
        exist yet it is created from ``base_branch`` with the new commit.
        """

        target = self.get_branch(branch)
        creating = target is None
        if creating:
            if not base_branch:
                raise NotFoundError(f"Branch {branch} does not exist and no base branch was given")
            target = self.get_branch(base_branch)
            if target is None:
                raise NotFoundError(f"Base branch {base_branch} does not exist")

        parent = self.transport.request("GET", f"{self._repo_path}/git/commits/{target.sha}")
        tree = self.transport.request(
            "POST",
            f"{self._repo_path}/git/trees",
            json={
                "base_tree": (parent.get("tree") or {}).get("sha"),
                "tree": [
                    {"path": path, "mode": "100644", "type": "blob", "content": content}
                    for path, content in files.items()
                ],
            },
        )
        commit = self.transport.request(
            "POST",
            f"{self._repo_path}/git/commits",
            json={"message": message, "tree": tree["sha"], "parents": [target.sha]},
        )
        sha = str(commit["sha"])
        if creating:
            self.create_branch(branch, sha)
        else:
            self.transport.request(
                "PATCH",
                f"{self._repo_path}/git/refs/heads/{quote(branch)}",
                json={"sha": sha, "force": False},
            )
        return sha

    def apply_suggestions(self, suggestions: list[Suggestion]) -> None:
        number = require_merge_request(self.context, "apply_suggestions")
        if not suggestions:
            return
        self.transport.request(
            "POST",
            f"{self._repo_path}/pulls/{number}/reviews",
            json={
                "event": "COMMENT",
                "comments": [
                    {"path": item.file, "line": item.line, "body": item.render()}
                    for item in suggestions
                ],
            },
        )

    def job_url(self) -> str:
        return f"{self.server_url}/{self.context.repository.full_name}/actions/runs/{self.context.run_id}"

    def branch_url(self, name: str) -> str:
        return f"{self.server_url}/{self.context.repository.full_name}/tree/{name}"

    def compare_url(self, base: str, head: str, title: str, body: str) -> str:
        query = urlencode({"quick_pull": "1", "title": title, "body": body}, quote_via=quote)
        return f"{self.server_url}/{self.context.repository.full_name}/compare/{base}...{head}?{query}"
