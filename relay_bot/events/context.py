"""Normalize raw GitHub/GitLab events into a platform-neutral context."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

GITHUB = "github"
GITLAB = "gitlab"

GITHUB_EVENTS = {
    "issues",
    "issue_comment",
    "pull_request",
    "pull_request_review",
    "pull_request_review_comment",
}
GITLAB_OBJECT_KINDS = {"issue", "merge_request", "note"}


class UnsupportedEventError(ValueError):
    """Raised when an event cannot be mapped to an issue or PR/MR."""


@dataclass(frozen=True)
class RepositoryRef:
    owner: str
    name: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    @classmethod
    def parse(cls, full_name: str) -> "RepositoryRef":
        owner, sep, name = full_name.strip().strip("/").rpartition("/")
        if not sep or not owner or not name:
            raise UnsupportedEventError(f"Repository must look like owner/name, got {full_name!r}")
        return cls(owner=owner, name=name)


@dataclass(frozen=True)
class EventContext:
    platform: str
    is_merge_request: bool
    entity_number: int
    actor: str
    trigger_event: str
    repository: RepositoryRef
    run_id: str
    event_action: str = ""
    reply_to: str | None = None
    payload: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    def __post_init__(self) -> None:
        if not isinstance(self.payload, MappingProxyType):
            object.__setattr__(self, "payload", MappingProxyType(dict(self.payload)))

    @property
    def entity_kind(self) -> str:
        if not self.is_merge_request:
            return "issue"
        return "mr" if self.platform == GITLAB else "pr"

    @property
    def entity_label(self) -> str:
        if not self.is_merge_request:
            return "Issue"
        return "MR" if self.platform == GITLAB else "PR"


def parse_github_event(
    event_name: str,
    payload: Mapping[str, Any],
    env: Mapping[str, str] | None = None,
) -> EventContext:
    """Build a context from a GitHub Actions event name and payload."""

    env_map = os.environ if env is None else env
    if event_name not in GITHUB_EVENTS:
        raise UnsupportedEventError(f"Unsupported GitHub event: {event_name}")

    if event_name == "issues":
        entity = payload.get("issue") or {}
        is_pr = False
    elif event_name == "issue_comment":
        entity = payload.get("issue") or {}
        is_pr = bool(entity.get("pull_request"))
    else:
        entity = payload.get("pull_request") or {}
        is_pr = True

    number = entity.get("number")
    if not isinstance(number, int) or number <= 0:
        raise UnsupportedEventError(f"GitHub {event_name} payload has no entity number")

    repo_name = str((payload.get("repository") or {}).get("full_name") or "")
    repo_name = repo_name or env_map.get("GITHUB_REPOSITORY", "")
    actor = env_map.get("GITHUB_ACTOR") or str((payload.get("sender") or {}).get("login") or "")

    reply_to = None
    if event_name == "pull_request_review_comment":
        comment_id = (payload.get("comment") or {}).get("id")
        reply_to = str(comment_id) if comment_id else None

    return EventContext(
        platform=GITHUB,
        is_merge_request=is_pr,
        entity_number=number,
        actor=actor,
        trigger_event=event_name,
        event_action=str(payload.get("action") or ""),
        repository=RepositoryRef.parse(repo_name),
        run_id=env_map.get("GITHUB_RUN_ID", ""),
        reply_to=reply_to,
        payload=payload,
    )


def parse_gitlab_event(
    payload: Mapping[str, Any] | None,
    env: Mapping[str, str] | None = None,
) -> EventContext:
    """Build a context from a GitLab webhook payload, or from CI variables alone.

    Without a payload the entity comes from ``CI_MERGE_REQUEST_IID`` or the
    ``RELAY_RESOURCE_TYPE``/``RELAY_RESOURCE_ID`` pair forwarded by the
    webhook relay that started the pipeline.
    """

    env_map = os.environ if env is None else env
    if not payload:
        return _gitlab_context_from_env(env_map)

    kind = str(payload.get("object_kind") or "")
    if kind not in GITLAB_OBJECT_KINDS:
        raise UnsupportedEventError(f"Unsupported GitLab object kind: {kind or '<missing>'}")

    attributes = payload.get("object_attributes") or {}
    reply_to = None
    if kind == "merge_request":
        is_mr = True
        number = attributes.get("iid") or (payload.get("merge_request") or {}).get("iid")
    elif kind == "issue":
        is_mr = False
        number = attributes.get("iid") or (payload.get("issue") or {}).get("iid")
    else:
        is_mr = attributes.get("noteable_type") == "MergeRequest"
        entity = payload.get("merge_request") if is_mr else payload.get("issue")
        number = (entity or {}).get("iid")
        discussion_id = attributes.get("discussion_id")
        reply_to = str(discussion_id) if discussion_id else None

    if not isinstance(number, int) or number <= 0:
        raise UnsupportedEventError(f"GitLab {kind} payload has no entity iid")

    project = payload.get("project") or {}
    repo_name = str(project.get("path_with_namespace") or env_map.get("CI_PROJECT_PATH", ""))
    actor = str((payload.get("user") or {}).get("username") or env_map.get("GITLAB_USER_LOGIN", ""))

    return EventContext(
        platform=GITLAB,
        is_merge_request=is_mr,
        entity_number=number,
        actor=actor,
        trigger_event=kind,
        event_action=str(attributes.get("action") or ""),
        repository=RepositoryRef.parse(repo_name),
        run_id=env_map.get("CI_PIPELINE_ID", ""),
        reply_to=reply_to,
        payload=payload,
    )


def _gitlab_context_from_env(env_map: Mapping[str, str]) -> EventContext:
    mr_iid = env_map.get("CI_MERGE_REQUEST_IID", "").strip()
    resource_type = env_map.get("RELAY_RESOURCE_TYPE", "").strip().lower()
    resource_id = env_map.get("RELAY_RESOURCE_ID", "").strip()

    if mr_iid:
        is_mr, raw_number = True, mr_iid
    elif resource_id:
        is_mr, raw_number = resource_type == "merge_request", resource_id
    else:
        raise UnsupportedEventError("No GitLab payload and no merge request or resource id in env")

    try:
        number = int(raw_number)
    except ValueError as exc:
        raise UnsupportedEventError(f"Invalid GitLab entity iid: {raw_number!r}") from exc

    return EventContext(
        platform=GITLAB,
        is_merge_request=is_mr,
        entity_number=number,
        actor=env_map.get("GITLAB_USER_LOGIN", ""),
        trigger_event="manual",
        repository=RepositoryRef.parse(env_map.get("CI_PROJECT_PATH", "")),
        run_id=env_map.get("CI_PIPELINE_ID", ""),
    )


def load_event_payload(path: Path | None) -> dict[str, Any] | None:
    """Read a JSON event payload from disk, returning ``None`` when absent."""

    if path is None or not path.exists():
        return None
    return _decode_payload(path.read_text(encoding="utf-8"), str(path))


def parse_event_from_env(platform: str, env: Mapping[str, str] | None = None) -> EventContext:
    """Parse the triggering event the way each CI host exposes it."""

    env_map = os.environ if env is None else env
    if platform == GITHUB:
        event_path = env_map.get("GITHUB_EVENT_PATH")
        payload = load_event_payload(Path(event_path) if event_path else None) or {}
        return parse_github_event(env_map.get("GITHUB_EVENT_NAME", ""), payload, env_map)
    if platform == GITLAB:
        raw = env_map.get("GITLAB_WEBHOOK_PAYLOAD", "").strip()
        payload = _decode_payload(raw, "GITLAB_WEBHOOK_PAYLOAD") if raw else None
        return parse_gitlab_event(payload, env_map)
    raise UnsupportedEventError(f"Unsupported platform: {platform}")


def _decode_payload(raw: str, source: str) -> dict[str, Any]:
    try:
        data = json.loads(raw)
    except ValueError as exc:
        raise UnsupportedEventError(f"Event payload in {source} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise UnsupportedEventError(f"Event payload in {source} is not a JSON object")
    return data
