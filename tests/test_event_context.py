from __future__ import annotations

import json
from pathlib import Path

import pytest

from relay_bot.events.context import (
    GITHUB,
    GITLAB,
    RepositoryRef,
    UnsupportedEventError,
    parse_event_from_env,
    parse_github_event,
    parse_gitlab_event,
)


def test_github_issue_comment_on_pull_request_is_merge_request() -> None:
    payload = {
        "action": "created",
        "issue": {"number": 7, "pull_request": {"url": "x"}},
        "comment": {"id": 1, "body": "@claude"},
        "repository": {"full_name": "acme/widgets"},
        "sender": {"login": "alice"},
    }
    context = parse_github_event("issue_comment", payload, env={"GITHUB_RUN_ID": "123"})

    assert context.platform == GITHUB
    assert context.is_merge_request is True
    assert context.entity_number == 7
    assert context.entity_kind == "pr"
    assert context.entity_label == "PR"
    assert context.actor == "alice"
    assert context.run_id == "123"
    assert context.repository == RepositoryRef(owner="acme", name="widgets")
    assert context.reply_to is None


def test_github_review_comment_records_reply_target() -> None:
    payload = {
        "action": "created",
        "pull_request": {"number": 7},
        "comment": {"id": 555, "body": "@claude"},
        "repository": {"full_name": "acme/widgets"},
    }
    context = parse_github_event("pull_request_review_comment", payload, env={"GITHUB_ACTOR": "bob"})
    assert context.reply_to == "555"
    assert context.actor == "bob"


def test_github_context_payload_is_read_only() -> None:
    payload = {"action": "opened", "issue": {"number": 1}, "repository": {"full_name": "a/b"}}
    context = parse_github_event("issues", payload, env={})
    with pytest.raises(TypeError):
        context.payload["action"] = "closed"  # type: ignore[index]


def test_unsupported_github_event_is_rejected() -> None:
    with pytest.raises(UnsupportedEventError):
        parse_github_event("push", {"repository": {"full_name": "a/b"}}, env={})


def test_github_event_without_number_is_rejected() -> None:
    with pytest.raises(UnsupportedEventError):
        parse_github_event("issues", {"issue": {}, "repository": {"full_name": "a/b"}}, env={})


def test_gitlab_merge_request_note_context() -> None:
    payload = {
        "object_kind": "note",
        "user": {"username": "dev"},
        "project": {"path_with_namespace": "group/sub/app"},
        "object_attributes": {"noteable_type": "MergeRequest", "note": "@claude", "discussion_id": "d1"},
        "merge_request": {"iid": 11},
    }
    context = parse_gitlab_event(payload, env={"CI_PIPELINE_ID": "77"})

    assert context.platform == GITLAB
    assert context.is_merge_request is True
    assert context.entity_number == 11
    assert context.entity_kind == "mr"
    assert context.repository.owner == "group/sub"
    assert context.repository.name == "app"
    assert context.reply_to == "d1"
    assert context.run_id == "77"


def test_gitlab_context_from_ci_variables_only() -> None:
    env = {
        "CI_PROJECT_PATH": "group/app",
        "CI_MERGE_REQUEST_IID": "4",
        "GITLAB_USER_LOGIN": "dev",
        "CI_PIPELINE_ID": "9",
    }
    context = parse_gitlab_event(None, env=env)
    assert context.is_merge_request is True
    assert context.entity_number == 4
    assert context.trigger_event == "manual"


def test_gitlab_context_without_entity_is_rejected() -> None:
    with pytest.raises(UnsupportedEventError):
        parse_gitlab_event(None, env={"CI_PROJECT_PATH": "group/app"})


def test_parse_event_from_env_reads_github_event_file(tmp_path: Path) -> None:
    event_file = tmp_path / "event.json"
    event_file.write_text(
        json.dumps({"action": "opened", "issue": {"number": 42}, "repository": {"full_name": "acme/widgets"}}),
        encoding="utf-8",
    )
    env = {"GITHUB_EVENT_PATH": str(event_file), "GITHUB_EVENT_NAME": "issues", "GITHUB_ACTOR": "alice"}
    context = parse_event_from_env(GITHUB, env)
    assert context.entity_number == 42
    assert context.is_merge_request is False


@pytest.mark.parametrize("raw", ["{not json", "[1, 2]"])
def test_malformed_gitlab_webhook_payload_is_rejected(raw: str) -> None:
    env = {"GITLAB_WEBHOOK_PAYLOAD": raw, "CI_PROJECT_PATH": "group/app"}
    with pytest.raises(UnsupportedEventError, match="GITLAB_WEBHOOK_PAYLOAD"):
        parse_event_from_env(GITLAB, env)


def test_malformed_github_event_file_is_rejected(tmp_path: Path) -> None:
    event_file = tmp_path / "event.json"
    event_file.write_text("{truncated", encoding="utf-8")
    env = {"GITHUB_EVENT_PATH": str(event_file), "GITHUB_EVENT_NAME": "issues"}
    with pytest.raises(UnsupportedEventError, match="not valid JSON"):
        parse_event_from_env(GITHUB, env)


def test_repository_ref_requires_owner_and_name() -> None:
    with pytest.raises(UnsupportedEventError):
        RepositoryRef.parse("widgets")
